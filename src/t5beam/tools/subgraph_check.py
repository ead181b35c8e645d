from __future__ import annotations

"""
Encoder subgraph contract checker.

Loads an ONNX model (a full BeamSearch model or a standalone encoder graph),
validates the T5 encoder subgraph contract and reports the derived cache
parameters. Optionally builds the first feed batch for a dummy request to
check the beam expansion end to end.

Usage:
  python -m t5beam.tools.subgraph_check --onnx weights/t5_beam_search.onnx \
    --num_beams 4 --seq_len 16 --out reports/encoder_contract.json

Exit code 1 when the graph does not implement the contract.
"""

import argparse
import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import torch

from t5beam.config import build_runtime_config_from_env
from t5beam.inference.runtimes.onnx_provider_profiles import get_provider_options, resolve_provider
from t5beam.inference.subgraph_errors import ContractError
from t5beam.inference.t5_encoder_subgraph import T5EncoderSubgraph
from t5beam.utils.env_defaults import apply_core_defaults
from t5beam.utils.logger import flush_all_log_buffers, get_logger

try:
    import onnxruntime as ort  # type: ignore
except Exception:
    ort = None  # type: ignore


def _open_session(onnx_path: str, provider: str) -> Any:
    if ort is None:
        raise RuntimeError("onnxruntime is required for --session: pip install onnxruntime")
    so = ort.SessionOptions()
    so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_DISABLE_ALL
    providers, provider_options = get_provider_options(provider)
    return ort.InferenceSession(onnx_path, sess_options=so, providers=providers, provider_options=provider_options)


def check(onnx_path: str, provider: str = "CPUExecutionProvider", merged_past: bool = False,
          num_beams: int = 0, seq_len: int = 8, pad_token_id: int = 0, start_token_id: int = 0,
          use_session: bool = False) -> Dict[str, Any]:
    if use_session:
        # Sessions expose the standalone encoder graph only (no outer scope)
        sub = T5EncoderSubgraph.from_session(_open_session(onnx_path, provider), provider=provider,
                                             merged_past=merged_past)
    else:
        sub = T5EncoderSubgraph.from_model(onnx_path, provider=provider, merged_past=merged_past)
    validated = sub.validate()
    report: Dict[str, Any] = {
        "onnx": str(onnx_path),
        "provider": provider,
        "inputs": validated.signature.input_names,
        "outputs": validated.signature.output_names,
        "implicit_inputs": list(validated.implicit_input_names),
        "num_layers": validated.num_layers,
        "cache_params": asdict(validated.cache_params),
        "is_output_float16": validated.is_output_float16,
    }
    if num_beams > 0:
        if validated.implicit_input_names:
            report["feeds"] = {"skipped": "graph consumes implicit inputs"}
            return report
        ids = torch.randint(1, max(2, validated.cache_params.vocab_size), (1, seq_len), dtype=torch.int32)
        feeds = validated.create_initial_feeds(ids, [], num_beams, pad_token_id, start_token_id)
        report["feeds"] = {
            "names": list(feeds.names),
            "shapes": [list(v.shape) for v in feeds.values],
            "sequence_lengths": feeds.sequence_lengths.tolist(),
        }
    return report


def main(argv: Optional[List[str]] = None) -> int:
    apply_core_defaults(os.environ)  # type: ignore[arg-type]
    cfg = build_runtime_config_from_env()
    beam = cfg.beam_params()

    ap = argparse.ArgumentParser(description="Validate a T5 encoder subgraph for beam search")
    ap.add_argument("--onnx", required=True, type=str)
    ap.add_argument("--provider", type=str, default=cfg.ort_provider)
    ap.add_argument("--merged_past", action="store_true", default=cfg.merged_past)
    ap.add_argument("--num_beams", type=int, default=0, help="also build first feeds with this many beams (0 = skip)")
    ap.add_argument("--seq_len", type=int, default=8)
    ap.add_argument("--pad_token_id", type=int, default=beam.pad_token_id)
    ap.add_argument("--start_token_id", type=int, default=beam.start_token_id)
    ap.add_argument("--session", action="store_true", help="read the signature from an onnxruntime session")
    ap.add_argument("--out", type=str, default="")
    args = ap.parse_args(argv)

    log = get_logger("t5beam.check")
    provider = resolve_provider(args.provider)
    try:
        report = check(
            args.onnx, provider=provider, merged_past=args.merged_past,
            num_beams=args.num_beams, seq_len=args.seq_len,
            pad_token_id=args.pad_token_id, start_token_id=args.start_token_id,
            use_session=args.session,
        )
    except ContractError as e:
        log.error("contract check failed for %s: %s", args.onnx, e)
        print(json.dumps({"onnx": args.onnx, "error": type(e).__name__, "message": str(e)}, indent=2))
        flush_all_log_buffers()
        return 1

    text = json.dumps(report, indent=2)
    if args.out:
        Path(args.out).parent.mkdir(parents=True, exist_ok=True)
        Path(args.out).write_text(text, encoding="utf-8")
        log.info("report written to %s", args.out)
    print(text)
    flush_all_log_buffers()
    return 0


if __name__ == "__main__":
    sys.exit(main())
