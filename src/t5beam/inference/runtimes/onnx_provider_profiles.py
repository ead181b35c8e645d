from __future__ import annotations

"""
Execution provider selection for encoder subgraph feeds.

Maps onnxruntime provider names to session options and to the torch device
that first-pass feeds are materialized on.
"""

from typing import List, Tuple
import json
import os
from pathlib import Path

import torch

from t5beam.utils.logger import get_logger

try:
    import onnxruntime as ort  # type: ignore
except Exception:
    ort = None  # type: ignore

CPU_PROVIDER = "CPUExecutionProvider"
CUDA_PROVIDER = "CUDAExecutionProvider"

_DEVICE_BY_PROVIDER = {
    CUDA_PROVIDER: "cuda",
    "TensorrtExecutionProvider": "cuda",
}


def resolve_provider(name: str = "auto") -> str:
    p = (name or "auto").strip()
    if p.lower() != "auto":
        return p
    if ort is None:
        raise RuntimeError("onnxruntime is required to resolve provider 'auto': pip install onnxruntime")
    available = list(ort.get_available_providers())
    chosen = CUDA_PROVIDER if CUDA_PROVIDER in available else CPU_PROVIDER
    get_logger("t5beam.providers").debug("resolved provider auto -> %s (available=%s)", chosen, available)
    return chosen


def device_for_provider(provider: str) -> torch.device:
    kind = _DEVICE_BY_PROVIDER.get(str(provider).strip(), "cpu")
    return torch.device(kind)


def get_provider_options(provider: str) -> Tuple[List[str], List[dict]]:
    p = provider.strip()
    # A JSON profile (T5BEAM_PROVIDER_PROFILE) overrides the requested provider.
    prof = os.getenv("T5BEAM_PROVIDER_PROFILE", "").strip()
    if prof:
        jp = Path(prof)
        if jp.exists():
            try:
                data = json.loads(jp.read_text(encoding='utf-8'))
                prov = str(data.get("provider", p))
                prov_opts = data.get("provider_options", {})
                return [prov], [dict(prov_opts)]
            except (ValueError, AttributeError, TypeError) as e:
                get_logger("t5beam.providers").warning("provider profile load failed: %s", e)
    if p == CUDA_PROVIDER:
        # CPU fallback keeps CPU-only kernels (e.g. int32 shape ops) runnable
        return [CUDA_PROVIDER, CPU_PROVIDER], [{"device_id": 0}, {}]
    if p == "DmlExecutionProvider":
        return ["DmlExecutionProvider"], [{}]
    return [CPU_PROVIDER], [{}]
