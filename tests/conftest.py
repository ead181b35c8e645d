from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
from onnx import TensorProto, helper


# Ensure project src is importable in tests without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


_TEST_TIMES: list[dict[str, Any]] = []


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_call(item: pytest.Item):
    t0 = time.perf_counter()
    outcome = yield
    dt = time.perf_counter() - t0
    _TEST_TIMES.append({"test": item.nodeid, "duration_s": float(dt)})


def pytest_sessionfinish(session: pytest.Session, exitstatus: int):
    slow = [r for r in _TEST_TIMES if r.get("duration_s", 0.0) > 10.0]
    if slow:
        print(json.dumps({"event": "slow_tests_summary", "count": len(slow), "tests": slow}, indent=2))


INPUT_NAMES = ["encoder_input_ids", "encoder_attention_mask", "decoder_input_ids"]


def _output_names(num_layers: int) -> List[str]:
    names = ["logits", "encoder_hidden_states"]
    for i in range(num_layers):
        names += [f"present_key_self_{i}", f"present_value_self_{i}"]
    for i in range(num_layers):
        names += [f"present_key_cross_{i}", f"present_value_cross_{i}"]
    return names


def build_encoder_graph(
    num_layers: int = 2,
    num_heads: int = 4,
    head_size: int = 8,
    vocab_size: int = 32,
    logits_type: int = TensorProto.FLOAT,
    input_types: Optional[Sequence[int]] = None,
    input_names: Optional[Sequence[str]] = None,
    rename_outputs: Optional[Dict[int, str]] = None,
    num_outputs: Optional[int] = None,
    past_shape: Optional[Sequence[Any]] = None,
    implicit_inputs: Sequence[str] = (),
):
    """T5-style encoder graph with the declared IO of the beam-search contract.

    Bodies are irrelevant to the signature, so the only nodes are Identity ops
    that consume implicit (outer-scope) names when requested.
    """
    names_in = list(input_names or INPUT_NAMES)
    types_in = list(input_types or [TensorProto.INT32] * len(names_in))
    inputs = [
        helper.make_tensor_value_info(n, t, ["batch", "seq"] if n != "decoder_input_ids" else ["batch", 1])
        for n, t in zip(names_in, types_in)
    ]

    names_out = _output_names(num_layers)
    if num_outputs is not None:
        names_out = names_out[:num_outputs] + [f"extra_{i}" for i in range(max(0, num_outputs - len(names_out)))]
    for idx, name in (rename_outputs or {}).items():
        names_out[idx] = name
    hidden = num_heads * head_size
    outputs = []
    for i, name in enumerate(names_out):
        if i == 0:
            outputs.append(helper.make_tensor_value_info(name, logits_type, ["batch", 1, vocab_size]))
        elif i == 1:
            outputs.append(helper.make_tensor_value_info(name, TensorProto.FLOAT, ["batch", "seq", hidden]))
        elif i == 2 and past_shape is not None:
            outputs.append(helper.make_tensor_value_info(name, TensorProto.FLOAT, list(past_shape)))
        else:
            outputs.append(helper.make_tensor_value_info(name, TensorProto.FLOAT, ["batch", num_heads, "past", head_size]))

    nodes = [
        helper.make_node("Identity", [name], [f"{name}_local"], name=f"use_{name}")
        for name in implicit_inputs
    ]
    return helper.make_graph(nodes, "t5_encoder", inputs, outputs)


@pytest.fixture
def encoder_graph() -> Callable[..., Any]:
    return build_encoder_graph
