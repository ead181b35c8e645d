from __future__ import annotations

"""Derive cache geometry from the declared shapes of subgraph outputs."""

from dataclasses import dataclass, replace
from typing import Optional, Protocol, Sequence, Union

from t5beam.inference.subgraph_errors import ContractShapeError

Dim = Union[int, str, None]
Shape = Optional[Sequence[Dim]]


@dataclass(frozen=True)
class LayerCacheParameters:
    num_heads: int
    head_size: int
    hidden_size: int
    vocab_size: int
    num_layers: int = 0

    def with_layers(self, num_layers: int) -> "LayerCacheParameters":
        return replace(self, num_layers=int(num_layers))


class ShapeParameterExtractor(Protocol):
    def __call__(self, past_shape: Shape, logits_shape: Shape, merged_past: bool = False) -> LayerCacheParameters:  # pragma: no cover - protocol
        ...


def _positive_dim(shape: Sequence[Dim], index: int, what: str) -> int:
    d = shape[index]
    if isinstance(d, bool) or not isinstance(d, int) or d <= 0:
        raise ContractShapeError(f"{what} shall have a positive value, got: {d!r}")
    return int(d)


def get_parameters(past_shape: Shape, logits_shape: Shape, merged_past: bool = False) -> LayerCacheParameters:
    """
    Read head count, head size and vocabulary size from declared shapes.

    Args:
        past_shape: shape of the first self-attention key cache output.
            (batch, num_heads, past_seq_len, head_size), or with merged_past
            (2, batch, num_heads, past_seq_len, head_size).
        logits_shape: (batch, seq_len, vocab_size)
        merged_past: whether K and V share one stacked tensor

    Returns:
        LayerCacheParameters with num_layers left at 0 for the caller to fill.
    """
    if past_shape is None:
        raise ContractShapeError("subgraph past state shape is not declared")
    if merged_past:
        if len(past_shape) != 5:
            raise ContractShapeError(f"subgraph past state is expected to have 5 dimension, got {len(past_shape)}")
        if past_shape[0] != 2:
            raise ContractShapeError(f"subgraph past state dimension 0 shall be 2, got: {past_shape[0]!r}")
        num_heads = _positive_dim(past_shape, 2, "subgraph past state dimension 2 (number of heads)")
        head_size = _positive_dim(past_shape, 4, "subgraph past state dimension 4 (hidden size per head)")
    else:
        if len(past_shape) != 4:
            raise ContractShapeError(f"subgraph past state is expected to have 4 dimension, got {len(past_shape)}")
        num_heads = _positive_dim(past_shape, 1, "subgraph past state dimension 1 (number of heads)")
        head_size = _positive_dim(past_shape, 3, "subgraph past state dimension 3 (hidden size per head)")

    if logits_shape is None:
        raise ContractShapeError("subgraph logits shape is not declared")
    if len(logits_shape) != 3:
        raise ContractShapeError(f"subgraph logits output is expected to have 3 dimension, got {len(logits_shape)}")
    vocab_size = _positive_dim(logits_shape, 2, "subgraph logits dimension 2 (vocabulary size)")

    return LayerCacheParameters(
        num_heads=num_heads,
        head_size=head_size,
        hidden_size=num_heads * head_size,
        vocab_size=vocab_size,
    )
