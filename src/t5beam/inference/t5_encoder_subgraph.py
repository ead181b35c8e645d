from __future__ import annotations

"""
T5 encoder subgraph of the beam-search operator.

The encoder subgraph runs once per request: it encodes the (beam-expanded)
source tokens and produces the first decoder logits together with the
self/cross attention caches of every decoder layer.

Contract:
    inputs:  encoder_input_ids, encoder_attention_mask, decoder_input_ids (int32)
    outputs: logits, encoder_hidden_states,
             present_key_self_0, present_value_self_0, ...,
             present_key_cross_0, present_value_cross_0, ...
             i.e. 2 + 4 * num_layers tensors

A T5EncoderSubgraph starts unvalidated. validate() checks the contract once at
load time and returns a ValidatedT5EncoderSubgraph, the only object feed
construction accepts.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from onnx import ModelProto, TensorProto

from t5beam.inference.beam_search_device_helper import (
    AddToFeedsFunc,
    CreateEncoderInputsFunc,
    add_to_feeds,
    create_encoder_inputs,
)
from t5beam.inference.runtimes.onnx_provider_profiles import CPU_PROVIDER
from t5beam.inference.subgraph_errors import (
    ContractArityError,
    ContractError,
    ContractNamingError,
    ContractShapeError,
    ContractTypeError,
    PreconditionViolation,
)
from t5beam.inference.subgraph_params import LayerCacheParameters, ShapeParameterExtractor, get_parameters
from t5beam.inference.subgraph_signature import (
    GraphSignature,
    elem_type_name,
    signature_from_model,
    signature_from_session,
)
from t5beam.utils.logger import get_logger

NUM_INPUTS = 3
MIN_OUTPUTS = 6
# logits + encoder_hidden_states
NUM_FIXED_OUTPUTS = 2
# self K, self V, cross K, cross V
OUTPUTS_PER_LAYER = 4

INPUT_NAMES = ("encoder_input_ids", "encoder_attention_mask", "decoder_input_ids")
OUTPUT_NAMES = ("logits", "encoder_hidden_states", "present_key_self_0", "present_value_self_0")
LOGITS_TYPES = (TensorProto.FLOAT, TensorProto.FLOAT16)


@dataclass
class FeedBatch:
    """Ordered inputs for the first run of the encoder subgraph.

    values holds the three expanded inputs in declared order followed by the
    implicit inputs in supplied order; names lines up with values. buffer, when
    set, backs device-side feeds and must be kept alive until the run ends.
    """
    values: List[Any]
    names: Tuple[str, ...]
    sequence_lengths: torch.Tensor
    buffer: Optional[torch.Tensor] = None

    def __len__(self) -> int:
        return len(self.values)

    def as_ort_inputs(self) -> Dict[str, Any]:
        """Name -> value mapping for InferenceSession.run (torch tensors become numpy).

        numpy has no bfloat16, so bfloat16 tensors are rejected; bind those
        through OrtValue / IO binding instead.
        """
        out: Dict[str, Any] = {}
        for name, value in zip(self.names, self.values):
            if isinstance(value, torch.Tensor):
                if value.dtype == torch.bfloat16:
                    raise TypeError(f"feed '{name}' is bfloat16, which has no numpy equivalent; use IO binding")
                value = np.ascontiguousarray(value.detach().cpu().numpy())
            out[name] = value
        return out


# Only T5EncoderSubgraph.validate() holds this
_VALIDATION_TOKEN = object()


@dataclass(frozen=True)
class ValidatedT5EncoderSubgraph:
    """Result of a successful T5EncoderSubgraph.validate(); not constructible directly."""
    signature: GraphSignature
    provider: str
    implicit_input_names: Tuple[str, ...]
    num_layers: int
    cache_params: LayerCacheParameters
    is_output_float16: bool
    _token: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._token is not _VALIDATION_TOKEN:
            raise PreconditionViolation("ValidatedT5EncoderSubgraph is only produced by T5EncoderSubgraph.validate()")

    @property
    def logits_dtype(self) -> torch.dtype:
        return torch.float16 if self.is_output_float16 else torch.float32

    @property
    def feed_names(self) -> Tuple[str, ...]:
        return tuple(self.signature.input_names) + self.implicit_input_names

    def create_initial_feeds(self, encoder_input_ids: torch.Tensor, implicit_inputs: Sequence[Any],
                             num_beams: int, pad_token_id: int, start_token_id: int,
                             create_encoder_inputs_func: CreateEncoderInputsFunc = create_encoder_inputs,
                             add_to_feeds_func: AddToFeedsFunc = add_to_feeds,
                             sequence_lengths: Optional[torch.Tensor] = None) -> FeedBatch:
        return create_initial_feeds(
            self, encoder_input_ids, implicit_inputs, num_beams, pad_token_id, start_token_id,
            create_encoder_inputs_func=create_encoder_inputs_func,
            add_to_feeds_func=add_to_feeds_func,
            sequence_lengths=sequence_lengths,
        )


def _check_signature(signature: GraphSignature) -> bool:
    """Check arity, names and element types; returns is_output_float16."""
    inputs = signature.inputs
    outputs = signature.outputs
    num_inputs = len(inputs)
    num_outputs = len(outputs)

    if num_inputs != NUM_INPUTS:
        raise ContractArityError(f"expect {NUM_INPUTS} inputs, got: {num_inputs}", actual=num_inputs)
    if num_outputs < MIN_OUTPUTS:
        raise ContractArityError(f"expect >={MIN_OUTPUTS} outputs, got: {num_outputs}", actual=num_outputs)
    if (num_outputs - NUM_FIXED_OUTPUTS) % OUTPUTS_PER_LAYER != 0:
        raise ContractArityError(f"number of outputs expected to be 2 + 4 * layers, got: {num_outputs}", actual=num_outputs)

    for i, expected in enumerate(INPUT_NAMES):
        if inputs[i].name != expected:
            raise ContractNamingError("input", i, expected, inputs[i].name)
    for i, expected in enumerate(OUTPUT_NAMES):
        if outputs[i].name != expected:
            raise ContractNamingError("output", i, expected, outputs[i].name)

    for i, slot in enumerate(inputs):
        if slot.elem_type != TensorProto.INT32:
            raise ContractTypeError(
                f"subgraph input {i} ({slot.name}) shall have int32 type, got: {elem_type_name(slot.elem_type)}",
                expected=TensorProto.INT32, actual=slot.elem_type,
            )

    logits_type = outputs[0].elem_type
    if logits_type not in LOGITS_TYPES:
        raise ContractTypeError(
            f"subgraph output 0 (logits) shall be float or float16 data type, got: {elem_type_name(logits_type)}",
            expected=LOGITS_TYPES, actual=logits_type,
        )
    return logits_type == TensorProto.FLOAT16


class T5EncoderSubgraph:
    """Encoder subgraph descriptor; feeds can only be built after validate()."""

    def __init__(self, signature: GraphSignature, provider: str = CPU_PROVIDER,
                 implicit_input_names: Optional[Sequence[str]] = None, merged_past: bool = False) -> None:
        self.signature = signature
        self.provider = provider
        self.implicit_input_names = tuple(signature.implicit_inputs if implicit_input_names is None else implicit_input_names)
        self.merged_past = merged_past
        # Set once by validate()
        self.num_layers: int = 0
        self.cache_params: Optional[LayerCacheParameters] = None
        self.is_output_float16: bool = False
        self._validated: Optional[ValidatedT5EncoderSubgraph] = None
        self._log = get_logger("t5beam.subgraph")

    @classmethod
    def from_model(cls, model: Union[str, Path, ModelProto], provider: str = CPU_PROVIDER,
                   merged_past: bool = False) -> "T5EncoderSubgraph":
        return cls(signature_from_model(model), provider=provider, merged_past=merged_past)

    @classmethod
    def from_session(cls, session: Any, provider: str = CPU_PROVIDER,
                     implicit_input_names: Sequence[str] = (), merged_past: bool = False) -> "T5EncoderSubgraph":
        return cls(signature_from_session(session, implicit_input_names), provider=provider, merged_past=merged_past)

    @property
    def is_validated(self) -> bool:
        return self._validated is not None

    def validate(self, extractor: ShapeParameterExtractor = get_parameters) -> ValidatedT5EncoderSubgraph:
        """Check the encoder contract and record the derived parameters.

        Raises a ContractError subclass on the first mismatch; the descriptor is
        left untouched in that case.
        """
        signature = self.signature
        try:
            is_fp16 = _check_signature(signature)
            past_shape = signature.outputs[2].shape
            logits_shape = signature.outputs[0].shape
            try:
                params = extractor(past_shape, logits_shape, self.merged_past)
            except ContractShapeError:
                raise
            except (ValueError, TypeError, IndexError) as e:
                raise ContractShapeError(f"cache parameter extraction failed: {e}") from e
        except ContractError as e:
            self._log.warning("encoder subgraph rejected: %s", e)
            raise

        num_layers = (len(signature.outputs) - NUM_FIXED_OUTPUTS) // OUTPUTS_PER_LAYER
        params = params.with_layers(num_layers)

        self.num_layers = num_layers
        self.cache_params = params
        self.is_output_float16 = is_fp16
        self._validated = ValidatedT5EncoderSubgraph(
            signature=signature,
            provider=self.provider,
            implicit_input_names=self.implicit_input_names,
            num_layers=num_layers,
            cache_params=params,
            is_output_float16=is_fp16,
            _token=_VALIDATION_TOKEN,
        )
        self._log.info(
            "encoder subgraph validated: layers=%d heads=%d head_size=%d vocab=%d logits=%s",
            num_layers, params.num_heads, params.head_size, params.vocab_size,
            "float16" if is_fp16 else "float32",
        )
        return self._validated

    def create_initial_feeds(self, encoder_input_ids: torch.Tensor, implicit_inputs: Sequence[Any],
                             num_beams: int, pad_token_id: int, start_token_id: int,
                             create_encoder_inputs_func: CreateEncoderInputsFunc = create_encoder_inputs,
                             add_to_feeds_func: AddToFeedsFunc = add_to_feeds,
                             sequence_lengths: Optional[torch.Tensor] = None) -> FeedBatch:
        if self._validated is None:
            raise PreconditionViolation("validate must be called before create_initial_feeds")
        return self._validated.create_initial_feeds(
            encoder_input_ids, implicit_inputs, num_beams, pad_token_id, start_token_id,
            create_encoder_inputs_func=create_encoder_inputs_func,
            add_to_feeds_func=add_to_feeds_func,
            sequence_lengths=sequence_lengths,
        )


def create_initial_feeds(subgraph: ValidatedT5EncoderSubgraph,
                         encoder_input_ids: torch.Tensor,
                         implicit_inputs: Sequence[Any],
                         num_beams: int,
                         pad_token_id: int,
                         start_token_id: int,
                         create_encoder_inputs_func: CreateEncoderInputsFunc = create_encoder_inputs,
                         add_to_feeds_func: AddToFeedsFunc = add_to_feeds,
                         sequence_lengths: Optional[torch.Tensor] = None) -> FeedBatch:
    """
    Build the feeds for the first run of a validated encoder subgraph.

    Args:
        subgraph: result of T5EncoderSubgraph.validate()
        encoder_input_ids: (batch, seq_len) int32 source tokens; expanded
            inputs are allocated on the same device
        implicit_inputs: outer-scope values, one per implicit input name
        num_beams: beam fan-out per request
        pad_token_id: padding token for the attention mask
        start_token_id: decoder start token
        create_encoder_inputs_func: expands the request to num_beams rows
        add_to_feeds_func: places the three tensors for the provider
        sequence_lengths: optional (batch * num_beams,) int32 output buffer

    Returns:
        FeedBatch with 3 + len(implicit_inputs) values in feed order.
    """
    if not isinstance(subgraph, ValidatedT5EncoderSubgraph):
        raise PreconditionViolation("validate must be called before create_initial_feeds")
    implicit = list(implicit_inputs)
    if len(implicit) != len(subgraph.implicit_input_names):
        raise ValueError(
            f"expect {len(subgraph.implicit_input_names)} implicit inputs {list(subgraph.implicit_input_names)}, got: {len(implicit)}"
        )
    if int(num_beams) < 1:
        raise ValueError(f"num_beams shall be >= 1, got: {num_beams}")

    # Subgraph inputs live on the same device as encoder_input_ids
    device = encoder_input_ids.device
    if sequence_lengths is None:
        batch_size = int(encoder_input_ids.shape[0]) if encoder_input_ids.dim() > 0 else 1
        sequence_lengths = torch.empty(batch_size * int(num_beams), dtype=torch.int32)

    ids, mask, decoder_ids = create_encoder_inputs_func(
        encoder_input_ids, num_beams, pad_token_id, start_token_id, sequence_lengths, device,
    )
    entries, buffer = add_to_feeds_func(subgraph.provider, ids, mask, decoder_ids)
    entries = list(entries)
    if len(entries) != NUM_INPUTS:
        raise RuntimeError(f"add_to_feeds shall produce {NUM_INPUTS} feed entries, got: {len(entries)}")

    feeds = FeedBatch(
        values=entries + implicit,
        names=subgraph.feed_names,
        sequence_lengths=sequence_lengths,
        buffer=buffer,
    )
    get_logger("t5beam.subgraph").debug(
        "initial feeds: provider=%s beams=%d feeds=%d implicit=%d scratch=%s",
        subgraph.provider, num_beams, len(feeds), len(implicit), buffer is not None,
    )
    return feeds
