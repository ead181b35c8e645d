from __future__ import annotations

import numpy as np
import pytest
import torch

from t5beam.inference.subgraph_errors import PreconditionViolation
from t5beam.inference.subgraph_signature import signature_from_graph
from t5beam.inference.t5_encoder_subgraph import (
    FeedBatch,
    T5EncoderSubgraph,
    create_initial_feeds,
)


def _validated(encoder_graph, num_layers=6, implicit=()):
    sub = T5EncoderSubgraph(signature_from_graph(encoder_graph(num_layers=num_layers, implicit_inputs=implicit)))
    return sub, sub.validate()


def test_first_feeds_expand_to_beams_and_keep_implicit_order(encoder_graph):
    _, validated = _validated(encoder_graph, num_layers=6, implicit=("shared_embed", "rel_bias"))
    L = 5
    ids = torch.tensor([[13, 7, 21, 4, 1]], dtype=torch.int32)
    embed = torch.randn(32, 8)
    bias = np.zeros((4, 16), dtype=np.float32)

    feeds = create_initial_feeds(validated, ids, [embed, bias], num_beams=4, pad_token_id=0, start_token_id=0)

    assert isinstance(feeds, FeedBatch)
    assert len(feeds) == 3 + 2
    enc_ids, mask, dec_ids = feeds.values[:3]
    assert tuple(enc_ids.shape) == (4, L)
    assert tuple(mask.shape) == (4, L)
    assert tuple(dec_ids.shape) == (4, 1)
    assert feeds.values[3] is embed
    assert feeds.values[4] is bias
    assert feeds.names == (
        "encoder_input_ids", "encoder_attention_mask", "decoder_input_ids", "shared_embed", "rel_bias",
    )
    for row in enc_ids:
        assert torch.equal(row, ids[0])
    assert feeds.sequence_lengths.tolist() == [L] * 4
    assert feeds.buffer is None


def test_feeds_before_validation_raise_precondition(encoder_graph):
    sub = T5EncoderSubgraph(signature_from_graph(encoder_graph()))
    calls = []

    def create(*args, **kwargs):
        calls.append("create")
        raise AssertionError("collaborator must not run")

    def add(*args, **kwargs):
        calls.append("add")
        raise AssertionError("collaborator must not run")

    ids = torch.ones((1, 3), dtype=torch.int32)
    with pytest.raises(PreconditionViolation):
        sub.create_initial_feeds(ids, [], 2, 0, 0, create_encoder_inputs_func=create, add_to_feeds_func=add)
    with pytest.raises(PreconditionViolation):
        create_initial_feeds(sub, ids, [], 2, 0, 0, create_encoder_inputs_func=create, add_to_feeds_func=add)
    assert calls == []
    assert not sub.is_validated


def test_descriptor_delegates_after_validation(encoder_graph):
    sub, _ = _validated(encoder_graph, num_layers=2)
    ids = torch.tensor([[0, 0, 5, 6]], dtype=torch.int32)
    feeds = sub.create_initial_feeds(ids, [], num_beams=3, pad_token_id=0, start_token_id=2)
    assert feeds.values[1].tolist() == [[0, 0, 1, 1]] * 3
    assert feeds.values[2].tolist() == [[2]] * 3
    assert feeds.sequence_lengths.tolist() == [2, 2, 2]


def test_collaborators_receive_parameters_and_device(encoder_graph):
    _, validated = _validated(encoder_graph)
    seen = {}
    ids = torch.tensor([[3, 4]], dtype=torch.int32)

    def create(encoder_input_ids, num_beams, pad_token_id, start_token_id, sequence_lengths, device):
        seen["create"] = (num_beams, pad_token_id, start_token_id, sequence_lengths.numel(), device)
        sequence_lengths.fill_(2)
        out = encoder_input_ids.repeat(num_beams, 1)
        return out, torch.ones_like(out), torch.full((num_beams, 1), start_token_id, dtype=torch.int32)

    def add(provider, a, b, c):
        seen["add"] = provider
        return [a, b, c], torch.zeros(1)

    feeds = create_initial_feeds(validated, ids, [], 5, 1, 9, create_encoder_inputs_func=create, add_to_feeds_func=add)
    assert seen["create"] == (5, 1, 9, 5, ids.device)
    assert seen["add"] == "CPUExecutionProvider"
    assert feeds.buffer is not None
    assert feeds.sequence_lengths.tolist() == [2] * 5


def test_caller_supplied_sequence_lengths_buffer_is_filled(encoder_graph):
    _, validated = _validated(encoder_graph)
    ids = torch.tensor([[0, 8, 9], [4, 0, 0]], dtype=torch.int32)
    lengths = torch.zeros(4, dtype=torch.int32)
    feeds = create_initial_feeds(validated, ids, [], 2, 0, 0, sequence_lengths=lengths)
    assert feeds.sequence_lengths is lengths
    assert lengths.tolist() == [2, 2, 3, 3]


def test_collaborator_failure_propagates_unchanged(encoder_graph):
    _, validated = _validated(encoder_graph)

    class ExpansionFailed(Exception):
        pass

    def create(*args):
        raise ExpansionFailed("allocator exhausted")

    with pytest.raises(ExpansionFailed, match="allocator exhausted"):
        create_initial_feeds(validated, torch.ones((1, 2), dtype=torch.int32), [], 2, 0, 0,
                             create_encoder_inputs_func=create)


def test_wrong_implicit_count_is_rejected_before_expansion(encoder_graph):
    _, validated = _validated(encoder_graph, implicit=("outer",))

    def create(*args):
        raise AssertionError("collaborator must not run")

    with pytest.raises(ValueError):
        create_initial_feeds(validated, torch.ones((1, 2), dtype=torch.int32), [], 2, 0, 0,
                             create_encoder_inputs_func=create)


def test_short_feed_materialization_is_an_error(encoder_graph):
    _, validated = _validated(encoder_graph)

    def add(provider, a, b, c):
        return [a, b], None

    with pytest.raises(RuntimeError):
        create_initial_feeds(validated, torch.ones((1, 2), dtype=torch.int32), [], 2, 0, 0, add_to_feeds_func=add)


def test_as_ort_inputs_converts_tensors(encoder_graph):
    _, validated = _validated(encoder_graph, implicit=("outer",))
    outer = np.arange(3, dtype=np.float32)
    feeds = create_initial_feeds(validated, torch.tensor([[1, 2, 3]], dtype=torch.int32), [outer], 2, 0, 0)
    ort_inputs = feeds.as_ort_inputs()
    assert list(ort_inputs) == ["encoder_input_ids", "encoder_attention_mask", "decoder_input_ids", "outer"]
    assert ort_inputs["encoder_input_ids"].dtype == np.int32
    assert ort_inputs["encoder_input_ids"].shape == (2, 3)
    assert ort_inputs["outer"] is outer


def test_logits_dtype_follows_output_precision(encoder_graph):
    from onnx import TensorProto
    sub = T5EncoderSubgraph(signature_from_graph(encoder_graph(logits_type=TensorProto.FLOAT16)))
    assert sub.validate().logits_dtype == torch.float16


def test_validated_descriptor_cannot_be_built_directly(encoder_graph):
    from onnx import TensorProto
    from t5beam.inference.subgraph_params import LayerCacheParameters
    from t5beam.inference.t5_encoder_subgraph import ValidatedT5EncoderSubgraph

    sig = signature_from_graph(encoder_graph(logits_type=TensorProto.INT8))
    with pytest.raises(PreconditionViolation):
        ValidatedT5EncoderSubgraph(
            signature=sig,
            provider="CPUExecutionProvider",
            implicit_input_names=(),
            num_layers=2,
            cache_params=LayerCacheParameters(num_heads=4, head_size=8, hidden_size=32, vocab_size=32, num_layers=2),
            is_output_float16=False,
        )


@pytest.mark.parametrize("num_beams", [0, -2])
def test_non_positive_beams_rejected_before_allocation(encoder_graph, num_beams):
    _, validated = _validated(encoder_graph)

    def create(*args):
        raise AssertionError("collaborator must not run")

    with pytest.raises(ValueError, match="num_beams"):
        create_initial_feeds(validated, torch.ones((1, 2), dtype=torch.int32), [], num_beams, 0, 0,
                             create_encoder_inputs_func=create)


def test_as_ort_inputs_rejects_bfloat16(encoder_graph):
    _, validated = _validated(encoder_graph, implicit=("outer",))
    outer = torch.zeros(3, dtype=torch.bfloat16)
    feeds = create_initial_feeds(validated, torch.tensor([[1, 2]], dtype=torch.int32), [outer], 2, 0, 0)
    with pytest.raises(TypeError, match="bfloat16"):
        feeds.as_ort_inputs()
    # float16 converts as usual
    feeds.values[3] = torch.zeros(3, dtype=torch.float16)
    assert feeds.as_ort_inputs()["outer"].dtype == np.float16
