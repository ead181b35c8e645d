from __future__ import annotations

"""
Default collaborators for building the first encoder feed of beam search.

create_encoder_inputs expands one encoder request into num_beams candidates;
add_to_feeds places the expanded tensors where the execution provider expects
them. Both are injected into create_initial_feeds and can be swapped for
device-specific versions.
"""

from typing import List, Optional, Protocol, Sequence, Tuple

import torch

from t5beam.inference.runtimes.onnx_provider_profiles import device_for_provider


class CreateEncoderInputsFunc(Protocol):
    def __call__(
        self,
        encoder_input_ids: torch.Tensor,
        num_beams: int,
        pad_token_id: int,
        start_token_id: int,
        sequence_lengths: torch.Tensor,
        device: torch.device,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:  # pragma: no cover - protocol
        ...


class AddToFeedsFunc(Protocol):
    def __call__(
        self,
        provider: str,
        encoder_input_ids: torch.Tensor,
        encoder_attention_mask: torch.Tensor,
        decoder_input_ids: torch.Tensor,
    ) -> Tuple[List[torch.Tensor], Optional[torch.Tensor]]:  # pragma: no cover - protocol
        ...


def attention_mask_and_lengths(input_ids: torch.Tensor, pad_token_id: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """Mask out left padding only.

    A pad token after the first real token is kept (mask 1), matching how T5
    tokenizers pad on the left. Returns (mask, lengths) where lengths[i] is the
    number of tokens after the leading pads of row i.
    """
    not_pad = (input_ids != pad_token_id).to(torch.int32)
    # cumulative max turns 1 on at the first non-pad and keeps it on
    mask = torch.cummax(not_pad, dim=1).values.to(torch.int32)
    lengths = mask.sum(dim=1, dtype=torch.int32)
    return mask, lengths


def create_encoder_inputs(
    encoder_input_ids: torch.Tensor,
    num_beams: int,
    pad_token_id: int,
    start_token_id: int,
    sequence_lengths: torch.Tensor,
    device: torch.device,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    if encoder_input_ids.dim() != 2:
        raise ValueError(f"encoder_input_ids shall be 2-D (batch, sequence), got shape {tuple(encoder_input_ids.shape)}")
    if encoder_input_ids.dtype != torch.int32:
        raise TypeError(f"encoder_input_ids shall have int32 type, got {encoder_input_ids.dtype}")
    if num_beams < 1:
        raise ValueError(f"num_beams shall be >= 1, got: {num_beams}")
    if start_token_id < 0:
        raise ValueError(f"start_token_id shall be >= 0, got: {start_token_id}")

    batch_size = int(encoder_input_ids.shape[0])
    if sequence_lengths.numel() != batch_size * num_beams:
        raise ValueError(
            f"sequence_lengths shall hold batch_size * num_beams = {batch_size * num_beams} entries, got {sequence_lengths.numel()}"
        )

    input_ids = encoder_input_ids.to(device)
    mask, lengths = attention_mask_and_lengths(input_ids, pad_token_id)
    decoder_ids = torch.full((batch_size, 1), int(start_token_id), dtype=torch.int32, device=device)

    # Per-beam lengths: entry i * num_beams + k belongs to beam k of request i
    sequence_lengths.copy_(lengths.repeat_interleave(num_beams).to(sequence_lengths.device, sequence_lengths.dtype))

    return (
        input_ids.repeat_interleave(num_beams, dim=0),
        mask.repeat_interleave(num_beams, dim=0),
        decoder_ids.repeat_interleave(num_beams, dim=0),
    )


def pack_int32(tensors: Sequence[torch.Tensor], device: torch.device, pin_memory: bool = False) -> Tuple[List[torch.Tensor], torch.Tensor]:
    """Copy tensors into one contiguous int32 buffer on device.

    Stages through a single host tensor so the host-to-device copy happens
    once. Returns views into the device buffer (same shapes as the inputs)
    and the buffer itself, which must outlive the views.
    """
    sizes = [int(t.numel()) for t in tensors]
    staging = torch.empty(sum(sizes), dtype=torch.int32, pin_memory=pin_memory)
    offset = 0
    for t, n in zip(tensors, sizes):
        staging[offset:offset + n].copy_(t.reshape(-1))
        offset += n
    buffer = staging.to(device, non_blocking=pin_memory)
    views: List[torch.Tensor] = []
    offset = 0
    for t, n in zip(tensors, sizes):
        views.append(buffer[offset:offset + n].view(t.shape))
        offset += n
    return views, buffer


def add_to_feeds(
    provider: str,
    encoder_input_ids: torch.Tensor,
    encoder_attention_mask: torch.Tensor,
    decoder_input_ids: torch.Tensor,
) -> Tuple[List[torch.Tensor], Optional[torch.Tensor]]:
    tensors = [encoder_input_ids, encoder_attention_mask, decoder_input_ids]
    device = device_for_provider(provider)
    if device.type == "cpu":
        return [t.cpu() for t in tensors], None
    if all(t.device.type == device.type for t in tensors):
        return tensors, None
    return pack_int32(tensors, device, pin_memory=torch.cuda.is_available())
