from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class BeamSearchParams:
    """Generation controls that shape the first encoder feed.

    T5 checkpoints use pad_token_id=0 and decoder_start_token_id=0.
    """
    num_beams: int = 4
    pad_token_id: int = 0
    start_token_id: int = 0

    def __post_init__(self) -> None:
        if int(self.num_beams) < 1:
            raise ValueError(f"num_beams shall be >= 1, got: {self.num_beams}")
        if int(self.start_token_id) < 0:
            raise ValueError(f"start_token_id shall be >= 0, got: {self.start_token_id}")


@dataclass
class SubgraphRuntimeConfig:
    ort_provider: str = 'auto'
    # Past state laid out as (2, B, H, T, D) instead of separate K/V tensors
    merged_past: bool = False
    beam: BeamSearchParams | None = None

    def beam_params(self) -> BeamSearchParams:
        return self.beam if self.beam is not None else BeamSearchParams()


def build_runtime_config_from_env(env: dict[str, str] | None = None) -> SubgraphRuntimeConfig:
    e = env if env is not None else os.environ
    def _g(k: str, d: str = '') -> str:
        return e.get(k, d)
    def _b(k: str, d: str = '0') -> bool:
        return _g(k, d) == '1'
    return SubgraphRuntimeConfig(
        ort_provider=(_g('T5BEAM_ORT_PROVIDER', 'auto').strip() or 'auto'),
        merged_past=_b('T5BEAM_MERGED_PAST', '0'),
        beam=BeamSearchParams(
            num_beams=int(_g('T5BEAM_NUM_BEAMS', '4') or '4'),
            pad_token_id=int(_g('T5BEAM_PAD_TOKEN_ID', '0') or '0'),
            start_token_id=int(_g('T5BEAM_START_TOKEN_ID', '0') or '0'),
        ),
    )
