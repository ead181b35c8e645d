from __future__ import annotations

import os


def apply_core_defaults(env: dict[str, str]) -> None:
    """Apply centralized defaults for core T5BEAM_* variables to the provided env mapping.

    Only fills missing keys; never overwrites existing values.
    """
    # Logging
    env.setdefault("T5BEAM_LOG_LEVEL", os.getenv("T5BEAM_LOG_LEVEL", "INFO"))
    env.setdefault("T5BEAM_LOG_FILE", os.getenv("T5BEAM_LOG_FILE", ""))
    # Runtime
    env.setdefault("T5BEAM_ORT_PROVIDER", os.getenv("T5BEAM_ORT_PROVIDER", "auto"))
    env.setdefault("T5BEAM_MERGED_PAST", os.getenv("T5BEAM_MERGED_PAST", "0"))
    # Beam search controls (T5 uses pad=0 and decoder_start=0)
    env.setdefault("T5BEAM_NUM_BEAMS", os.getenv("T5BEAM_NUM_BEAMS", "4"))
    env.setdefault("T5BEAM_PAD_TOKEN_ID", os.getenv("T5BEAM_PAD_TOKEN_ID", "0"))
    env.setdefault("T5BEAM_START_TOKEN_ID", os.getenv("T5BEAM_START_TOKEN_ID", "0"))
