"""Audio helpers for the telephony leg (PCM16 resampling and framing)."""

from .resampler import (
    ResampleQuality,
    base64_to_pcm16,
    pad_with_silence,
    pcm16_to_base64,
    prepare_outbound_audio,
    resample_pcm16,
)

__all__ = [
    "ResampleQuality",
    "base64_to_pcm16",
    "pad_with_silence",
    "pcm16_to_base64",
    "prepare_outbound_audio",
    "resample_pcm16",
]
