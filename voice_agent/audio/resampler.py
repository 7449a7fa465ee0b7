"""
PCM16 resampling for the telephony leg.

Synthesis providers emit little-endian PCM16 mono at their own native rate
(HeyPixa 32 kHz, ElevenLabs 16 kHz); Plivo plays L16 at 8 or 16 kHz. Every
function here is pure and reentrant so all calls can share it.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Union

import numpy as np

from ..core.models import AudioFrame
from ..errors import MalformedMessageError

PCM16_MIN = -32768
PCM16_MAX = 32767
BYTES_PER_SAMPLE = 2
DEFAULT_LANCZOS_A = 3
DEFAULT_SILENCE_PAD_MS = 100


class ResampleQuality(str, Enum):
    LINEAR = "linear"
    LANCZOS = "lanczos"


def _to_samples(data: bytes) -> np.ndarray:
    usable = len(data) - (len(data) % BYTES_PER_SAMPLE)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.float64)


def _to_pcm16(values: np.ndarray) -> bytes:
    clipped = np.clip(np.round(values), PCM16_MIN, PCM16_MAX)
    return clipped.astype("<i2").tobytes()


def output_sample_count(input_samples: int, source_rate: int, target_rate: int) -> int:
    """floor(input_samples / (source_rate / target_rate)) without float error."""
    return (input_samples * target_rate) // source_rate


def lanczos_kernel(x: np.ndarray, a: int = DEFAULT_LANCZOS_A) -> np.ndarray:
    """sinc(x) * sinc(x / a) inside the window, zero at |x| >= a."""
    x = np.asarray(x, dtype=np.float64)
    weights = np.sinc(x) * np.sinc(x / a)
    return np.where(np.abs(x) < a, weights, 0.0)


def _resample_linear(samples: np.ndarray, positions: np.ndarray) -> np.ndarray:
    last = samples.size - 1
    lo = np.minimum(np.floor(positions).astype(np.int64), last)
    hi = np.minimum(lo + 1, last)
    fraction = positions - lo
    return samples[lo] + (samples[hi] - samples[lo]) * fraction


def _resample_lanczos(samples: np.ndarray, positions: np.ndarray, a: int) -> np.ndarray:
    # Taps floor(p) - a + 1 .. floor(p) + a cover every index with |p - j| < a.
    offsets = np.arange(-a + 1, a + 1, dtype=np.int64)
    indices = np.floor(positions).astype(np.int64)[:, None] + offsets[None, :]
    weights = lanczos_kernel(positions[:, None] - indices, a)

    # Edge truncation: out-of-range taps leave both the sum and the weight total.
    in_bounds = (indices >= 0) & (indices < samples.size)
    weights = np.where(in_bounds, weights, 0.0)
    taps = samples[np.clip(indices, 0, samples.size - 1)]

    total = weights.sum(axis=1)
    acc = (weights * taps).sum(axis=1)
    return np.divide(acc, total, out=np.zeros_like(acc), where=total != 0.0)


def resample_pcm16(
    data: bytes,
    source_rate: int,
    target_rate: int,
    quality: Union[ResampleQuality, str] = ResampleQuality.LANCZOS,
    lanczos_a: int = DEFAULT_LANCZOS_A,
) -> bytes:
    """
    Convert PCM16 mono audio from ``source_rate`` to ``target_rate``.

    Equal rates return ``data`` itself. Otherwise the output holds
    ``floor(input_samples / ratio)`` samples, rounded and clamped to the
    signed 16-bit range. A trailing odd byte is ignored.
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"sample rates must be positive (got {source_rate} -> {target_rate})")
    if source_rate == target_rate:
        return data

    samples = _to_samples(data)
    n_out = output_sample_count(samples.size, source_rate, target_rate)
    if n_out == 0:
        return b""

    positions = np.arange(n_out, dtype=np.float64) * (source_rate / target_rate)
    if ResampleQuality(quality) is ResampleQuality.LINEAR:
        resampled = _resample_linear(samples, positions)
    else:
        if lanczos_a < 1:
            raise ValueError("lanczos_a must be >= 1")
        resampled = _resample_lanczos(samples, positions, lanczos_a)
    return _to_pcm16(resampled)


def silence(sample_rate: int, duration_ms: int) -> bytes:
    return b"\x00" * (BYTES_PER_SAMPLE * (sample_rate * duration_ms // 1000))


def pad_with_silence(data: bytes, sample_rate: int, duration_ms: int = DEFAULT_SILENCE_PAD_MS) -> bytes:
    """Append ``duration_ms`` of zero samples so chunk tails are not clipped on playback."""
    if duration_ms <= 0:
        return data
    return data + silence(sample_rate, duration_ms)


def prepare_outbound_audio(
    frame: AudioFrame,
    target_rate: int,
    quality: Union[ResampleQuality, str] = ResampleQuality.LANCZOS,
    lanczos_a: int = DEFAULT_LANCZOS_A,
    pad_ms: int = DEFAULT_SILENCE_PAD_MS,
) -> AudioFrame:
    """Resample a synthesized frame to the telephony rate and append the silence pad."""
    resampled = resample_pcm16(frame.data, frame.sample_rate, target_rate, quality=quality, lanczos_a=lanczos_a)
    return AudioFrame(pad_with_silence(resampled, target_rate, pad_ms), target_rate)


def pcm16_to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def base64_to_pcm16(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedMessageError(f"invalid base64 audio payload: {exc}") from exc
