"""
Convert captured audio into the provider wire format and coalesce it into blocks.

Design intent:
- 16 kHz mono little-endian PCM16 is the only format handed to providers.
- Resampling is nearest-source-sample selection: cheap and lossy, not bandlimited.
- Malformed frames degrade to a truncated sample rather than an exception.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from livescribe.core.config import AUDIO_BUFFER_THRESHOLD_BYTES, AUDIO_TARGET_SAMPLE_RATE

SAMPLE_WIDTH_BYTES = 2


@dataclass(frozen=True)
class AudioFrame:
    data: bytes
    sample_rate: int
    channels: int
    captured_at: float = field(default_factory=time.time)


def _pcm16(data: bytes) -> np.ndarray:
    usable = len(data) - (len(data) % SAMPLE_WIDTH_BYTES)
    if usable <= 0:
        return np.zeros(0, dtype="<i2")
    return np.frombuffer(data[:usable], dtype="<i2")


def mix_to_mono(samples: np.ndarray, channels: int) -> np.ndarray:
    if channels <= 1 or samples.size == 0:
        return samples
    frames = samples.size // channels
    interleaved = samples[: frames * channels].reshape(frames, channels).astype(np.int32)
    # floor division, matching integer averaging of negative pairs
    return (interleaved.sum(axis=1) // channels).astype("<i2")


def resample_nearest(samples: np.ndarray, source_rate: int, target_rate: int = AUDIO_TARGET_SAMPLE_RATE) -> np.ndarray:
    if source_rate == target_rate or samples.size == 0:
        return samples
    out_len = (samples.size * target_rate) // source_rate
    if out_len <= 0:
        return np.zeros(0, dtype="<i2")
    source_index = (np.arange(out_len, dtype=np.int64) * source_rate) // target_rate
    np.clip(source_index, 0, samples.size - 1, out=source_index)
    return samples[source_index]


def normalize(frame: bytes, source_rate: int, source_channels: int) -> bytes:
    """Return ``frame`` as PCM16 mono at 16 kHz.

    An odd trailing byte is dropped, so a frame split mid-sample loses at most
    that one sample instead of failing.
    """
    if source_rate <= 0:
        raise ValueError(f"source_rate must be positive, got {source_rate}")
    if source_channels <= 0:
        raise ValueError(f"source_channels must be positive, got {source_channels}")

    samples = _pcm16(bytes(frame or b""))
    samples = mix_to_mono(samples, int(source_channels))
    samples = resample_nearest(samples, int(source_rate))
    return samples.astype("<i2").tobytes()


def normalize_frame(frame: AudioFrame) -> bytes:
    return normalize(frame.data, frame.sample_rate, frame.channels)


class AudioChunkBuffer:
    def __init__(self, threshold_bytes: int = AUDIO_BUFFER_THRESHOLD_BYTES) -> None:
        if threshold_bytes <= 0:
            raise ValueError("threshold_bytes must be positive")
        self.threshold_bytes = int(threshold_bytes)
        self._pending = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def buffer(self, frame: bytes) -> Optional[bytes]:
        self._pending.extend(frame or b"")
        if len(self._pending) < self.threshold_bytes:
            return None
        coalesced = bytes(self._pending)
        self._pending = bytearray()
        return coalesced

    def flush(self) -> bytes:
        remaining = bytes(self._pending)
        self._pending = bytearray()
        return remaining

    def discard(self) -> int:
        dropped = len(self._pending)
        self._pending = bytearray()
        return dropped


def float32_to_int16(samples: Sequence[float]) -> bytes:
    audio = np.asarray(samples, dtype=np.float32).clip(-1.0, 1.0)
    return np.floor(audio * 32767.0).astype("<i2").tobytes()


def audio_level(pcm: bytes) -> float:
    samples = _pcm16(bytes(pcm or b""))
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float64)
    rms = float(np.sqrt(np.mean(x * x)))
    return min(1.0, rms / 32768.0)


def detect_speech(pcm: bytes, threshold: float = 0.01) -> bool:
    return audio_level(pcm) > threshold
