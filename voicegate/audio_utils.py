"""Audio helper utilities."""
from __future__ import annotations

import numpy as np

SAMPLE_WIDTH = 2  # 16-bit
INT16_MAX = 2 ** 15 - 1
INT16_MIN = -2 ** 15


def pcm16_to_float32(pcm: bytes | bytearray | memoryview) -> np.ndarray:
    """Decode signed 16-bit little-endian PCM into floats in [-1, 1)."""
    usable = len(pcm) - (len(pcm) % SAMPLE_WIDTH)
    if usable <= 0:
        return np.array([], dtype=np.float32)
    samples = np.frombuffer(bytes(pcm[:usable]), dtype="<i2").astype(np.float32)
    return samples / 32768.0


def downmix_to_mono(
    data: bytes | bytearray | memoryview,
    channels: int,
    sample_width: int = SAMPLE_WIDTH,
) -> bytes:
    """
    Combine interleaved multichannel PCM16 into a single mono stream.

    Channels are averaged per frame with rounding; trailing partial frames are
    dropped.
    """
    if sample_width != SAMPLE_WIDTH:
        raise ValueError("only 16-bit samples are supported")
    if channels <= 1:
        usable = len(data) - (len(data) % sample_width)
        return bytes(data[:usable]) if usable else b""

    frame_stride = channels * sample_width
    usable = len(data) - (len(data) % frame_stride)
    if usable <= 0:
        return b""

    frames = np.frombuffer(bytes(data[:usable]), dtype="<i2").astype(np.int32)
    frames = frames.reshape(-1, channels)
    averaged = np.round(frames.sum(axis=1) / channels)
    return np.clip(averaged, INT16_MIN, INT16_MAX).astype("<i2").tobytes()


__all__ = [
    "INT16_MAX",
    "INT16_MIN",
    "SAMPLE_WIDTH",
    "downmix_to_mono",
    "pcm16_to_float32",
]
