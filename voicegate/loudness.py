"""Loudness sampling from FFT byte-magnitude bins."""
from __future__ import annotations

from collections.abc import Callable
from typing import Optional, Protocol

import numpy as np

from voicegate.audio_utils import pcm16_to_float32


class AnalysisHandle(Protocol):
    def byte_frequency_data(self) -> np.ndarray: ...


class FrequencyAnalyser:
    """Rolling FFT analyser that reports 0-255 magnitude per frequency bin.

    Samples are pushed as they arrive from the input. A read takes the most
    recent ``fft_size`` samples, applies a Blackman window, smooths the
    magnitudes against the previous read and maps the
    ``[min_decibels, max_decibels]`` range onto bytes.
    """

    def __init__(
        self,
        fft_size: int = 1024,
        *,
        smoothing_time_constant: float = 0.3,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        if min_decibels >= max_decibels:
            raise ValueError("min_decibels must be below max_decibels")
        self.fft_size = int(fft_size)
        self.smoothing_time_constant = max(0.0, min(float(smoothing_time_constant), 1.0))
        self.min_decibels = float(min_decibels)
        self.max_decibels = float(max_decibels)
        self._window = np.blackman(self.fft_size).astype(np.float64)
        self._samples = np.zeros(self.fft_size, dtype=np.float64)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push_pcm(self, pcm: bytes) -> None:
        """Append signed 16-bit mono PCM to the analysis window."""
        self.push_samples(pcm16_to_float32(pcm))

    def push_samples(self, samples: np.ndarray) -> None:
        data = np.asarray(samples, dtype=np.float64).ravel()
        if data.size == 0:
            return
        if data.size >= self.fft_size:
            self._samples = data[-self.fft_size :].copy()
            return
        self._samples = np.roll(self._samples, -data.size)
        self._samples[-data.size :] = data

    def byte_frequency_data(self) -> np.ndarray:
        spectrum = np.fft.rfft(self._samples * self._window)
        magnitudes = np.abs(spectrum[: self.frequency_bin_count]) / self.fft_size
        tau = self.smoothing_time_constant
        self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitudes
        decibels = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
        span = self.max_decibels - self.min_decibels
        scaled = (decibels - self.min_decibels) * (255.0 / span)
        return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        self._samples.fill(0.0)
        self._smoothed.fill(0.0)


def calculate_loudness(analyser: Optional[AnalysisHandle]) -> float:
    """Average byte magnitude scaled to 0-100; 0 when no analyser is available."""
    if analyser is None:
        return 0.0
    data = np.asarray(analyser.byte_frequency_data())
    if data.size == 0:
        return 0.0
    average = float(np.mean(data))
    return average / 255.0 * 100.0


class LoudnessSampler:
    """Reads one loudness value per tick and reports it unconditionally."""

    def __init__(
        self,
        analyser: Optional[AnalysisHandle],
        on_volume: Callable[[float], None] | None = None,
    ) -> None:
        self.analyser = analyser
        self.on_volume = on_volume
        self.samples_taken = 0
        self.last_value = 0.0

    def sample(self) -> float:
        value = calculate_loudness(self.analyser)
        self.samples_taken += 1
        self.last_value = value
        if self.on_volume is not None:
            self.on_volume(value)
        return value


__all__ = [
    "AnalysisHandle",
    "FrequencyAnalyser",
    "LoudnessSampler",
    "calculate_loudness",
]
