"""Input conditioning for captured PCM frames.

Implements the ``noise_suppression`` and ``auto_gain_control`` input flags as
in-process numpy stages applied before analysis and encoding. Stage state
persists across frames so that filter histories stay continuous.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from voicegate.audio_utils import INT16_MAX, INT16_MIN

log = logging.getLogger("conditioning")


@dataclass
class HighPassState:
    prev_input: float = 0.0
    prev_output: float = 0.0


@dataclass
class GateState:
    history: Optional[np.ndarray] = None
    position: int = 0
    filled: int = 0


@dataclass
class GainState:
    gain: float = 1.0


class InputConditioner:
    """Apply the enabled conditioning stages to signed 16-bit mono frames."""

    def __init__(
        self,
        sample_rate: int,
        *,
        noise_suppression: bool = False,
        auto_gain_control: bool = False,
        highpass_cutoff_hz: float = 90.0,
        gate_sensitivity: float = 1.5,
        gate_reduction_db: float = -18.0,
        gate_history_frames: int = 50,
        gate_startup_frames: int = 10,
        gate_noise_percentile: float = 20.0,
        agc_target_rms: float = 3000.0,
        agc_max_gain: float = 8.0,
        agc_attack: float = 0.5,
        agc_release: float = 0.05,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.sample_rate = int(sample_rate)
        self.noise_suppression = bool(noise_suppression)
        self.auto_gain_control = bool(auto_gain_control)
        self.highpass_cutoff_hz = float(highpass_cutoff_hz)
        self.gate_sensitivity = float(gate_sensitivity)
        self.gate_reduction_db = float(gate_reduction_db)
        self.gate_history_frames = max(4, int(gate_history_frames))
        self.gate_startup_frames = max(1, min(int(gate_startup_frames), self.gate_history_frames))
        self.gate_noise_percentile = float(gate_noise_percentile)
        self.agc_target_rms = float(agc_target_rms)
        self.agc_max_gain = max(1.0, float(agc_max_gain))
        self.agc_attack = min(max(float(agc_attack), 0.0), 1.0)
        self.agc_release = min(max(float(agc_release), 0.0), 1.0)
        self._highpass = HighPassState()
        self._gate = GateState()
        self._gain = GainState()

    @property
    def enabled(self) -> bool:
        return self.noise_suppression or self.auto_gain_control

    def process(self, frame: bytes) -> bytes:
        if not self.enabled or not frame:
            return frame
        usable = len(frame) - (len(frame) % 2)
        pcm = np.frombuffer(frame[:usable], dtype="<i2").astype(np.float64)
        if pcm.size == 0:
            return frame

        if self.noise_suppression:
            pcm = self._apply_highpass(pcm)
            pcm = self._apply_gate(pcm)

        if self.auto_gain_control:
            pcm = self._apply_gain(pcm)

        pcm = np.clip(np.rint(pcm), INT16_MIN, INT16_MAX).astype("<i2")
        return pcm.tobytes()

    def reset(self) -> None:
        self._highpass = HighPassState()
        self._gate = GateState()
        self._gain = GainState()

    def _apply_highpass(self, data: np.ndarray) -> np.ndarray:
        if self.highpass_cutoff_hz <= 0:
            return data
        rc = 1.0 / (2.0 * math.pi * self.highpass_cutoff_hz)
        dt = 1.0 / float(self.sample_rate)
        alpha = rc / (rc + dt)
        state = self._highpass
        result = np.empty_like(data)
        prev_in = state.prev_input
        prev_out = state.prev_output
        for idx, sample in enumerate(data):
            prev_out = alpha * (prev_out + sample - prev_in)
            prev_in = sample
            result[idx] = prev_out
        state.prev_input = float(prev_in)
        state.prev_output = float(prev_out)
        return result

    def _apply_gate(self, data: np.ndarray) -> np.ndarray:
        spectrum = np.fft.rfft(data)
        mags = np.abs(spectrum)

        state = self._gate
        if state.history is None or state.history.shape[1] != mags.size:
            state.history = np.zeros((self.gate_history_frames, mags.size), dtype=np.float64)
            state.position = 0
            state.filled = 0

        state.history[state.position] = mags
        state.position = (state.position + 1) % state.history.shape[0]
        if state.filled < state.history.shape[0]:
            state.filled += 1

        if state.filled < self.gate_startup_frames:
            return data

        samples = state.history[: state.filled]
        noise = np.percentile(samples, self.gate_noise_percentile, axis=0)
        threshold = np.maximum(noise, 1e-6) * self.gate_sensitivity
        gain_floor = 10 ** (self.gate_reduction_db / 20.0)
        gains = np.where(mags >= threshold, 1.0, gain_floor)
        return np.fft.irfft(spectrum * gains, n=data.size)

    def _apply_gain(self, data: np.ndarray) -> np.ndarray:
        state = self._gain
        rms = float(np.sqrt(np.mean(data * data))) if data.size else 0.0
        if rms > 1.0:
            desired = min(self.agc_max_gain, self.agc_target_rms / rms)
            # Fast attack when the level jumps, slow release back up.
            rate = self.agc_attack if desired < state.gain else self.agc_release
            state.gain += (desired - state.gain) * rate
        return data * state.gain


__all__ = ["InputConditioner"]
