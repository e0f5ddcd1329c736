"""Signal sources: where a session's samples come from.

A :class:`SignalSource` delivers timestamped samples for one channel.  The
session opens every attached source at start, pulls from each one on every
tick and closes them on stop.  Source timestamps are seconds since the
source was opened.

Capture collaborators that cannot be polled (camera frame callbacks, audio
streams) bypass sources and call :meth:`MonitoringSession.push` directly.

The synthetic sources here are deterministic for a given seed, which is
what the tests and the ``simulate`` command run on.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

import numpy as np

from prana.models import Channel

Sample = tuple[float, Any]


class SignalSource(ABC):
    """One channel's sample supplier."""

    channel: str

    def open(self) -> None:
        """Acquire the device.  Raise AcquisitionError if unavailable."""

    @abstractmethod
    def read(self, until: float) -> list[Sample]:
        """Return the samples with timestamp <= *until* not yet delivered."""

    def close(self) -> None:
        """Release the device.  Must be safe to call more than once."""


# ---------------------------------------------------------------------------
# Waveforms
# ---------------------------------------------------------------------------


def pulse_waveform(phase: np.ndarray) -> np.ndarray:
    """PPG-like beat shape: fundamental plus a skewing second harmonic."""
    return np.sin(phase) + 0.25 * np.sin(2.0 * phase - 0.5)


def pulse_phase(
    t: np.ndarray,
    heart_rate_bpm: float,
    rsa_depth: float = 0.0,
    breathing_rate_bpm: float = 12.0,
) -> np.ndarray:
    """Cardiac phase with heart rate modulated at the breathing frequency.

    Instantaneous rate is ``f0 * (1 + rsa_depth * sin(2 pi f_br t))``.
    """
    f0 = heart_rate_bpm / 60.0
    if rsa_depth <= 0 or breathing_rate_bpm <= 0:
        return 2.0 * np.pi * f0 * t
    w = 2.0 * np.pi * breathing_rate_bpm / 60.0
    return 2.0 * np.pi * f0 * (t + rsa_depth * (1.0 - np.cos(w * t)) / w)


def synthetic_pulse(
    duration: float,
    rate: float = 30.0,
    heart_rate_bpm: float = 60.0,
    amplitude: float = 2.0,
    dc: float = 128.0,
    noise: float = 0.0,
    seed: int = 0,
    rsa_depth: float = 0.0,
    breathing_rate_bpm: float = 12.0,
    start: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """Camera pixel-intensity pulse signal.

    Returns:
        (timestamps, values) with ``int(duration * rate)`` samples.
    """
    t = start + np.arange(int(round(duration * rate))) / rate
    rng = np.random.default_rng(seed)
    wave = pulse_waveform(pulse_phase(t, heart_rate_bpm, rsa_depth, breathing_rate_bpm))
    values = dc + amplitude * wave + noise * rng.standard_normal(len(t))
    return t, values


def synthetic_breath(
    duration: float,
    rate: float = 20.0,
    breathing_rate_bpm: float = 15.0,
    amplitude: float = 0.5,
    level: float = 1.0,
    noise: float = 0.0,
    seed: int = 0,
    start: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """Breath-sound envelope: louder on inhale, quieter on exhale."""
    t = start + np.arange(int(round(duration * rate))) / rate
    rng = np.random.default_rng(seed)
    wave = np.sin(2.0 * np.pi * breathing_rate_bpm / 60.0 * t)
    values = level + amplitude * wave + noise * rng.standard_normal(len(t))
    return t, values


# ---------------------------------------------------------------------------
# Synthetic sources
# ---------------------------------------------------------------------------


class _SyntheticSource(SignalSource):
    """Generates samples on a fixed grid of ``index / rate`` seconds."""

    def __init__(self, channel: str, rate: float, seed: int = 0) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be > 0, got {rate}")
        self.channel = channel
        self.rate = rate
        self.seed = seed
        self._rng = np.random.default_rng(seed)
        self._next = 0

    def open(self) -> None:
        self._rng = np.random.default_rng(self.seed)
        self._next = 0

    @abstractmethod
    def _values(self, t: np.ndarray) -> list[Any]:
        """Sample values at times *t*."""

    def read(self, until: float) -> list[Sample]:
        last = int(np.floor(until * self.rate + 1e-9))
        if last < self._next:
            return []
        t = np.arange(self._next, last + 1) / self.rate
        self._next = last + 1
        return list(zip(t.tolist(), self._values(t)))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(rate={self.rate:g}Hz, seed={self.seed})"


class SyntheticPulseSource(_SyntheticSource):
    """Finger-on-camera pulse.

    With ``spo2_ratio`` set, each sample is a ``(red, reference)`` pair
    whose AC/DC ratio-of-ratios equals *spo2_ratio*.
    """

    def __init__(
        self,
        heart_rate_bpm: float = 60.0,
        rate: float = 30.0,
        amplitude: float = 2.0,
        dc: float = 128.0,
        noise: float = 0.0,
        seed: int = 0,
        rsa_depth: float = 0.0,
        breathing_rate_bpm: float = 12.0,
        spo2_ratio: float | None = None,
    ) -> None:
        super().__init__(Channel.PULSE.value, rate, seed)
        self.heart_rate_bpm = heart_rate_bpm
        self.amplitude = amplitude
        self.dc = dc
        self.noise = noise
        self.rsa_depth = rsa_depth
        self.breathing_rate_bpm = breathing_rate_bpm
        self.spo2_ratio = spo2_ratio

    def _values(self, t: np.ndarray) -> list[Any]:
        phase = pulse_phase(t, self.heart_rate_bpm, self.rsa_depth, self.breathing_rate_bpm)
        wave = pulse_waveform(phase)
        red = self.dc + self.amplitude * wave + self.noise * self._rng.standard_normal(len(t))
        if self.spo2_ratio is None:
            return red.tolist()
        ref_dc = 0.8 * self.dc
        ref_amp = (self.amplitude / self.dc) * ref_dc / self.spo2_ratio
        ref = ref_dc + ref_amp * wave + self.noise * self._rng.standard_normal(len(t))
        return list(zip(red.tolist(), ref.tolist()))


class SyntheticBreathSource(_SyntheticSource):
    """Microphone breath-sound envelope."""

    def __init__(
        self,
        breathing_rate_bpm: float = 15.0,
        rate: float = 20.0,
        amplitude: float = 0.5,
        level: float = 1.0,
        noise: float = 0.0,
        seed: int = 0,
    ) -> None:
        super().__init__(Channel.AUDIO.value, rate, seed)
        self.breathing_rate_bpm = breathing_rate_bpm
        self.amplitude = amplitude
        self.level = level
        self.noise = noise

    def _values(self, t: np.ndarray) -> list[Any]:
        wave = np.sin(2.0 * np.pi * self.breathing_rate_bpm / 60.0 * t)
        values = self.level + self.amplitude * wave
        values = values + self.noise * self._rng.standard_normal(len(t))
        return values.tolist()


class SyntheticMotionSource(_SyntheticSource):
    """Three-axis accelerometer (g): gravity on z, shaking during *bursts*.

    Args:
        bursts: ``(start, end)`` intervals in seconds with motion.
        burst_g: Peak acceleration of the 3 Hz shake during bursts.
    """

    def __init__(
        self,
        rate: float = 50.0,
        bursts: Sequence[tuple[float, float]] = (),
        burst_g: float = 0.5,
        noise: float = 0.005,
        seed: int = 0,
    ) -> None:
        super().__init__(Channel.MOTION.value, rate, seed)
        self.bursts = tuple(bursts)
        self.burst_g = burst_g
        self.noise = noise

    def _values(self, t: np.ndarray) -> list[Any]:
        n = len(t)
        xyz = np.zeros((n, 3))
        xyz[:, 2] = 1.0
        shaking = np.zeros(n, dtype=bool)
        for start, end in self.bursts:
            shaking |= (t >= start) & (t < end)
        xyz[shaking, 0] += self.burst_g * np.sin(2.0 * np.pi * 3.0 * t[shaking])
        xyz[shaking, 2] += self.burst_g * np.cos(2.0 * np.pi * 3.0 * t[shaking])
        xyz += self.noise * self._rng.standard_normal((n, 3))
        return [tuple(row) for row in xyz.tolist()]
