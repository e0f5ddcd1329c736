"""Event detection on conditioned signals.

Pulse peaks
-----------
Adaptive threshold ``mean + c * stddev`` over the window; local maxima
above it are accepted when they are at least one refractory interval
(``60 / max_rate`` seconds) apart.  Within a refractory conflict the
taller maximum wins, which stops dicrotic notches and noise ripple from
being double-counted.  Peak times are refined with a parabolic fit so
beat-to-beat intervals are not quantised to the camera frame period.

Breath phases
-------------
Crossings of the breathing waveform through a hysteresis band around the
mean: an upward crossing of ``mean + h * std`` after having been below
``mean - h * std`` marks an inhale onset and vice versa.  The dead band
between the two levels suppresses chatter around the mean.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy import signal as sig

from prana.dsp.conditioner import ConditionedSignal


def adaptive_threshold(values: np.ndarray, c: float = 0.5) -> float:
    """Detection threshold ``mean + c * stddev`` over the window."""
    x = np.asarray(values, dtype=np.float64)
    if len(x) == 0:
        return 0.0
    return float(np.mean(x) + c * np.std(x))


# ---------------------------------------------------------------------------
# Pulse peaks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PeakSet:
    """Detected pulse peaks for one window."""

    indices: np.ndarray  # sample indices
    times: np.ndarray  # refined peak times (s)
    heights: np.ndarray
    threshold: float

    def __len__(self) -> int:
        return len(self.indices)

    @property
    def intervals_ms(self) -> np.ndarray:
        """Inter-peak intervals in milliseconds."""
        if len(self.times) < 2:
            return np.zeros(0)
        return np.diff(self.times) * 1000.0


def _empty_peaks(threshold: float = 0.0) -> PeakSet:
    return PeakSet(
        indices=np.zeros(0, dtype=np.int64),
        times=np.zeros(0),
        heights=np.zeros(0),
        threshold=threshold,
    )


def _refine(x: np.ndarray, t: np.ndarray, idx: np.ndarray, fs: float) -> np.ndarray:
    """Parabolic interpolation of each peak's position."""
    times = t[idx].astype(np.float64)
    inner = (idx > 0) & (idx < len(x) - 1)
    i = idx[inner]
    if len(i) == 0 or fs <= 0:
        return times
    y0, y1, y2 = x[i - 1], x[i], x[i + 1]
    denom = y0 - 2.0 * y1 + y2
    with np.errstate(divide="ignore", invalid="ignore"):
        offset = np.where(denom != 0, 0.5 * (y0 - y2) / denom, 0.0)
    offset = np.clip(offset, -0.5, 0.5)
    times[inner] = times[inner] + offset / fs
    return times


def detect_peaks(
    signal: ConditionedSignal,
    max_rate_bpm: float = 220.0,
    c: float = 0.5,
) -> PeakSet:
    """Find pulse peaks with an adaptive threshold and refractory interval.

    Args:
        signal: Conditioned pulse signal.
        max_rate_bpm: Highest plausible rate; sets the refractory interval.
        c: Threshold multiplier on the window standard deviation.

    Returns:
        PeakSet (possibly empty; never raises).
    """
    x = np.asarray(signal.values, dtype=np.float64)
    if len(x) < 3 or signal.sample_rate <= 0 or not np.any(x):
        return _empty_peaks()

    threshold = adaptive_threshold(x, c)
    refractory_s = 60.0 / max_rate_bpm
    distance = max(1, int(np.ceil(refractory_s * signal.sample_rate)))

    idx, props = sig.find_peaks(x, height=threshold, distance=distance)
    if len(idx) == 0:
        return _empty_peaks(threshold)

    times = _refine(x, np.asarray(signal.timestamps), idx, signal.sample_rate)
    return PeakSet(
        indices=idx.astype(np.int64),
        times=times,
        heights=np.asarray(props["peak_heights"], dtype=np.float64),
        threshold=threshold,
    )


# ---------------------------------------------------------------------------
# Breath phases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BreathEvents:
    """Inhale/exhale onsets found by hysteresis crossings."""

    inhale_times: np.ndarray
    exhale_times: np.ndarray
    upper: float
    lower: float

    def __len__(self) -> int:
        return len(self.inhale_times)

    @property
    def intervals(self) -> np.ndarray:
        """Inhale-to-inhale intervals (s)."""
        if len(self.inhale_times) < 2:
            return np.zeros(0)
        return np.diff(self.inhale_times)


def _crossing_time(t: np.ndarray, x: np.ndarray, i: int, level: float) -> float:
    """Linear interpolation of where x crosses *level* between i-1 and i."""
    x0, x1 = x[i - 1], x[i]
    if x1 == x0:
        return float(t[i])
    frac = (level - x0) / (x1 - x0)
    return float(t[i - 1] + np.clip(frac, 0.0, 1.0) * (t[i] - t[i - 1]))


def detect_breath_events(
    signal: ConditionedSignal,
    hysteresis: float = 0.3,
) -> BreathEvents:
    """Detect inhale and exhale onsets on a conditioned breathing waveform.

    Args:
        signal: Conditioned audio-envelope signal (breathing band).
        hysteresis: Half-width of the dead band, as a fraction of stddev.
    """
    x = np.asarray(signal.values, dtype=np.float64)
    t = np.asarray(signal.timestamps, dtype=np.float64)
    if len(x) < 3:
        return BreathEvents(np.zeros(0), np.zeros(0), 0.0, 0.0)

    mean = float(np.mean(x))
    std = float(np.std(x))
    upper = mean + hysteresis * std
    lower = mean - hysteresis * std
    if std == 0:
        return BreathEvents(np.zeros(0), np.zeros(0), upper, lower)

    inhales: list[float] = []
    exhales: list[float] = []
    # +1 = last armed above the band, -1 = below, 0 = not yet known
    state = 1 if x[0] > upper else (-1 if x[0] < lower else 0)

    for i in range(1, len(x)):
        if state <= 0 and x[i] > upper and x[i - 1] <= upper:
            if state == -1:
                inhales.append(_crossing_time(t, x, i, upper))
            state = 1
        elif state >= 0 and x[i] < lower and x[i - 1] >= lower:
            if state == 1:
                exhales.append(_crossing_time(t, x, i, lower))
            state = -1

    return BreathEvents(
        inhale_times=np.asarray(inhales, dtype=np.float64),
        exhale_times=np.asarray(exhales, dtype=np.float64),
        upper=upper,
        lower=lower,
    )
