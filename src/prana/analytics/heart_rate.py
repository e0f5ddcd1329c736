"""Heart rate from detected pulse peaks.

bpm = 60000 / mean(inter-peak interval in ms).  Confidence combines:
  - interval regularity (1 - coefficient of variation),
  - the share of the window not gated for motion,
  - the number of intervals (a 2-peak estimate is weak),
  - peak prominence: median peak height relative to that of a clean
    sinusoid with the window's standard deviation (sqrt(2) * std).

Intervals that touch a motion-gated sample are left out: beats inside the
gate are lost, so such an interval spans several real beats.
"""

from __future__ import annotations

import numpy as np

from prana.dsp.conditioner import ConditionedSignal
from prana.dsp.detector import PeakSet
from prana.errors import ComputationAnomaly
from prana.models import HEART_BPM_RANGE, HeartRateSample

# Interval count at which the count penalty disappears
FULL_CONFIDENCE_INTERVALS = 3


def prominence_ratio(signal: ConditionedSignal, peaks: PeakSet) -> float:
    """Median peak height over sqrt(2) * std of the window, clipped to [0, 1]."""
    std = float(np.std(signal.values))
    if len(peaks) == 0 or std <= 0:
        return 0.0
    return float(np.clip(np.median(peaks.heights) / (np.sqrt(2.0) * std), 0.0, 1.0))


def clean_peak_mask(signal: ConditionedSignal, peaks: PeakSet) -> np.ndarray:
    """True for each peak with no gated sample at or next to it."""
    weights = np.asarray(signal.weights)
    if len(peaks) == 0 or len(weights) == 0 or not np.any(weights == 0):
        return np.ones(len(peaks), dtype=bool)
    gated = np.concatenate(([0], np.cumsum(weights == 0)))
    idx = np.asarray(peaks.indices, dtype=np.int64)
    lo = np.clip(idx - 1, 0, len(weights) - 1)
    hi = np.clip(idx + 1, 0, len(weights) - 1)
    return (gated[hi + 1] - gated[lo]) == 0


def clean_interval_mask(signal: ConditionedSignal, peaks: PeakSet) -> np.ndarray:
    """True for each inter-peak interval clear of motion gating.

    An interval is rejected if any sample from one before its first peak
    to one after its second peak was gated; a peak right at a gate edge is
    usually the truncated waveform, not a beat.
    """
    n_intervals = max(0, len(peaks) - 1)
    weights = np.asarray(signal.weights)
    if n_intervals == 0 or len(weights) == 0 or not np.any(weights == 0):
        return np.ones(n_intervals, dtype=bool)
    gated = np.concatenate(([0], np.cumsum(weights == 0)))
    idx = np.asarray(peaks.indices, dtype=np.int64)
    lo = np.clip(idx[:-1] - 1, 0, len(weights) - 1)
    hi = np.clip(idx[1:] + 1, 0, len(weights) - 1)
    return (gated[hi + 1] - gated[lo]) == 0


def interval_confidence(intervals: np.ndarray, motion_level: float = 0.0) -> float:
    """Regularity-based confidence of a series of event intervals."""
    if len(intervals) == 0:
        return 0.0
    mean = float(np.mean(intervals))
    if mean <= 0:
        return 0.0
    cv = float(np.std(intervals)) / mean
    regularity = float(np.clip(1.0 - cv, 0.0, 1.0))
    count_factor = min(1.0, len(intervals) / FULL_CONFIDENCE_INTERVALS)
    return float(np.clip(regularity * count_factor * (1.0 - motion_level), 0.0, 1.0))


def extract_heart_rate(
    signal: ConditionedSignal,
    peaks: PeakSet,
    source: str = "camera_ppg",
    quality: float = 0.0,
) -> HeartRateSample | None:
    """Estimate heart rate from one window's peaks.

    Args:
        signal: The conditioned pulse signal the peaks were found on.
        peaks: Detected peaks.
        source: ``camera_ppg`` (finger on lens) or ``camera_rppg`` (face).
        quality: Composite quality of the window (0-1), stored on the sample.

    Returns:
        HeartRateSample, or None with fewer than 2 peaks or no interval
        clear of motion gating.

    Raises:
        ComputationAnomaly: if the rate falls outside [40, 220] bpm.
    """
    if len(peaks) < 2:
        return None

    intervals = peaks.intervals_ms[clean_interval_mask(signal, peaks)]
    if len(intervals) == 0:
        return None
    mean_ibi = float(np.mean(intervals))
    if mean_ibi <= 0:
        return None
    bpm = 60000.0 / mean_ibi

    lo, hi = HEART_BPM_RANGE
    if not lo <= bpm <= hi:
        raise ComputationAnomaly("heart_rate", bpm, HEART_BPM_RANGE)

    confidence = interval_confidence(intervals, signal.motion_level)
    confidence *= prominence_ratio(signal, peaks)
    return HeartRateSample(
        timestamp=float(signal.timestamps[-1]),
        bpm=round(bpm, 1),
        confidence=round(confidence, 3),
        source=source,
        quality=round(float(np.clip(quality, 0.0, 1.0)), 3),
        rr_intervals_ms=tuple(round(float(v), 1) for v in intervals),
    )
