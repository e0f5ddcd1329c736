"""Breathing rate and pattern.

Two estimators:

* ``extract_breathing`` -- the primary path, from breath-phase events on
  the microphone envelope.  Rate comes from the mean inhale-to-inhale
  interval; the pattern is "irregular" when the interval coefficient of
  variation is high, else "shallow"/"deep" when the breath amplitude is
  well below/above the rolling baseline amplitude, else "regular".

* ``rsa_breathing_rate`` -- respiratory sinus arrhythmia makes the RR
  interval oscillate at the breathing frequency (0.15-0.4 Hz), so the
  dominant frequency of the interpolated RR series estimates breathing
  rate.  ``breathing_from_rsa`` turns it into a lower-confidence
  BreathingSample, which the pipeline emits when no audio channel is
  available.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from prana.analytics.heart_rate import interval_confidence
from prana.analytics.hrv import MIN_SPECTRAL_SECONDS, rr_psd
from prana.dsp.conditioner import ConditionedSignal, envelope
from prana.dsp.detector import BreathEvents
from prana.errors import ComputationAnomaly
from prana.models import BREATH_BPM_RANGE, BreathingSample, BreathPattern

# Respiratory band for the RSA estimator (Hz)
RSA_LO = 0.15  # 9 breaths/min
RSA_HI = 0.40  # 24 breaths/min

# RSA-derived samples never claim more than this confidence
RSA_MAX_CONFIDENCE = 0.5


# ---------------------------------------------------------------------------
# Event-based extractor
# ---------------------------------------------------------------------------


def breath_amplitude(signal: ConditionedSignal) -> float:
    """Median envelope amplitude of the conditioned breathing waveform."""
    if signal.is_empty:
        return 0.0
    env = envelope(signal.values, signal.sample_rate, smoothing=1.0)
    return float(np.median(env))


def _phase_durations(events: BreathEvents) -> tuple[float | None, float | None]:
    """Mean inhale (inhale->exhale) and exhale (exhale->next inhale) durations."""
    inhale_d: list[float] = []
    exhale_d: list[float] = []
    inh = events.inhale_times
    exh = events.exhale_times
    for i, t_in in enumerate(inh):
        following = exh[exh > t_in]
        if len(following) == 0:
            continue
        t_ex = following[0]
        if i + 1 < len(inh) and t_ex >= inh[i + 1]:
            continue
        inhale_d.append(t_ex - t_in)
        if i + 1 < len(inh):
            exhale_d.append(inh[i + 1] - t_ex)
    inhale = round(float(np.mean(inhale_d)), 2) if inhale_d else None
    exhale = round(float(np.mean(exhale_d)), 2) if exhale_d else None
    return inhale, exhale


def classify_pattern(
    intervals: np.ndarray,
    amplitude: float,
    baseline_amplitude: float | None,
    irregular_cv: float = 0.25,
    shallow_ratio: float = 0.6,
    deep_ratio: float = 1.5,
) -> BreathPattern:
    """Classify a breathing window (see module docstring)."""
    if len(intervals) >= 2:
        mean = float(np.mean(intervals))
        cv = float(np.std(intervals)) / mean if mean > 0 else 1.0
        if cv > irregular_cv:
            return BreathPattern.IRREGULAR
    if baseline_amplitude and baseline_amplitude > 0:
        ratio = amplitude / baseline_amplitude
        if ratio < shallow_ratio:
            return BreathPattern.SHALLOW
        if ratio > deep_ratio:
            return BreathPattern.DEEP
    return BreathPattern.REGULAR


def extract_breathing(
    signal: ConditionedSignal,
    events: BreathEvents,
    baseline_amplitude: float | None = None,
    irregular_cv: float = 0.25,
    shallow_ratio: float = 0.6,
    deep_ratio: float = 1.5,
) -> BreathingSample | None:
    """Estimate breathing rate and pattern from breath-phase events.

    Args:
        signal: Conditioned breathing waveform.
        events: Inhale/exhale onsets detected on *signal*.
        baseline_amplitude: Rolling baseline of past breath amplitudes;
            without it shallow/deep cannot be judged.

    Returns:
        BreathingSample, or None with fewer than 2 inhale onsets.

    Raises:
        ComputationAnomaly: if the rate falls outside [4, 60] breaths/min.
    """
    if len(events) < 2:
        return None

    intervals = events.intervals
    mean_interval = float(np.mean(intervals))
    if mean_interval <= 0:
        return None
    bpm = 60.0 / mean_interval

    lo, hi = BREATH_BPM_RANGE
    if not lo <= bpm <= hi:
        raise ComputationAnomaly("breathing_rate", bpm, BREATH_BPM_RANGE)

    amplitude = breath_amplitude(signal)
    pattern = classify_pattern(
        intervals, amplitude, baseline_amplitude, irregular_cv, shallow_ratio, deep_ratio
    )
    inhale, exhale = _phase_durations(events)

    return BreathingSample(
        timestamp=float(signal.timestamps[-1]),
        bpm=round(bpm, 1),
        pattern=pattern,
        confidence=round(interval_confidence(intervals, signal.motion_level), 3),
        inhale_duration=inhale,
        exhale_duration=exhale,
        amplitude=round(amplitude, 4),
    )


# ---------------------------------------------------------------------------
# RSA estimator
# ---------------------------------------------------------------------------


@dataclass
class RSAEstimate:
    """Breathing rate inferred from heart-rate oscillation."""

    rate_bpm: float  # breaths per minute
    confidence: float  # peak power / respiratory-band power

    def __repr__(self) -> str:
        return f"RSAEstimate(rate={self.rate_bpm:.1f} breaths/min, conf={self.confidence:.2f})"


def rsa_breathing_rate(rr_intervals_ms: Sequence[float]) -> RSAEstimate | None:
    """Estimate breathing rate from the RR series' dominant oscillation.

    Returns None with fewer than 10 intervals or no respiratory-band power.
    """
    if len(rr_intervals_ms) < 10:
        return None
    freqs, psd = rr_psd(rr_intervals_ms)
    if len(freqs) == 0:
        return None
    mask = (freqs >= RSA_LO) & (freqs <= RSA_HI)
    if not np.any(mask):
        return None

    band_freqs = freqs[mask]
    band_psd = psd[mask]
    total = float(np.sum(band_psd))
    if total <= 0:
        return None
    peak = int(np.argmax(band_psd))
    return RSAEstimate(
        rate_bpm=round(float(band_freqs[peak]) * 60.0, 1),
        confidence=round(min(float(band_psd[peak]) / total, 1.0), 2),
    )


def breathing_from_rsa(
    rr_intervals_ms: Sequence[float],
    timestamp: float,
) -> BreathingSample | None:
    """Breathing sample from heart-rate oscillation alone.

    Needs at least ~30 s of intervals.  The pattern cannot be judged
    without a breath waveform and is reported as regular; confidence is
    capped at ``RSA_MAX_CONFIDENCE``.
    """
    rr = np.asarray(rr_intervals_ms, dtype=np.float64)
    if np.sum(rr) / 1000.0 < MIN_SPECTRAL_SECONDS:
        return None
    estimate = rsa_breathing_rate(rr)
    if estimate is None:
        return None
    return BreathingSample(
        timestamp=timestamp,
        bpm=estimate.rate_bpm,
        pattern=BreathPattern.REGULAR,
        confidence=round(RSA_MAX_CONFIDENCE * estimate.confidence, 3),
    )
