"""Stress score from heart rate, HRV and breathing.

Each available metric is turned into a 0-100 factor measuring how far it
has moved from the user's baseline in the stressed direction:

  heart_rate  elevation above baseline HR
  hrv         depression of RMSSD below baseline
  breathing   elevation of breathing rate above baseline

The score is the weighted mean of the available factors.  A metric that is
missing (or has confidence 0) drops out of both the weighted sum and the
weight total, so the remaining weights are renormalised rather than the
missing input being imputed.
"""

from __future__ import annotations

import numpy as np

from prana.config import Baseline, FusionWeights
from prana.models import BreathingSample, HeartRateSample, HRVSample, StressSample

# (upper bound, recommendation); the last band catches everything else
RECOMMENDATIONS: tuple[tuple[float, str], ...] = (
    (20.0, "You appear relaxed. Great time for meditation!"),
    (40.0, "Mild stress detected. Try some deep breathing exercises."),
    (60.0, "Moderate stress. Consider a longer breathing session."),
    (80.0, "High stress detected. Take a break and focus on relaxation."),
    (float("inf"), "Very high stress. Please prioritize relaxation and consider seeking support."),
)


def recommendation(score: float) -> str:
    """Fixed-band coaching text for a stress score."""
    for upper, text in RECOMMENDATIONS:
        if score < upper:
            return text
    return RECOMMENDATIONS[-1][1]


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------


def _pct(value: float) -> float:
    return float(np.clip(value * 100.0, 0.0, 100.0))


def heart_rate_factor(bpm: float, baseline_bpm: float) -> float:
    """Relative HR elevation above baseline, 0-100."""
    return _pct((bpm - baseline_bpm) / baseline_bpm)


def hrv_factor(rmssd: float, baseline_rmssd: float) -> float:
    """Relative RMSSD depression below baseline, 0-100."""
    return _pct((baseline_rmssd - rmssd) / baseline_rmssd)


def breathing_factor(bpm: float, baseline_bpm: float) -> float:
    """Relative breathing-rate elevation above baseline, 0-100."""
    return _pct((bpm - baseline_bpm) / baseline_bpm)


def _available(sample) -> bool:
    return sample is not None and sample.confidence > 0


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def fuse_stress(
    heart_rate: HeartRateSample | None = None,
    hrv: HRVSample | None = None,
    breathing: BreathingSample | None = None,
    baseline: Baseline | None = None,
    weights: FusionWeights | None = None,
    timestamp: float | None = None,
) -> StressSample | None:
    """Fuse the latest metric estimates into a stress score.

    Args:
        heart_rate: Latest heart-rate estimate, if any.
        hrv: Latest HRV estimate, if any.
        breathing: Latest breathing estimate, if any.
        baseline: Reference values; population defaults when omitted.
        weights: Factor weights; :class:`FusionWeights` defaults when omitted.
        timestamp: Timestamp for the sample; defaults to the newest input's.

    Returns:
        StressSample with per-factor breakdown, or None if no input is
        available.
    """
    baseline = baseline or Baseline()
    weights = weights or FusionWeights()

    factors: dict[str, float] = {}
    used: dict[str, float] = {}
    if _available(heart_rate):
        factors["heart_rate"] = heart_rate_factor(heart_rate.bpm, baseline.heart_rate)
        used["heart_rate"] = weights.heart_rate
    if _available(hrv):
        factors["hrv"] = hrv_factor(hrv.rmssd, baseline.rmssd)
        used["hrv"] = weights.hrv
    if _available(breathing):
        factors["breathing"] = breathing_factor(breathing.bpm, baseline.breathing_rate)
        used["breathing"] = weights.breathing

    total_weight = sum(used.values())
    if not factors or total_weight <= 0:
        return None

    score = sum(factors[k] * used[k] for k in factors) / total_weight
    score = round(float(np.clip(score, 0.0, 100.0)), 1)

    if timestamp is None:
        timestamp = max(s.timestamp for s in (heart_rate, hrv, breathing) if _available(s))

    return StressSample(
        timestamp=timestamp,
        score=score,
        factors={k: round(v, 1) for k, v in factors.items()},
        recommendation=recommendation(score),
    )
