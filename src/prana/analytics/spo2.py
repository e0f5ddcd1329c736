"""SpO2 proxy from two colour channels of the camera pulse signal.

Uses the ratio-of-ratios method with the standard Beer-Lambert
calibration curve:

    R = (AC_red / DC_red) / (AC_ref / DC_ref)
    SpO2 = 110 - 25 * R

where the reference is the second column of the pulse samples (blue or
green pixel mean for a phone camera, IR for a clip sensor).  AC is the
standard deviation of the heart-band filtered channel, DC its raw mean.

A camera is not a pulse oximeter: the result is advisory and its
confidence is capped at ``MAX_CONFIDENCE``.
"""

from __future__ import annotations

import numpy as np

from prana.dsp.conditioner import ConditionedSignal
from prana.models import SpO2Sample

# ---------------------------------------------------------------------------
# Core estimation
# ---------------------------------------------------------------------------


def estimate_spo2_from_ratio(r: float) -> float:
    """Estimate SpO2% from the red/reference AC-DC ratio, clamped to [0, 100]."""
    spo2 = 110.0 - 25.0 * r
    return round(max(0.0, min(100.0, spo2)), 1)


# ---------------------------------------------------------------------------
# Signal quality filtering
# ---------------------------------------------------------------------------


# Plausible range for the R ratio in a healthy human
R_MIN = 0.3
R_MAX = 1.2

# Minimum DC level (8-bit pixel mean) to trust the reading; a darker frame
# means the flash is off or the finger does not cover the lens
DC_MIN = 10.0

# Perfusion index (AC/DC of the red channel) at which the pulse counts as strong
STRONG_PERFUSION = 0.02

MAX_CONFIDENCE = 0.5

# AC/DC below this is filter round-off on a flat channel, not a pulse
MIN_AC_FRACTION = 1e-6


def is_quality_reading(
    r: float,
    dc_red: float | None = None,
    dc_ref: float | None = None,
) -> bool:
    """Return True if the R ratio / DC levels indicate a trustworthy reading."""
    if not (R_MIN <= r <= R_MAX):
        return False
    if dc_red is not None and dc_red < DC_MIN:
        return False
    if dc_ref is not None and dc_ref < DC_MIN:
        return False
    return True


def ratio_of_ratios(red: ConditionedSignal, ref: ConditionedSignal) -> tuple[float, float] | None:
    """Compute (R, perfusion index) from two conditioned colour channels.

    Returns None if either channel has no DC component or an AC component
    indistinguishable from round-off.
    """
    if red.is_empty or ref.is_empty:
        return None
    ac_red = float(np.std(red.values))
    ac_ref = float(np.std(ref.values))
    dc_red = red.raw_mean
    dc_ref = ref.raw_mean
    if dc_red <= 0 or dc_ref <= 0:
        return None
    if ac_red <= MIN_AC_FRACTION * dc_red or ac_ref <= MIN_AC_FRACTION * dc_ref:
        return None
    r = (ac_red / dc_red) / (ac_ref / dc_ref)
    return r, ac_red / dc_red


def extract_spo2(
    red: ConditionedSignal,
    ref: ConditionedSignal,
) -> SpO2Sample | None:
    """Estimate an advisory SpO2 value for one window.

    Args:
        red: Conditioned red channel (column 0 of the pulse samples).
        ref: Conditioned reference channel (column 1).

    Returns:
        SpO2Sample, or None if the ratio or DC levels are implausible.
    """
    result = ratio_of_ratios(red, ref)
    if result is None:
        return None
    r, perfusion = result
    if not is_quality_reading(r, red.raw_mean, ref.raw_mean):
        return None

    strength = min(1.0, perfusion / STRONG_PERFUSION)
    confidence = MAX_CONFIDENCE * strength * (1.0 - red.motion_level)
    return SpO2Sample(
        timestamp=float(red.timestamps[-1]),
        value=estimate_spo2_from_ratio(r),
        confidence=round(float(np.clip(confidence, 0.0, MAX_CONFIDENCE)), 3),
        ratio=round(r, 3),
        pulse_strength=round(perfusion, 4),
    )
