"""Signal conditioning and event detection.

Modules:
    conditioner -- bandpass filtering, outlier rejection, motion gating
    detector    -- adaptive-threshold peaks, breath-phase crossings
"""

from prana.dsp.conditioner import (
    ConditionedSignal,
    bandpass,
    condition,
    envelope,
    motion_weights,
    reject_outliers,
)
from prana.dsp.detector import (
    BreathEvents,
    PeakSet,
    adaptive_threshold,
    detect_breath_events,
    detect_peaks,
)

__all__ = [
    # conditioner
    "ConditionedSignal",
    "bandpass",
    "condition",
    "envelope",
    "motion_weights",
    "reject_outliers",
    # detector
    "BreathEvents",
    "PeakSet",
    "adaptive_threshold",
    "detect_breath_events",
    "detect_peaks",
]
