"""Metric extraction, quality scoring, fusion and aggregation.

Modules:
    heart_rate  -- Heart rate from pulse peaks
    hrv         -- RMSSD / SDNN / pNN50 and LF/HF from RR intervals
    respiratory -- Breathing rate and pattern (breath events, RSA)
    spo2        -- Ratio-of-ratios SpO2 proxy
    quality     -- Per-channel and composite signal quality
    stress      -- Stress fusion against a baseline
    aggregator  -- Session statistics, trends and coherence
"""

from prana.analytics.heart_rate import extract_heart_rate, interval_confidence
from prana.analytics.hrv import (
    RRHistory,
    SpectralHRV,
    extract_hrv,
    pnn50,
    rmssd,
    sdnn,
    spectral_hrv,
)
from prana.analytics.respiratory import (
    RSAEstimate,
    breathing_from_rsa,
    classify_pattern,
    extract_breathing,
    rsa_breathing_rate,
)
from prana.analytics.spo2 import estimate_spo2_from_ratio, extract_spo2
from prana.analytics.quality import (
    assess_quality,
    combine_quality,
    quality_level,
    stalled_quality,
)
from prana.analytics.stress import fuse_stress, recommendation
from prana.analytics.aggregator import SessionAggregator, classify_trend, coherence_ratio

__all__ = [
    # heart_rate
    "extract_heart_rate",
    "interval_confidence",
    # hrv
    "RRHistory",
    "SpectralHRV",
    "extract_hrv",
    "pnn50",
    "rmssd",
    "sdnn",
    "spectral_hrv",
    # respiratory
    "RSAEstimate",
    "breathing_from_rsa",
    "classify_pattern",
    "extract_breathing",
    "rsa_breathing_rate",
    # spo2
    "estimate_spo2_from_ratio",
    "extract_spo2",
    # quality
    "assess_quality",
    "combine_quality",
    "quality_level",
    "stalled_quality",
    # stress
    "fuse_stress",
    "recommendation",
    # aggregator
    "SessionAggregator",
    "classify_trend",
    "coherence_ratio",
]
