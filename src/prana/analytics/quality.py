"""Per-channel and composite signal quality.

Each channel window is scored on four components in [0, 1]:

  snr       share of the window's spectral power inside the channel's band
  motion    mean attenuation applied for accelerometer activity (inverted
            for the composite: still = 1)
  lighting  optical channels: DC pixel level adequacy; audio: modulation
            depth of the breath envelope
  contact   1 - 2 x (share of clipped/saturated samples); 0 on a flatline

A channel score is ``100 * sum(w_i * component_i)`` with configurable
weights that sum to 1; the session composite is the channel-weighted mean
of the channel scores.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy import signal as sig

from prana.config import QualityWeights
from prana.dsp.conditioner import ConditionedSignal
from prana.models import Channel, QualityAssessment, QualityLevel

# Score bands (0-100)
EXCELLENT = 90.0
GOOD = 75.0
FAIR = 60.0

# Flag thresholds on the components
LOW_SNR = 0.5
HIGH_MOTION = 0.3
POOR_CONTACT = 0.5
LOW_LIGHT = 0.5

# 8-bit camera pixel levels
DARK_LEVEL = 10.0  # flash off / lens uncovered
GOOD_LIGHT_LEVEL = 60.0
SATURATION_HIGH = 250.0
SATURATION_LOW = 2.0

# Breath-envelope modulation depth (filtered std / DC) counted as full level
FULL_MODULATION = 0.1

# Session composite: pulse carries heart rate and HRV (0.3 + 0.3),
# audio carries breathing (0.4)
COMPOSITE_WEIGHTS = {Channel.PULSE.value: 0.6, Channel.AUDIO.value: 0.4}

OPTICAL_CHANNELS = frozenset({Channel.PULSE.value})


def quality_level(score: float) -> QualityLevel:
    """Map a 0-100 score onto its band."""
    if score >= EXCELLENT:
        return QualityLevel.EXCELLENT
    if score >= GOOD:
        return QualityLevel.GOOD
    if score >= FAIR:
        return QualityLevel.FAIR
    return QualityLevel.POOR


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


def in_band_fraction(raw: np.ndarray, fs: float, band: tuple[float, float]) -> float:
    """Share of (non-DC) spectral power of *raw* that lies inside *band*."""
    x = np.asarray(raw, dtype=np.float64)
    if len(x) < 8 or fs <= 0:
        return 0.0
    freqs, psd = sig.periodogram(sig.detrend(x, type="linear"), fs=fs, window="hann")
    nonzero = freqs > 0
    total = float(np.sum(psd[nonzero]))
    if total <= 0:
        return 0.0
    mask = nonzero & (freqs >= band[0]) & (freqs <= band[1])
    return float(np.clip(np.sum(psd[mask]) / total, 0.0, 1.0))


def lighting_level(signal: ConditionedSignal, optical: bool) -> float:
    if optical:
        level = (signal.raw_mean - DARK_LEVEL) / (GOOD_LIGHT_LEVEL - DARK_LEVEL)
        return float(np.clip(level, 0.0, 1.0))
    dc = abs(signal.raw_mean)
    if dc <= 0 or signal.is_empty:
        return 0.0
    depth = float(np.std(signal.values)) / dc
    return float(np.clip(depth / FULL_MODULATION, 0.0, 1.0))


def _clipped_fraction(raw: np.ndarray, optical: bool) -> float:
    n = len(raw)
    if n == 0:
        return 0.0
    if optical:
        clipped = np.count_nonzero((raw >= SATURATION_HIGH) | (raw <= SATURATION_LOW))
        return clipped / n
    # Non-optical: samples pinned at the window extremes
    span = float(np.max(raw) - np.min(raw))
    eps = 1e-6 * max(span, 1.0)
    at_max = int(np.count_nonzero(raw >= np.max(raw) - eps))
    at_min = int(np.count_nonzero(raw <= np.min(raw) + eps))
    min_run = max(2, int(0.01 * n))
    clipped = (at_max if at_max > min_run else 0) + (at_min if at_min > min_run else 0)
    return clipped / n


def contact_quality(signal: ConditionedSignal, optical: bool) -> float:
    raw = np.asarray(signal.raw, dtype=np.float64)
    if len(raw) == 0 or signal.raw_std <= 0:
        return 0.0
    return float(np.clip(1.0 - 2.0 * _clipped_fraction(raw, optical), 0.0, 1.0))


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


def _assessment(
    channel: str,
    timestamp: float,
    snr: float,
    motion: float,
    lighting: float,
    contact: float,
    weights: QualityWeights,
    usable_cutoff: float,
    flags: Sequence[str] = (),
) -> QualityAssessment:
    composite = (
        weights.snr * snr
        + weights.motion * (1.0 - motion)
        + weights.lighting * lighting
        + weights.contact * contact
    )
    score = round(float(np.clip(composite * 100.0, 0.0, 100.0)), 1)
    return QualityAssessment(
        channel=channel,
        timestamp=timestamp,
        snr=round(snr, 3),
        motion_level=round(motion, 3),
        lighting_level=round(lighting, 3),
        contact_quality=round(contact, 3),
        score=score,
        overall_quality=quality_level(score),
        usable_for_analysis=score / 100.0 > usable_cutoff,
        flags=tuple(flags),
    )


def _zero(channel: str, timestamp: float, flag: str) -> QualityAssessment:
    return QualityAssessment(
        channel=channel,
        timestamp=timestamp,
        snr=0.0,
        motion_level=0.0,
        lighting_level=0.0,
        contact_quality=0.0,
        score=0.0,
        overall_quality=QualityLevel.POOR,
        usable_for_analysis=False,
        flags=(flag,),
    )


def stalled_quality(channel: str, timestamp: float) -> QualityAssessment:
    """Forced poor / zero assessment for a channel that stopped delivering."""
    return _zero(channel, timestamp, "stalled")


def insufficient_quality(channel: str, timestamp: float) -> QualityAssessment:
    """Assessment for a window with too few samples to analyse."""
    return _zero(channel, timestamp, "insufficient_data")


def assess_quality(
    signal: ConditionedSignal,
    weights: QualityWeights | None = None,
    usable_cutoff: float = 0.7,
    min_samples: int = 32,
    optical: bool | None = None,
) -> QualityAssessment:
    """Score one conditioned channel window.

    Args:
        signal: Conditioned window (its ``raw`` samples feed SNR and contact).
        weights: Component weights; defaults to :class:`QualityWeights`.
        usable_cutoff: Composite (0-1) that must be exceeded to be usable.
        min_samples: Windows shorter than this are flagged insufficient.
        optical: Whether the channel is a camera channel; inferred from
            the channel name when omitted.

    Returns:
        QualityAssessment for ``signal.channel``.
    """
    weights = weights or QualityWeights()
    if optical is None:
        optical = signal.channel in OPTICAL_CHANNELS
    timestamp = float(signal.timestamps[-1]) if not signal.is_empty else 0.0
    if len(signal) < min_samples:
        return insufficient_quality(signal.channel, timestamp)

    snr = in_band_fraction(signal.raw, signal.sample_rate, signal.band)
    motion = signal.motion_level
    lighting = lighting_level(signal, optical)
    contact = contact_quality(signal, optical)

    flags = []
    if snr < LOW_SNR:
        flags.append("low_snr")
    if motion > HIGH_MOTION:
        flags.append("high_motion")
    if contact < POOR_CONTACT:
        flags.append("poor_contact")
    if lighting < LOW_LIGHT:
        flags.append("low_light" if optical else "low_level")

    return _assessment(
        signal.channel, timestamp, snr, motion, lighting, contact, weights, usable_cutoff, flags
    )


def combine_quality(
    assessments: Sequence[QualityAssessment],
    usable_cutoff: float = 0.7,
) -> QualityAssessment | None:
    """Merge per-channel assessments into the session composite.

    The composite score is the weighted mean of the channel scores;
    channels are weighted by :data:`COMPOSITE_WEIGHTS`, renormalised over
    the channels present.  Channels without a weight (motion) are ignored.

    Returns:
        A ``composite`` assessment, or None if no weighted channel is present.
    """
    present = [a for a in assessments if COMPOSITE_WEIGHTS.get(a.channel, 0.0) > 0]
    if not present:
        return None

    w = np.asarray([COMPOSITE_WEIGHTS[a.channel] for a in present], dtype=np.float64)
    w = w / w.sum()

    def _avg(name: str) -> float:
        return float(np.dot(w, [getattr(a, name) for a in present]))

    flags: list[str] = []
    for a in present:
        flags.extend(f"{a.channel}:{flag}" for flag in a.flags)

    score = round(_avg("score"), 1)
    return QualityAssessment(
        channel="composite",
        timestamp=max(a.timestamp for a in present),
        snr=round(_avg("snr"), 3),
        motion_level=round(_avg("motion_level"), 3),
        lighting_level=round(_avg("lighting_level"), 3),
        contact_quality=round(_avg("contact_quality"), 3),
        score=score,
        overall_quality=quality_level(score),
        usable_for_analysis=score / 100.0 > usable_cutoff,
        flags=tuple(flags),
    )
