"""Session-level aggregation of emitted measurements.

Keeps running statistics per metric (Welford mean/variance plus min/max)
and a trend over the most recent estimates, and computes the session's
cardiorespiratory coherence when monitoring stops.

Coherence
---------
With slow, even breathing the heart rate oscillates in step with the
breath (respiratory sinus arrhythmia), concentrating RR-interval power in
a narrow peak at the breathing frequency.  The coherence ratio is the
power within +/-0.03 Hz of that frequency divided by the total power in
0.04-0.40 Hz.  Without a breathing estimate the dominant peak in
0.04-0.26 Hz is used instead.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Sequence

import numpy as np

from prana.analytics.hrv import MIN_SPECTRAL_SECONDS, rr_psd
from prana.models import (
    BreathingSample,
    HeartRateSample,
    HRVSample,
    MetricStats,
    QualityAssessment,
    SessionAggregate,
    SpO2Sample,
    StressSample,
    Trend,
)

logger = logging.getLogger(__name__)

TREND_WINDOW = 10  # most recent estimates used for the trend
TREND_DEAD_BAND = 0.05  # relative change over the window counted as "stable"

COHERENCE_TOTAL_BAND = (0.04, 0.40)  # Hz
COHERENCE_PEAK_SEARCH = (0.04, 0.26)  # Hz
COHERENCE_HALF_WIDTH = 0.03  # Hz

METRICS = ("heart_rate", "hrv_rmssd", "breathing_rate", "spo2", "stress", "quality")


# ---------------------------------------------------------------------------
# Running statistics
# ---------------------------------------------------------------------------


def classify_trend(values: Sequence[float], dead_band: float = TREND_DEAD_BAND) -> Trend:
    """Slope sign of a least-squares line through *values*.

    The fitted change across the window must exceed ``dead_band`` times the
    window's mean magnitude to count as a trend.
    """
    if len(values) < 3:
        return Trend.STABLE
    y = np.asarray(values, dtype=np.float64)
    x = np.arange(len(y), dtype=np.float64)
    slope = float(np.polyfit(x, y, 1)[0])
    change = slope * (len(y) - 1)
    scale = max(float(np.mean(np.abs(y))), 1e-9)
    if change > dead_band * scale:
        return Trend.INCREASING
    if change < -dead_band * scale:
        return Trend.DECREASING
    return Trend.STABLE


class RunningStat:
    """Welford running mean / variance with min, max and a recent-value tail."""

    def __init__(self, trend_window: int = TREND_WINDOW) -> None:
        self.count = 0
        self._mean = 0.0
        self._m2 = 0.0
        self.min: float | None = None
        self.max: float | None = None
        self.recent: deque[float] = deque(maxlen=trend_window)

    def add(self, value: float) -> None:
        value = float(value)
        self.count += 1
        delta = value - self._mean
        self._mean += delta / self.count
        self._m2 += delta * (value - self._mean)
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self.recent.append(value)

    @property
    def mean(self) -> float | None:
        return self._mean if self.count else None

    @property
    def std(self) -> float | None:
        """Population standard deviation."""
        if self.count == 0:
            return None
        return float(np.sqrt(self._m2 / self.count))

    def stats(self) -> MetricStats:
        if self.count == 0:
            return MetricStats()
        return MetricStats(
            count=self.count,
            min=round(self.min, 2),
            max=round(self.max, 2),
            mean=round(self._mean, 2),
            std=round(self.std, 2),
            trend=classify_trend(list(self.recent)),
        )


# ---------------------------------------------------------------------------
# Coherence
# ---------------------------------------------------------------------------


def coherence_ratio(
    rr_intervals_ms: Sequence[float],
    breathing_hz: float | None = None,
) -> float | None:
    """Share of RR-interval power concentrated at the breathing frequency.

    Args:
        rr_intervals_ms: Successive RR intervals covering the session.
        breathing_hz: Mean breathing frequency; the dominant low-frequency
            peak is used when omitted.

    Returns:
        Ratio in [0, 1], or None with less than ~30 s of intervals.
    """
    rr = np.asarray(rr_intervals_ms, dtype=np.float64)
    if len(rr) < 3 or np.sum(rr) / 1000.0 < MIN_SPECTRAL_SECONDS:
        return None
    freqs, psd = rr_psd(rr)
    if len(freqs) == 0:
        return None

    lo, hi = COHERENCE_TOTAL_BAND
    total_mask = (freqs >= lo) & (freqs <= hi)
    total = float(np.sum(psd[total_mask]))
    if total <= 0:
        return None

    if breathing_hz is None or not lo <= breathing_hz <= hi:
        search = (freqs >= COHERENCE_PEAK_SEARCH[0]) & (freqs <= COHERENCE_PEAK_SEARCH[1])
        if not np.any(search):
            return None
        search_idx = np.flatnonzero(search)
        breathing_hz = float(freqs[search_idx[np.argmax(psd[search])]])

    peak_mask = np.abs(freqs - breathing_hz) <= COHERENCE_HALF_WIDTH
    peak = float(np.sum(psd[peak_mask & total_mask]))
    return round(float(np.clip(peak / total, 0.0, 1.0)), 3)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class SessionAggregator:
    """Accumulates one session's events into a :class:`SessionAggregate`.

    Owned by a single session; discarded after :meth:`finalize`.  The
    session span (``started_at`` / ``ended_at``) follows the session clock
    passed to :meth:`mark` and :meth:`record_tick`; event timestamps, which
    are in capture time, never move it.
    """

    def __init__(self, session_id: str, trend_window: int = TREND_WINDOW) -> None:
        self.session_id = session_id
        self.started_at: float | None = None
        self.ended_at: float | None = None
        self.tick_count = 0
        self.anomaly_count = 0
        self._stats = {name: RunningStat(trend_window) for name in METRICS}

    def mark(self, timestamp: float) -> None:
        """Extend the session span to include *timestamp* (session clock)."""
        if self.started_at is None or timestamp < self.started_at:
            self.started_at = timestamp
        if self.ended_at is None or timestamp > self.ended_at:
            self.ended_at = timestamp

    def add(self, event) -> None:
        """Fold one Measurement or composite QualityAssessment in."""
        if isinstance(event, HeartRateSample):
            self._stats["heart_rate"].add(event.bpm)
        elif isinstance(event, HRVSample):
            self._stats["hrv_rmssd"].add(event.rmssd)
        elif isinstance(event, BreathingSample):
            self._stats["breathing_rate"].add(event.bpm)
        elif isinstance(event, SpO2Sample):
            self._stats["spo2"].add(event.value)
        elif isinstance(event, StressSample):
            self._stats["stress"].add(event.score)
        elif isinstance(event, QualityAssessment):
            if event.channel != "composite":
                return
            self._stats["quality"].add(event.score)
        else:
            logger.debug("Ignoring %s in aggregate", type(event).__name__)

    def record_tick(self, timestamp: float | None = None, anomalies: int = 0) -> None:
        self.tick_count += 1
        self.anomaly_count += anomalies
        if timestamp is not None:
            self.mark(timestamp)

    def stats(self, metric: str) -> MetricStats:
        return self._stats[metric].stats()

    def finalize(self, rr_intervals_ms: Sequence[float] = ()) -> SessionAggregate:
        """Build the session summary.

        Args:
            rr_intervals_ms: The session's accumulated RR intervals, used
                for the coherence ratio.
        """
        breathing = self._stats["breathing_rate"].mean
        breathing_hz = breathing / 60.0 if breathing is not None else None
        quality = self._stats["quality"].mean

        return SessionAggregate(
            session_id=self.session_id,
            started_at=self.started_at,
            ended_at=self.ended_at,
            tick_count=self.tick_count,
            anomaly_count=self.anomaly_count,
            metrics={name: stat.stats() for name, stat in self._stats.items() if stat.count},
            coherence_ratio=coherence_ratio(rr_intervals_ms, breathing_hz),
            mean_quality=round(quality, 1) if quality is not None else None,
        )
