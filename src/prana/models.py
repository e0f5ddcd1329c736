"""Event types emitted by the processing core.

Measurements are immutable once created.  A confidence of 0 means "not
computable", never "computed as zero".
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union

# Physiological plausibility bounds (bpm).  Values outside are never emitted.
HEART_BPM_RANGE = (40.0, 220.0)
BREATH_BPM_RANGE = (4.0, 60.0)


class Channel(str, Enum):
    """Sensor input channels."""

    PULSE = "pulse"  # camera pixel intensity (PPG / rPPG)
    AUDIO = "audio"  # microphone breath-sound envelope
    MOTION = "motion"  # accelerometer magnitude (g)


class QualityLevel(str, Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class BreathPattern(str, Enum):
    REGULAR = "regular"
    IRREGULAR = "irregular"
    SHALLOW = "shallow"
    DEEP = "deep"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


class _Serializable:
    """to_dict / to_json helpers shared by all emitted events."""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)  # type: ignore[call-overload]
        for key, value in d.items():
            if isinstance(value, Enum):
                d[key] = value.value
        d["kind"] = type(self).__name__
        return d

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=_json_default)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


# ---------------------------------------------------------------------------
# Measurements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeartRateSample(_Serializable):
    timestamp: float
    bpm: float
    confidence: float
    source: str = "camera_ppg"
    quality: float = 0.0  # composite signal quality of the window, 0-1
    rr_intervals_ms: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)
        _check_unit("quality", self.quality)

    def __repr__(self) -> str:
        return f"HeartRateSample({self.bpm:.1f} bpm, conf={self.confidence:.2f})"


@dataclass(frozen=True)
class HRVSample(_Serializable):
    timestamp: float
    rmssd: float  # ms
    sdnn: float  # ms
    pnn50: float  # percent
    confidence: float
    mean_rr: float = 0.0  # ms
    interval_count: int = 0
    lf_power: float | None = None  # ms^2, 0.04-0.15 Hz
    hf_power: float | None = None  # ms^2, 0.15-0.40 Hz
    lf_hf_ratio: float | None = None

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)

    def __repr__(self) -> str:
        return (
            f"HRVSample(rmssd={self.rmssd:.1f}ms, sdnn={self.sdnn:.1f}ms, "
            f"pnn50={self.pnn50:.1f}%, n={self.interval_count}, conf={self.confidence:.2f})"
        )


@dataclass(frozen=True)
class BreathingSample(_Serializable):
    timestamp: float
    bpm: float
    pattern: BreathPattern
    confidence: float
    inhale_duration: float | None = None  # s
    exhale_duration: float | None = None  # s
    amplitude: float | None = None  # envelope amplitude, arbitrary units

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)

    def __repr__(self) -> str:
        return (
            f"BreathingSample({self.bpm:.1f} breaths/min, {self.pattern.value}, "
            f"conf={self.confidence:.2f})"
        )


@dataclass(frozen=True)
class SpO2Sample(_Serializable):
    """Ratio-based oxygen saturation proxy.  Advisory only, never medical-grade."""

    timestamp: float
    value: float  # percent
    confidence: float
    ratio: float = 0.0
    pulse_strength: float = 0.0
    advisory: bool = True

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)

    def __repr__(self) -> str:
        return f"SpO2Sample({self.value:.1f}%, R={self.ratio:.2f}, conf={self.confidence:.2f})"


@dataclass(frozen=True)
class StressSample(_Serializable):
    timestamp: float
    score: float  # 0-100
    factors: dict[str, float]
    recommendation: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            raise ValueError(f"score must be within [0, 100], got {self.score}")

    def __repr__(self) -> str:
        parts = ", ".join(f"{k}={v:.0f}" for k, v in self.factors.items())
        return f"StressSample(score={self.score:.0f}, {parts})"


Measurement = Union[HeartRateSample, HRVSample, BreathingSample, SpO2Sample, StressSample]


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QualityAssessment(_Serializable):
    """Signal quality of one channel (or the session composite) for one tick.

    Component fields are in [0, 1]; ``score`` is the weighted composite on
    a 0-100 scale.
    """

    channel: str
    timestamp: float
    snr: float
    motion_level: float
    lighting_level: float
    contact_quality: float
    score: float
    overall_quality: QualityLevel
    usable_for_analysis: bool
    flags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("snr", "motion_level", "lighting_level", "contact_quality"):
            _check_unit(name, getattr(self, name))
        if not 0.0 <= self.score <= 100.0:
            raise ValueError(f"score must be within [0, 100], got {self.score}")

    def __repr__(self) -> str:
        flags = f", flags={list(self.flags)}" if self.flags else ""
        return (
            f"QualityAssessment({self.channel}: {self.overall_quality.value} "
            f"({self.score:.0f}){flags})"
        )


# ---------------------------------------------------------------------------
# Session aggregate
# ---------------------------------------------------------------------------


@dataclass
class MetricStats:
    """Rolling statistics for one metric over a session."""

    count: int = 0
    min: float | None = None
    max: float | None = None
    mean: float | None = None
    std: float | None = None
    trend: Trend = Trend.STABLE


@dataclass
class SessionAggregate(_Serializable):
    """Final per-session summary, emitted once when monitoring stops."""

    session_id: str
    started_at: float | None
    ended_at: float | None
    tick_count: int = 0
    anomaly_count: int = 0
    metrics: dict[str, MetricStats] = field(default_factory=dict)
    coherence_ratio: float | None = None
    mean_quality: float | None = None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.ended_at is None:
            return 0.0
        return max(0.0, self.ended_at - self.started_at)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["duration"] = round(self.duration, 3)
        for stats in d["metrics"].values():
            stats["trend"] = Trend(stats["trend"]).value
        return d

    def __repr__(self) -> str:
        hr = self.metrics.get("heart_rate")
        hr_str = f"hr={hr.mean:.0f}bpm" if hr and hr.mean is not None else "hr=n/a"
        coh = f"{self.coherence_ratio:.2f}" if self.coherence_ratio is not None else "n/a"
        return (
            f"SessionAggregate({self.session_id}: {self.duration:.0f}s, "
            f"ticks={self.tick_count}, {hr_str}, coherence={coh})"
        )
