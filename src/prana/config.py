"""Processing configuration, fusion/quality weights and physiological baselines.

Every tunable number of the pipeline lives on :class:`ProcessingConfig`.
The defaults (fusion split, 0.7 usability cutoff, ...) are engineering
defaults carried over from the coaching app, not validated clinical
constants; override them freely.

Configs are validated synchronously.  An invalid value raises
:class:`~prana.errors.ConfigValidationError` before any processing happens.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from prana.errors import ConfigValidationError

_WEIGHT_TOLERANCE = 1e-6

MOTION_MODES = ("gate", "attenuate")
PULSE_SOURCES = ("camera_ppg", "camera_rppg")


def _check_weights(name: str, values: dict[str, float]) -> None:
    for key, w in values.items():
        if not math.isfinite(w) or w < 0:
            raise ConfigValidationError(f"{name}.{key}", f"weight must be >= 0, got {w}")
    total = sum(values.values())
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        raise ConfigValidationError(name, f"weights must sum to 1, got {total:.4f}")


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionWeights:
    """Relative weight of each stress factor (must sum to 1)."""

    hrv: float = 0.4
    heart_rate: float = 0.3
    breathing: float = 0.3

    def validate(self) -> None:
        _check_weights("fusion_weights", asdict(self))


@dataclass(frozen=True)
class QualityWeights:
    """Relative weight of each signal-quality component (must sum to 1)."""

    snr: float = 0.4
    motion: float = 0.3
    lighting: float = 0.15
    contact: float = 0.15

    def validate(self) -> None:
        _check_weights("quality_weights", asdict(self))


# ---------------------------------------------------------------------------
# Baseline
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Baseline:
    """Reference values that stress factors are measured against.

    The defaults are population values; :meth:`calibrate` derives a
    user-specific baseline from a calm calibration run.
    """

    heart_rate: float = 70.0  # bpm
    rmssd: float = 40.0  # ms
    breathing_rate: float = 16.0  # breaths/min

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigValidationError(f"baseline.{f.name}", f"must be > 0, got {value}")

    @classmethod
    def calibrate(
        cls,
        heart_rates: Sequence[float] = (),
        rmssds: Sequence[float] = (),
        breathing_rates: Sequence[float] = (),
    ) -> "Baseline":
        """Build a baseline from the medians of calibration estimates.

        Metrics without calibration data keep the population default.
        """
        default = cls()

        def _median(values: Sequence[float], fallback: float) -> float:
            arr = np.asarray([v for v in values if v is not None and v > 0], dtype=np.float64)
            if len(arr) == 0:
                return fallback
            return round(float(np.median(arr)), 2)

        baseline = cls(
            heart_rate=_median(heart_rates, default.heart_rate),
            rmssd=_median(rmssds, default.rmssd),
            breathing_rate=_median(breathing_rates, default.breathing_rate),
        )
        baseline.validate()
        return baseline


# ---------------------------------------------------------------------------
# Processing config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcessingConfig:
    """Filter cutoffs, windowing, thresholds and weights for one session."""

    # Sampling / windowing
    sample_rate: float = 30.0  # nominal pulse-channel rate (Hz)
    window_duration: float = 10.0  # pulse / motion window (s)
    breath_window_duration: float = 30.0  # audio envelope window (s)
    min_samples: int = 32  # per window, before any extraction is attempted
    pulse_source: str = "camera_ppg"  # finger on lens, or "camera_rppg" for the face

    # Bandpass bands (Hz)
    heart_band: tuple[float, float] = (0.7, 3.5)  # 42-210 bpm
    breath_band: tuple[float, float] = (0.13, 0.5)  # 8-30 breaths/min
    filter_order: int = 2  # per band edge; sosfiltfilt doubles the effective order

    # Outlier / motion artifact handling
    outlier_rejection: bool = True
    outlier_k: float = 3.0
    outlier_neighborhood: int = 5
    motion_compensation: bool = True
    motion_threshold: float = 0.15  # g, deviation of |a| from its window median
    motion_mode: str = "gate"

    # Event detection
    peak_threshold_c: float = 0.5
    max_heart_rate: float = 220.0
    breath_hysteresis: float = 0.3  # fraction of stddev

    # Extractors
    hrv_min_intervals: int = 30
    irregular_cv: float = 0.25
    shallow_ratio: float = 0.6
    deep_ratio: float = 1.5

    # Quality
    quality_weights: QualityWeights = field(default_factory=QualityWeights)
    usable_cutoff: float = 0.7

    # Fusion
    fusion_weights: FusionWeights = field(default_factory=FusionWeights)

    # Scheduling
    tick_interval: float = 1.0  # s
    stall_timeout: float = 3.0  # s

    def validate(self) -> "ProcessingConfig":
        """Raise ConfigValidationError on the first invalid field; return self."""
        positive = (
            "sample_rate",
            "window_duration",
            "breath_window_duration",
            "outlier_k",
            "motion_threshold",
            "max_heart_rate",
            "tick_interval",
            "stall_timeout",
        )
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ConfigValidationError(name, f"must be a positive number, got {value!r}")

        for name in ("min_samples", "filter_order", "outlier_neighborhood", "hrv_min_intervals"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigValidationError(name, f"must be a positive integer, got {value!r}")
        if self.min_samples < 4:
            raise ConfigValidationError("min_samples", "must be at least 4")

        nyquist = self.sample_rate / 2.0
        for name in ("heart_band", "breath_band"):
            band = getattr(self, name)
            if len(band) != 2:
                raise ConfigValidationError(name, "must be a (low, high) pair")
            low, high = band
            if not (0 < low < high):
                raise ConfigValidationError(name, f"need 0 < low < high, got {band}")
            if high >= nyquist:
                raise ConfigValidationError(
                    name, f"high cutoff {high} Hz must be below Nyquist ({nyquist} Hz)"
                )

        if self.motion_mode not in MOTION_MODES:
            raise ConfigValidationError("motion_mode", f"must be one of {MOTION_MODES}")
        if self.pulse_source not in PULSE_SOURCES:
            raise ConfigValidationError("pulse_source", f"must be one of {PULSE_SOURCES}")
        if self.peak_threshold_c < 0:
            raise ConfigValidationError("peak_threshold_c", "must be >= 0")
        if not 0 <= self.breath_hysteresis < 2:
            raise ConfigValidationError("breath_hysteresis", "must be in [0, 2)")
        if not 0 < self.irregular_cv < 1:
            raise ConfigValidationError("irregular_cv", "must be in (0, 1)")
        if not 0 < self.shallow_ratio < 1 < self.deep_ratio:
            raise ConfigValidationError("shallow_ratio", "need 0 < shallow_ratio < 1 < deep_ratio")
        if not 0 <= self.usable_cutoff <= 1:
            raise ConfigValidationError("usable_cutoff", "must be in [0, 1]")

        self.quality_weights.validate()
        self.fusion_weights.validate()
        return self

    def updated(self, **changes: Any) -> "ProcessingConfig":
        """Return a validated copy with *changes* applied.

        Nested weights may be given as dicts.
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigValidationError(sorted(unknown)[0], "unknown config field")
        return replace(self, **_coerce(changes)).validate()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dict (JSON-friendly)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessingConfig":
        return cls().updated(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> "ProcessingConfig":
        """Load and validate a config from a JSON file."""
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigValidationError("<file>", "config file must contain a JSON object")
        return cls.from_dict(data)


def _coerce(changes: dict[str, Any]) -> dict[str, Any]:
    """Turn JSON-ish values (lists, dicts) into the config's field types."""
    out = dict(changes)
    for name in ("heart_band", "breath_band"):
        if name in out and out[name] is not None:
            out[name] = tuple(float(v) for v in out[name])
    try:
        if isinstance(out.get("fusion_weights"), dict):
            out["fusion_weights"] = FusionWeights(**out["fusion_weights"])
        if isinstance(out.get("quality_weights"), dict):
            out["quality_weights"] = QualityWeights(**out["quality_weights"])
    except TypeError as e:
        raise ConfigValidationError("weights", str(e)) from e
    return out
