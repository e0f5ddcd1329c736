"""Exception hierarchy for the prana processing core.

Insufficient data is deliberately *not* represented here: a window that is
too short simply yields no Measurement plus an ``insufficient_data`` quality
flag, and recovers on the next tick.
"""

from __future__ import annotations


class PranaError(Exception):
    """Base class for all errors raised by prana."""


class AcquisitionError(PranaError):
    """A capture channel is unavailable (missing device, permission denied).

    Raised before monitoring starts; fatal to the named channel only.
    """

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"channel {channel!r} unavailable: {reason}")
        self.channel = channel
        self.reason = reason


class ConfigValidationError(PranaError, ValueError):
    """An invalid configuration value, rejected before any processing."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class ComputationAnomaly(PranaError):
    """An extractor produced a physiologically implausible value.

    The pipeline catches this, logs it and drops the value.
    """

    def __init__(self, metric: str, value: float, bounds: tuple[float, float]) -> None:
        lo, hi = bounds
        super().__init__(f"{metric}={value:.1f} outside plausible range [{lo:g}, {hi:g}]")
        self.metric = metric
        self.value = value
        self.bounds = bounds


class SessionStateError(PranaError):
    """An operation is not allowed in the session's current state."""
