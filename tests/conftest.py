"""Shared fixtures and helpers for the prana test suite."""

from __future__ import annotations

import numpy as np
import pytest

from prana.buffer import SampleWindow, WindowSnapshot
from prana.config import ProcessingConfig
from prana.dsp.conditioner import ConditionedSignal, condition
from prana.models import Channel
from prana.session import ManualClock
from prana.sources import SyntheticMotionSource, synthetic_breath, synthetic_pulse


# ---------------------------------------------------------------------------
# Snapshot / signal builders
# ---------------------------------------------------------------------------


def make_snapshot(channel: str, timestamps, values) -> WindowSnapshot:
    """Push (t, v) pairs through a SampleWindow and snapshot it."""
    timestamps = np.asarray(timestamps, dtype=np.float64)
    duration = float(timestamps[-1] - timestamps[0]) + 1.0 if len(timestamps) else 1.0
    window = SampleWindow(channel, duration=duration, capacity=len(timestamps) + 1)
    for t, v in zip(timestamps, values):
        window.push(float(t), v)
    return window.snapshot()


def make_signal(timestamps, values, channel: str = "pulse", band=(0.7, 3.5)) -> ConditionedSignal:
    """Wrap raw arrays as an already-conditioned signal (no filtering)."""
    t = np.asarray(timestamps, dtype=np.float64)
    x = np.asarray(values, dtype=np.float64)
    fs = (len(t) - 1) / (t[-1] - t[0]) if len(t) > 1 else 0.0
    return ConditionedSignal(
        channel=channel,
        timestamps=t,
        values=x,
        sample_rate=fs,
        band=band,
        weights=np.ones(len(x)),
        raw_mean=float(np.mean(x)) if len(x) else 0.0,
        raw_std=float(np.std(x)) if len(x) else 0.0,
        raw=x,
    )


def pulse_snapshot(duration: float = 10.0, rate: float = 30.0, **kwargs) -> WindowSnapshot:
    t, v = synthetic_pulse(duration, rate, **kwargs)
    return make_snapshot(Channel.PULSE.value, t, v)


def breath_snapshot(duration: float = 60.0, rate: float = 20.0, **kwargs) -> WindowSnapshot:
    t, v = synthetic_breath(duration, rate, **kwargs)
    return make_snapshot(Channel.AUDIO.value, t, v)


def motion_snapshot(duration: float = 10.0, bursts=(), **kwargs) -> WindowSnapshot:
    source = SyntheticMotionSource(bursts=bursts, **kwargs)
    source.open()
    samples = source.read(duration)
    return make_snapshot(Channel.MOTION.value, [t for t, _ in samples], [v for _, v in samples])


def conditioned_pulse(
    config: ProcessingConfig | None = None,
    motion: WindowSnapshot | None = None,
    **kwargs,
) -> ConditionedSignal:
    config = config or ProcessingConfig()
    return condition(pulse_snapshot(**kwargs), config.heart_band, config, motion=motion)


def conditioned_breath(config: ProcessingConfig | None = None, **kwargs) -> ConditionedSignal:
    config = config or ProcessingConfig()
    return condition(breath_snapshot(**kwargs), config.breath_band, config)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> ProcessingConfig:
    return ProcessingConfig()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
