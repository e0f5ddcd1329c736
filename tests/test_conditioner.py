"""Tests for prana.dsp.conditioner -- filtering and artifact rejection."""

from __future__ import annotations

import math

import numpy as np
import pytest

from prana.buffer import SampleWindow, WindowSnapshot
from prana.config import ProcessingConfig
from prana.dsp.conditioner import (
    bandpass,
    condition,
    envelope,
    motion_weights,
    reject_outliers,
)

from tests.conftest import make_snapshot, pulse_snapshot


FS = 30.0


def _sine(freq: float, duration: float = 10.0, fs: float = FS) -> tuple[np.ndarray, np.ndarray]:
    t = np.arange(int(duration * fs)) / fs
    return t, np.sin(2 * math.pi * freq * t)


class TestBandpass:
    def test_passes_in_band(self):
        _, x = _sine(1.2)
        y = bandpass(x, FS, 0.7, 3.5)
        assert np.std(y) > 0.8 * np.std(x)

    def test_rejects_high_frequency(self):
        _, x = _sine(10.0)
        y = bandpass(x, FS, 0.7, 3.5)
        assert np.std(y) < 0.3 * np.std(x)

    def test_rejects_slow_drift(self):
        _, x = _sine(0.1, duration=20.0)
        y = bandpass(x, FS, 0.7, 3.5)
        assert np.std(y) < 0.3 * np.std(x)

    def test_zero_phase(self):
        """The filtered peak stays where the input peak was."""
        t, x = _sine(1.0)
        y = bandpass(x, FS, 0.7, 3.5)
        mid = slice(135, 165)  # one peak, at t = 5.25 s
        assert np.argmax(y[mid]) == pytest.approx(np.argmax(x[mid]), abs=1)

    def test_short_input_mean_removed(self):
        y = bandpass(np.array([1.0, 2.0, 3.0]), FS, 0.7, 3.5)
        np.testing.assert_allclose(y, [-1.0, 0.0, 1.0])

    def test_empty_input(self):
        assert len(bandpass(np.array([]), FS, 0.7, 3.5)) == 0

    def test_high_cutoff_clamped_below_nyquist(self):
        _, x = _sine(1.0)
        y = bandpass(x, FS, 0.7, 20.0)
        assert np.all(np.isfinite(y))


class TestRejectOutliers:
    def test_spike_replaced(self):
        _, x = _sine(1.0)
        x = x.copy()
        x[100] = 50.0
        out, count = reject_outliers(x, k=3.0, neighborhood=5)
        assert count >= 1
        assert abs(out[100]) < 2.0

    def test_clean_sine_untouched(self):
        _, x = _sine(1.0)
        out, count = reject_outliers(x, k=3.0, neighborhood=5)
        assert count == 0
        np.testing.assert_array_equal(out, x)

    def test_flat_signal_untouched(self):
        out, count = reject_outliers(np.ones(50))
        assert count == 0

    def test_too_short(self):
        out, count = reject_outliers(np.array([1.0, 100.0]))
        assert count == 0


class TestMotionWeights:
    def _motion(self, burst=(4.0, 6.0), magnitude=1.5):
        t = np.arange(0, 10, 0.02)
        mag = np.where((t >= burst[0]) & (t < burst[1]), magnitude, 1.0)
        return make_snapshot("motion", t, mag)

    def test_no_motion_channel(self):
        t = np.arange(0, 10, 1 / FS)
        np.testing.assert_array_equal(motion_weights(t, None, 0.15), np.ones(len(t)))

    def test_gate_mode(self):
        t = np.arange(0, 10, 1 / FS)
        w = motion_weights(t, self._motion(), 0.15, mode="gate")
        assert w[np.searchsorted(t, 5.0)] == 0.0
        assert w[np.searchsorted(t, 1.0)] == 1.0
        assert w[np.searchsorted(t, 8.0)] == 1.0

    def test_attenuate_mode(self):
        t = np.arange(0, 10, 1 / FS)
        w = motion_weights(t, self._motion(), 0.15, mode="attenuate")
        assert w[np.searchsorted(t, 5.0)] == pytest.approx(0.15 / 0.5)
        assert w[np.searchsorted(t, 1.0)] == 1.0

    def test_vector_samples_use_magnitude(self):
        t = np.arange(0, 10, 0.02)
        xyz = [(0.0, 0.0, 1.5) if 4 <= ti < 6 else (0.0, 0.0, 1.0) for ti in t]
        snap = make_snapshot("motion", t, xyz)
        ts = np.arange(0, 10, 1 / FS)
        w = motion_weights(ts, snap, 0.15)
        assert w[np.searchsorted(ts, 5.0)] == 0.0


class TestEnvelope:
    def test_constant_amplitude(self):
        fs = 50.0
        t = np.arange(0, 10, 1 / fs)
        env = envelope(2.0 * np.sin(2 * math.pi * 2.0 * t), fs)
        assert np.median(env) == pytest.approx(2.0, abs=0.2)

    def test_short(self):
        assert len(envelope(np.array([1.0]), 50.0)) == 1


class TestCondition:
    def test_length_preserved(self, config):
        snap = pulse_snapshot(duration=10.0)
        sig = condition(snap, config.heart_band, config)
        assert len(sig) == len(snap)
        assert sig.sample_rate == pytest.approx(30.0)
        assert sig.raw_mean == pytest.approx(128.0, abs=0.5)

    def test_nan_samples_interpolated(self, config):
        t = np.arange(300) / FS
        v = 128.0 + np.sin(2 * math.pi * t)
        v[::7] = np.nan
        snap = WindowSnapshot("pulse", t, v, None)
        sig = condition(snap, config.heart_band, config)
        assert len(sig) == 300
        assert np.all(np.isfinite(sig.values))

    def test_all_nan_column(self, config):
        t = np.arange(100) / FS
        v = np.column_stack([np.full(100, 128.0), np.full(100, np.nan)])
        snap = WindowSnapshot("pulse", t, v, None)
        sig = condition(snap, config.heart_band, config, column=1)
        assert np.all(sig.values == 0.0)

    def test_empty_snapshot(self, config):
        snap = SampleWindow("pulse").snapshot()
        sig = condition(snap, config.heart_band, config)
        assert sig.is_empty
        assert sig.motion_level == 0.0

    def test_motion_gating_zeroes_signal(self, config):
        snap = pulse_snapshot(duration=10.0)
        t = np.arange(0, 10, 0.02)
        mag = np.where((t >= 4) & (t < 6), 1.5, 1.0)
        motion = make_snapshot("motion", t, mag)
        sig = condition(snap, config.heart_band, config, motion=motion)
        i = np.searchsorted(sig.timestamps, 5.0)
        assert sig.values[i] == 0.0
        assert 0.1 < sig.motion_level < 0.3

    def test_motion_compensation_off(self):
        config = ProcessingConfig(motion_compensation=False)
        snap = pulse_snapshot(duration=10.0)
        t = np.arange(0, 10, 0.02)
        motion = make_snapshot("motion", t, np.where((t >= 4) & (t < 6), 1.5, 1.0))
        sig = condition(snap, config.heart_band, config, motion=motion)
        assert sig.motion_level == 0.0

    def test_gated_spans(self, config):
        snap = pulse_snapshot(duration=10.0)
        t = np.arange(0, 10, 0.02)
        mag = np.where(((t >= 2) & (t < 3)) | ((t >= 6) & (t < 7)), 1.5, 1.0)
        sig = condition(snap, config.heart_band, config, motion=make_snapshot("motion", t, mag))
        spans = sig.gated_spans()
        assert len(spans) == 2
        assert spans[0] == pytest.approx((2.0, 3.0), abs=0.05)
        assert spans[1] == pytest.approx((6.0, 7.0), abs=0.05)

    def test_no_gated_spans_when_still(self, config):
        sig = condition(pulse_snapshot(duration=10.0), config.heart_band, config)
        assert sig.gated_spans() == []

    def test_jittered_timestamps_regridded(self, config):
        rng = np.random.default_rng(3)
        t = np.arange(300) / FS + rng.uniform(-0.005, 0.005, 300)
        snap = make_snapshot("pulse", t, 128 + np.sin(2 * math.pi * t))
        sig = condition(snap, config.heart_band, config)
        np.testing.assert_allclose(np.diff(sig.timestamps), np.diff(sig.timestamps)[0])
