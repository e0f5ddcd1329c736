"""Tests for prana.buffer -- per-channel sample windows."""

from __future__ import annotations

import math
import threading

import numpy as np
import pytest

from prana.buffer import SampleWindow
from prana.session import ManualClock


class TestPush:
    def test_accepts_increasing_timestamps(self):
        w = SampleWindow("pulse", duration=10.0)
        assert w.push(0.0, 1.0) is True
        assert w.push(0.1, 2.0) is True
        assert len(w) == 2

    def test_rejects_non_increasing_timestamp(self):
        w = SampleWindow("pulse")
        w.push(1.0, 1.0)
        assert w.push(1.0, 2.0) is False
        assert w.push(0.5, 2.0) is False
        assert len(w) == 1
        assert w.rejected == 2

    def test_rejects_non_finite(self):
        w = SampleWindow("pulse")
        assert w.push(0.0, math.nan) is False
        assert w.push(math.inf, 1.0) is False
        assert w.push(1.0, (1.0, math.inf)) is False
        assert len(w) == 0
        assert w.rejected == 3

    def test_numpy_scalar_accepted(self):
        w = SampleWindow("pulse")
        assert w.push(0.0, np.float32(3.5)) is True
        assert w.snapshot().values[0] == pytest.approx(3.5)

    def test_evicts_samples_older_than_duration(self):
        w = SampleWindow("pulse", duration=10.0)
        for t in range(21):
            w.push(float(t), float(t))
        snap = w.snapshot()
        assert snap.timestamps[0] == 10.0
        assert snap.timestamps[-1] == 20.0
        assert len(snap) == 11

    def test_capacity_bound(self):
        w = SampleWindow("pulse", duration=100.0, capacity=5)
        for t in range(20):
            w.push(float(t), 0.0)
        assert len(w) == 5
        assert w.snapshot().timestamps[0] == 15.0

    def test_last_push_uses_clock(self):
        clock = ManualClock(42.0)
        w = SampleWindow("pulse", clock=clock)
        assert w.last_push is None
        w.push(0.0, 1.0)
        assert w.last_push == 42.0
        clock.advance(1.0)
        w.push(0.1, 1.0)
        assert w.last_push == 43.0


class TestSnapshot:
    def test_arrays_are_read_only(self):
        w = SampleWindow("pulse")
        w.push(0.0, 1.0)
        snap = w.snapshot()
        with pytest.raises(ValueError):
            snap.values[0] = 5.0
        with pytest.raises(ValueError):
            snap.timestamps[0] = 5.0

    def test_isolated_from_later_pushes(self):
        w = SampleWindow("pulse")
        w.push(0.0, 1.0)
        snap = w.snapshot()
        w.push(1.0, 2.0)
        assert len(snap) == 1
        assert len(w.snapshot()) == 2

    def test_vector_samples_are_2d(self):
        w = SampleWindow("motion")
        w.push(0.0, (0.0, 0.0, 1.0))
        w.push(0.02, (0.1, 0.0, 0.9))
        snap = w.snapshot()
        assert snap.values.shape == (2, 3)

    def test_empty(self):
        snap = SampleWindow("audio").snapshot()
        assert snap.is_empty
        assert snap.span == 0.0
        assert snap.sample_rate is None

    def test_sample_rate_estimate(self):
        w = SampleWindow("pulse")
        for i in range(301):
            w.push(i / 30.0, 0.0)
        assert w.snapshot().sample_rate == pytest.approx(30.0)

    def test_clear(self):
        w = SampleWindow("pulse")
        w.push(0.0, 1.0)
        w.clear()
        assert len(w) == 0
        assert w.last_push is None
        # After a clear, earlier timestamps are acceptable again
        assert w.push(0.0, 1.0) is True


class TestForRate:
    def test_capacity_twice_nominal(self):
        w = SampleWindow.for_rate("pulse", duration=10.0, sample_rate=30.0)
        assert w.capacity == 600
        assert w.duration == 10.0

    def test_minimum_capacity(self):
        w = SampleWindow.for_rate("pulse", duration=0.1, sample_rate=1.0)
        assert w.capacity == 16


class TestConcurrentAccess:
    def test_reader_never_sees_torn_window(self):
        w = SampleWindow("pulse", duration=5.0, capacity=200)
        n = 5000
        done = threading.Event()

        def writer():
            for i in range(n):
                w.push(i * 0.01, float(i))
            done.set()

        thread = threading.Thread(target=writer)
        thread.start()
        snapshots = 0
        while not done.is_set() or snapshots == 0:
            snap = w.snapshot()
            assert len(snap.timestamps) == len(snap.values)
            if len(snap) > 1:
                assert np.all(np.diff(snap.timestamps) > 0)
                # value i was pushed at time i * 0.01
                np.testing.assert_allclose(snap.values, snap.timestamps * 100.0, rtol=1e-9)
            snapshots += 1
        thread.join()
        assert len(w) == 200
