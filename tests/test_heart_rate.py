"""Tests for prana.analytics.heart_rate -- bpm and confidence from pulse peaks."""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from prana.analytics.heart_rate import (
    clean_interval_mask,
    clean_peak_mask,
    extract_heart_rate,
    interval_confidence,
    prominence_ratio,
)
from prana.dsp.detector import PeakSet, detect_peaks
from prana.errors import ComputationAnomaly

from tests.conftest import conditioned_pulse, make_signal, motion_snapshot


def _peaks_at(times, height: float = 1.0) -> PeakSet:
    times = np.asarray(times, dtype=np.float64)
    return PeakSet(
        indices=np.arange(len(times)),
        times=times,
        heights=np.full(len(times), height),
        threshold=0.0,
    )


class TestExtractHeartRate:
    def test_sixty_bpm_from_five_seconds(self):
        """150 samples at 30 Hz of a 60 bpm pulse."""
        sig = conditioned_pulse(duration=5.0, heart_rate_bpm=60.0)
        assert len(sig) == 150
        hr = extract_heart_rate(sig, detect_peaks(sig))
        assert hr is not None
        assert hr.bpm == pytest.approx(60.0, abs=2.0)
        assert hr.confidence > 0.7

    @pytest.mark.parametrize("freq_hz", [0.9, 1.5, 2.0])
    def test_tracks_frequency(self, freq_hz):
        sig = conditioned_pulse(duration=10.0, heart_rate_bpm=freq_hz * 60.0)
        hr = extract_heart_rate(sig, detect_peaks(sig))
        assert hr is not None
        assert hr.bpm == pytest.approx(freq_hz * 60.0, abs=2.0)
        assert hr.confidence > 0.8

    def test_fewer_than_two_peaks(self):
        sig = make_signal(np.arange(30) / 30.0, np.zeros(30))
        assert extract_heart_rate(sig, _peaks_at([0.5])) is None
        assert extract_heart_rate(sig, _peaks_at([])) is None

    def test_implausibly_fast_raises(self):
        t = np.arange(60) / 30.0
        sig = make_signal(t, np.sin(2 * np.pi * 5.0 * t))
        with pytest.raises(ComputationAnomaly) as exc:
            extract_heart_rate(sig, _peaks_at([0.0, 0.2, 0.4, 0.6]))
        assert exc.value.value == pytest.approx(300.0)

    def test_implausibly_slow_raises(self):
        t = np.arange(180) / 30.0
        sig = make_signal(t, np.sin(2 * np.pi * 0.5 * t))
        with pytest.raises(ComputationAnomaly):
            extract_heart_rate(sig, _peaks_at([0.0, 2.0, 4.0]))

    def test_source_and_quality_carried(self):
        sig = conditioned_pulse(duration=10.0, heart_rate_bpm=72.0)
        hr = extract_heart_rate(sig, detect_peaks(sig), source="camera_rppg", quality=0.85)
        assert hr.source == "camera_rppg"
        assert hr.quality == pytest.approx(0.85)

    def test_rr_intervals_stored(self):
        sig = conditioned_pulse(duration=10.0, heart_rate_bpm=60.0)
        peaks = detect_peaks(sig)
        hr = extract_heart_rate(sig, peaks)
        assert len(hr.rr_intervals_ms) == len(peaks) - 1
        assert np.mean(hr.rr_intervals_ms) == pytest.approx(1000.0, abs=20.0)

    def test_timestamp_is_window_end(self):
        sig = conditioned_pulse(duration=10.0)
        hr = extract_heart_rate(sig, detect_peaks(sig))
        assert hr.timestamp == pytest.approx(sig.timestamps[-1])

    def test_noise_lowers_confidence(self):
        clean = conditioned_pulse(duration=10.0, heart_rate_bpm=72.0)
        noisy = conditioned_pulse(duration=10.0, heart_rate_bpm=72.0, noise=1.5, seed=4)
        hr_clean = extract_heart_rate(clean, detect_peaks(clean))
        try:
            hr_noisy = extract_heart_rate(noisy, detect_peaks(noisy))
        except ComputationAnomaly:
            hr_noisy = None
        assert hr_noisy is None or hr_noisy.confidence < hr_clean.confidence


class TestMotionGating:
    def test_gated_burst_does_not_bias_rate(self):
        motion = motion_snapshot(bursts=[(3.0, 6.0)], burst_g=1.0)
        sig = conditioned_pulse(duration=10.0, heart_rate_bpm=72.0, motion=motion)
        assert sig.motion_level > 0.1
        hr = extract_heart_rate(sig, detect_peaks(sig))
        assert hr is not None
        assert hr.bpm == pytest.approx(72.0, abs=3.0)
        # no interval across the gate survives
        assert max(hr.rr_intervals_ms) < 1000.0

    def test_fully_gated_signal(self):
        sig = conditioned_pulse(duration=10.0, heart_rate_bpm=72.0)
        peaks = detect_peaks(sig)
        gated = dataclasses.replace(sig, weights=np.zeros(len(sig)))
        assert extract_heart_rate(gated, peaks) is None

    def _gated_signal(self, start: int, stop: int):
        t = np.arange(30) / 10.0
        weights = np.ones(30)
        weights[start:stop] = 0.0
        return dataclasses.replace(make_signal(t, np.zeros(30)), weights=weights)

    def test_interval_mask(self):
        sig = self._gated_signal(12, 15)
        peaks = PeakSet(
            indices=np.array([2, 8, 15, 22, 28]),
            times=np.array([0.2, 0.8, 1.5, 2.2, 2.8]),
            heights=np.ones(5),
            threshold=0.0,
        )
        # 8->15 spans the gate; 15 sits next to its last sample
        assert clean_interval_mask(sig, peaks).tolist() == [True, False, False, True]

    def test_peak_mask(self):
        sig = self._gated_signal(12, 15)
        peaks = PeakSet(
            indices=np.array([2, 11, 13, 15, 16]),
            times=np.array([0.2, 1.1, 1.3, 1.5, 1.6]),
            heights=np.ones(5),
            threshold=0.0,
        )
        assert clean_peak_mask(sig, peaks).tolist() == [True, False, False, False, True]

    def test_masks_without_gating(self):
        sig = make_signal(np.arange(30) / 10.0, np.zeros(30))
        peaks = _peaks_at([0.2, 1.0, 2.0])
        assert clean_interval_mask(sig, peaks).all()
        assert clean_peak_mask(sig, peaks).all()


class TestIntervalConfidence:
    def test_perfectly_regular(self):
        assert interval_confidence(np.full(5, 800.0)) == pytest.approx(1.0)

    def test_empty(self):
        assert interval_confidence(np.zeros(0)) == 0.0

    def test_few_intervals_penalised(self):
        assert interval_confidence(np.array([800.0])) == pytest.approx(1.0 / 3.0)

    def test_motion_scales_down(self):
        assert interval_confidence(np.full(5, 800.0), motion_level=0.4) == pytest.approx(0.6)

    def test_irregular(self):
        intervals = np.array([500.0, 1500.0, 500.0, 1500.0])
        # cv = 500 / 1000
        assert interval_confidence(intervals) == pytest.approx(0.5)


class TestProminenceRatio:
    def test_clean_sine_is_one(self):
        t = np.arange(300) / 30.0
        sig = make_signal(t, np.sin(2 * np.pi * t))
        assert prominence_ratio(sig, detect_peaks(sig)) == pytest.approx(1.0, abs=0.02)

    def test_no_peaks(self):
        sig = make_signal(np.arange(30) / 30.0, np.zeros(30))
        assert prominence_ratio(sig, _peaks_at([])) == 0.0
