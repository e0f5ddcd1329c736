"""Tests for prana.analytics.respiratory -- breathing rate, pattern and RSA."""

from __future__ import annotations

import math

import numpy as np
import pytest

from prana.analytics.respiratory import (
    RSA_MAX_CONFIDENCE,
    breathing_from_rsa,
    classify_pattern,
    extract_breathing,
    rsa_breathing_rate,
)
from prana.dsp.detector import detect_breath_events
from prana.errors import ComputationAnomaly
from prana.models import BreathPattern

from tests.conftest import conditioned_breath, make_signal


FS = 20.0


def _sine_breath(bpm: float, duration: float, amplitude: float = 1.0):
    t = np.arange(int(duration * FS)) / FS
    return make_signal(t, amplitude * np.sin(2 * math.pi * bpm / 60.0 * t), channel="audio")


def _piecewise_breath(periods):
    """Concatenate whole sine cycles of the given periods (s)."""
    chunks = []
    for period in periods:
        n = int(round(period * FS))
        chunks.append(np.sin(2 * math.pi * np.arange(n) / n))
    x = np.concatenate(chunks)
    return make_signal(np.arange(len(x)) / FS, x, channel="audio")


def _modulated_rr(freq_hz: float, duration: float = 120.0) -> list[float]:
    rr, t = [], 0.0
    while t < duration:
        interval = 1000.0 + 50.0 * math.sin(2 * math.pi * freq_hz * t)
        rr.append(interval)
        t += interval / 1000.0
    return rr


class TestExtractBreathing:
    def test_regular_fifteen_bpm(self):
        sig = _sine_breath(15.0, 60.0)
        sample = extract_breathing(sig, detect_breath_events(sig))
        assert sample is not None
        assert sample.bpm == pytest.approx(15.0, abs=0.1)
        assert sample.pattern == BreathPattern.REGULAR
        assert sample.confidence > 0.9

    def test_phase_durations(self):
        sig = _sine_breath(15.0, 60.0)
        sample = extract_breathing(sig, detect_breath_events(sig))
        assert sample.inhale_duration == pytest.approx(2.0, abs=0.05)
        assert sample.exhale_duration == pytest.approx(2.0, abs=0.05)

    def test_amplitude_reported(self):
        sig = _sine_breath(15.0, 60.0, amplitude=1.0)
        sample = extract_breathing(sig, detect_breath_events(sig))
        assert sample.amplitude == pytest.approx(1.0, abs=0.1)

    def test_irregular(self):
        sig = _piecewise_breath([2, 6, 2, 6, 2, 6, 2, 6])
        sample = extract_breathing(sig, detect_breath_events(sig))
        assert sample.pattern == BreathPattern.IRREGULAR
        assert sample.confidence < 0.7

    def test_shallow_against_baseline(self):
        sig = _sine_breath(15.0, 60.0, amplitude=0.3)
        sample = extract_breathing(sig, detect_breath_events(sig), baseline_amplitude=1.0)
        assert sample.pattern == BreathPattern.SHALLOW

    def test_deep_against_baseline(self):
        sig = _sine_breath(15.0, 60.0, amplitude=2.0)
        sample = extract_breathing(sig, detect_breath_events(sig), baseline_amplitude=1.0)
        assert sample.pattern == BreathPattern.DEEP

    def test_too_few_inhales(self):
        sig = _sine_breath(6.0, 10.0)
        assert extract_breathing(sig, detect_breath_events(sig)) is None

    def test_implausible_rate_raises(self):
        sig = _sine_breath(120.0, 10.0)
        with pytest.raises(ComputationAnomaly) as exc:
            extract_breathing(sig, detect_breath_events(sig))
        assert exc.value.metric == "breathing_rate"

    def test_after_conditioning(self):
        sig = conditioned_breath(duration=60.0, breathing_rate_bpm=15.0)
        sample = extract_breathing(sig, detect_breath_events(sig))
        assert sample.bpm == pytest.approx(15.0, abs=0.5)
        assert sample.timestamp == pytest.approx(sig.timestamps[-1])


class TestClassifyPattern:
    REGULAR = np.full(5, 4.0)

    def test_regular(self):
        assert classify_pattern(self.REGULAR, 1.0, 1.0) == BreathPattern.REGULAR

    def test_shallow(self):
        assert classify_pattern(self.REGULAR, 0.5, 1.0) == BreathPattern.SHALLOW

    def test_deep(self):
        assert classify_pattern(self.REGULAR, 2.0, 1.0) == BreathPattern.DEEP

    def test_no_baseline_cannot_be_shallow(self):
        assert classify_pattern(self.REGULAR, 0.1, None) == BreathPattern.REGULAR

    def test_irregular_takes_precedence(self):
        intervals = np.array([2.0, 6.0, 2.0, 6.0])
        assert classify_pattern(intervals, 2.0, 1.0) == BreathPattern.IRREGULAR

    def test_custom_thresholds(self):
        assert classify_pattern(self.REGULAR, 0.7, 1.0, shallow_ratio=0.8) == BreathPattern.SHALLOW


class TestRSABreathingRate:
    def test_fifteen_breaths_per_minute(self):
        estimate = rsa_breathing_rate(_modulated_rr(0.25))
        assert estimate is not None
        assert 14.0 <= estimate.rate_bpm <= 16.0
        assert 0.0 < estimate.confidence <= 1.0

    def test_too_few_intervals(self):
        assert rsa_breathing_rate([1000.0] * 9) is None


class TestBreathingFromRSA:
    def test_sample_with_capped_confidence(self):
        rr = _modulated_rr(0.25)
        breathing = breathing_from_rsa(rr, timestamp=120.0)
        assert breathing is not None
        assert breathing.bpm == pytest.approx(15.0, abs=1.0)
        assert breathing.pattern == BreathPattern.REGULAR
        assert breathing.timestamp == 120.0
        assert 0.0 < breathing.confidence <= RSA_MAX_CONFIDENCE
        assert breathing.confidence == pytest.approx(
            RSA_MAX_CONFIDENCE * rsa_breathing_rate(rr).confidence, abs=0.001
        )

    def test_needs_thirty_seconds_of_intervals(self):
        # 20 intervals is enough for the estimator but only ~20 s of data
        assert rsa_breathing_rate(_modulated_rr(0.25, duration=20.0)) is not None
        assert breathing_from_rsa(_modulated_rr(0.25, duration=20.0), timestamp=20.0) is None
