"""Per-tick processing: channel window snapshots -> measurement events.

One call to :func:`process_window` is one tick.  For each channel that has
enough fresh samples it runs

    condition -> assess quality -> detect events -> extract metrics

and then fuses whatever metrics came out into a stress score and the
per-channel quality assessments into the session composite.
Without a live audio channel, breathing rate falls back to the heart
rhythm (respiratory sinus arrhythmia) once enough RR history is held.

Channels are processed independently: an anomaly or an unexpected error in
one channel is logged and recorded on the :class:`TickResult`, and the
other channels still run.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Mapping

import numpy as np

from prana.analytics.heart_rate import clean_peak_mask, extract_heart_rate
from prana.analytics.hrv import RRHistory, extract_hrv
from prana.analytics.quality import (
    assess_quality,
    combine_quality,
    insufficient_quality,
    stalled_quality,
)
from prana.analytics.respiratory import breathing_from_rsa, extract_breathing
from prana.analytics.spo2 import extract_spo2
from prana.analytics.stress import fuse_stress
from prana.buffer import WindowSnapshot
from prana.config import Baseline, ProcessingConfig
from prana.dsp.conditioner import condition
from prana.dsp.detector import detect_breath_events, detect_peaks
from prana.errors import ComputationAnomaly
from prana.models import (
    BreathingSample,
    Channel,
    HeartRateSample,
    HRVSample,
    Measurement,
    QualityAssessment,
)

logger = logging.getLogger(__name__)

# Breath amplitudes kept for the shallow/deep baseline (one per tick)
AMPLITUDE_HISTORY = 120
MIN_AMPLITUDE_HISTORY = 5


@dataclass
class PipelineState:
    """State carried from one tick to the next within a single session."""

    rr_history: RRHistory = field(default_factory=RRHistory)
    breath_amplitudes: deque = field(default_factory=lambda: deque(maxlen=AMPLITUDE_HISTORY))
    anomaly_count: int = 0

    @property
    def breath_baseline(self) -> float | None:
        """Median recent breath amplitude, once enough ticks have been seen."""
        if len(self.breath_amplitudes) < MIN_AMPLITUDE_HISTORY:
            return None
        return float(np.median(self.breath_amplitudes))

    def clear(self) -> None:
        self.rr_history.clear()
        self.breath_amplitudes.clear()


@dataclass
class TickResult:
    """Everything one tick produced."""

    timestamp: float
    measurements: list[Measurement] = field(default_factory=list)
    qualities: list[QualityAssessment] = field(default_factory=list)
    anomalies: list[ComputationAnomaly] = field(default_factory=list)
    failed_channels: list[str] = field(default_factory=list)

    @property
    def events(self) -> list[Any]:
        """Quality assessments followed by measurements, in emission order."""
        return [*self.qualities, *self.measurements]

    def latest(self, kind: type) -> Any:
        for m in reversed(self.measurements):
            if isinstance(m, kind):
                return m
        return None

    def __repr__(self) -> str:
        kinds = ", ".join(type(m).__name__ for m in self.measurements) or "none"
        return (
            f"TickResult(t={self.timestamp:.2f}, measurements=[{kinds}], "
            f"anomalies={len(self.anomalies)})"
        )


def _guarded(
    result: TickResult,
    state: PipelineState,
    extractor: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Run an extractor, turning ComputationAnomaly into a logged drop."""
    try:
        return extractor(*args, **kwargs)
    except ComputationAnomaly as e:
        logger.warning("Discarding implausible value: %s", e)
        result.anomalies.append(e)
        state.anomaly_count += 1
        return None


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


def _process_pulse(
    snapshot: WindowSnapshot,
    motion: WindowSnapshot | None,
    config: ProcessingConfig,
    state: PipelineState,
    result: TickResult,
) -> tuple[HeartRateSample | None, HRVSample | None]:
    signal = condition(snapshot, config.heart_band, config, motion=motion)
    quality = assess_quality(
        signal, config.quality_weights, config.usable_cutoff, config.min_samples
    )
    result.qualities.append(quality)

    peaks = detect_peaks(signal, config.max_heart_rate, config.peak_threshold_c)
    hr = _guarded(
        result, state, extract_heart_rate, signal, peaks,
        source=config.pulse_source, quality=quality.score / 100.0,
    )
    hrv = None
    if hr is not None:
        result.measurements.append(hr)
        state.rr_history.extend(
            peaks.times[clean_peak_mask(signal, peaks)],
            refractory=60.0 / config.max_heart_rate,
            gaps=signal.gated_spans(),
        )
        hrv = extract_hrv(
            state.rr_history.intervals(),
            hr.timestamp,
            min_intervals=config.hrv_min_intervals,
            signal_confidence=hr.confidence,
        )
        if hrv is not None:
            result.measurements.append(hrv)
    else:
        logger.debug("pulse: %d peaks, no heart rate this tick", len(peaks))

    values = np.asarray(snapshot.values)
    if values.ndim == 2 and values.shape[1] >= 2:
        reference = condition(snapshot, config.heart_band, config, motion=motion, column=1)
        spo2 = extract_spo2(signal, reference)
        if spo2 is not None:
            result.measurements.append(spo2)

    return hr, hrv


def _process_audio(
    snapshot: WindowSnapshot,
    motion: WindowSnapshot | None,
    config: ProcessingConfig,
    state: PipelineState,
    result: TickResult,
) -> BreathingSample | None:
    signal = condition(snapshot, config.breath_band, config, motion=motion)
    quality = assess_quality(
        signal, config.quality_weights, config.usable_cutoff, config.min_samples
    )
    result.qualities.append(quality)

    events = detect_breath_events(signal, config.breath_hysteresis)
    breathing = _guarded(
        result, state, extract_breathing, signal, events,
        baseline_amplitude=state.breath_baseline,
        irregular_cv=config.irregular_cv,
        shallow_ratio=config.shallow_ratio,
        deep_ratio=config.deep_ratio,
    )
    if breathing is not None:
        result.measurements.append(breathing)
        if breathing.amplitude:
            state.breath_amplitudes.append(breathing.amplitude)
    return breathing


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------


def process_window(
    snapshots: Mapping[str, WindowSnapshot],
    config: ProcessingConfig,
    state: PipelineState,
    baseline: Baseline | None = None,
    stalled: Collection[str] = (),
    now: float = 0.0,
) -> TickResult:
    """Run one processing tick over the latest channel snapshots.

    Args:
        snapshots: Latest window per channel name (``pulse``, ``audio``,
            ``motion``).
        config: Processing configuration for this tick.
        state: The session's cross-tick state (RR history, breath baseline).
        baseline: Stress baseline; population defaults when omitted.
        stalled: Channels that have stopped delivering; they get a forced
            poor assessment and produce no measurements.
        now: Tick time; only used to stamp assessments when no channel
            holds any sample.

    Returns:
        TickResult with this tick's measurements, qualities and anomalies.
    """
    result = TickResult(timestamp=now)
    motion_channel = Channel.MOTION.value
    motion = None if motion_channel in stalled else snapshots.get(motion_channel)

    # Events carry sample time; assessments with no window of their own
    # take the newest sample of any channel.
    latest = [float(s.timestamps[-1]) for s in snapshots.values() if len(s)]
    sample_now = max(latest) if latest else now

    for channel in sorted(stalled):
        result.qualities.append(stalled_quality(channel, sample_now))

    hr = hrv = breathing = None
    processors = (
        (Channel.PULSE.value, _process_pulse),
        (Channel.AUDIO.value, _process_audio),
    )
    for channel, process in processors:
        snapshot = snapshots.get(channel)
        if snapshot is None or channel in stalled:
            continue
        if len(snapshot) < config.min_samples:
            ts = float(snapshot.timestamps[-1]) if len(snapshot) else sample_now
            result.qualities.append(insufficient_quality(channel, ts))
            continue
        try:
            out = process(snapshot, motion, config, state, result)
        except Exception:
            logger.exception("Processing failed for channel %r; skipping it this tick", channel)
            result.failed_channels.append(channel)
            continue
        if channel == Channel.PULSE.value:
            hr, hrv = out
        else:
            breathing = out

    audio = Channel.AUDIO.value
    if breathing is None and hr is not None and (audio in stalled or audio not in snapshots):
        breathing = breathing_from_rsa(state.rr_history.intervals(), hr.timestamp)
        if breathing is not None:
            result.measurements.append(breathing)

    stress = fuse_stress(hr, hrv, breathing, baseline, config.fusion_weights)
    if stress is not None:
        result.measurements.append(stress)

    composite = combine_quality(result.qualities, config.usable_cutoff)
    if composite is not None:
        result.qualities.append(composite)

    return result
