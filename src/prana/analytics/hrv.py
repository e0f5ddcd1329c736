"""Heart rate variability from beat-to-beat (RR) intervals.

Provides:
  - Time-domain metrics (RMSSD, SDNN, pNN50)
  - Frequency-domain metrics (LF/HF power from a Welch PSD of the
    interpolated RR series)
  - RRHistory, which accumulates intervals across overlapping windows
  - extract_hrv, the HRV extractor used by the pipeline
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import signal as sig
from scipy.integrate import trapezoid

from prana.models import HEART_BPM_RANGE, HRVSample

# Plausible RR interval range (ms), derived from the heart-rate bounds
RR_MIN_MS = 60000.0 / HEART_BPM_RANGE[1]
RR_MAX_MS = 60000.0 / HEART_BPM_RANGE[0]

# Frequency bands (Hz)
LF_BAND = (0.04, 0.15)
HF_BAND = (0.15, 0.40)

# Interpolation rate for the RR series
INTERP_FS = 4.0  # Hz

# Intervals further than this fraction from the median of their neighbours
# are missed or extra beats (a skipped beat doubles the interval)
ECTOPIC_TOLERANCE = 0.25
ECTOPIC_NEIGHBORHOOD = 5

# Shortest RR series (s) for which LF power is meaningful (~1 LF cycle)
MIN_SPECTRAL_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Time domain
# ---------------------------------------------------------------------------


def rmssd(rr_intervals: Sequence[float]) -> float | None:
    """Root mean square of successive RR differences (ms).

    Returns None if fewer than 2 intervals are provided.
    """
    if len(rr_intervals) < 2:
        return None
    diffs = np.diff(np.asarray(rr_intervals, dtype=np.float64))
    return float(np.sqrt(np.mean(diffs ** 2)))


def sdnn(rr_intervals: Sequence[float]) -> float | None:
    """Standard deviation (population) of RR intervals (ms).

    Returns None if fewer than 2 intervals.
    """
    if len(rr_intervals) < 2:
        return None
    return float(np.std(np.asarray(rr_intervals, dtype=np.float64)))


def pnn50(rr_intervals: Sequence[float]) -> float | None:
    """Percentage of successive RR differences larger than 50 ms.

    Returns None if fewer than 2 intervals.
    """
    if len(rr_intervals) < 2:
        return None
    diffs = np.abs(np.diff(np.asarray(rr_intervals, dtype=np.float64)))
    return float(np.count_nonzero(diffs > 50.0) / len(diffs) * 100.0)


def clean_rr(rr_intervals: Sequence[float]) -> np.ndarray:
    """Drop intervals outside the physiological range."""
    arr = np.asarray(rr_intervals, dtype=np.float64)
    return arr[(arr >= RR_MIN_MS) & (arr <= RR_MAX_MS)]


def reject_ectopic(
    rr_intervals: Sequence[float],
    tolerance: float = ECTOPIC_TOLERANCE,
    neighborhood: int = ECTOPIC_NEIGHBORHOOD,
) -> np.ndarray:
    """Drop intervals that deviate from their local median by more than *tolerance*.

    The median is taken over ``neighborhood`` intervals on either side
    (the interval itself included), so one missed beat cannot shift it.
    """
    rr = np.asarray(rr_intervals, dtype=np.float64)
    if len(rr) < 3:
        return rr.copy()
    h = min(neighborhood, len(rr) - 1)
    padded = np.pad(rr, h, mode="edge")
    local = np.median(np.lib.stride_tricks.sliding_window_view(padded, 2 * h + 1), axis=1)
    return rr[np.abs(rr - local) <= tolerance * local]


# ---------------------------------------------------------------------------
# Frequency domain
# ---------------------------------------------------------------------------


@dataclass
class SpectralHRV:
    """LF / HF band powers (ms^2)."""

    lf_power: float
    hf_power: float

    @property
    def lf_hf_ratio(self) -> float | None:
        if self.hf_power <= 0:
            return None
        return self.lf_power / self.hf_power


def interpolate_rr(
    rr_intervals_ms: Sequence[float],
    fs: float = INTERP_FS,
) -> tuple[np.ndarray, np.ndarray]:
    """Resample an RR series onto a uniform time grid.

    Each interval is placed at the time of the beat that ends it.

    Returns:
        (time_uniform, rr_uniform) arrays, times in seconds, RR in ms.
    """
    rr = np.asarray(rr_intervals_ms, dtype=np.float64)
    if len(rr) < 2:
        return np.zeros(0), np.zeros(0)
    t_beats = np.cumsum(rr) / 1000.0
    t_uniform = np.arange(t_beats[0], t_beats[-1], 1.0 / fs)
    return t_uniform, np.interp(t_uniform, t_beats, rr)


def band_power(freqs: np.ndarray, psd: np.ndarray, band: tuple[float, float]) -> float:
    mask = (freqs >= band[0]) & (freqs < band[1])
    if np.count_nonzero(mask) < 2:
        return 0.0
    return float(trapezoid(psd[mask], freqs[mask]))


def rr_psd(rr_intervals_ms: Sequence[float], fs: float = INTERP_FS) -> tuple[np.ndarray, np.ndarray]:
    """Welch PSD of the detrended, interpolated RR series.

    Returns empty arrays if the series is too short.
    """
    _, rr_uniform = interpolate_rr(rr_intervals_ms, fs)
    if len(rr_uniform) < 16:
        return np.zeros(0), np.zeros(0)
    detrended = sig.detrend(rr_uniform, type="linear")
    nperseg = min(len(detrended), 256)
    return sig.welch(detrended, fs=fs, nperseg=nperseg)


def spectral_hrv(rr_intervals_ms: Sequence[float]) -> SpectralHRV | None:
    """LF and HF power of an RR series, or None if it is shorter than ~30 s."""
    rr = np.asarray(rr_intervals_ms, dtype=np.float64)
    if len(rr) < 3 or np.sum(rr) / 1000.0 < MIN_SPECTRAL_SECONDS:
        return None
    freqs, psd = rr_psd(rr)
    if len(freqs) == 0:
        return None
    return SpectralHRV(
        lf_power=band_power(freqs, psd, LF_BAND),
        hf_power=band_power(freqs, psd, HF_BAND),
    )


# ---------------------------------------------------------------------------
# Interval history across ticks
# ---------------------------------------------------------------------------


class RRHistory:
    """RR intervals accumulated across overlapping analysis windows.

    Successive ticks see mostly the same beats.  A beat is only accepted if
    it lies more than one refractory interval after the last accepted beat,
    so re-detections of an already counted beat are ignored.

    A beat whose interval to the previous beat overlaps a gap (a span with
    no usable signal, e.g. a motion gate) starts a new segment; intervals
    are never measured across segments.
    """

    def __init__(self, max_age: float = 300.0, maxlen: int = 1200) -> None:
        self.max_age = max_age
        self._beats: deque[tuple[float, bool]] = deque(maxlen=maxlen + 1)

    def extend(
        self,
        peak_times: Sequence[float],
        refractory: float,
        gaps: Sequence[tuple[float, float]] = (),
    ) -> int:
        """Add beats from one window; returns how many were new.

        Args:
            peak_times: Beat times of the window, ascending.
            refractory: Minimum spacing (s) between distinct beats.
            gaps: (start, end) spans without usable signal.
        """
        added = 0
        for t in peak_times:
            t = float(t)
            prev = self._beats[-1][0] if self._beats else None
            if prev is not None and t <= prev + refractory:
                continue
            broken = prev is not None and any(start < t and end > prev for start, end in gaps)
            self._beats.append((t, broken))
            added += 1
        if self._beats:
            cutoff = self._beats[-1][0] - self.max_age
            while self._beats and self._beats[0][0] < cutoff:
                self._beats.popleft()
        return added

    def intervals(self) -> np.ndarray:
        """Plausible RR intervals (ms) between consecutive beats of a segment."""
        if len(self._beats) < 2:
            return np.zeros(0)
        times = np.asarray([t for t, _ in self._beats])
        continues = ~np.asarray([broken for _, broken in self._beats])[1:]
        return clean_rr((np.diff(times) * 1000.0)[continues])

    def clear(self) -> None:
        self._beats.clear()

    def __len__(self) -> int:
        return len(self._beats)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


def extract_hrv(
    rr_intervals_ms: Sequence[float],
    timestamp: float,
    min_intervals: int = 30,
    signal_confidence: float = 1.0,
) -> HRVSample | None:
    """Compute an HRV sample from successive RR intervals.

    Below ``min_intervals`` the sample is still produced but its confidence
    is scaled by ``n / min_intervals``.  Implausible and ectopic intervals
    are dropped first and lower the confidence by the share rejected.

    Args:
        rr_intervals_ms: Successive RR intervals in milliseconds.
        timestamp: Timestamp to stamp the sample with.
        min_intervals: Interval count at which confidence is not penalised.
        signal_confidence: Confidence of the underlying pulse signal (0-1).

    Returns:
        HRVSample, or None with fewer than 3 plausible intervals.
    """
    raw = np.asarray(rr_intervals_ms, dtype=np.float64)
    rr = reject_ectopic(clean_rr(raw))
    if len(rr) < 3:
        return None

    rejected_fraction = 1.0 - len(rr) / len(raw)
    count_factor = min(1.0, len(rr) / float(min_intervals))
    confidence = count_factor * (1.0 - rejected_fraction) * float(np.clip(signal_confidence, 0, 1))

    spectral = spectral_hrv(rr)
    ratio = spectral.lf_hf_ratio if spectral is not None else None

    return HRVSample(
        timestamp=timestamp,
        rmssd=round(rmssd(rr), 2),
        sdnn=round(sdnn(rr), 2),
        pnn50=round(pnn50(rr), 1),
        confidence=round(float(np.clip(confidence, 0.0, 1.0)), 3),
        mean_rr=round(float(np.mean(rr)), 1),
        interval_count=int(len(rr)),
        lf_power=round(spectral.lf_power, 2) if spectral is not None else None,
        hf_power=round(spectral.hf_power, 2) if spectral is not None else None,
        lf_hf_ratio=round(ratio, 3) if ratio is not None else None,
    )
