"""Signal conditioning: bandpass filtering, outlier and motion-artifact rejection.

Algorithm (per channel window):
1. Replace non-finite samples by linear interpolation.
2. Re-grid onto evenly spaced timestamps (same sample count) so the
   filter sees a uniform sample rate even when capture timing jitters.
3. Remove the linear trend (baseline wander, auto-exposure drift).
4. Replace local outliers (> k standard deviations from the neighbourhood
   mean) by the neighbourhood mean.
5. Zero-phase Butterworth bandpass built from second-order sections.
6. Gate or attenuate samples recorded while the accelerometer shows motion.

Nothing in here raises on short or malformed input; the worst case is a
flat output, which the detector turns into "no events".
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy import signal as sig

from prana.buffer import WindowSnapshot
from prana.config import ProcessingConfig


@dataclass(frozen=True)
class ConditionedSignal:
    """Filtered signal aligned to one window snapshot.

    Arrays are read-only; a new ConditionedSignal is built per tick.
    """

    channel: str
    timestamps: np.ndarray
    values: np.ndarray
    sample_rate: float
    band: tuple[float, float]
    weights: np.ndarray  # per-sample motion weights in [0, 1]
    raw_mean: float = 0.0  # DC level of the unfiltered window
    raw_std: float = 0.0
    outliers_replaced: int = 0
    raw: np.ndarray = field(default_factory=lambda: np.zeros(0))  # re-gridded, unfiltered

    def __len__(self) -> int:
        return len(self.values)

    @property
    def is_empty(self) -> bool:
        return len(self.values) == 0

    @property
    def motion_level(self) -> float:
        """Mean attenuation applied for motion, 0 (still) to 1 (all gated)."""
        if len(self.weights) == 0:
            return 0.0
        return float(np.clip(1.0 - np.mean(self.weights), 0.0, 1.0))

    @property
    def duration(self) -> float:
        if len(self.timestamps) < 2:
            return 0.0
        return float(self.timestamps[-1] - self.timestamps[0])

    def gated_spans(self) -> list[tuple[float, float]]:
        """(start, end) times of each run of fully gated samples."""
        gated = np.asarray(self.weights) == 0
        if not gated.any():
            return []
        edges = np.diff(np.concatenate(([0], gated.astype(np.int8), [0])))
        starts = np.flatnonzero(edges == 1)
        ends = np.flatnonzero(edges == -1) - 1
        return [(float(self.timestamps[s]), float(self.timestamps[e])) for s, e in zip(starts, ends)]


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr, dtype=np.float64)
    arr.setflags(write=False)
    return arr


def _fill_nonfinite(values: np.ndarray) -> np.ndarray:
    """Linearly interpolate over NaN/inf samples (zeros if nothing is finite)."""
    finite = np.isfinite(values)
    if finite.all():
        return values.astype(np.float64, copy=True)
    if not finite.any():
        return np.zeros_like(values, dtype=np.float64)
    idx = np.arange(len(values))
    return np.interp(idx, idx[finite], values[finite])


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def bandpass(
    values: np.ndarray,
    fs: float,
    low: float,
    high: float,
    order: int = 2,
) -> np.ndarray:
    """Zero-phase Butterworth bandpass (biquad cascade).

    The upper cutoff is clamped below Nyquist.  Inputs too short for the
    filter's padding are returned mean-removed rather than raising.
    """
    x = np.asarray(values, dtype=np.float64)
    n = len(x)
    if n == 0:
        return x.copy()
    centered = x - np.mean(x)
    if fs <= 0 or n < 4:
        return centered

    nyq = fs / 2.0
    high = min(high, 0.95 * nyq)
    if low <= 0 or low >= high:
        return centered

    sos = sig.butter(order, [low, high], btype="band", fs=fs, output="sos")
    # Pad by roughly one period of the low cutoff to tame edge transients.
    padlen = min(n - 1, max(3 * (2 * len(sos) + 1), int(fs / low)))
    return sig.sosfiltfilt(sos, centered, padlen=padlen)


def reject_outliers(
    values: np.ndarray,
    k: float = 3.0,
    neighborhood: int = 5,
) -> tuple[np.ndarray, int]:
    """Replace samples that deviate from their neighbours by more than k sigma.

    Each sample is compared with the mean and standard deviation of the
    ``neighborhood`` samples on either side (itself excluded).

    Returns:
        (cleaned_values, number_of_samples_replaced)
    """
    x = np.asarray(values, dtype=np.float64)
    n = len(x)
    if n < 3 or neighborhood < 1:
        return x.copy(), 0

    h = min(neighborhood, n - 1)
    padded = np.pad(x, h, mode="edge")
    windows = np.lib.stride_tricks.sliding_window_view(padded, 2 * h + 1)
    neighbours = np.delete(windows, h, axis=1)
    local_mean = neighbours.mean(axis=1)
    local_std = neighbours.std(axis=1)

    deviation = np.abs(x - local_mean)
    mask = deviation > k * local_std
    # A perfectly flat neighbourhood with a single step is not an outlier
    # unless it actually deviates.
    mask &= deviation > 0
    out = x.copy()
    out[mask] = local_mean[mask]
    return out, int(np.count_nonzero(mask))


def motion_weights(
    timestamps: np.ndarray,
    motion: WindowSnapshot | None,
    threshold: float,
    mode: str = "gate",
) -> np.ndarray:
    """Per-sample weights derived from concurrent accelerometer activity.

    The motion magnitude (norm of vector samples) is compared with its
    window median; the absolute deviation is interpolated onto
    *timestamps*.  In ``gate`` mode samples above *threshold* get weight
    0, in ``attenuate`` mode they get ``threshold / deviation``.
    """
    n = len(timestamps)
    if n == 0:
        return np.ones(0)
    if motion is None or len(motion) < 2:
        return np.ones(n)

    mvals = np.asarray(motion.values, dtype=np.float64)
    mag = np.linalg.norm(mvals, axis=1) if mvals.ndim == 2 else mvals
    mag = _fill_nonfinite(mag)
    deviation = np.abs(mag - np.median(mag))
    dev_at = np.interp(timestamps, motion.timestamps, deviation)

    if mode == "attenuate":
        with np.errstate(divide="ignore"):
            w = np.where(dev_at > threshold, threshold / dev_at, 1.0)
        return np.clip(w, 0.0, 1.0)
    return np.where(dev_at > threshold, 0.0, 1.0)


def envelope(values: np.ndarray, fs: float, smoothing: float = 0.5) -> np.ndarray:
    """Amplitude envelope: Hilbert magnitude smoothed over *smoothing* seconds."""
    x = np.asarray(values, dtype=np.float64)
    if len(x) < 2:
        return np.abs(x)
    env = np.abs(sig.hilbert(x - np.mean(x)))
    width = max(1, int(round(smoothing * fs)))
    if width <= 1 or width >= len(env):
        return env
    kernel = np.ones(width) / width
    return np.convolve(env, kernel, mode="same")


# ---------------------------------------------------------------------------
# Full conditioning pass
# ---------------------------------------------------------------------------


def _empty(channel: str, band: tuple[float, float]) -> ConditionedSignal:
    empty = _frozen(np.zeros(0))
    return ConditionedSignal(
        channel=channel,
        timestamps=empty,
        values=empty,
        sample_rate=0.0,
        band=band,
        weights=empty,
        raw=empty,
    )


def condition(
    snapshot: WindowSnapshot,
    band: tuple[float, float],
    config: ProcessingConfig,
    motion: WindowSnapshot | None = None,
    column: int = 0,
) -> ConditionedSignal:
    """Run the full conditioning chain on one window snapshot.

    Args:
        snapshot: Window to condition.
        band: (low, high) bandpass cutoffs in Hz.
        config: Outlier/motion settings and the nominal sample rate.
        motion: Concurrent accelerometer window, if any.
        column: Which column of vector samples to condition.

    Returns:
        A ConditionedSignal with the same number of samples as *snapshot*.
    """
    n = len(snapshot)
    if n == 0:
        return _empty(snapshot.channel, band)

    raw = np.asarray(snapshot.values, dtype=np.float64)
    if raw.ndim == 2:
        raw = raw[:, column] if raw.shape[1] > column else np.full(n, np.nan)
    raw = _fill_nonfinite(raw)

    t = np.asarray(snapshot.timestamps, dtype=np.float64)
    fs = snapshot.sample_rate or config.sample_rate
    if n >= 2 and t[-1] > t[0]:
        grid = np.linspace(t[0], t[-1], n)
        raw = np.interp(grid, t, raw)
        t = grid

    raw_mean = float(np.mean(raw))
    raw_std = float(np.std(raw))

    x = sig.detrend(raw, type="linear") if n >= 3 else raw - raw_mean

    replaced = 0
    if config.outlier_rejection:
        x, replaced = reject_outliers(x, config.outlier_k, config.outlier_neighborhood)

    filtered = bandpass(x, fs, band[0], band[1], config.filter_order)

    if config.motion_compensation:
        w = motion_weights(t, motion, config.motion_threshold, config.motion_mode)
    else:
        w = np.ones(n)
    filtered = filtered * w

    return ConditionedSignal(
        channel=snapshot.channel,
        timestamps=_frozen(t),
        values=_frozen(filtered),
        sample_rate=float(fs),
        band=(float(band[0]), float(band[1])),
        weights=_frozen(w),
        raw_mean=raw_mean,
        raw_std=raw_std,
        outliers_replaced=replaced,
        raw=_frozen(raw),
    )
