"""Fixed-duration ring buffers, one per input channel.

A :class:`SampleWindow` has exactly one writer (the channel's acquisition
path) and one reader (the processing tick).  Both take the same short lock:
the writer for one ``deque.append``, the reader for one copy into numpy
arrays.  The reader therefore never sees a half-written sample and the
writer never waits on any processing.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np


@dataclass(frozen=True)
class WindowSnapshot:
    """Immutable ordered view of a window at one instant.

    ``values`` is 1-D for scalar channels and 2-D ``(n, k)`` for vector
    samples.  Both arrays are read-only.
    """

    channel: str
    timestamps: np.ndarray
    values: np.ndarray
    last_push: float | None  # clock time of the most recent accepted push

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def is_empty(self) -> bool:
        return len(self.timestamps) == 0

    @property
    def span(self) -> float:
        """Seconds between the first and last sample."""
        if len(self.timestamps) < 2:
            return 0.0
        return float(self.timestamps[-1] - self.timestamps[0])

    @property
    def sample_rate(self) -> float | None:
        """Mean sample rate estimated from the timestamps, or None."""
        if len(self.timestamps) < 2 or self.span <= 0:
            return None
        return (len(self.timestamps) - 1) / self.span


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


class SampleWindow:
    """Duration-bounded FIFO of timestamped samples for one channel.

    Args:
        channel: Channel name, carried into snapshots.
        duration: Window length in seconds.  Samples older than
            ``newest - duration`` are evicted on push.
        capacity: Hard cap on the number of samples held.
        clock: Monotonic clock used to stamp pushes (for stall detection).
    """

    def __init__(
        self,
        channel: str,
        duration: float = 10.0,
        capacity: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.duration = duration
        self.capacity = capacity
        self._clock = clock
        self._times: deque[float] = deque(maxlen=capacity)
        self._values: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._last_push: float | None = None
        self.rejected = 0  # non-monotonic or non-finite samples dropped

    @classmethod
    def for_rate(
        cls,
        channel: str,
        duration: float,
        sample_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SampleWindow":
        """Size the capacity at twice the nominal sample count for *duration*."""
        capacity = max(16, int(math.ceil(duration * sample_rate * 2)))
        return cls(channel, duration, capacity, clock)

    def push(self, timestamp: float, value: float | Sequence[float]) -> bool:
        """Append one sample.  Returns False if it was rejected.

        Samples whose timestamp does not strictly increase, or that contain
        non-finite numbers, are dropped.
        """
        if not math.isfinite(timestamp):
            self.rejected += 1
            return False
        if np.ndim(value) == 0:
            sample: float | tuple[float, ...] = float(value)  # type: ignore[arg-type]
            if not math.isfinite(sample):
                self.rejected += 1
                return False
        else:
            sample = tuple(float(v) for v in value)  # type: ignore[union-attr]
            if not all(math.isfinite(v) for v in sample):
                self.rejected += 1
                return False

        with self._lock:
            if self._times and timestamp <= self._times[-1]:
                self.rejected += 1
                return False
            self._times.append(timestamp)
            self._values.append(sample)
            cutoff = timestamp - self.duration
            while self._times and self._times[0] < cutoff:
                self._times.popleft()
                self._values.popleft()
            self._last_push = self._clock()
        return True

    def snapshot(self) -> WindowSnapshot:
        """Copy the current window into an immutable snapshot."""
        with self._lock:
            times = list(self._times)
            values = list(self._values)
            last_push = self._last_push

        ts = np.asarray(times, dtype=np.float64)
        if values and isinstance(values[0], tuple):
            width = len(values[0])
            vals = np.asarray([v if len(v) == width else (np.nan,) * width for v in values],
                              dtype=np.float64)
        else:
            vals = np.asarray(values, dtype=np.float64)
        return WindowSnapshot(
            channel=self.channel,
            timestamps=_readonly(ts),
            values=_readonly(vals),
            last_push=last_push,
        )

    def clear(self) -> None:
        """Discard all samples (the rejection counter is kept)."""
        with self._lock:
            self._times.clear()
            self._values.clear()
            self._last_push = None

    @property
    def last_push(self) -> float | None:
        return self._last_push

    def __len__(self) -> int:
        return len(self._times)

    def __repr__(self) -> str:
        return (
            f"SampleWindow({self.channel}, n={len(self)}/{self.capacity}, "
            f"duration={self.duration:g}s)"
        )
