"""Monitoring session: buffers, tick loop and lifecycle for one user session.

State machine::

    IDLE --start()--> MONITORING --stop()--> STOPPED

A session owns everything it processes: one :class:`SampleWindow` per
channel, the pipeline's cross-tick state and the aggregator.  Nothing is
shared between sessions and nothing outlives :meth:`MonitoringSession.stop`.

Samples arrive from capture collaborators through :meth:`push` (any
thread) or are pulled from attached :class:`SignalSource` objects at the
start of every tick.  Processing runs on a fixed cadence, either driven by
:meth:`run` on an asyncio loop or by calling :meth:`tick` directly.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from prana.analytics.aggregator import SessionAggregator
from prana.buffer import SampleWindow
from prana.config import Baseline, ProcessingConfig
from prana.errors import AcquisitionError, ConfigValidationError, SessionStateError
from prana.models import Channel, SessionAggregate
from prana.pipeline import PipelineState, TickResult, process_window
from prana.sources import SignalSource

logger = logging.getLogger(__name__)

# Upper bound on native rates, used to size the audio / motion buffers
# (the pulse buffer is sized from ProcessingConfig.sample_rate)
MAX_NATIVE_RATE = {Channel.AUDIO.value: 100.0, Channel.MOTION.value: 200.0}

Listener = Callable[[Any], None]


class SessionState(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    STOPPED = "stopped"


class ManualClock:
    """A clock that only moves when told to.  Handy for tests and replay."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def _channel_name(channel: str | Channel) -> str:
    name = channel.value if isinstance(channel, Channel) else str(channel)
    if name not in {c.value for c in Channel}:
        raise ConfigValidationError("channels", f"unknown channel {name!r}")
    return name


class MonitoringSession:
    """One monitoring session.

    Args:
        config: Processing configuration (validated here).
        channels: Channels fed through :meth:`push`.  Channels of attached
            sources are added automatically.
        baseline: Stress baseline; population defaults when omitted.
        sources: Signal sources pulled on every tick.
        clock: Monotonic clock for tick times and stall detection.
        session_id: Identifier carried into the final aggregate.
    """

    def __init__(
        self,
        config: ProcessingConfig | None = None,
        channels: Iterable[str | Channel] = (),
        baseline: Baseline | None = None,
        sources: Sequence[SignalSource] = (),
        clock: Callable[[], float] = time.monotonic,
        session_id: str | None = None,
    ) -> None:
        self.config = (config or ProcessingConfig()).validate()
        self.baseline = baseline or Baseline()
        self.baseline.validate()
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._clock = clock

        self._state = SessionState.IDLE
        self._channels: set[str] = {_channel_name(c) for c in channels}
        self._sources: dict[str, SignalSource] = {}
        for source in sources:
            self.add_source(source)

        self._state_lock = threading.Lock()
        self._tick_lock = threading.RLock()
        self._windows: dict[str, SampleWindow] = {}
        self._pending_config: ProcessingConfig | None = None
        self._pipeline = PipelineState()
        self._aggregator = SessionAggregator(self.session_id)
        self._listeners: list[Listener] = []
        self._started_at: float | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None

    # -- Properties ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def channels(self) -> list[str]:
        """Channels that will be (or are being) monitored."""
        if self._state is SessionState.MONITORING:
            return sorted(self._windows)
        return sorted(self._channels | set(self._sources))

    @property
    def anomaly_count(self) -> int:
        return self._pipeline.anomaly_count

    def window(self, channel: str) -> SampleWindow | None:
        return self._windows.get(channel)

    def __repr__(self) -> str:
        return f"MonitoringSession({self.session_id}, {self._state.value}, channels={self.channels})"

    # -- Setup --------------------------------------------------------------

    def add_source(self, source: SignalSource) -> None:
        if self._state is not SessionState.IDLE:
            raise SessionStateError("sources can only be attached before start()")
        self._sources[_channel_name(source.channel)] = source

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback for every emitted event; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update_config(self, **changes: Any) -> ProcessingConfig:
        """Validate *changes* now; they take effect from the next tick.

        Raises:
            ConfigValidationError: if the updated config is invalid.
            SessionStateError: if the session has stopped.
        """
        if self._state is SessionState.STOPPED:
            raise SessionStateError("session is stopped")
        base = self._pending_config or self.config
        updated = base.updated(**changes)
        if self._state is SessionState.IDLE:
            self.config = updated
        else:
            self._pending_config = updated
        logger.info("Config updated: %s", ", ".join(sorted(changes)))
        return updated

    # -- Lifecycle ----------------------------------------------------------

    def _window_for(self, channel: str) -> SampleWindow:
        if channel == Channel.AUDIO.value:
            duration = self.config.breath_window_duration
        else:
            duration = self.config.window_duration
        rate = MAX_NATIVE_RATE.get(channel, self.config.sample_rate)
        return SampleWindow.for_rate(channel, duration, rate, clock=self._clock)

    def start(self) -> list[AcquisitionError]:
        """Open sources and begin monitoring.

        A source that fails to open removes only its own channel.

        Returns:
            The AcquisitionErrors of channels that were dropped.

        Raises:
            AcquisitionError: if no channel is configured or none could be opened.
            SessionStateError: if the session has already stopped.
        """
        with self._state_lock:
            if self._state is SessionState.STOPPED:
                raise SessionStateError("a stopped session cannot be restarted")
            if self._state is SessionState.MONITORING:
                return []

            channels = self._channels | set(self._sources)
            if not channels:
                raise AcquisitionError("*", "no channels configured")

            errors: list[AcquisitionError] = []
            for channel, source in list(self._sources.items()):
                try:
                    source.open()
                except AcquisitionError as e:
                    errors.append(e)
                except OSError as e:
                    errors.append(AcquisitionError(channel, str(e)))
                else:
                    continue
                logger.error("Dropping channel %r: %s", channel, errors[-1].reason)
                del self._sources[channel]
                channels.discard(channel)

            if not channels:
                raise errors[0]

            self._windows = {c: self._window_for(c) for c in sorted(channels)}
            self._started_at = self._clock()
            self._aggregator.mark(self._started_at)
            self._state = SessionState.MONITORING

        logger.info("Session %s monitoring %s", self.session_id, ", ".join(sorted(channels)))
        return errors

    def push(self, channel: str, timestamp: float, value: Any) -> bool:
        """Deliver one sample from a capture collaborator.

        Safe to call from any thread.  Ignored (returns False) unless the
        session is monitoring and *channel* is configured.
        """
        if self._state is not SessionState.MONITORING:
            return False
        window = self._windows.get(channel)
        if window is None:
            return False
        return window.push(timestamp, value)

    def stop(self) -> SessionAggregate | None:
        """Stop monitoring and return the final aggregate.

        Idempotent: any call after the first returns None.  Once this
        returns no further tick runs.
        """
        with self._state_lock:
            if self._state is SessionState.STOPPED:
                return None
            self._state = SessionState.STOPPED

        self._wake_loop()
        for channel, source in self._sources.items():
            try:
                source.close()
            except Exception:
                logger.exception("Closing source for %r failed", channel)

        with self._tick_lock:
            if self._started_at is not None:
                self._aggregator.mark(self._clock())
            rr = self._pipeline.rr_history.intervals()
            for window in self._windows.values():
                window.clear()
            self._windows = {}
            self._pipeline.clear()

        aggregate = self._aggregator.finalize(rr)
        logger.info("Session %s stopped: %r", self.session_id, aggregate)
        self._emit(aggregate)
        return aggregate

    def __enter__(self) -> "MonitoringSession":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    # -- Processing ---------------------------------------------------------

    def _pull_sources(self, elapsed: float) -> None:
        for channel, source in self._sources.items():
            window = self._windows.get(channel)
            if window is None:
                continue
            try:
                samples = source.read(elapsed)
            except Exception:
                logger.exception("Reading source for %r failed", channel)
                continue
            for t, v in samples:
                window.push(t, v)

    def _stalled(self, now: float) -> set[str]:
        timeout = self.config.stall_timeout
        stalled = set()
        for channel, window in self._windows.items():
            last = window.last_push
            reference = last if last is not None else self._started_at
            if reference is not None and now - reference > timeout:
                stalled.add(channel)
        return stalled

    def tick(self, now: float | None = None) -> TickResult | None:
        """Run one processing pass.

        Returns:
            The tick's result, or None if the session is not monitoring or
            the tick failed (the failure is logged and the cycle skipped).
        """
        with self._tick_lock:
            if self._state is not SessionState.MONITORING:
                return None
            now = self._clock() if now is None else now

            if self._pending_config is not None:
                self.config, self._pending_config = self._pending_config, None
                for channel, window in self._windows.items():
                    window.duration = self._window_for(channel).duration

            try:
                self._pull_sources(now - (self._started_at or 0.0))
                snapshots = {c: w.snapshot() for c, w in self._windows.items()}
                stalled = self._stalled(now)
                for channel in sorted(stalled):
                    logger.debug("Channel %r stalled", channel)
                result = process_window(
                    snapshots, self.config, self._pipeline, self.baseline, stalled, now
                )
            except Exception:
                logger.exception("Tick failed; skipping this cycle")
                return None

            self._aggregator.record_tick(now, anomalies=len(result.anomalies))
            for event in result.events:
                self._aggregator.add(event)

            # stop() waits on the tick lock, so its aggregate follows these events
            for event in result.events:
                if self._state is not SessionState.MONITORING:
                    break
                self._emit(event)
        return result

    def _emit(self, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, type(event).__name__)

    def _wake_loop(self) -> None:
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            # Loop already shut down; run() has exited.
            pass

    async def run(self, duration: float | None = None, max_ticks: int | None = None) -> SessionAggregate | None:
        """Tick on a fixed cadence until stopped.

        Starts the session if it is idle.  With *duration* or *max_ticks*
        the session is stopped after that many seconds / ticks and the
        final aggregate is returned; otherwise the loop runs until
        :meth:`stop` is called (from any thread) and returns None.
        """
        if self._state is SessionState.IDLE:
            self.start()
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._wake = asyncio.Event()

        begin = loop.time()
        next_tick = begin
        ticks = 0
        try:
            while self._state is SessionState.MONITORING:
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    return self.stop()
                if duration is not None and loop.time() - begin >= duration:
                    return self.stop()
                next_tick += self.config.tick_interval
                delay = max(0.0, next_tick - loop.time())
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._loop = None
            self._wake = None
        return None
