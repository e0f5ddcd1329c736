"""Record sample streams to JSONL and replay them through a session offline.

Recording format: one JSON object per line,

    {"channel": "pulse", "t": 12.0333, "v": 128.41}
    {"channel": "motion", "t": 12.04, "v": [0.01, -0.02, 0.99]}

``t`` is seconds (any origin), ``v`` a number or a list for vector samples.
Replay runs on a :class:`~prana.session.ManualClock`, so a recording is
processed as fast as the CPU allows and gives the same result every time.
"""

from __future__ import annotations

import json
import logging
import math
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from prana.config import Baseline, ProcessingConfig
from prana.models import Channel, SessionAggregate
from prana.session import ManualClock, MonitoringSession
from prana.sources import Sample, SignalSource

logger = logging.getLogger(__name__)

Record = tuple[str, float, Any]


# ---------------------------------------------------------------------------
# JSONL recordings
# ---------------------------------------------------------------------------


def _jsonable(value: Any) -> Any:
    if isinstance(value, (tuple, list)):
        return [round(float(v), 6) for v in value]
    return round(float(value), 6)


def write_recording(path: str | Path, records: Iterable[Record]) -> int:
    """Write ``(channel, t, value)`` records as JSONL.  Returns the line count."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w") as f:
        for channel, t, value in records:
            line = {"channel": channel, "t": round(float(t), 6), "v": _jsonable(value)}
            f.write(json.dumps(line) + "\n")
            count += 1
    return count


def _parse(entry: Any) -> Record | None:
    if not isinstance(entry, dict):
        return None
    channel, t, v = entry.get("channel"), entry.get("t"), entry.get("v")
    if not isinstance(channel, str) or not isinstance(t, (int, float)) or not math.isfinite(t):
        return None
    if isinstance(v, list):
        if not v or not all(isinstance(x, (int, float)) for x in v):
            return None
        return channel, float(t), tuple(float(x) for x in v)
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return channel, float(t), float(v)
    return None


def read_recording(path: str | Path) -> list[Record]:
    """Read a JSONL recording, skipping blank and malformed lines."""
    records: list[Record] = []
    skipped = 0
    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("line %d: invalid JSON, skipping", line_num)
                skipped += 1
                continue
            record = _parse(entry)
            if record is None:
                logger.debug("line %d: not a sample record, skipping", line_num)
                skipped += 1
                continue
            records.append(record)
    if skipped:
        logger.warning("Skipped %d malformed line(s) in %s", skipped, path)
    return records


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class ReplaySource(SignalSource):
    """Plays back one channel of a recording.

    Timestamps are shifted by *origin* so the recording starts at 0.
    """

    def __init__(self, channel: str, samples: Sequence[Sample], origin: float = 0.0) -> None:
        self.channel = channel
        self._samples = sorted(((t - origin, v) for t, v in samples), key=lambda s: s[0])
        self._pos = 0

    @property
    def end(self) -> float:
        return self._samples[-1][0] if self._samples else 0.0

    def open(self) -> None:
        self._pos = 0

    def read(self, until: float) -> list[Sample]:
        start = self._pos
        while self._pos < len(self._samples) and self._samples[self._pos][0] <= until:
            self._pos += 1
        return self._samples[start:self._pos]

    def __len__(self) -> int:
        return len(self._samples)


def sources_from_records(records: Sequence[Record]) -> list[ReplaySource]:
    """One ReplaySource per channel, sharing the recording's earliest timestamp as origin."""
    if not records:
        return []
    origin = min(t for _, t, _ in records)
    known = {c.value for c in Channel}
    by_channel: dict[str, list[Sample]] = defaultdict(list)
    for channel, t, v in records:
        if channel in known:
            by_channel[channel].append((t, v))
    for channel in sorted({c for c, _, _ in records} - known):
        logger.warning("Ignoring unknown channel %r", channel)
    return [ReplaySource(c, samples, origin) for c, samples in sorted(by_channel.items())]


def record_sources(sources: Sequence[SignalSource], duration: float) -> Iterator[Record]:
    """Drain *duration* seconds from each source as recording records."""
    for source in sources:
        source.open()
        try:
            for t, v in source.read(duration):
                yield source.channel, t, v
        finally:
            source.close()


# ---------------------------------------------------------------------------
# Offline driving
# ---------------------------------------------------------------------------


def run_offline(session: MonitoringSession, clock: ManualClock, duration: float) -> list[Any]:
    """Tick *session* on *clock* until *duration* seconds have elapsed.

    The session must have been created with *clock*.  It is started if
    idle and left running.

    Returns:
        All events emitted during the run, in order.
    """
    events: list[Any] = []
    unsubscribe = session.subscribe(events.append)
    try:
        session.start()
        end = clock.now + duration
        interval = session.config.tick_interval
        while clock.now < end - 1e-9:
            clock.advance(interval)
            session.tick()
    finally:
        unsubscribe()
    return events


def replay_file(
    path: str | Path,
    config: ProcessingConfig | None = None,
    baseline: Baseline | None = None,
) -> tuple[list[Any], SessionAggregate | None]:
    """Replay a JSONL recording through a fresh session.

    Args:
        path: Recording to replay.
        config: Processing configuration (defaults when omitted).
        baseline: Stress baseline (population defaults when omitted).

    Returns:
        (events, aggregate): every emitted Measurement / QualityAssessment,
        and the session's final aggregate (None for an empty recording).
    """
    path = Path(path)
    records = read_recording(path)
    sources = sources_from_records(records)
    if not sources:
        logger.warning("%s contains no samples", path)
        return [], None

    clock = ManualClock()
    session = MonitoringSession(
        config=config, baseline=baseline, sources=sources, clock=clock, session_id=path.stem
    )
    duration = max(s.end for s in sources)
    logger.info("Replaying %s: %d samples, %.1f s", path.name, len(records), duration)
    events = run_offline(session, clock, duration)
    aggregate = session.stop()
    return events, aggregate
