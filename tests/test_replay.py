"""Tests for prana.replay -- JSONL recordings and offline replay."""

from __future__ import annotations

import json
import logging

import pytest

from prana.models import BreathingSample, HeartRateSample
from prana.replay import (
    ReplaySource,
    read_recording,
    record_sources,
    replay_file,
    run_offline,
    sources_from_records,
    write_recording,
)
from prana.session import ManualClock, MonitoringSession
from prana.sources import SyntheticBreathSource, SyntheticMotionSource, SyntheticPulseSource


def _sources():
    return [
        SyntheticPulseSource(heart_rate_bpm=72.0, noise=0.2, seed=3),
        SyntheticBreathSource(breathing_rate_bpm=15.0, seed=4),
    ]


def write_jsonl(path, entries):
    with open(path, "w") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")


# ===================================================================
# Recording format
# ===================================================================


class TestRecordingFormat:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "rec.jsonl"
        records = [("pulse", 0.0, 128.5), ("motion", 0.02, (0.0, 0.1, 0.99))]
        assert write_recording(path, records) == 2
        assert read_recording(path) == records

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "rec.jsonl"
        write_recording(path, [("pulse", 0.0, 1.0)])
        assert path.exists()

    def test_malformed_lines_skipped(self, tmp_path, caplog):
        path = tmp_path / "rec.jsonl"
        path.write_text(
            "\n".join(
                [
                    json.dumps({"channel": "pulse", "t": 0.0, "v": 128.0}),
                    "not json",
                    json.dumps({"channel": "pulse", "t": "later", "v": 1.0}),
                    json.dumps({"channel": "pulse", "t": 0.1}),
                    json.dumps([1, 2, 3]),
                    json.dumps({"channel": "motion", "t": 0.1, "v": []}),
                    "",
                    json.dumps({"channel": "pulse", "t": 0.2, "v": 129.0}),
                ]
            )
        )
        with caplog.at_level(logging.WARNING, logger="prana.replay"):
            records = read_recording(path)
        assert records == [("pulse", 0.0, 128.0), ("pulse", 0.2, 129.0)]
        assert "Skipped 5 malformed line(s)" in caplog.text

    def test_record_sources_drains_each_channel(self):
        records = list(record_sources(_sources(), 2.0))
        pulse = [r for r in records if r[0] == "pulse"]
        audio = [r for r in records if r[0] == "audio"]
        assert len(pulse) == 61
        assert len(audio) == 41


# ===================================================================
# ReplaySource
# ===================================================================


class TestReplaySource:
    def test_origin_shift_and_incremental_reads(self):
        source = ReplaySource("pulse", [(100.0, 1.0), (100.5, 2.0), (101.0, 3.0)], origin=100.0)
        source.open()
        assert source.read(0.5) == [(0.0, 1.0), (0.5, 2.0)]
        assert source.read(0.5) == []
        assert source.read(2.0) == [(1.0, 3.0)]
        assert source.end == 1.0
        assert len(source) == 3

    def test_open_rewinds(self):
        source = ReplaySource("pulse", [(0.0, 1.0)])
        source.open()
        source.read(1.0)
        source.open()
        assert source.read(1.0) == [(0.0, 1.0)]

    def test_unordered_input_sorted(self):
        source = ReplaySource("pulse", [(1.0, "b"), (0.0, "a")])
        assert source.read(5.0) == [(0.0, "a"), (1.0, "b")]

    def test_sources_share_origin(self, caplog):
        records = [("pulse", 10.0, 1.0), ("audio", 12.0, 0.5), ("ecg", 11.0, 0.0)]
        with caplog.at_level(logging.WARNING, logger="prana.replay"):
            sources = sources_from_records(records)
        assert [s.channel for s in sources] == ["audio", "pulse"]
        assert sources[0].read(5.0) == [(2.0, 0.5)]
        assert "ecg" in caplog.text

    def test_no_records(self):
        assert sources_from_records([]) == []


# ===================================================================
# replay_file
# ===================================================================


class TestReplayFile:
    def test_replay_reproduces_heart_rate(self, tmp_path):
        path = tmp_path / "sim.jsonl"
        write_recording(path, record_sources(_sources(), 30.0))
        events, aggregate = replay_file(path)

        hrs = [e for e in events if isinstance(e, HeartRateSample)]
        breaths = [e for e in events if isinstance(e, BreathingSample)]
        assert hrs[-1].bpm == pytest.approx(72.0, abs=3.0)
        assert breaths[-1].bpm == pytest.approx(15.0, abs=1.0)
        assert aggregate.session_id == "sim"
        assert aggregate.tick_count == 30

    def test_replay_matches_direct_run(self, tmp_path):
        path = tmp_path / "sim.jsonl"
        write_recording(path, record_sources(_sources(), 20.0))
        replayed, _ = replay_file(path)

        clock = ManualClock()
        session = MonitoringSession(sources=_sources(), clock=clock)
        direct = run_offline(session, clock, 20.0)
        session.stop()

        hr_replayed = [e.bpm for e in replayed if isinstance(e, HeartRateSample)]
        hr_direct = [e.bpm for e in direct if isinstance(e, HeartRateSample)]
        assert len(hr_replayed) == len(hr_direct)
        assert hr_replayed == pytest.approx(hr_direct, abs=0.2)

    def test_replay_with_motion(self, tmp_path):
        path = tmp_path / "moving.jsonl"
        sources = _sources() + [SyntheticMotionSource(bursts=[(5.0, 8.0)], burst_g=1.0)]
        write_recording(path, record_sources(sources, 15.0))
        events, aggregate = replay_file(path)
        assert aggregate is not None
        assert any(getattr(e, "motion_level", 0.0) > 0 for e in events)

    def test_empty_recording(self, tmp_path):
        path = tmp_path / "empty.jsonl"
        path.write_text("")
        assert replay_file(path) == ([], None)

    def test_only_unknown_channels(self, tmp_path):
        path = tmp_path / "ecg.jsonl"
        write_jsonl(path, [{"channel": "ecg", "t": 0.0, "v": 1.0}])
        assert replay_file(path) == ([], None)
