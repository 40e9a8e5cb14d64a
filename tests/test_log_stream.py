"""Tests for azext_mate.deploy.log_stream: ordered, time-stamped entries."""

from datetime import datetime, timedelta, timezone

import pytest

from azext_mate.deploy.log_stream import LogStream
from azext_mate.deploy.models import LogKind


class _SteppingClock:
    """Clock that returns a scripted sequence of instants."""

    def __init__(self, *offsets):
        base = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._times = [base + timedelta(seconds=o) for o in offsets]

    def __call__(self):
        return self._times.pop(0)


class TestLogStream:

    def test_append_preserves_order(self):
        stream = LogStream()
        stream.append("one")
        stream.append("two", LogKind.COMMAND)
        stream.append("three", LogKind.SUCCESS)

        assert [e.message for e in stream] == ["one", "two", "three"]
        assert [e.kind for e in stream] == [LogKind.INFO, LogKind.COMMAND, LogKind.SUCCESS]
        assert len(stream) == 3

    def test_timestamps_are_iso_utc_milliseconds(self):
        stream = LogStream(clock=_SteppingClock(0.5))
        entry = stream.append("x")
        assert entry.timestamp == "2026-01-01T12:00:00.500+00:00"

    def test_backwards_clock_is_clamped(self):
        stream = LogStream(clock=_SteppingClock(10, 5, 12))
        first, second, third = (stream.append(m) for m in ("a", "b", "c"))

        assert second.timestamp == first.timestamp
        assert first.timestamp <= second.timestamp <= third.timestamp

    def test_source_and_category(self):
        entry = LogStream().append("boom", LogKind.ERROR, source="engine", category="UserCancelled")
        assert entry.source == "engine"
        assert entry.category == "UserCancelled"

    def test_subscribe_receives_entries_in_order(self):
        stream = LogStream()
        seen = []
        with stream.subscribe(lambda e: seen.append(e.message)):
            stream.append("a")
            stream.append("b")
        stream.append("after")

        assert seen == ["a", "b"]

    def test_subscribe_detaches_on_error(self):
        stream = LogStream()
        seen = []
        with pytest.raises(RuntimeError):
            with stream.subscribe(seen.append):
                raise RuntimeError("renderer crashed")
        stream.append("later")
        assert seen == []

    def test_since_and_last(self):
        stream = LogStream()
        assert stream.last is None
        for m in ("a", "b", "c"):
            stream.append(m)

        assert [e.message for e in stream.since(1)] == ["b", "c"]
        assert stream.since(3) == []
        assert stream.last.message == "c"

    def test_entries_is_a_snapshot(self):
        stream = LogStream()
        stream.append("a")
        snapshot = stream.entries()
        stream.append("b")
        assert len(snapshot) == 1
