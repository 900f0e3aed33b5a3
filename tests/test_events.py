"""Tests for the release event log."""

import json

import pytest

from relctl.release.events import EventLog
from relctl.release.models import EventKind, ReleaseStatus

S = ReleaseStatus


@pytest.fixture
def log(tmp_path) -> EventLog:
    return EventLog(tmp_path / "state")


class TestEventLog:
    """Tests for EventLog."""

    def test_record_transition(self, log):
        event = log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged", {"location": "x"})

        assert event.sequence == 1
        events = log.events("r1")
        assert len(events) == 1
        assert events[0].from_state == S.PENDING
        assert events[0].to_state == S.STAGED
        assert events[0].details == {"location": "x"}

    def test_entries_are_json_lines(self, log):
        log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged")
        log.record_marker("r1", "web", "activation_started")

        lines = log.path.read_text().splitlines()
        assert [json.loads(line)["kind"] for line in lines] == ["transition", "marker"]

    def test_filters(self, log):
        log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged")
        log.record_transition("r2", "api", S.PENDING, S.STAGED, "staged")
        log.record_marker("r1", "web", "activation_started")

        assert len(log.events(release_id="r1")) == 2
        assert len(log.events(target_id="api")) == 1
        assert len(log.transitions("r1")) == 1
        assert log.markers("r1") == ["activation_started"]

    def test_sequence_survives_reopen(self, log, tmp_path):
        log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged")
        log.record_transition("r1", "web", S.STAGED, S.HEALTH_CHECKING, "activated")

        reopened = EventLog(tmp_path / "state")
        event = reopened.record_transition("r1", "web", S.HEALTH_CHECKING, S.PROMOTED, "healthy")
        assert event.sequence == 3

    def test_replay_returns_latest_transition(self, log):
        log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged")
        log.record_transition("r1", "web", S.STAGED, S.HEALTH_CHECKING, "activated")
        log.record_marker("r1", "web", "rollback_started")
        log.record_transition("r2", "api", S.PENDING, S.FAILED, "rejected")

        latest = log.replay()

        assert latest["r1"].to_state == S.HEALTH_CHECKING
        assert latest["r2"].to_state == S.FAILED

    def test_torn_last_line_skipped(self, log):
        log.record_transition("r1", "web", S.PENDING, S.STAGED, "staged")
        with open(log.path, "a") as f:
            f.write('{"release_id": "r1", "kind": "trans')

        events = log.events()
        assert len(events) == 1
        assert events[0].kind == EventKind.TRANSITION

    def test_stats(self, log):
        log.record_transition("r1", "web", S.HEALTH_CHECKING, S.PROMOTED, "healthy")
        log.record_transition("r2", "web", S.ROLLING_BACK, S.ROLLED_BACK, "rolled back")
        log.record_transition("r3", "api", S.PENDING, S.FAILED, "rejected")
        log.record_transition("r4", "api", S.PENDING, S.STAGED, "staged")

        stats = log.get_stats(days=1)

        assert stats["promoted"] == 1
        assert stats["rolled_back"] == 1
        assert stats["failed"] == 1
        assert stats["targets"]["web"] == {"promoted": 1, "rolled_back": 1, "failed": 0}
