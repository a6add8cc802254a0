"""Tests for storyloop.lib.activity module."""

import json

from storyloop.lib.activity import ActivityLog, Actor, load_activity


class TestActivityLog:
    """Tests for ActivityLog."""

    def test_record_appends_jsonl(self, tmp_path):
        log = ActivityLog(tmp_path / "activity", iteration=3)
        log.record(Actor.TOOL, "event", "completion", state="streaming", payload="Done")
        log.transition("streaming", "evaluating", "finish_stream", reason="eof")

        lines = log.path.read_text().splitlines()
        assert log.path.name == "iteration-000003.jsonl"
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["actor"] == "tool"
        assert first["iteration"] == 3
        assert first["metadata"] == {"payload": "Done"}
        second = json.loads(lines[1])
        assert second["kind"] == "transition"
        assert second["message"] == "streaming -> evaluating (finish_stream)"
        assert second["state"] == "evaluating"

    def test_in_memory_only(self):
        log = ActivityLog(None, iteration=1)
        entry = log.record(Actor.SYSTEM, "note", "hello")
        assert log.path is None
        assert log.entries == [entry]

    def test_write_failure_is_logged_not_raised(self, tmp_path, caplog):
        blocker = tmp_path / "activity"
        blocker.write_text("a file where the directory should be")
        log = ActivityLog(blocker, iteration=1)
        log.record(Actor.OPERATOR, "continue", "operator continuation")
        assert "Could not write activity entry" in caplog.text
        assert len(log.entries) == 1


class TestLoadActivity:
    """Tests for load_activity function."""

    def test_missing(self, tmp_path):
        assert load_activity(tmp_path, 1) == []

    def test_round_trip(self, tmp_path):
        log = ActivityLog(tmp_path, iteration=2)
        log.record(Actor.GATE, "gate", "tests: pass", passed=True)
        entries = load_activity(tmp_path, 2)
        assert len(entries) == 1
        assert entries[0].metadata == {"passed": True}

    def test_skips_corrupted_lines(self, tmp_path, caplog):
        log = ActivityLog(tmp_path, iteration=1)
        log.record(Actor.SYSTEM, "note", "first")
        with open(log.path, "a") as f:
            f.write("{broken\n\n")
        log.record(Actor.SYSTEM, "note", "second")

        entries = load_activity(tmp_path, 1)
        assert [e.message for e in entries] == ["first", "second"]
        assert "Skipping corrupted activity line 2" in caplog.text
