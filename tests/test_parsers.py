"""Tests for storyloop.agents parsers."""

import json
import logging

import pytest

from storyloop.agents import (
    ClaudeParser,
    CursorParser,
    Event,
    EventKind,
    TextParser,
    get_parser_class,
)
from storyloop.agents.base import resolve_batch


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def kinds(events):
    return [e.kind for e in events]


def feed_all(parser, lines):
    events = []
    for line in lines:
        events.extend(parser.feed(line))
    events.extend(parser.finish())
    return events


class TestResolveBatch:
    """Tests for resolve_batch function."""

    def test_error_beats_completion(self):
        batch = [
            Event(EventKind.COMPLETION, "done", 1.0),
            Event(EventKind.ERROR, "boom", 1.0),
        ]
        assert kinds(resolve_batch(batch)) == [EventKind.ERROR]

    def test_completion_kept_without_error(self):
        batch = [Event(EventKind.PROGRESS, "...", 1.0), Event(EventKind.COMPLETION, "done", 1.0)]
        assert resolve_batch(batch) == batch


class TestClaudeParser:
    """Tests for ClaudeParser markers."""

    @pytest.mark.parametrize("line,expected", [
        ("❌ tests failed", EventKind.ERROR),
        ("Error: module not found", EventKind.ERROR),
        ("Failed: lint", EventKind.ERROR),
        ("<promise>COMPLETE</promise>", EventKind.COMPLETION),
        ("✅ all good", EventKind.COMPLETION),
        ("Story Complete", EventKind.COMPLETION),
        ("Done", EventKind.COMPLETION),
        ("thinking about the schema", EventKind.PROGRESS),
        ("Processing files", EventKind.PROGRESS),
        ("Reading the story...", EventKind.PROGRESS),
    ])
    def test_single_line_markers(self, line, expected):
        parser = ClaudeParser()
        assert kinds(feed_all(parser, [line])) == [expected]

    def test_plain_text_yields_nothing(self):
        parser = ClaudeParser()
        assert feed_all(parser, ["I will now update the model.", ""]) == []

    def test_error_and_completion_on_one_line(self):
        """An error marker wins over a completion marker in the same line."""
        parser = ClaudeParser()
        events = feed_all(parser, ["❌ Done, but the build failed"])
        assert kinds(events) == [EventKind.ERROR]
        assert parser.errored
        assert not parser.completed

    def test_tool_call_block_is_one_event(self):
        parser = ClaudeParser()
        events = feed_all(parser, [
            "🔧 Tool: edit_file",
            "  path: app.py",
            "  lines: 10-20",
            "Now running the tests",
        ])
        assert kinds(events) == [EventKind.TOOL_CALL]
        assert events[0].payload == "🔧 Tool: edit_file path: app.py lines: 10-20"
        assert events[0].line_no == 1
        assert parser.tool_calls == 1

    def test_tool_call_flushed_at_finish(self):
        parser = ClaudeParser()
        assert parser.feed("Executing: pytest") == []
        events = parser.finish()
        assert kinds(events) == [EventKind.TOOL_CALL]

    def test_tool_call_followed_by_completion(self):
        parser = ClaudeParser()
        events = feed_all(parser, ["Tool: write", "<promise>COMPLETE</promise>"])
        assert kinds(events) == [EventKind.TOOL_CALL, EventKind.COMPLETION]

    def test_events_in_arrival_order(self):
        parser = ClaudeParser()
        events = feed_all(parser, ["thinking...", "Tool: read", "Error: nope", "Done"])
        assert kinds(events) == [EventKind.PROGRESS, EventKind.TOOL_CALL, EventKind.ERROR, EventKind.COMPLETION]
        assert [e.line_no for e in events] == [1, 2, 3, 4]


class TestLineNumbering:
    """Tests for feed() idempotence."""

    def test_refed_line_is_ignored(self):
        parser = ClaudeParser()
        first = parser.feed("Error: boom", line_no=1)
        again = parser.feed("Error: boom", line_no=1)
        assert kinds(first) == [EventKind.ERROR]
        assert again == []
        assert parser.last_line_no == 1

    def test_explicit_numbers_may_skip(self):
        parser = TextParser()
        parser.feed("hello", line_no=5)
        assert parser.feed("older", line_no=3) == []
        assert parser.feed("Error: newer", line_no=6)[0].line_no == 6

    def test_buffer_is_bounded(self):
        parser = TextParser(buffer_lines=3)
        for i in range(10):
            parser.feed(f"line {i}")
        assert parser.excerpt() == "line 7\nline 8\nline 9"
        assert parser.excerpt(max_lines=1) == "line 9"


class TestStuckDetection:
    """Tests for poll() silence detection."""

    def test_no_stuck_before_window(self):
        clock = FakeClock()
        parser = ClaudeParser(stuck_window=60, clock=clock)
        clock.advance(59)
        assert parser.poll() == []

    def test_stuck_fires_once_per_episode(self):
        clock = FakeClock()
        parser = ClaudeParser(stuck_window=60, clock=clock)
        clock.advance(61)
        events = parser.poll()
        assert kinds(events) == [EventKind.STUCK]
        assert parser.is_stuck()

        clock.advance(120)
        assert parser.poll() == []

    def test_output_starts_new_episode(self):
        clock = FakeClock()
        parser = ClaudeParser(stuck_window=60, clock=clock)
        clock.advance(61)
        assert len(parser.poll()) == 1

        parser.feed("thinking...")
        assert not parser.is_stuck()
        clock.advance(30)
        assert parser.poll() == []
        clock.advance(31)
        assert kinds(parser.poll()) == [EventKind.STUCK]

    def test_rearm_starts_new_episode(self):
        clock = FakeClock()
        parser = ClaudeParser(stuck_window=10, clock=clock)
        clock.advance(11)
        assert len(parser.poll()) == 1

        parser.rearm()
        assert parser.poll() == []
        clock.advance(11)
        assert len(parser.poll()) == 1

    def test_dead_process_is_never_stuck(self):
        clock = FakeClock()
        parser = ClaudeParser(stuck_window=10, clock=clock)
        clock.advance(100)
        assert parser.poll(process_alive=False) == []

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            TextParser(stuck_window=0)


class TestCursorParser:
    """Tests for CursorParser stream-json handling."""

    def test_session_flow(self):
        parser = CursorParser()
        lines = [
            json.dumps({"type": "system", "subtype": "init", "model": "gpt-5", "session_id": "abc"}),
            json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Updating app.py"}]}}),
            json.dumps({"type": "tool_call", "subtype": "started",
                        "tool_call": {"writeToolCall": {"args": {"path": "app.py"}}}}),
            json.dumps({"type": "tool_call", "subtype": "completed", "tool_call": {}}),
            json.dumps({"type": "result", "subtype": "success", "is_error": False, "result": "All done"}),
        ]
        events = feed_all(parser, lines)
        assert kinds(events) == [
            EventKind.PROGRESS, EventKind.PROGRESS, EventKind.TOOL_CALL, EventKind.COMPLETION,
        ]
        assert events[2].payload == "write app.py"
        assert parser.session_id == "abc"
        assert parser.model == "gpt-5"
        assert "Updating app.py" in parser.transcript

    def test_error_result(self):
        parser = CursorParser()
        events = feed_all(parser, [json.dumps({"type": "result", "subtype": "error", "result": "rate limited"})])
        assert kinds(events) == [EventKind.ERROR]
        assert events[0].payload == "rate limited"

    def test_plain_error_line(self):
        parser = CursorParser()
        events = feed_all(parser, ["Error: not logged in", "some banner"])
        assert kinds(events) == [EventKind.ERROR]

    def test_non_dict_json_ignored(self):
        parser = CursorParser()
        assert feed_all(parser, ["[1, 2, 3]", "42"]) == []


class TestTextParser:
    """Tests for TextParser."""

    @pytest.mark.parametrize("line,expected", [
        ("Error: bad input", EventKind.ERROR),
        ("Traceback (most recent call last):", EventKind.ERROR),
        ("Task complete", EventKind.COMPLETION),
        ("<promise>COMPLETE</promise>", EventKind.COMPLETION),
        ("$ pytest -q", EventKind.TOOL_CALL),
        ("Running: npm test", EventKind.TOOL_CALL),
        ("working on it", EventKind.PROGRESS),
    ])
    def test_markers(self, line, expected):
        assert kinds(feed_all(TextParser(), [line])) == [expected]

    def test_unmarked_line(self):
        assert feed_all(TextParser(), ["The model has three fields."]) == []


class TestGetParserClass:
    """Tests for get_parser_class function."""

    def test_known_families(self):
        assert get_parser_class("claude") is ClaudeParser
        assert get_parser_class("cursor") is CursorParser
        assert get_parser_class("text") is TextParser

    def test_unknown_falls_back_to_text(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert get_parser_class("mystery") is TextParser
        assert "mystery" in caplog.text
