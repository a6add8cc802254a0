"""
Parser for the claude CLI's plain-text output.

Markers:
    error       ❌, "Error:", "Failed:"
    completion  <promise>COMPLETE</promise>, ✅, "Complete", "Done"
    tool call   🔧, "Tool:", "Executing:"
    progress    "...", "thinking", "processing"

A tool-call header may be followed by indented argument lines. Those are
folded into the header's payload and the event is emitted once the block
ends, so a multi-line call counts as one tool call.
"""

import re
from typing import Optional

from storyloop.agents.base import Event, EventKind, StreamParser

ERROR_PATTERN = re.compile(r'❌|\bError:|\bFailed:')
COMPLETION_PATTERN = re.compile(r'<promise>\s*COMPLETE\s*</promise>|✅|\bComplete\b|\bDone\b')
TOOL_CALL_PATTERN = re.compile(r'🔧|\bTool:|\bExecuting:')
PROGRESS_PATTERN = re.compile(r'\.\.\.|\bthinking\b|\bprocessing\b', re.IGNORECASE)

# Continuation lines of a tool-call block
CONTINUATION_PATTERN = re.compile(r'^(\s{2,}|\t|[│└├⎿])')

MAX_PAYLOAD = 500


class ClaudeParser(StreamParser):
    family = "claude"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._pending: Optional[list[str]] = None
        self._pending_line_no: Optional[int] = None
        self._pending_at: float = 0.0

    def classify(self, line: str, line_no: int, now: float) -> list[Event]:
        events: list[Event] = []

        if self._pending is not None:
            if line.strip() and CONTINUATION_PATTERN.match(line):
                self._pending.append(line.strip())
                return []
            events.extend(self.flush(now))

        stripped = line.strip()
        if not stripped:
            return events

        if ERROR_PATTERN.search(stripped):
            events.append(Event(EventKind.ERROR, stripped, now, line_no))
        elif COMPLETION_PATTERN.search(stripped):
            events.append(Event(EventKind.COMPLETION, stripped, now, line_no))
        elif TOOL_CALL_PATTERN.search(stripped):
            self._pending = [stripped]
            self._pending_line_no = line_no
            self._pending_at = now
        elif PROGRESS_PATTERN.search(stripped):
            events.append(Event(EventKind.PROGRESS, stripped, now, line_no))

        return events

    def flush(self, now: float) -> list[Event]:
        if self._pending is None:
            return []
        payload = " ".join(self._pending)[:MAX_PAYLOAD]
        event = Event(EventKind.TOOL_CALL, payload, self._pending_at, self._pending_line_no)
        self._pending = None
        self._pending_line_no = None
        return [event]
