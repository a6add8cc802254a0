"""
Canonical event model and the shared parser machinery.

Every tool family turns its own output dialect into the same Event kinds.
The base class owns what is common to all of them: line numbering,
the bounded look-back buffer, error-over-completion precedence within a
batch, and silence ("stuck") detection.
"""

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class EventKind(str, Enum):
    TOOL_CALL = "tool_call"
    PROGRESS = "progress"
    COMPLETION = "completion"
    ERROR = "error"
    STUCK = "stuck"


@dataclass(frozen=True)
class Event:
    """One interpreted signal from a tool's output stream."""
    kind: EventKind
    payload: str
    timestamp: float
    line_no: Optional[int] = None


def resolve_batch(events: list[Event]) -> list[Event]:
    """Drop completion events when an error was seen in the same batch."""
    if any(e.kind == EventKind.ERROR for e in events):
        return [e for e in events if e.kind != EventKind.COMPLETION]
    return events


class StreamParser:
    """Base parser: subclasses implement classify() for their output dialect.

    Usage:
        parser = ClaudeParser(stuck_window=60)
        for line in lines:
            events = parser.feed(line)
        events = parser.poll(process_alive=True)  # Between reads
        events = parser.finish()  # At EOF
    """

    family = "base"
    # Dialects whose raw lines are already human-readable text
    raw_transcript = True

    def __init__(
        self,
        stuck_window: float = 60.0,
        buffer_lines: int = 50,
        clock: Callable[[], float] = time.monotonic,
        transcript_lines: int = 5000,
    ):
        if stuck_window <= 0:
            raise ValueError(f"stuck_window must be > 0, got {stuck_window}")
        self.stuck_window = stuck_window
        self.clock = clock
        self.buffer: deque[str] = deque(maxlen=max(1, buffer_lines))
        # Readable text of the whole run, for the post-run digest
        self.transcript: deque[str] = deque(maxlen=transcript_lines)
        self.last_line_no = 0
        self.last_output_at = clock()
        self.tool_calls = 0
        self.completed = False
        self.errored = False
        self._stuck_fired = False

    def classify(self, line: str, line_no: int, now: float) -> list[Event]:
        """Turn one line into zero or more events. Subclass hook."""
        raise NotImplementedError

    def flush(self, now: float) -> list[Event]:
        """Emit events held back for multi-line detection. Subclass hook."""
        return []

    def feed(self, line: str, now: Optional[float] = None, line_no: Optional[int] = None) -> list[Event]:
        """Consume one output line.

        Lines are numbered in arrival order. Passing a line_no that was already
        consumed is a no-op, so a re-fed line never yields duplicate events.
        """
        now = self.clock() if now is None else now
        if line_no is None:
            line_no = self.last_line_no + 1
        elif line_no <= self.last_line_no:
            return []

        self.last_line_no = line_no
        self.last_output_at = now
        self._stuck_fired = False  # New output ends the silence episode
        self.buffer.append(line)
        if self.raw_transcript:
            self.transcript.append(line)

        return self._record(resolve_batch(self.classify(line, line_no, now)))

    def poll(self, now: Optional[float] = None, process_alive: bool = True) -> list[Event]:
        """Check for silence. At most one stuck event per silence episode."""
        if not process_alive or self._stuck_fired:
            return []
        now = self.clock() if now is None else now
        silent_for = now - self.last_output_at
        if silent_for < self.stuck_window:
            return []
        self._stuck_fired = True
        return [Event(EventKind.STUCK, f"no output for {silent_for:.0f}s", now)]

    def finish(self, now: Optional[float] = None) -> list[Event]:
        """Flush buffered state at end of stream."""
        now = self.clock() if now is None else now
        return self._record(resolve_batch(self.flush(now)))

    def rearm(self, now: Optional[float] = None) -> None:
        """End the current silence episode without new output (operator continuation)."""
        self.last_output_at = self.clock() if now is None else now
        self._stuck_fired = False

    def is_stuck(self) -> bool:
        return self._stuck_fired

    def excerpt(self, max_lines: Optional[int] = None) -> str:
        """Most recent lines from the look-back buffer."""
        lines = list(self.buffer)
        if max_lines is not None:
            lines = lines[-max_lines:]
        return "\n".join(lines)

    def _record(self, events: list[Event]) -> list[Event]:
        for event in events:
            if event.kind == EventKind.COMPLETION:
                self.completed = True
            elif event.kind == EventKind.ERROR:
                self.errored = True
            elif event.kind == EventKind.TOOL_CALL:
                self.tool_calls += 1
        return events
