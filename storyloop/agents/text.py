"""Generic plain-text parser for tools without a dedicated dialect (gemini, codex, amp)."""

import re

from storyloop.agents.base import Event, EventKind, StreamParser

ERROR_PATTERN = re.compile(r'^\s*(Error|ERROR|fatal|FATAL)\b[:!]|Traceback \(most recent call last\)|❌')
COMPLETION_PATTERN = re.compile(
    r'<promise>\s*COMPLETE\s*</promise>|✅|\b(Task|Story) (complete|completed|done)\b',
    re.IGNORECASE,
)
TOOL_CALL_PATTERN = re.compile(r'^\s*(\$ |> |exec\b|Running:|Executing:|Tool:|🔧)')
PROGRESS_PATTERN = re.compile(r'\.\.\.$|\b(thinking|working|processing)\b', re.IGNORECASE)


class TextParser(StreamParser):
    family = "text"

    def classify(self, line: str, line_no: int, now: float) -> list[Event]:
        stripped = line.strip()
        if not stripped:
            return []
        if ERROR_PATTERN.search(stripped):
            return [Event(EventKind.ERROR, stripped[:500], now, line_no)]
        if COMPLETION_PATTERN.search(stripped):
            return [Event(EventKind.COMPLETION, stripped[:500], now, line_no)]
        if TOOL_CALL_PATTERN.search(stripped):
            return [Event(EventKind.TOOL_CALL, stripped[:500], now, line_no)]
        if PROGRESS_PATTERN.search(stripped):
            return [Event(EventKind.PROGRESS, stripped[:500], now, line_no)]
        return []
