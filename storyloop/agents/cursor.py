"""
Parser for cursor-agent's stream-json output.

Each line is one JSON object:
    {"type": "system", "subtype": "init", "model": ...}
    {"type": "assistant", "message": {"content": [{"type": "text", "text": ...}]}}
    {"type": "tool_call", "subtype": "started", "tool_call": {"writeToolCall": {"args": {...}}}}
    {"type": "result", "subtype": "success", "is_error": false, "result": ...}

A result line ends the run: completion unless it is flagged as an error.
Lines that aren't JSON (banners, stderr noise) are checked for error text only.
"""

import json
import re

from storyloop.agents.base import Event, EventKind, StreamParser

PLAIN_ERROR_PATTERN = re.compile(r'^\s*(Error|error|fatal):')

MAX_PAYLOAD = 300


def _message_text(message: dict) -> str:
    parts = []
    for item in message.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
            parts.append(item["text"])
    return "".join(parts).strip()


def _describe_tool_call(tool_call: dict) -> str:
    """Short human description of a started tool call."""
    if not isinstance(tool_call, dict):
        return "tool call"
    if "writeToolCall" in tool_call:
        args = tool_call["writeToolCall"].get("args", {})
        return f"write {args.get('path', '?')}"
    if "readToolCall" in tool_call:
        args = tool_call["readToolCall"].get("args", {})
        return f"read {args.get('path', '?')}"
    if "bashToolCall" in tool_call:
        args = tool_call["bashToolCall"].get("args", {})
        return f"bash {args.get('command', '?')}"
    name = next(iter(tool_call), "tool")
    return name.removesuffix("ToolCall")


class CursorParser(StreamParser):
    family = "cursor"
    raw_transcript = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.session_id = None
        self.model = None

    def classify(self, line: str, line_no: int, now: float) -> list[Event]:
        stripped = line.strip()
        if not stripped:
            return []

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            self.transcript.append(stripped)
            if PLAIN_ERROR_PATTERN.match(stripped):
                return [Event(EventKind.ERROR, stripped[:MAX_PAYLOAD], now, line_no)]
            return []

        if not isinstance(data, dict):
            return []

        kind = data.get("type")
        subtype = data.get("subtype")
        self.session_id = data.get("session_id", self.session_id)

        if kind == "system":
            self.model = data.get("model", self.model)
            return [Event(EventKind.PROGRESS, f"session started ({self.model or 'unknown model'})", now, line_no)]

        if kind == "assistant":
            text = _message_text(data.get("message") or {})
            if not text:
                return []
            self.transcript.extend(text.splitlines())
            return [Event(EventKind.PROGRESS, text[:MAX_PAYLOAD], now, line_no)]

        if kind == "tool_call":
            if subtype == "started":
                return [Event(EventKind.TOOL_CALL, _describe_tool_call(data.get("tool_call")), now, line_no)]
            return []

        if kind == "result":
            result_text = str(data.get("result") or "")
            if result_text:
                self.transcript.extend(result_text.splitlines())
            if data.get("is_error") or subtype == "error":
                return [Event(EventKind.ERROR, result_text[:MAX_PAYLOAD] or "result: error", now, line_no)]
            return [Event(EventKind.COMPLETION, result_text[:MAX_PAYLOAD] or "result: success", now, line_no)]

        # "user" echoes and unknown types carry no signal
        return []
