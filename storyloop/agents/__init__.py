"""
Stream parsers for AI tool output.

Each tool family has one parser class. The dispatch table is resolved once
per tool at discovery time; unknown families fall back to the generic text
parser.
"""

import logging

from storyloop.agents.base import Event, EventKind, StreamParser
from storyloop.agents.claude import ClaudeParser
from storyloop.agents.cursor import CursorParser
from storyloop.agents.text import TextParser

logger = logging.getLogger(__name__)

PARSERS: dict[str, type[StreamParser]] = {
    ClaudeParser.family: ClaudeParser,
    CursorParser.family: CursorParser,
    TextParser.family: TextParser,
}


def get_parser_class(family: str) -> type[StreamParser]:
    """Resolve a parser family key to its class."""
    if family not in PARSERS:
        logger.warning(f"Unknown parser family '{family}', using '{TextParser.family}'")
        return TextParser
    return PARSERS[family]


__all__ = [
    "Event",
    "EventKind",
    "StreamParser",
    "ClaudeParser",
    "CursorParser",
    "TextParser",
    "PARSERS",
    "get_parser_class",
]
