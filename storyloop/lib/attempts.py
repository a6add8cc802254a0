"""
Format previous iterations for the story prompt.

Shows the tool what earlier attempts at the same story ran into, so it
doesn't repeat them, plus learnings recorded across the whole loop.
"""

__all__ = ["format_previous_attempts", "format_project_learnings"]


def format_previous_attempts(records: list[dict] | None, limit: int = 3) -> str:
    """
    Format earlier iterations of one story, oldest first.

    Args:
        records: IterationRecord dicts for this story, newest first
        limit: Maximum number of attempts to include

    Returns:
        Markdown string, empty if there were no earlier attempts
    """
    if not records:
        return ""

    entries = []
    for record in reversed(records[:limit]):
        parts = [f"### Iteration {record.get('iteration', '?')} ({record.get('outcome', '?')})\n"]

        gates = record.get("gates") or {}
        failed = [name for name, passed in gates.items() if not passed]
        if failed:
            parts.append(f"**Failed checks:** {', '.join(failed)}\n")

        for error in record.get("errors") or []:
            parts.append(f"- ERROR: {error}\n")

        if record.get("summary"):
            parts.append(f"**Summary:** {record['summary']}\n")

        entries.append("".join(parts))

    return "\n".join(entries)


def format_project_learnings(records: list[dict] | None, limit: int = 10) -> str:
    """Unique learnings from recent iterations, newest first, as a bullet list."""
    if not records:
        return ""

    seen = set()
    lines = []
    for record in records:
        for learning in record.get("learnings") or []:
            if learning in seen:
                continue
            seen.add(learning)
            lines.append(f"- {learning}")
            if len(lines) >= limit:
                return "\n".join(lines)
    return "\n".join(lines)
