"""
Extract learnings, errors, and a commit hash from a finished tool run.

Keyword rules:
- Learnings: text after "learning/insight/pattern/note" or
  "discovered/found/realized", 10-500 chars, at most 5.
- Errors: text after "error/failed/fail" and Error/Exception lines,
  at most 3.
- Git commit: a 7-40 char hex token, only when the output mentions "commit".
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

MAX_LEARNINGS = 5
MAX_ERRORS = 3

_LEARNING_PATTERN = re.compile(r'\b(?:learning|insight|pattern|note)s?\b[\s:]*([^\n]+)', re.IGNORECASE)
_DISCOVERY_PATTERN = re.compile(r'\b(?:discovered|found|realized)\b[\s:]*([^\n]+)', re.IGNORECASE)
_ERROR_PATTERN = re.compile(r'\b(?:error|failed|fail)\b[\s:]*([^\n]+)', re.IGNORECASE)
_EXCEPTION_PATTERN = re.compile(r'\b\w*(?:Error|Exception)\b[\s:]*[^\n]+')
_COMMIT_HASH_PATTERN = re.compile(r'\b[a-f0-9]{7,40}\b')
_CONTEXT_LOSS_PATTERNS = [
    re.compile(r'context.*loss', re.IGNORECASE),
    re.compile(r'context.*window', re.IGNORECASE),
    re.compile(r'ran out of.*context', re.IGNORECASE),
    re.compile(r'context.*exceeded', re.IGNORECASE),
]


@dataclass
class OutputDigest:
    """What a run's output says about itself."""
    learnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    git_commit: Optional[str] = None
    summary: str = ""
    context_loss_count: int = 0


def _dedupe(items: Iterable[str]) -> list[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def extract_learnings(output: str) -> list[str]:
    found = []
    for pattern in (_LEARNING_PATTERN, _DISCOVERY_PATTERN):
        for match in pattern.finditer(output):
            cleaned = match.group(1).strip()
            if 10 < len(cleaned) < 500:
                found.append(cleaned)
    return _dedupe(found)[:MAX_LEARNINGS]


def extract_errors(output: str) -> list[str]:
    found = []
    for match in _ERROR_PATTERN.finditer(output):
        cleaned = match.group(1).strip()
        if 5 < len(cleaned) < 300:
            found.append(cleaned)
    for match in _EXCEPTION_PATTERN.finditer(output):
        cleaned = match.group(0).strip()
        if len(cleaned) > 5:
            found.append(cleaned[:300])
    return _dedupe(found)[:MAX_ERRORS]


def extract_git_commit(output: str) -> Optional[str]:
    if "commit" not in output.lower():
        return None
    match = _COMMIT_HASH_PATTERN.search(output)
    return match.group(0) if match else None


def summarize(output: str, outcome: Optional[str] = None) -> str:
    """First few meaningful lines, capped at 300 chars."""
    lines = [line.strip() for line in output.splitlines() if len(line.strip()) > 20][:3]
    summary = " ".join(lines)[:300]
    if outcome and outcome not in summary.lower():
        summary = f"[{outcome.upper()}] {summary}".rstrip()
    return summary


def count_context_loss(output: str) -> int:
    return sum(len(pattern.findall(output)) for pattern in _CONTEXT_LOSS_PATTERNS)


def digest_output(lines: Iterable[str]) -> OutputDigest:
    """Digest the readable transcript of a run."""
    output = "\n".join(lines)
    return OutputDigest(
        learnings=extract_learnings(output),
        errors=extract_errors(output),
        git_commit=extract_git_commit(output),
        summary=summarize(output),
        context_loss_count=count_context_loss(output),
    )
