"""
Parse quality-gate command output.

Extracts:
- Coverage percentage (pytest-cov, Go, Jest/Vitest, generic "N% coverage")
- Structured failures (pytest, Jest/Vitest, Go tests, and file:line
  diagnostics from type checkers and linters such as mypy, tsc, ruff, eslint)

The structured failures become remediation hints on a failed gate.
"""

import re
from dataclasses import dataclass, field

# pytest-cov:  TOTAL     1234    56    95%
_PYTEST_COV = re.compile(r'^TOTAL\s+(?:\d+\s+)+(\d+(?:\.\d+)?)%', re.MULTILINE)
# go test -cover:  coverage: 87.5% of statements
_GO_COV = re.compile(r'coverage:\s+(\d+(?:\.\d+)?)% of statements')
# jest/vitest table:  All files |   91.3 |  ...
_JS_COV = re.compile(r'^\s*All files\s*\|\s*(\d+(?:\.\d+)?)', re.MULTILINE)
# Fallback:  Coverage: 96%  /  96% coverage
_GENERIC_COV = re.compile(
    r'coverage[^\d\n]{0,20}(\d+(?:\.\d+)?)\s*%|(\d+(?:\.\d+)?)\s*%\s+coverage',
    re.IGNORECASE,
)

_PYTEST_FAILED = re.compile(r'^FAILED\s+([^:\s]+)::(\S+)(?:\s+-\s+(.+))?$', re.MULTILINE)
_JEST_FAILED = re.compile(r'^\s*●\s+(.+?)\s*$', re.MULTILINE)
_GO_FAILED = re.compile(r'^--- FAIL: (\S+)', re.MULTILINE)
# file.py:12: error: message  /  file.py:12:5: E501 message  /  src/a.ts:3:1 - error TS2304: ...
_DIAGNOSTIC = re.compile(
    r'^([^\s:()]+\.\w+)[:(](\d+)(?:[:,]\d+)?\)?:?\s*-?\s*(.*)$',
    re.MULTILINE,
)


@dataclass
class FailureInfo:
    """A single failing test or diagnostic."""
    name: str
    file: str | None = None
    line: int | None = None
    message: str = ""


@dataclass
class ParsedGateOutput:
    """Structured gate output."""
    failures: list[FailureInfo] = field(default_factory=list)
    summary: str = ""
    raw_output: str = ""

    def is_empty(self) -> bool:
        return len(self.failures) == 0


def parse_coverage(output: str) -> float | None:
    """Return the overall coverage percentage, or None if not found.

    Tool-specific totals win over the generic pattern. The last match is
    used, since totals are printed after per-file rows.
    """
    for pattern in (_PYTEST_COV, _JS_COV, _GO_COV):
        matches = pattern.findall(output)
        if matches:
            return float(matches[-1])

    matches = _GENERIC_COV.findall(output)
    if matches:
        first, second = matches[-1]
        return float(first or second)
    return None


def parse_failures(output: str) -> ParsedGateOutput:
    """Extract structured failures. Falls back to raw output."""
    failures: list[FailureInfo] = []

    for match in _PYTEST_FAILED.finditer(output):
        filepath, test_name, message = match.groups()
        failures.append(FailureInfo(name=test_name, file=filepath, message=message or ""))

    if not failures:
        for match in _JEST_FAILED.finditer(output):
            failures.append(FailureInfo(name=match.group(1)))

    if not failures:
        for match in _GO_FAILED.finditer(output):
            failures.append(FailureInfo(name=match.group(1)))

    if not failures:
        seen: set[tuple[str, int, str]] = set()
        for match in _DIAGNOSTIC.finditer(output):
            filepath, line, message = match.groups()
            key = (filepath, int(line), message.strip())
            if key in seen:
                continue
            seen.add(key)
            failures.append(FailureInfo(
                name=filepath,
                file=filepath,
                line=int(line),
                message=message.strip()[:200],
            ))

    if not failures:
        return ParsedGateOutput(raw_output=_truncate(output, 2000), summary="unparsed output")

    return ParsedGateOutput(
        failures=failures,
        summary=f"{len(failures)} failure(s)",
        raw_output=_truncate(output, 1000),
    )


def format_failures(parsed: ParsedGateOutput, limit: int = 10) -> str:
    """Format parsed failures as markdown for a fix prompt."""
    if parsed.is_empty():
        if parsed.raw_output:
            return f"```\n{parsed.raw_output}\n```"
        return "No output available."

    parts = [f"**{parsed.summary}**"]
    for failure in parsed.failures[:limit]:
        loc = f"{failure.file}:{failure.line}" if failure.file and failure.line else failure.file
        line = f"- `{failure.name}`" + (f" at `{loc}`" if loc and loc != failure.name else "")
        parts.append(line)
        if failure.message:
            msg = failure.message[:150] + "..." if len(failure.message) > 150 else failure.message
            parts.append(f"  {msg}")
    if len(parsed.failures) > limit:
        parts.append(f"- ... and {len(parsed.failures) - limit} more")
    return "\n".join(parts)


def _truncate(s: str, max_len: int) -> str:
    """Truncate string, keeping the end (most relevant for errors)."""
    if len(s) <= max_len:
        return s.strip()
    return "...(truncated)\n" + s[-max_len:].strip()
