"""
Quality gate runner.

Runs the configured check commands in order: typically type-check, lint,
tests, coverage. Every check runs even after an earlier one fails, so a
single gate run gives a complete diagnostic report. The gate passes only
if every check passes.

A check passes iff its command exits 0 AND its marker rules hold:
- marker:       regex that must appear in the output
- fail_marker:  regex that must not appear in the output
- min_coverage: parsed coverage percentage must reach the threshold

Checks are never retried here. Retrying a story after a failed gate is
the agent's decision.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.lib.constants import CANONICAL_CHECKS
from storyloop.lib.gate_output import format_failures, parse_coverage, parse_failures
from storyloop.lib.settings import GateSpec
from storyloop.runner.bridge import ProcessBridge, ProcessLaunchError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


@dataclass
class GateCheckResult:
    """Outcome of one check command."""
    name: str
    check: Optional[str]
    passed: bool
    exit_code: Optional[int]
    duration: float
    reason: str = ""  # Why it failed, empty on pass
    coverage: Optional[float] = None
    output_tail: str = ""
    hints: str = ""  # Parsed failures, formatted for a fix prompt

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "check": self.check,
            "passed": self.passed,
            "exit_code": self.exit_code,
            "duration_ms": int(self.duration * 1000),
            "reason": self.reason,
            "coverage": self.coverage,
        }


@dataclass
class QualityGateResult:
    """Aggregate of all checks in one gate run."""
    checks: list[GateCheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failed_checks(self) -> list[GateCheckResult]:
        return [c for c in self.checks if not c.passed]

    def slot(self, name: str) -> bool:
        """Canonical check slot: AND of the checks filling it. Unconfigured slots pass."""
        return all(c.passed for c in self.checks if c.check == name)

    def canonical(self) -> dict[str, bool]:
        """The four canonical booleans for an IterationRecord."""
        return {name: self.slot(name) for name in CANONICAL_CHECKS}

    def passed_count(self) -> int:
        return sum(1 for passed in self.canonical().values() if passed)

    def errors(self) -> list[str]:
        return [f"{c.name}: {c.reason}" for c in self.failed_checks]

    def remediation(self) -> str:
        """Markdown summary of failed checks, for the next prompt."""
        parts = []
        for c in self.failed_checks:
            parts.append(f"### {c.name} failed: {c.reason}\n\n{c.hints or '(no output)'}\n")
        return "\n".join(parts)


class QualityGateRunner:
    """Runs gate checks sequentially through a ProcessBridge."""

    def __init__(self, bridge: ProcessBridge, default_timeout: float = 600.0):
        self.bridge = bridge
        self.default_timeout = default_timeout

    def run(self, gates: list[GateSpec], cwd: Optional[Path] = None) -> QualityGateResult:
        """Run every check in order and AND the results. No short-circuit."""
        result = QualityGateResult()
        for spec in gates:
            check = self.run_check(spec, cwd)
            status = "PASS" if check.passed else f"FAIL ({check.reason})"
            logger.info(f"[gate] {spec.name}: {status} in {check.duration:.1f}s")
            result.checks.append(check)

        logger.info(
            f"[gate] {'passed' if result.passed else 'failed'}: "
            f"{len(result.checks) - len(result.failed_checks)}/{len(result.checks)} checks"
        )
        return result

    def run_check(self, spec: GateSpec, cwd: Optional[Path] = None) -> GateCheckResult:
        timeout = spec.timeout or self.default_timeout
        try:
            argv = shlex.split(spec.command)
        except ValueError as e:
            return GateCheckResult(spec.name, spec.check, False, None, 0.0, reason=f"bad command: {e}")

        try:
            run = self.bridge.run(argv, timeout, cwd=cwd)
        except ProcessLaunchError as e:
            return GateCheckResult(spec.name, spec.check, False, None, 0.0, reason=e.reason)
        except ValueError as e:
            return GateCheckResult(spec.name, spec.check, False, None, 0.0, reason=str(e))

        output = run.output
        check = GateCheckResult(
            name=spec.name,
            check=spec.check,
            passed=False,
            exit_code=run.exit_code,
            duration=run.duration,
            output_tail=output[-OUTPUT_TAIL_CHARS:],
        )

        if spec.min_coverage is not None:
            check.coverage = parse_coverage(output)

        check.reason = self._failure_reason(spec, timeout, run.exit_code, run.timed_out, output, check.coverage)
        check.passed = not check.reason
        if not check.passed:
            check.hints = format_failures(parse_failures(output))
        return check

    @staticmethod
    def _failure_reason(
        spec: GateSpec,
        timeout: float,
        exit_code: Optional[int],
        timed_out: bool,
        output: str,
        coverage: Optional[float],
    ) -> str:
        """Empty string if the check passed, else why it didn't."""
        if timed_out:
            return f"timed out after {timeout:g}s"
        if exit_code != 0:
            return f"exit code {exit_code}"
        if spec.marker and not re.search(spec.marker, output, re.MULTILINE):
            return f"marker /{spec.marker}/ not found"
        if spec.fail_marker and re.search(spec.fail_marker, output, re.MULTILINE):
            return f"fail marker /{spec.fail_marker}/ found"
        if spec.min_coverage is not None:
            if coverage is None:
                return "coverage not found in output"
            if coverage < spec.min_coverage:
                return f"coverage {coverage:g}% < {spec.min_coverage:g}%"
        return ""
