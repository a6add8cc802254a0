"""
Project settings for storyloop.

Loads storyloop.yaml from the project root to determine which AI tools are
known, which quality-gate commands to run, and the timing policy of the
agent state machine. If no settings file exists, returns defaults.

TOOL COMMAND TEMPLATES
======================

Each tool maps to a CLI command template and a parser family:

    tools:
      claude:
        command: "claude -p --dangerously-skip-permissions {prompt}"
        parser: claude

If {prompt} is present in the template it is passed as a CLI argument.
If absent, the prompt is written to the process's stdin.
With `interactive: true` stdin stays open after launch so the loop can
write a "continue" nudge to a silent tool; otherwise stdin is closed.

QUALITY GATES
=============

Gates run in order. Each gate fills one canonical check slot
(type_check, lint, tests, coverage_met):

    gates:
      - name: tests
        command: "pytest -q"
        check: tests
      - name: coverage
        command: "pytest --cov --cov-report=term"
        check: coverage_met
        min_coverage: 95
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from storyloop.lib.constants import CANONICAL_CHECKS, SETTINGS_FILE

logger = logging.getLogger(__name__)

DEFAULT_AI_TOOL = "claude"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_COVERAGE_THRESHOLD = 95.0


DEFAULT_TOOLS = {
    "claude": {
        "command": "claude -p --dangerously-skip-permissions {prompt}",
        "parser": "claude",
    },
    "cursor-agent": {
        "command": "cursor-agent -p --force --approve-mcps --output-format stream-json {prompt}",
        "parser": "cursor",
    },
    "gemini": {
        "command": "gemini -p {prompt}",
        "parser": "text",
    },
    "codex": {
        "command": "codex exec --dangerously-bypass-approvals-and-sandbox {prompt}",
        "parser": "text",
    },
}

# Ordered: type-check, lint, tests, coverage
DEFAULT_GATES = [
    {"name": "type_check", "command": "mypy .", "check": "type_check"},
    {"name": "lint", "command": "ruff check .", "check": "lint"},
    {"name": "tests", "command": "pytest -q", "check": "tests"},
    {
        "name": "coverage",
        "command": "pytest -q --cov --cov-report=term",
        "check": "coverage_met",
        "min_coverage": DEFAULT_COVERAGE_THRESHOLD,
    },
]


class SettingsError(Exception):
    """storyloop.yaml is malformed."""
    pass


@dataclass
class ToolSpec:
    """A configured AI tool: argv template and parser family."""
    name: str
    command: str
    parser: str = "text"
    interactive: bool = False  # Keep stdin open so a "continue" nudge can be written

    @property
    def binary(self) -> str:
        parts = shlex.split(self.command.replace("{prompt}", "X"))
        return parts[0] if parts else ""


@dataclass
class GateSpec:
    """One quality-gate check."""
    name: str
    command: str
    check: Optional[str] = None  # Canonical slot this gate fills
    marker: Optional[str] = None  # Regex that must appear in output
    fail_marker: Optional[str] = None  # Regex that must NOT appear in output
    min_coverage: Optional[float] = None  # Coverage threshold (percent)
    timeout: Optional[float] = None  # Overrides timeouts.gate


@dataclass
class Timeouts:
    """Timeouts in seconds."""
    tool: float = 1800.0  # Hard timeout per tool invocation
    max_runtime: float = 1500.0  # Soft wall-clock limit, moves to evaluation
    gate: float = 600.0  # Per gate command
    drain: float = 30.0  # Output allowed after a completion/error signal
    probe: float = 5.0  # --version probe during discovery


@dataclass
class StuckPolicy:
    """Silence detection for a streaming tool."""
    window: float = 60.0  # Seconds of silence before a stuck event
    grace: float = 60.0  # Seconds to wait for output after the nudge
    nudge: bool = True  # Send one automatic "continue" before aborting


@dataclass
class Settings:
    """Settings from storyloop.yaml, merged over defaults."""
    tools: dict[str, ToolSpec] = field(default_factory=dict)
    gates: list[GateSpec] = field(default_factory=list)
    timeouts: Timeouts = field(default_factory=Timeouts)
    stuck: StuckPolicy = field(default_factory=StuckPolicy)
    ai_tool: str = DEFAULT_AI_TOOL
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    gate_retries: int = 0
    buffer_lines: int = 50
    poll_interval: float = 0.5

    def get_tool(self, name: str) -> ToolSpec:
        if name not in self.tools:
            raise SettingsError(
                f"Unknown tool '{name}'. Configured tools: {', '.join(sorted(self.tools))}"
            )
        return self.tools[name]


def _tool_specs(raw: dict[str, Any]) -> dict[str, ToolSpec]:
    specs = {}
    for name, entry in raw.items():
        if isinstance(entry, str):
            entry = {"command": entry}
        if not isinstance(entry, dict) or not entry.get("command"):
            raise SettingsError(f"tools.{name}: expected a mapping with a 'command'")
        specs[name] = ToolSpec(
            name=name,
            command=entry["command"],
            parser=entry.get("parser", "text"),
            interactive=bool(entry.get("interactive", False)),
        )
    return specs


def _gate_specs(raw: list[Any]) -> list[GateSpec]:
    if not isinstance(raw, list):
        raise SettingsError("gates: expected a list")

    specs = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("command"):
            raise SettingsError(f"gates[{i}]: expected a mapping with 'name' and 'command'")
        check = entry.get("check")
        if check is not None and check not in CANONICAL_CHECKS:
            raise SettingsError(
                f"gates[{i}].check: '{check}' is not one of {', '.join(CANONICAL_CHECKS)}"
            )
        try:
            min_coverage = float(entry["min_coverage"]) if entry.get("min_coverage") is not None else None
            timeout = float(entry["timeout"]) if entry.get("timeout") is not None else None
        except (TypeError, ValueError) as e:
            raise SettingsError(f"gates[{i}]: {e}") from None
        specs.append(GateSpec(
            name=entry["name"],
            command=entry["command"],
            check=check,
            marker=entry.get("marker"),
            fail_marker=entry.get("fail_marker"),
            min_coverage=min_coverage,
            timeout=timeout,
        ))
    return specs


def _merge_dataclass(target, raw: Any, section: str):
    if raw is None:
        return target
    if not isinstance(raw, dict):
        raise SettingsError(f"{section}: expected a mapping")
    for key, value in raw.items():
        if not hasattr(target, key):
            raise SettingsError(f"{section}.{key}: unknown setting")
        current = getattr(target, key)
        try:
            setattr(target, key, type(current)(value))
        except (TypeError, ValueError):
            raise SettingsError(f"{section}.{key}: invalid value {value!r}") from None
    return target


def default_settings() -> Settings:
    return Settings(
        tools=_tool_specs(DEFAULT_TOOLS),
        gates=_gate_specs(DEFAULT_GATES),
    )


def load_settings(project_dir: Optional[Path]) -> Settings:
    """Load storyloop.yaml and return Settings.

    If project_dir is None or the file doesn't exist, returns defaults.

    Raises:
        SettingsError: If the file exists but is malformed
    """
    settings = default_settings()
    if project_dir is None:
        return settings

    settings_path = project_dir / SETTINGS_FILE
    if not settings_path.exists():
        return settings

    try:
        data = yaml.safe_load(settings_path.read_text())
    except yaml.YAMLError as e:
        raise SettingsError(f"Failed to parse {settings_path}: {e}") from None

    if not data:
        return settings
    if not isinstance(data, dict):
        raise SettingsError(f"{settings_path}: expected a mapping at top level")

    if "tools" in data:
        if not isinstance(data["tools"], dict):
            raise SettingsError("tools: expected a mapping")
        settings.tools.update(_tool_specs(data["tools"]))

    if "gates" in data:
        # Gates replace the defaults wholesale; an empty list disables gating
        settings.gates = _gate_specs(data["gates"] or [])

    _merge_dataclass(settings.timeouts, data.get("timeouts"), "timeouts")
    _merge_dataclass(settings.stuck, data.get("stuck"), "stuck")

    loop = data.get("loop") or {}
    if not isinstance(loop, dict):
        raise SettingsError("loop: expected a mapping")
    settings.ai_tool = str(loop.get("ai_tool", settings.ai_tool))
    try:
        settings.max_iterations = int(loop.get("max_iterations", settings.max_iterations))
        settings.gate_retries = int(loop.get("gate_retries", settings.gate_retries))
        settings.buffer_lines = int(data.get("buffer_lines", settings.buffer_lines))
        settings.poll_interval = float(data.get("poll_interval", settings.poll_interval))
    except (TypeError, ValueError) as e:
        raise SettingsError(f"{settings_path}: {e}") from None

    if settings.max_iterations < 1:
        raise SettingsError("loop.max_iterations must be >= 1")
    if settings.gate_retries < 0:
        raise SettingsError("loop.gate_retries must be >= 0")
    if settings.timeouts.tool <= 0 or settings.timeouts.gate <= 0:
        raise SettingsError("timeouts must be > 0")
    if settings.stuck.window <= 0 or settings.stuck.grace < 0:
        raise SettingsError("stuck.window must be > 0 and stuck.grace >= 0")

    logger.debug(f"Loaded settings from {settings_path}")
    return settings


def write_default_settings(project_dir: Path, ai_tool: str = DEFAULT_AI_TOOL) -> Path:
    """Write a starter storyloop.yaml. Leaves an existing file untouched."""
    settings_path = project_dir / SETTINGS_FILE
    if settings_path.exists():
        return settings_path

    data = {
        "loop": {"ai_tool": ai_tool, "max_iterations": DEFAULT_MAX_ITERATIONS, "gate_retries": 0},
        "timeouts": {"tool": Timeouts.tool, "max_runtime": Timeouts.max_runtime, "gate": Timeouts.gate, "drain": Timeouts.drain},
        "stuck": {"window": StuckPolicy.window, "grace": StuckPolicy.grace, "nudge": StuckPolicy.nudge},
        "gates": DEFAULT_GATES,
    }
    settings_path.write_text(yaml.safe_dump(data, sort_keys=False))
    return settings_path
