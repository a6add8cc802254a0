"""
Iteration history and loop state.

Layout under the loop directory:
    state.json                      LoopConfig, rewritten atomically
    history/iteration-000001.json   One IterationRecord per file, never rewritten
    progress.txt                    Human-readable log, one block per iteration

Records are append-only: iteration numbers must be strictly increasing with
no gaps, and a record file is published with a hard link so an existing
record can never be replaced. Temp files left behind by an interrupted write
are ignored by readers and removed when the store is opened.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Optional

from storyloop.lib.atomic import (
    PersistenceError,
    append_line,
    clean_temp_files,
    create_json_exclusive,
    write_json_atomic,
)
from storyloop.lib.constants import (
    CANONICAL_CHECKS,
    HISTORY_DIR,
    ITERATION_FILE_PATTERN,
    PROGRESS_FILE,
    STATE_FILE,
)
from storyloop.lib.settings import DEFAULT_AI_TOOL, DEFAULT_MAX_ITERATIONS
from storyloop.lib.stats import IterationStats, aggregate, format_duration
from storyloop.lib.validate import ValidationError, validate, validate_file

logger = logging.getLogger(__name__)

# Keys `storyloop config set` may change, with their value types
SETTABLE_KEYS = {
    "enabled": bool,
    "max_iterations": int,
    "ai_tool": str,
}

_TRUE_VALUES = ("true", "yes", "on", "1")
_FALSE_VALUES = ("false", "no", "off", "0")


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class IterationRecord:
    """Immutable record of one iteration."""
    iteration: int
    story_id: str
    tool: str
    gates: dict[str, bool]
    outcome: str
    errors: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)
    duration_ms: int = 0
    git_commit: Optional[str] = None
    story_title: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    summary: Optional[str] = None
    final_state: Optional[str] = None

    @property
    def passed_checks(self) -> int:
        return sum(1 for name in CANONICAL_CHECKS if self.gates.get(name))

    def to_dict(self) -> dict:
        data = asdict(self)
        # Audit fields are omitted when unset; git_commit is always present
        for key in ("story_title", "started_at", "completed_at", "summary", "final_state"):
            if data[key] is None:
                del data[key]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IterationRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LoopConfig:
    """Persisted loop state (state.json)."""
    enabled: bool = True
    current_iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    ai_tool: str = DEFAULT_AI_TOOL
    paused: bool = False
    started_at: Optional[str] = None
    paused_at: Optional[str] = None
    last_updated: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.max_iterations - self.current_iteration)

    @property
    def exhausted(self) -> bool:
        return self.current_iteration >= self.max_iterations

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LoopConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def coerce_config_value(key: str, raw: str):
    """Convert a `config set` string to the key's type.

    Raises:
        KeyError: If key isn't settable
        ValueError: If raw can't be converted
    """
    if key not in SETTABLE_KEYS:
        raise KeyError(key)
    kind = SETTABLE_KEYS[key]

    if kind is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"{key}: expected true/false, got '{raw}'")
    if kind is int:
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{key}: expected an integer, got '{raw}'") from None
        if value < 1:
            raise ValueError(f"{key}: must be >= 1")
        return value
    value = raw.strip()
    if not value:
        raise ValueError(f"{key}: must not be empty")
    return value


def format_progress_entry(record: IterationRecord) -> str:
    """One progress.txt block for a record."""
    title = f" {record.story_title}" if record.story_title else ""
    gates = " ".join(
        f"{name}={'pass' if record.gates.get(name) else 'fail'}" for name in CANONICAL_CHECKS
    )
    lines = [
        f"## Iteration {record.iteration} - {record.story_id}{title} ({record.outcome})",
        f"completed: {record.completed_at or now_iso()} | tool: {record.tool} | "
        f"duration: {format_duration(record.duration_ms / 1000)}",
        f"gates: {gates}",
    ]
    if record.git_commit:
        lines.append(f"commit: {record.git_commit}")
    if record.summary:
        lines.append(f"summary: {record.summary}")
    lines.extend(f"- Learning: {learning}" for learning in record.learnings)
    lines.extend(f"- Error: {error}" for error in record.errors)
    lines.append("")
    return "\n".join(lines)


class IterationHistoryStore:
    """
    Durable, append-only iteration history plus LoopConfig.

    Usage:
        store = IterationHistoryStore(project_dir / ".storyloop")
        config = store.load_config()
        store.append(record)
        config.current_iteration = record.iteration
        store.save_config(config)
    """

    def __init__(self, loop_dir: Path):
        self.loop_dir = loop_dir
        self.history_dir = loop_dir / HISTORY_DIR
        self.state_path = loop_dir / STATE_FILE
        self.progress_path = loop_dir / PROGRESS_FILE

        clean_temp_files(self.loop_dir)
        clean_temp_files(self.history_dir)

    def record_path(self, iteration: int) -> Path:
        return self.history_dir / f"iteration-{iteration:06d}.json"

    def is_initialized(self) -> bool:
        return self.state_path.exists()

    # --- history ---

    def iterations(self) -> list[int]:
        """Iteration numbers on disk, ascending."""
        if not self.history_dir.exists():
            return []
        numbers = []
        for path in self.history_dir.iterdir():
            match = ITERATION_FILE_PATTERN.match(path.name)
            if match:
                numbers.append(int(match.group(1)))
        return sorted(numbers)

    def last_iteration(self) -> int:
        numbers = self.iterations()
        return numbers[-1] if numbers else 0

    def append(self, record: IterationRecord) -> Path:
        """Persist a new record.

        Raises:
            PersistenceError: If the record is invalid, out of order, already
                exists, or can't be written
        """
        path = self.record_path(record.iteration)
        data = record.to_dict()
        try:
            validate(data, "iteration")
        except ValidationError as e:
            raise PersistenceError(path, str(e)) from e

        expected = self.last_iteration() + 1
        if record.iteration != expected:
            raise PersistenceError(
                path, f"iteration {record.iteration} is out of order, expected {expected}"
            )

        create_json_exclusive(path, data)
        logger.info(f"Recorded iteration {record.iteration}: {record.story_id} -> {record.outcome}")
        return path

    def get(self, iteration: int) -> Optional[IterationRecord]:
        path = self.record_path(iteration)
        try:
            data = validate_file(path, "iteration", missing_ok=True)
        except ValidationError as e:
            logger.warning(f"Skipping unreadable iteration record {path}: {e}")
            return None
        return IterationRecord.from_dict(data) if data else None

    def _load_all(self) -> list[IterationRecord]:
        records = []
        for n in self.iterations():
            record = self.get(n)
            if record is not None:
                records.append(record)
        return records

    def history(self, limit: Optional[int] = None, story_id: Optional[str] = None) -> list[IterationRecord]:
        """Records newest first, optionally for one story."""
        records = list(reversed(self._load_all()))
        if story_id is not None:
            records = [r for r in records if r.story_id == story_id]
        if limit is not None:
            records = records[:max(0, limit)]
        return records

    def latest(self) -> Optional[IterationRecord]:
        for n in reversed(self.iterations()):
            record = self.get(n)
            if record is not None:
                return record
        return None

    def statistics(self) -> IterationStats:
        return aggregate(r.to_dict() for r in self._load_all())

    def append_progress(self, record: IterationRecord) -> None:
        """Append the record's block to progress.txt.

        Raises:
            PersistenceError: If the append fails
        """
        append_line(self.progress_path, format_progress_entry(record))

    # --- loop config ---

    def load_config(self) -> Optional[LoopConfig]:
        """Load state.json, or None if the loop was never initialized.

        Raises:
            ValidationError: If state.json is corrupt
        """
        data = validate_file(self.state_path, "loop_config", missing_ok=True)
        return LoopConfig.from_dict(data) if data is not None else None

    def save_config(self, config: LoopConfig) -> None:
        """Rewrite state.json in full, atomically.

        Raises:
            ValueError: If current_iteration exceeds max_iterations
            PersistenceError: If the document is invalid or can't be written
        """
        if config.current_iteration > config.max_iterations:
            raise ValueError(
                f"current_iteration ({config.current_iteration}) exceeds "
                f"max_iterations ({config.max_iterations})"
            )
        config.last_updated = now_iso()
        data = config.to_dict()
        try:
            validate(data, "loop_config")
        except ValidationError as e:
            raise PersistenceError(self.state_path, str(e)) from e
        write_json_atomic(self.state_path, data)
