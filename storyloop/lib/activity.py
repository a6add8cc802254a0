"""Activity log for one iteration.

Every agent state transition, nudge, and gate result is appended as a JSON
line to activity/iteration-NNNNNN.jsonl, giving an audit trail of how the
iteration reached its outcome.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class Actor(Enum):
    """Who produced an activity entry."""
    SYSTEM = "system"      # storyloop itself
    TOOL = "tool"          # The AI tool process
    GATE = "gate"          # A quality-gate command
    OPERATOR = "operator"  # Human at the CLI


@dataclass
class ActivityEntry:
    """Single entry in the activity log."""
    timestamp: str
    iteration: int
    actor: str
    kind: str            # "transition", "event", "nudge", "gate", "note"
    message: str
    state: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class ActivityLog:
    """
    Append-only JSONL activity log.

    Usage:
        log = ActivityLog(loop_dir / "activity", iteration=3)
        log.transition("idle", "invoking", "invoke")
        log.record(Actor.TOOL, "event", "completion", payload="Done")
    """

    def __init__(self, activity_dir: Optional[Path], iteration: int):
        self.iteration = iteration
        self.entries: list[ActivityEntry] = []
        self._file_path = activity_dir / f"iteration-{iteration:06d}.jsonl" if activity_dir else None

    @property
    def path(self) -> Optional[Path]:
        return self._file_path

    def record(
        self,
        actor: Actor,
        kind: str,
        message: str,
        state: Optional[str] = None,
        **metadata,
    ) -> ActivityEntry:
        entry = ActivityEntry(
            timestamp=datetime.now().isoformat(),
            iteration=self.iteration,
            actor=actor.value,
            kind=kind,
            message=message,
            state=state,
            metadata=metadata,
        )
        self.entries.append(entry)
        self._append(entry)
        return entry

    def transition(self, from_state: str, to_state: str, trigger: str, **metadata) -> ActivityEntry:
        return self.record(
            Actor.SYSTEM,
            "transition",
            f"{from_state} -> {to_state} ({trigger})",
            state=to_state,
            **metadata,
        )

    def _append(self, entry: ActivityEntry) -> None:
        # Best-effort: failures are logged, not raised
        if self._file_path is None:
            return
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._file_path, "a") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            logger.warning(f"Could not write activity entry to {self._file_path}: {e}")


def load_activity(activity_dir: Path, iteration: int) -> list[ActivityEntry]:
    """Load an iteration's activity log. Skips corrupted lines."""
    path = activity_dir / f"iteration-{iteration:06d}.jsonl"
    if not path.exists():
        return []

    entries = []
    for line_num, line in enumerate(path.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            entries.append(ActivityEntry(**json.loads(line)))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Skipping corrupted activity line {line_num} in {path}: {e}")
    return entries
