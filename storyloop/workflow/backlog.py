"""
Story backlog (prd.json).

The loop never authors stories. It reads the backlog, picks the next
incomplete story, and flips `passes` to true when a story clears its gate.

Format:
    {
      "project": "acme",
      "userStories": [
        {"id": "US-001", "title": "...", "description": "...",
         "acceptanceCriteria": ["..."], "priority": 1, "passes": false, "notes": ""}
      ]
    }
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.lib.atomic import write_json_atomic
from storyloop.lib.validate import ValidationError, validate, validate_file

logger = logging.getLogger(__name__)


@dataclass
class Story:
    """One unit of work in the backlog."""
    id: str
    title: str
    priority: int
    passes: bool = False
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: str = ""

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.id)

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            priority=data["priority"],
            passes=data.get("passes", False),
            description=data.get("description", ""),
            acceptance_criteria=list(data.get("acceptanceCriteria", [])),
            notes=data.get("notes", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": self.acceptance_criteria,
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }


@dataclass
class Backlog:
    """Stories loaded from prd.json, plus the file's other top-level keys."""
    path: Path
    stories: list[Story] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def get(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def incomplete(self) -> list[Story]:
        return sorted((s for s in self.stories if not s.passes), key=lambda s: s.sort_key)

    def select_next(self) -> Optional[Story]:
        """Next story to work on: passes == false, lowest (priority, id)."""
        pending = self.incomplete()
        return pending[0] if pending else None

    def counts(self) -> tuple[int, int]:
        """(completed, total)"""
        return sum(1 for s in self.stories if s.passes), len(self.stories)

    def to_dict(self) -> dict:
        return {**self.extra, "userStories": [s.to_dict() for s in self.stories]}

    def save(self) -> None:
        """Validate and atomically rewrite prd.json.

        Raises:
            ValidationError: If the backlog doesn't match the schema
            PersistenceError: If the write fails
        """
        data = self.to_dict()
        validate(data, "prd")
        write_json_atomic(self.path, data)

    def mark_passes(self, story_id: str, passes: bool = True) -> Story:
        """Set a story's passes flag and persist.

        Raises:
            KeyError: If story_id isn't in the backlog
        """
        story = self.get(story_id)
        if story is None:
            raise KeyError(story_id)
        story.passes = passes
        self.save()
        logger.info(f"Story {story_id} marked passes={passes}")
        return story


def load_backlog(path: Path) -> Backlog:
    """Load and validate prd.json.

    Raises:
        ValidationError: If the file is missing, malformed, or has duplicate ids
    """
    data = validate_file(path, "prd")

    stories = [Story.from_dict(entry) for entry in data["userStories"]]
    seen: set[str] = set()
    for story in stories:
        if story.id in seen:
            raise ValidationError("prd", f"Duplicate story id '{story.id}'", "userStories")
        seen.add(story.id)

    extra = {k: v for k, v in data.items() if k != "userStories"}
    return Backlog(path=path, stories=stories, extra=extra)
