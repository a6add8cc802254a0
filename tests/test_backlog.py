"""Tests for storyloop.workflow.backlog module."""

import json

import pytest
from conftest import STORIES

from storyloop.lib.validate import ValidationError
from storyloop.workflow.backlog import Story, load_backlog


@pytest.fixture
def prd_path(tmp_path):
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"project": "demo", "branchName": "main", "userStories": STORIES}))
    return path


class TestLoadBacklog:
    """Tests for load_backlog function."""

    def test_loads_stories(self, prd_path):
        backlog = load_backlog(prd_path)
        assert [s.id for s in backlog.stories] == ["US-002", "US-001", "US-000"]
        story = backlog.get("US-001")
        assert story.acceptance_criteria == ["Login form", "Session cookie"]
        assert story.description == "Users sign in with email"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_backlog(tmp_path / "prd.json")

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "prd.json"
        path.write_text(json.dumps({"userStories": [{"id": "US-1", "title": "x"}]}))
        with pytest.raises(ValidationError):
            load_backlog(path)

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "prd.json"
        story = {"id": "US-1", "title": "x", "priority": 1, "passes": False}
        path.write_text(json.dumps({"userStories": [story, story]}))
        with pytest.raises(ValidationError, match="Duplicate story id"):
            load_backlog(path)


class TestSelection:
    """Tests for story selection."""

    def test_lowest_priority_first_then_id(self, prd_path):
        backlog = load_backlog(prd_path)
        backlog.stories.append(Story(id="US-000b", title="tie", priority=1))
        assert backlog.select_next().id == "US-000b"

    def test_skips_passing(self, prd_path):
        backlog = load_backlog(prd_path)
        assert backlog.select_next().id == "US-001"
        assert [s.id for s in backlog.incomplete()] == ["US-001", "US-002"]

    def test_none_when_complete(self, prd_path):
        backlog = load_backlog(prd_path)
        for story in backlog.stories:
            story.passes = True
        assert backlog.select_next() is None

    def test_counts(self, prd_path):
        assert load_backlog(prd_path).counts() == (1, 3)


class TestMarkPasses:
    """Tests for mark_passes and save."""

    def test_persists_and_keeps_extra_keys(self, prd_path):
        backlog = load_backlog(prd_path)
        backlog.mark_passes("US-001")

        data = json.loads(prd_path.read_text())
        assert data["project"] == "demo"
        assert data["branchName"] == "main"
        passes = {s["id"]: s["passes"] for s in data["userStories"]}
        assert passes == {"US-002": False, "US-001": True, "US-000": True}
        assert data["userStories"][1]["acceptanceCriteria"] == ["Login form", "Session cookie"]

    def test_unknown_story(self, prd_path):
        with pytest.raises(KeyError):
            load_backlog(prd_path).mark_passes("US-999")
