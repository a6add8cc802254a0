"""Tests for storyloop.workflow.flows module."""

import shlex
import textwrap

import pytest
import yaml
from conftest import PYTHON, SUCCESS_TOOL, read_json
from pydantic import ValidationError

from storyloop.workflow.flows import LoopRunParams, run_loop_flow, task_iteration


@pytest.fixture
def configured(project, tmp_path):
    """The test project with a storyloop.yaml for the fake tool, as `storyloop run` loads it."""
    script = tmp_path / "flow_tool.py"
    script.write_text(textwrap.dedent(SUCCESS_TOOL))
    settings = {
        "tools": {"fake": {"command": f"{PYTHON} -u {shlex.quote(str(script))} {{prompt}}", "parser": "claude"}},
        "gates": [{"name": "tests", "command": f"{PYTHON} -c \"print('1 passed')\"", "check": "tests"}],
        "loop": {"ai_tool": "fake", "max_iterations": 5},
        "timeouts": {"tool": 20, "max_runtime": 15, "gate": 10, "drain": 0.5},
        "stuck": {"window": 5, "grace": 1},
        "poll_interval": 0.05,
    }
    (project / "storyloop.yaml").write_text(yaml.safe_dump(settings))
    return project


class TestLoopRunParams:
    """Tests for the flow parameter model."""

    def test_project_dir(self, tmp_path):
        params = LoopRunParams(project_dir=str(tmp_path))
        assert params.project_dir == str(tmp_path)
        assert params.model_dump() == {"project_dir": str(tmp_path)}

    def test_project_dir_required(self):
        with pytest.raises(ValidationError):
            LoopRunParams()


class TestFlowDefinition:
    """The flow and task are registered without Prefect retries."""

    def test_flow(self):
        assert run_loop_flow.name == "storyloop-run"
        assert run_loop_flow.retries == 0

    def test_task(self):
        assert task_iteration.name == "iteration"
        assert task_iteration.retries == 0


class TestRunLoopFlow:
    """The flow run end to end against a local Prefect."""

    def test_runs_backlog_to_completion(self, configured):
        status = run_loop_flow(LoopRunParams(project_dir=str(configured)))

        assert status["stop_reason"] == "complete"
        assert status["current_iteration"] == 2
        assert status["stories_completed"] == status["stories_total"] == 3
        assert status["running"] is False

        loop_dir = configured / ".storyloop"
        history = sorted(p.name for p in (loop_dir / "history").glob("*.json"))
        assert history == ["iteration-000001.json", "iteration-000002.json"]
        assert read_json(loop_dir / "history" / "iteration-000001.json")["story_id"] == "US-001"
        assert read_json(loop_dir / "history" / "iteration-000002.json")["story_id"] == "US-002"
        assert read_json(loop_dir / "state.json")["current_iteration"] == 2
