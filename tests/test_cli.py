"""End-to-end tests for the storyloop CLI."""

import json
import logging
import shlex
import textwrap
from unittest.mock import patch

import pytest
import yaml
from conftest import PYTHON, STORIES, SUCCESS_TOOL

from storyloop import cli
from storyloop.lib.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_LOCK_TIMEOUT,
    EXIT_NOT_INITIALIZED,
    EXIT_SUCCESS,
)
from storyloop.lib.prompts import PromptError
from storyloop.runner.locking import loop_lock


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop the handlers main() installs so they don't outlive the test."""
    yield
    root = logging.getLogger()
    while cli._handlers:
        handler = cli._handlers.pop()
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.WARNING)


@pytest.fixture
def project_dir(tmp_path):
    """Project with storyloop.yaml pointing at a fake tool and a fast passing gate."""
    root = tmp_path / "app"
    root.mkdir()
    script = tmp_path / "fake_tool.py"
    script.write_text(textwrap.dedent(SUCCESS_TOOL))
    settings = {
        "tools": {"fake": {"command": f"{PYTHON} -u {shlex.quote(str(script))} {{prompt}}", "parser": "claude"}},
        "gates": [{"name": "tests", "command": f"{PYTHON} -c \"print('1 passed')\"", "check": "tests"}],
        "loop": {"ai_tool": "fake", "max_iterations": 4},
        "timeouts": {"tool": 20, "max_runtime": 15, "gate": 10, "drain": 0.5},
        "stuck": {"window": 5, "grace": 1},
        "poll_interval": 0.05,
    }
    (root / "storyloop.yaml").write_text(yaml.safe_dump(settings))
    return root


def run_cli(project_dir, *args):
    return cli.main(["-C", str(project_dir), *args])


def add_stories(project_dir):
    prd = project_dir / ".storyloop" / "prd.json"
    prd.write_text(json.dumps({"project": "app", "userStories": STORIES}))


def loop_state(project_dir):
    return json.loads((project_dir / ".storyloop" / "state.json").read_text())


@pytest.fixture
def initialized(project_dir, capsys):
    assert run_cli(project_dir, "init") == EXIT_SUCCESS
    add_stories(project_dir)
    capsys.readouterr()
    return project_dir


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_max_iterations_must_be_positive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run", "-n", "0"])

    def test_defaults(self):
        args = cli.build_parser().parse_args(["history"])
        assert args.limit == 10
        assert args.stats is False
        assert args.func is cli.cmd_history

    def test_config_without_subcommand_shows_all(self):
        args = cli.build_parser().parse_args(["config"])
        assert args.func is cli.cmd_config_get
        assert args.key is None


class TestInit:
    """Tests for `storyloop init`."""

    def test_creates_layout(self, project_dir, capsys):
        assert run_cli(project_dir, "init", "-n", "7") == EXIT_SUCCESS

        loop_dir = project_dir / ".storyloop"
        for sub in ("history", "activity", "logs"):
            assert (loop_dir / sub).is_dir()
        state = loop_state(project_dir)
        assert state["current_iteration"] == 0
        assert state["max_iterations"] == 7
        assert state["ai_tool"] == "fake"
        assert state["enabled"] is True
        assert state["paused"] is False
        assert json.loads((loop_dir / "prd.json").read_text())["userStories"] == []
        assert "Initialized storyloop" in capsys.readouterr().out

    def test_writes_default_settings(self, tmp_path):
        assert run_cli(tmp_path, "init") == EXIT_SUCCESS
        assert (tmp_path / "storyloop.yaml").exists()
        assert loop_state(tmp_path)["ai_tool"] == "claude"

    def test_unknown_tool(self, project_dir, capsys):
        assert run_cli(project_dir, "init", "--tool", "nope") == EXIT_CONFIG_ERROR
        assert "Unknown tool 'nope'" in capsys.readouterr().out

    def test_refuses_reinit_without_force(self, initialized, capsys):
        assert run_cli(initialized, "init") == EXIT_ERROR
        assert "already initialized" in capsys.readouterr().out

    def test_force_keeps_numbering_and_backlog(self, initialized):
        assert run_cli(initialized, "run", "--no-prefect", "-n", "1") == EXIT_SUCCESS
        assert run_cli(initialized, "init", "--force") == EXIT_SUCCESS

        assert loop_state(initialized)["current_iteration"] == 1
        prd = json.loads((initialized / ".storyloop" / "prd.json").read_text())
        assert len(prd["userStories"]) == 3


class TestRun:
    """Tests for `storyloop run --no-prefect`."""

    def test_runs_backlog_to_completion(self, initialized, capsys):
        assert run_cli(initialized, "run", "--no-prefect") == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert "Loop stopped: complete" in out
        assert "Stories:   3/3 complete" in out
        assert loop_state(initialized)["current_iteration"] == 2
        history = initialized / ".storyloop" / "history"
        assert sorted(p.name for p in history.iterdir()) == ["iteration-000001.json", "iteration-000002.json"]
        assert (initialized / ".storyloop" / "logs" / "storyloop.log").exists()

    def test_max_iterations_override_persists(self, initialized, capsys):
        assert run_cli(initialized, "run", "--no-prefect", "-n", "1") == EXIT_SUCCESS
        assert "Loop stopped: max_iterations" in capsys.readouterr().out
        assert loop_state(initialized)["max_iterations"] == 1

    def test_max_iterations_below_current(self, initialized, capsys):
        run_cli(initialized, "run", "--no-prefect", "-n", "2")
        capsys.readouterr()
        assert run_cli(initialized, "run", "--no-prefect", "-n", "1") == EXIT_CONFIG_ERROR
        assert "below the current iteration" in capsys.readouterr().out

    def test_unknown_tool_override(self, initialized):
        assert run_cli(initialized, "run", "--no-prefect", "--tool", "nope") == EXIT_CONFIG_ERROR

    def test_broken_prompt_override_fails_iteration(self, initialized, capsys):
        (initialized / ".storyloop" / "prompts").mkdir(exist_ok=True)
        (initialized / ".storyloop" / "prompts" / "story.md").write_text("Do {story_id} then {unknown_var}\n")

        assert run_cli(initialized, "run", "--no-prefect", "-n", "1") == EXIT_SUCCESS

        record = json.loads((initialized / ".storyloop" / "history" / "iteration-000001.json").read_text())
        assert record["outcome"] == "failed"
        assert any("unknown_var" in e for e in record["errors"])

    def test_prompt_error_is_config_error(self, initialized, capsys):
        with patch("storyloop.commands.run.IterationLoop.run", side_effect=PromptError("bad template")):
            assert run_cli(initialized, "run", "--no-prefect") == EXIT_CONFIG_ERROR
        assert "ERROR: bad template" in capsys.readouterr().out

    def test_paused_loop_runs_nothing(self, initialized, capsys):
        run_cli(initialized, "pause")
        capsys.readouterr()
        assert run_cli(initialized, "run", "--no-prefect") == EXIT_SUCCESS
        assert "Loop stopped: paused" in capsys.readouterr().out
        assert loop_state(initialized)["current_iteration"] == 0

    def test_not_initialized(self, project_dir):
        assert run_cli(project_dir, "run", "--no-prefect") == EXIT_NOT_INITIALIZED

    def test_second_run_fails_fast(self, initialized, capsys):
        with loop_lock(initialized / ".storyloop", timeout=1):
            assert run_cli(initialized, "run", "--no-prefect") == EXIT_LOCK_TIMEOUT
        assert "Another storyloop run is active" in capsys.readouterr().out


class TestStatus:
    """Tests for `storyloop status`."""

    def test_idle(self, initialized, capsys):
        assert run_cli(initialized, "status") == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "State:          idle" in out
        assert "Next story:     US-001" in out
        assert "No iterations yet." in out

    def test_json_after_run(self, initialized, capsys):
        run_cli(initialized, "run", "--no-prefect", "-n", "1")
        capsys.readouterr()

        assert run_cli(initialized, "status", "--json") == EXIT_SUCCESS
        data = json.loads(capsys.readouterr().out)
        assert data["current_iteration"] == 1
        assert data["next_story"] == "US-002"
        assert data["last_record"]["outcome"] == "success"
        assert data["running"] is False

    def test_running(self, initialized, capsys):
        with loop_lock(initialized / ".storyloop", timeout=1):
            assert run_cli(initialized, "status") == EXIT_SUCCESS
        assert "State:          running" in capsys.readouterr().out

    def test_not_initialized(self, project_dir):
        assert run_cli(project_dir, "status") == EXIT_NOT_INITIALIZED


class TestHistory:
    """Tests for `storyloop history`."""

    @pytest.fixture
    def ran(self, initialized, capsys):
        run_cli(initialized, "run", "--no-prefect")
        capsys.readouterr()
        return initialized

    def test_lines_newest_first(self, ran, capsys):
        assert run_cli(ran, "history") == EXIT_SUCCESS
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("#2")
        assert "US-002" in lines[0]
        assert "gates 4/4" in lines[0]
        assert lines[1].startswith("#1")

    def test_limit_and_story(self, ran, capsys):
        run_cli(ran, "history", "--limit", "1")
        assert len(capsys.readouterr().out.splitlines()) == 1
        run_cli(ran, "history", "--story", "US-001", "--json")
        records = json.loads(capsys.readouterr().out)
        assert [r["iteration"] for r in records] == [1]

    def test_verbose_shows_learnings(self, ran, capsys):
        run_cli(ran, "--verbose", "history")
        assert "learning: the app module keeps its config in settings.py" in capsys.readouterr().out

    def test_stats(self, ran, capsys):
        run_cli(ran, "history", "--stats", "--json")
        stats = json.loads(capsys.readouterr().out)
        assert stats["total_iterations"] == 2
        assert stats["outcomes"]["success"] == 2

    def test_empty(self, initialized, capsys):
        run_cli(initialized, "history")
        assert "No iterations recorded" in capsys.readouterr().out

    def test_not_initialized(self, project_dir):
        assert run_cli(project_dir, "history") == EXIT_NOT_INITIALIZED


class TestControl:
    """Tests for `storyloop pause|resume|continue`."""

    def test_pause_and_resume_idle_loop(self, initialized):
        assert run_cli(initialized, "pause") == EXIT_SUCCESS
        assert loop_state(initialized)["paused"] is True
        assert run_cli(initialized, "resume") == EXIT_SUCCESS
        state = loop_state(initialized)
        assert state["paused"] is False
        assert state["paused_at"] is None

    def test_pause_running_loop_leaves_request(self, initialized, capsys):
        loop_dir = initialized / ".storyloop"
        with loop_lock(loop_dir, timeout=1):
            assert run_cli(initialized, "pause") == EXIT_SUCCESS
            assert (loop_dir / "pause.request").exists()
            assert run_cli(initialized, "resume") == EXIT_SUCCESS
            assert not (loop_dir / "pause.request").exists()
        assert "Pending pause request cancelled" in capsys.readouterr().out
        assert loop_state(initialized)["paused"] is False

    def test_continue_requires_running_loop(self, initialized):
        assert run_cli(initialized, "continue") == EXIT_ERROR

    def test_continue_running_loop(self, initialized):
        loop_dir = initialized / ".storyloop"
        with loop_lock(loop_dir, timeout=1):
            assert run_cli(initialized, "continue") == EXIT_SUCCESS
        assert (loop_dir / "continue.request").exists()

    def test_pause_not_initialized(self, project_dir):
        assert run_cli(project_dir, "pause") == EXIT_NOT_INITIALIZED


class TestConfig:
    """Tests for `storyloop config`."""

    def test_get_all(self, initialized, capsys):
        assert run_cli(initialized, "config") == EXIT_SUCCESS
        data = json.loads(capsys.readouterr().out)
        assert data["ai_tool"] == "fake"

    def test_get_key(self, initialized, capsys):
        assert run_cli(initialized, "config", "get", "max_iterations") == EXIT_SUCCESS
        assert capsys.readouterr().out.strip() == "4"

    def test_get_unknown_key(self, initialized):
        assert run_cli(initialized, "config", "get", "colour") == EXIT_CONFIG_ERROR

    def test_set(self, initialized, capsys):
        assert run_cli(initialized, "config", "set", "max_iterations", "12") == EXIT_SUCCESS
        assert "max_iterations: 4 -> 12" in capsys.readouterr().out
        assert loop_state(initialized)["max_iterations"] == 12

    def test_set_enabled(self, initialized):
        assert run_cli(initialized, "config", "set", "enabled", "false") == EXIT_SUCCESS
        assert loop_state(initialized)["enabled"] is False

    @pytest.mark.parametrize("key,value", [
        ("current_iteration", "3"),
        ("max_iterations", "zero"),
        ("ai_tool", "nope"),
        ("enabled", "maybe"),
    ])
    def test_set_rejected(self, initialized, key, value):
        assert run_cli(initialized, "config", "set", key, value) == EXIT_CONFIG_ERROR

    def test_set_below_current_iteration(self, initialized):
        run_cli(initialized, "run", "--no-prefect", "-n", "2")
        assert run_cli(initialized, "config", "set", "max_iterations", "1") == EXIT_CONFIG_ERROR
        assert loop_state(initialized)["max_iterations"] == 2

    def test_set_refused_while_running(self, initialized, capsys):
        with loop_lock(initialized / ".storyloop", timeout=1):
            assert run_cli(initialized, "config", "set", "max_iterations", "9") == EXIT_ERROR
        assert "A loop is running" in capsys.readouterr().out


class TestTools:
    """Tests for `storyloop tools`."""

    def test_lists_tools(self, initialized, capsys):
        assert run_cli(initialized, "tools") == EXIT_SUCCESS
        out = capsys.readouterr().out
        fake_line = next(line for line in out.splitlines() if " fake " in line)
        assert fake_line.startswith("*")
        assert " ok " in fake_line
        assert "claude" in out
