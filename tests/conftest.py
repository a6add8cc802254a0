"""Shared fixtures: fake AI tools, fast settings, and a throwaway project."""

import json
import shlex
import sys
import textwrap
from pathlib import Path

import pytest

from storyloop.lib.settings import GateSpec, StuckPolicy, Timeouts, ToolSpec, default_settings
from storyloop.runner.bridge import ToolDescriptor
from storyloop.workflow.history import IterationHistoryStore, LoopConfig
from storyloop.workflow.loop import IterationLoop

PYTHON = shlex.quote(sys.executable)

STORIES = [
    {"id": "US-002", "title": "Show the dashboard", "priority": 2, "passes": False,
     "acceptanceCriteria": ["Dashboard lists projects"]},
    {"id": "US-001", "title": "Add login", "priority": 1, "passes": False,
     "description": "Users sign in with email", "acceptanceCriteria": ["Login form", "Session cookie"]},
    {"id": "US-000", "title": "Project skeleton", "priority": 1, "passes": True},
]

SUCCESS_TOOL = """
print("Reading the story...", flush=True)
print("🔧 Tool: edit_file", flush=True)
print("  path: app.py", flush=True)
print("Learning: the app module keeps its config in settings.py", flush=True)
print("<promise>COMPLETE</promise>", flush=True)
"""

SILENT_TOOL = """
import time
print("thinking...", flush=True)
time.sleep(30)
"""

ERROR_TOOL = """
import sys
print("Compiling...", flush=True)
print("❌ Error: could not compile app.py", flush=True)
sys.exit(1)
"""


def python_gate(name: str, code: str, check=None, **kwargs) -> GateSpec:
    """A gate check that runs a Python snippet."""
    return GateSpec(name=name, command=f"{PYTHON} -c {shlex.quote(code)}", check=check, **kwargs)


def passing_gates() -> list[GateSpec]:
    return [python_gate("tests", "print('3 passed')", check="tests")]


@pytest.fixture
def make_tool(tmp_path):
    """Write a Python script and return a ToolDescriptor that runs it."""
    counter = [0]

    def _make(body: str, name: str = "fake", parser: str = "claude",
              prompt_arg: bool = True, interactive: bool = False) -> ToolDescriptor:
        counter[0] += 1
        script = tmp_path / f"tool_{counter[0]}.py"
        script.write_text(textwrap.dedent(body))
        command = f"{PYTHON} -u {shlex.quote(str(script))}" + (" {prompt}" if prompt_arg else "")
        return ToolDescriptor(name=name, command=command, parser=parser, available=True, interactive=interactive)

    return _make


@pytest.fixture
def fast_settings():
    """Defaults with short timeouts and one passing gate."""
    settings = default_settings()
    settings.gates = passing_gates()
    settings.timeouts = Timeouts(tool=20.0, max_runtime=15.0, gate=10.0, drain=0.5, probe=5.0)
    settings.stuck = StuckPolicy(window=0.5, grace=0.5, nudge=True)
    settings.poll_interval = 0.05
    return settings


@pytest.fixture
def project(tmp_path) -> Path:
    """Initialized project with three stories (one already passing)."""
    project_dir = tmp_path / "project"
    loop_dir = project_dir / ".storyloop"
    loop_dir.mkdir(parents=True)
    (loop_dir / "prd.json").write_text(json.dumps({"project": "demo", "userStories": STORIES}, indent=2))
    IterationHistoryStore(loop_dir).save_config(LoopConfig(ai_tool="fake", max_iterations=5))
    return project_dir


@pytest.fixture
def make_loop(project, fast_settings):
    """Build an IterationLoop over the test project that uses a given fake tool."""

    def _make(tool: ToolDescriptor, settings=None) -> IterationLoop:
        settings = settings or fast_settings
        settings.tools[tool.name] = ToolSpec(tool.name, tool.command, tool.parser)
        return IterationLoop(project, settings=settings, tools={tool.name: tool})

    return _make


def read_json(path: Path) -> dict:
    return json.loads(path.read_text())
