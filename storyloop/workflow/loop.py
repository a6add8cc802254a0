"""
The iteration loop: one story per iteration until the backlog is done.

Each iteration selects the next incomplete story, runs one AgentManager to a
terminal state, and persists in this order:

    1. iteration record (create-only)
    2. story passes flag, when the gate passed
    3. LoopConfig.current_iteration
    4. progress.txt

The loop stops when no incomplete story remains, current_iteration reaches
max_iterations, the loop is paused or disabled, or persistence fails. Pause
is only honored between iterations; an in-flight iteration always finishes
and is recorded.

While a loop runs it holds the loop lock, so other processes talk to it
through request files in the loop directory (pause.request, continue.request).
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storyloop.agents import get_parser_class
from storyloop.lib.activity import ActivityLog
from storyloop.lib.attempts import format_previous_attempts, format_project_learnings
from storyloop.lib.constants import (
    ACTIVITY_DIR,
    CONTINUE_REQUEST_FILE,
    LOOP_DIR_NAME,
    PAUSE_REQUEST_FILE,
    PRD_FILE,
    PROMPT_OVERRIDES_DIR,
)
from storyloop.lib.prompts import PromptError, build_section, render_prompt
from storyloop.lib.settings import Settings, load_settings
from storyloop.runner.agent import AgentManager
from storyloop.runner.bridge import ProcessBridge, ToolDescriptor, discover_tools
from storyloop.runner.gates import QualityGateRunner
from storyloop.workflow.backlog import Backlog, Story, load_backlog
from storyloop.workflow.history import IterationHistoryStore, IterationRecord, LoopConfig, now_iso

logger = logging.getLogger(__name__)

# Why the loop stopped
STOP_COMPLETE = "complete"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_PAUSED = "paused"
STOP_DISABLED = "disabled"
STOP_CANCELLED = "cancelled"

# Prompt budget for history-derived sections
MAX_SECTION_CHARS = 4000


class LoopNotInitialized(Exception):
    """No state.json: `storyloop init` hasn't been run."""
    pass


@dataclass
class LoopStatus:
    """Snapshot of the loop for `storyloop status`."""
    enabled: bool
    paused: bool
    current_iteration: int
    max_iterations: int
    ai_tool: str
    stories_completed: int
    stories_total: int
    next_story: Optional[str] = None
    last_record: Optional[IterationRecord] = None
    running: bool = False
    stop_reason: Optional[str] = None
    pause_requested: bool = False

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "paused": self.paused,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "ai_tool": self.ai_tool,
            "stories_completed": self.stories_completed,
            "stories_total": self.stories_total,
            "next_story": self.next_story,
            "last_record": self.last_record.to_dict() if self.last_record else None,
            "running": self.running,
            "stop_reason": self.stop_reason,
            "pause_requested": self.pause_requested,
        }


def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{now_iso()}\n")


def _consume(path: Path) -> bool:
    """Remove a request file. True if it existed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def request_pause(loop_dir: Path) -> None:
    """Ask a running loop to pause at its next iteration boundary."""
    _touch(loop_dir / PAUSE_REQUEST_FILE)


def cancel_pause_request(loop_dir: Path) -> bool:
    return _consume(loop_dir / PAUSE_REQUEST_FILE)


def request_continue(loop_dir: Path) -> None:
    """Tell a running loop that a stuck tool should be given more time."""
    _touch(loop_dir / CONTINUE_REQUEST_FILE)


class IterationLoop:
    """
    Outer loop over the backlog.

    Usage:
        loop = IterationLoop(project_dir)
        loop.start()
        status = loop.run()
    """

    def __init__(
        self,
        project_dir: Path,
        settings: Optional[Settings] = None,
        bridge: Optional[ProcessBridge] = None,
        tools: Optional[dict[str, ToolDescriptor]] = None,
    ):
        self.project_dir = project_dir
        self.loop_dir = project_dir / LOOP_DIR_NAME
        self.settings = settings or load_settings(project_dir)
        self.bridge = bridge or ProcessBridge()
        self.gate_runner = QualityGateRunner(self.bridge, default_timeout=self.settings.timeouts.gate)
        self.store = IterationHistoryStore(self.loop_dir)

        self.backlog: Optional[Backlog] = None
        self.config: Optional[LoopConfig] = None
        self.running = False
        self.stop_reason: Optional[str] = None

        self._tools: dict[str, ToolDescriptor] = dict(tools or {})
        self._config_lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def pause_request_path(self) -> Path:
        return self.loop_dir / PAUSE_REQUEST_FILE

    @property
    def prompts_dir(self) -> Path:
        return self.loop_dir / PROMPT_OVERRIDES_DIR

    @property
    def continue_request_path(self) -> Path:
        return self.loop_dir / CONTINUE_REQUEST_FILE

    def _load_config(self) -> LoopConfig:
        config = self.store.load_config()
        if config is None:
            raise LoopNotInitialized(f"No loop state in {self.loop_dir}. Run 'storyloop init' first.")
        return config

    # --- lifecycle ---

    def start(self, backlog: Optional[Backlog] = None, config: Optional[LoopConfig] = None) -> LoopConfig:
        """Load backlog and config, reconcile with history, persist.

        Raises:
            LoopNotInitialized: If there's no state.json and no config was given
            SettingsError: If the configured tool isn't known
            ValidationError: If prd.json is invalid
            PersistenceError: If state can't be written
        """
        self.backlog = backlog or load_backlog(self.loop_dir / PRD_FILE)
        config = config or self._load_config()
        self.settings.get_tool(config.ai_tool)

        last = self.store.last_iteration()
        if last != config.current_iteration:
            # A crash between writing a record and writing state.json
            logger.warning(
                f"state.json says iteration {config.current_iteration} but history ends at {last}; "
                f"continuing from {last}"
            )
            self._replay_passes(config.current_iteration, last)
            config.current_iteration = last
            config.max_iterations = max(config.max_iterations, last)

        if _consume(self.pause_request_path) and not config.paused:
            logger.info("Pending pause request found, loop stays paused")
            config.paused = True
            config.paused_at = now_iso()
        _consume(self.continue_request_path)

        config.started_at = config.started_at or now_iso()
        self.config = config
        self.stop_reason = None
        self._cancel.clear()
        with self._config_lock:
            self.store.save_config(config)

        completed, total = self.backlog.counts()
        logger.info(
            f"Loop started at iteration {config.current_iteration}/{config.max_iterations} "
            f"with {config.ai_tool}; {completed}/{total} stories complete"
        )
        return config

    def _replay_passes(self, persisted: int, last: int) -> None:
        """Flip passes for completed records that state.json never caught up with."""
        for iteration in range(persisted + 1, last + 1):
            record = self.store.get(iteration)
            if record is None or record.final_state != "completed":
                continue
            story = self.backlog.get(record.story_id)
            if story is None:
                logger.warning(f"Iteration {iteration} completed {record.story_id}, which is no longer in the backlog")
            elif not story.passes:
                logger.info(f"Iteration {iteration} completed {story.id}; marking it passed")
                self.backlog.mark_passes(story.id)

    def run(self) -> LoopStatus:
        """Step until the loop stops. Starts the loop if needed."""
        if self.config is None:
            self.start()

        self.running = True
        try:
            while self.step() is not None:
                pass
        finally:
            self.running = False

        logger.info(f"Loop stopped: {self.stop_reason}")
        return self.status()

    def step(self) -> Optional[IterationRecord]:
        """Run one iteration. Returns its record, or None when the loop stops.

        Raises:
            PersistenceError: If any state can't be written (fatal)
        """
        if self.config is None or self.backlog is None:
            raise RuntimeError("IterationLoop.start() must be called before step()")

        reason = self._check_stop()
        if reason:
            self.stop_reason = reason
            return None

        story = self.backlog.select_next()
        iteration = self.config.current_iteration + 1
        tool = self._resolve_tool(self.config.ai_tool)

        logger.info(
            f"=== Iteration {iteration}/{self.config.max_iterations}: "
            f"{story.id} {story.title} ({tool.name}) ==="
        )
        started_at = now_iso()
        manager = AgentManager(
            tool,
            self.settings,
            self.bridge,
            self.gate_runner,
            get_parser_class(tool.parser),
            cwd=self.project_dir,
            activity=ActivityLog(self.loop_dir / ACTIVITY_DIR, iteration),
            cancel_requested=self._cancel.is_set,
            continue_requested=lambda: _consume(self.continue_request_path),
            prompts_dir=self.prompts_dir,
        )
        try:
            prompt = self._build_prompt(story, iteration)
        except PromptError as e:
            logger.error(f"Could not build the prompt for {story.id}: {e}")
            outcome = manager.fail_before_launch(story, f"prompt error: {e}")
        else:
            outcome = manager.run(story, prompt)

        record = IterationRecord(
            iteration=iteration,
            story_id=story.id,
            tool=tool.name,
            gates=outcome.gates,
            outcome=outcome.outcome,
            errors=outcome.errors,
            learnings=outcome.learnings,
            duration_ms=int(outcome.duration * 1000),
            git_commit=outcome.git_commit,
            story_title=story.title,
            started_at=started_at,
            completed_at=now_iso(),
            summary=outcome.summary,
            final_state=outcome.final_state,
        )

        self.store.append(record)
        if outcome.final_state == "completed":
            self.backlog.mark_passes(story.id)
        with self._config_lock:
            self.config.current_iteration = iteration
            self.store.save_config(self.config)
        self.store.append_progress(record)

        logger.info(f"Iteration {iteration} finished: {record.outcome} ({outcome.final_state})")
        return record

    def _check_stop(self) -> Optional[str]:
        """Evaluated at every iteration boundary."""
        if _consume(self.pause_request_path) and not self.config.paused:
            self.pause()
        if self._cancel.is_set():
            return STOP_CANCELLED
        if self.config.paused:
            return STOP_PAUSED
        if not self.config.enabled:
            return STOP_DISABLED
        if self.config.exhausted:
            return STOP_MAX_ITERATIONS
        if self.backlog.select_next() is None:
            return STOP_COMPLETE
        return None

    def _resolve_tool(self, name: str) -> ToolDescriptor:
        if name not in self._tools:
            spec = self.settings.get_tool(name)
            self._tools[name] = discover_tools([spec], self.settings.timeouts.probe)[0]
        return self._tools[name]

    def _build_prompt(self, story: Story, iteration: int) -> str:
        previous = format_previous_attempts(
            [r.to_dict() for r in self.store.history(limit=3, story_id=story.id)]
        )
        learnings = format_project_learnings(
            [r.to_dict() for r in self.store.history(limit=20)]
        )
        criteria = "\n".join(f"- {c}" for c in story.acceptance_criteria)
        gates = "\n".join(f"- {g.name}: `{g.command}`" for g in self.settings.gates)

        return render_prompt(
            "story",
            override_dir=self.prompts_dir,
            story_id=story.id,
            title=story.title,
            description=story.description or story.title,
            acceptance_criteria=criteria or "- (none listed)",
            notes_section=build_section(story.notes, "## Notes"),
            previous_section=(
                build_section(previous, "## Previous Attempts", max_chars=MAX_SECTION_CHARS)
                + build_section(learnings, "## Project Learnings", max_chars=MAX_SECTION_CHARS)
            ),
            gates_section=build_section(gates, "## Quality Gate", "No quality checks are configured."),
            iteration=iteration,
            max_iterations=self.config.max_iterations,
        )

    # --- control ---

    def pause(self) -> LoopConfig:
        """Persist paused=true. A running iteration still completes."""
        with self._config_lock:
            config = self.config or self._load_config()
            config.paused = True
            config.paused_at = now_iso()
            self.store.save_config(config)
        logger.info("Loop paused")
        return config

    def resume(self) -> LoopConfig:
        """Clear paused and persist. Iteration numbering continues."""
        with self._config_lock:
            config = self.config or self._load_config()
            config.paused = False
            config.paused_at = None
            self.store.save_config(config)
        cancel_pause_request(self.loop_dir)
        logger.info(f"Loop resumed at iteration {config.current_iteration}/{config.max_iterations}")
        return config

    def cancel(self) -> None:
        """Abort the in-flight iteration at its next transition and stop."""
        self._cancel.set()

    def status(self) -> LoopStatus:
        config = self.config or self._load_config()
        backlog = self.backlog
        if backlog is None:
            backlog = load_backlog(self.loop_dir / PRD_FILE)
        completed, total = backlog.counts()
        next_story = backlog.select_next()

        return LoopStatus(
            enabled=config.enabled,
            paused=config.paused,
            current_iteration=config.current_iteration,
            max_iterations=config.max_iterations,
            ai_tool=config.ai_tool,
            stories_completed=completed,
            stories_total=total,
            next_story=next_story.id if next_story else None,
            last_record=self.store.latest(),
            running=self.running,
            stop_reason=self.stop_reason,
            pause_requested=self.pause_request_path.exists(),
        )
