"""
Agent state machine: drives one story through one AI tool run.

States:
    idle -> invoking -> streaming -> evaluating -> gate_running -> completed
                                                               +-> failed
    idle -> failed (story prompt could not be rendered)
    Any non-terminal state -> aborted (cancel, or stuck with no continuation)

Streaming policy:
- A completion or error event starts a short drain window so the tool can
  finish writing, then streaming ends (or earlier, at EOF).
- An error followed by further tool activity counts as recovered.
- Silence for the stuck window produces one stuck event per episode. The
  first episode sends one automatic "continue" nudge. Every episode then
  waits a grace window for new output or an operator continuation before
  aborting.
- The hard tool timeout kills the process and fails the run. The soft
  max-runtime limit stops streaming and evaluates what was produced.

Cancellation is checked only at transition boundaries.

Usage:
    manager = AgentManager(tool, settings, bridge, gate_runner, ClaudeParser, cwd=repo)
    outcome = manager.run(story, prompt)
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from transitions import Machine

from storyloop.agents import Event, EventKind, StreamParser
from storyloop.agents.digest import digest_output, summarize
from storyloop.lib.activity import ActivityLog, Actor
from storyloop.lib.atomic import PersistenceError
from storyloop.lib.constants import CANONICAL_CHECKS, OUTCOME_FAILED, OUTCOME_PARTIAL, OUTCOME_SUCCESS
from storyloop.lib.prompts import render_prompt
from storyloop.lib.settings import Settings
from storyloop.runner.bridge import (
    ProcessBridge,
    ProcessInvocation,
    ProcessLaunchError,
    StreamSignal,
    ToolDescriptor,
    ToolTimeoutError,
)
from storyloop.runner.gates import QualityGateResult, QualityGateRunner
from storyloop.runner.git_utils import get_head_sha
from storyloop.workflow.backlog import Story

logger = logging.getLogger(__name__)

MAX_RECORD_ERRORS = 10

STATES = [
    "idle",
    "invoking",
    "streaming",
    "evaluating",
    "gate_running",
    "completed",
    "failed",
    "aborted",
]

TERMINAL_STATES = ("completed", "failed", "aborted")
ACTIVE_STATES = [s for s in STATES if s not in TERMINAL_STATES]

TRANSITIONS = [
    {"trigger": "invoke", "source": "idle", "dest": "invoking"},
    {"trigger": "prompt_failed", "source": "idle", "dest": "failed"},

    # Launch
    {"trigger": "launched", "source": "invoking", "dest": "streaming"},
    {"trigger": "launch_failed", "source": "invoking", "dest": "failed"},

    # Streaming ends
    {"trigger": "finish_stream", "source": "streaming", "dest": "evaluating"},
    {"trigger": "timed_out", "source": "streaming", "dest": "failed"},
    {"trigger": "stuck_abort", "source": "streaming", "dest": "aborted"},

    # Evaluation
    {"trigger": "start_gate", "source": "evaluating", "dest": "gate_running"},
    {"trigger": "reject", "source": "evaluating", "dest": "failed"},

    # Gate
    {"trigger": "gate_passed", "source": "gate_running", "dest": "completed"},
    {"trigger": "gate_failed", "source": "gate_running", "dest": "failed"},
    {"trigger": "retry", "source": "gate_running", "dest": "invoking"},

    # Operator cancel, unexpected error
    {"trigger": "cancel", "source": ACTIVE_STATES, "dest": "aborted"},
    {"trigger": "crash", "source": ACTIVE_STATES, "dest": "failed"},
]


class StreamEnd(Enum):
    """Why the streaming phase ended."""
    EOF = "eof"
    DRAINED = "drained"
    MAX_RUNTIME = "max_runtime"
    STUCK = "stuck"
    TIMEOUT = "timeout"


@dataclass
class AgentOutcome:
    """Result of one AgentManager run; becomes exactly one IterationRecord."""
    final_state: str
    outcome: str
    gates: dict[str, bool]
    gate_result: Optional[QualityGateResult] = None
    errors: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)
    git_commit: Optional[str] = None
    summary: str = ""
    duration: float = 0.0
    reason: str = ""
    nudged: bool = False
    attempts: int = 0
    context_loss_count: int = 0


def outcome_for(final_state: str, gate_result: Optional[QualityGateResult]) -> str:
    """Map a terminal state to an iteration outcome.

    completed -> success; aborted -> partial; a failed gate with at least two
    of the four canonical checks passing -> partial; anything else -> failed.
    """
    if final_state == "completed":
        return OUTCOME_SUCCESS
    if final_state == "aborted":
        return OUTCOME_PARTIAL
    if gate_result is not None and gate_result.checks and not gate_result.passed:
        if gate_result.passed_count() >= 2:
            return OUTCOME_PARTIAL
    return OUTCOME_FAILED


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class AgentManager:
    """Drives one story through invoke, stream, evaluate, and gate.

    One instance per iteration; run() may be called once.
    """

    def __init__(
        self,
        tool: ToolDescriptor,
        settings: Settings,
        bridge: ProcessBridge,
        gate_runner: QualityGateRunner,
        parser_cls: type[StreamParser],
        cwd: Optional[Path] = None,
        activity: Optional[ActivityLog] = None,
        cancel_requested: Optional[Callable[[], bool]] = None,
        continue_requested: Optional[Callable[[], bool]] = None,
        prompts_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tool = tool
        self.settings = settings
        self.bridge = bridge
        self.gate_runner = gate_runner
        self.parser_cls = parser_cls
        self.cwd = cwd
        self.activity = activity or ActivityLog(None, 0)
        self.cancel_requested = cancel_requested
        self.continue_requested = continue_requested
        self.prompts_dir = prompts_dir
        self.clock = clock

        self.story: Optional[Story] = None
        self.invocation: Optional[ProcessInvocation] = None
        self.parser: Optional[StreamParser] = None
        self.gate_result: Optional[QualityGateResult] = None
        self.errors: list[str] = []
        self.transcript: list[str] = []
        self.signal: Optional[EventKind] = None
        self.stream_end: Optional[StreamEnd] = None
        self.nudged = False
        self.attempts = 0
        self.reason = ""

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="idle",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Log and record every transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        reason = event.kwargs.get("reason", "")
        if reason:
            self.reason = reason

        story_id = self.story.id if self.story else "?"
        logger.info(f"[FSM] {story_id}: {from_state} -> {to_state} ({trigger})" + (f": {reason}" if reason else ""))
        self.activity.transition(from_state, to_state, trigger, reason=reason)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def run(self, story: Story, prompt: str) -> AgentOutcome:
        """Run the story to a terminal state and return its outcome.

        Raises:
            RuntimeError: If called twice
            PersistenceError: Propagated untouched
        """
        if self.state != "idle":
            raise RuntimeError("AgentManager.run() may only be called once")

        self.story = story
        started = self.clock()
        head_before = get_head_sha(self.cwd) if self.cwd else None

        try:
            self._drive(story, prompt)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while running story {story.id}")
            self.errors.append(f"internal error: {e}")
            if not self.is_terminal():
                self.crash(reason=f"internal error: {e}")
        finally:
            if self.invocation is not None:
                self.bridge.terminate(self.invocation)

        return self._build_outcome(head_before, self.clock() - started)

    def fail_before_launch(self, story: Story, error: str) -> AgentOutcome:
        """Record a run that never reached the tool, e.g. a broken prompt template."""
        if self.state != "idle":
            raise RuntimeError("AgentManager.run() may only be called once")

        self.story = story
        head = get_head_sha(self.cwd) if self.cwd else None
        self.errors.append(error)
        self.prompt_failed(reason=error)
        return self._build_outcome(head, 0.0)

    def _drive(self, story: Story, prompt: str) -> None:
        self.invoke(reason=f"story {story.id} with {self.tool.name}")

        while True:
            if self._cancel_at_boundary():
                return

            self.attempts += 1
            self.activity.record(Actor.SYSTEM, "prompt", f"attempt {self.attempts}", state=self.state, chars=len(prompt))
            try:
                self.invocation = self.bridge.launch(
                    self.tool, prompt, self.settings.timeouts.tool, cwd=self.cwd
                )
            except ProcessLaunchError as e:
                self.errors.append(str(e))
                self.launch_failed(reason=e.reason)
                return

            self.launched(reason=f"pid {self.invocation.pid}")
            self.stream_end = self._stream(self.invocation)
            self.bridge.terminate(self.invocation)
            self.transcript.extend(self.parser.transcript)

            if self.stream_end is StreamEnd.TIMEOUT:
                self.timed_out(reason=f"no exit within {self.settings.timeouts.tool:g}s")
                return
            if self.stream_end is StreamEnd.STUCK:
                self.stuck_abort(reason="stuck: no output and no continuation within grace window")
                return

            self.finish_stream(reason=self.stream_end.value)
            if self._cancel_at_boundary():
                return

            rejection = self._rejection_reason()
            if rejection:
                self.errors.append(rejection)
                self.reject(reason=rejection)
                return

            self.start_gate()
            self.gate_result = self.gate_runner.run(self.settings.gates, cwd=self.cwd)
            for check in self.gate_result.checks:
                self.activity.record(
                    Actor.GATE, "gate", f"{check.name}: {'pass' if check.passed else 'fail'}",
                    state=self.state, **check.to_dict(),
                )

            if self.gate_result.passed:
                self.gate_passed(reason="all checks passed")
                return

            if self.attempts <= self.settings.gate_retries and not self._cancel_pending():
                prompt = render_prompt(
                    "gate_fix",
                    override_dir=self.prompts_dir,
                    story_id=story.id,
                    title=story.title,
                    attempt=self.attempts,
                    remediation=self.gate_result.remediation(),
                )
                self.retry(reason=f"gate fix attempt {self.attempts}")
                continue

            gate_errors = self.gate_result.errors()
            self.errors.extend(gate_errors)
            self.gate_failed(reason="; ".join(gate_errors))
            return

    def _cancel_pending(self) -> bool:
        return bool(self.cancel_requested and self.cancel_requested())

    def _cancel_at_boundary(self) -> bool:
        if self._cancel_pending() and not self.is_terminal():
            self.errors.append("cancelled by operator")
            self.cancel(reason="cancel requested")
            return True
        return False

    def _rejection_reason(self) -> str:
        """Empty if the tool signalled completion, else why it didn't."""
        if self.signal is EventKind.COMPLETION:
            return ""
        if self.signal is EventKind.ERROR:
            return "tool reported an error"
        if self.stream_end is StreamEnd.MAX_RUNTIME:
            return f"no completion within max runtime {self.settings.timeouts.max_runtime:g}s"
        exit_code = self.invocation.exit_code if self.invocation else None
        if self.stream_end is StreamEnd.EOF and exit_code == 0:
            return ""
        return f"tool exited with code {exit_code}"

    def _stream(self, inv: ProcessInvocation) -> StreamEnd:
        """Consume output until EOF, drain, stuck abort, or timeout."""
        policy = self.settings.stuck
        parser = self.parser_cls(
            stuck_window=policy.window,
            buffer_lines=self.settings.buffer_lines,
            clock=self.clock,
        )
        self.parser = parser
        self.signal = None

        start = self.clock()
        max_runtime_at = start + self.settings.timeouts.max_runtime
        grace_deadline: Optional[float] = None
        drain_deadline: Optional[float] = None

        while True:
            try:
                item = self.bridge.read_next(inv, poll=self.settings.poll_interval)
            except ToolTimeoutError as e:
                self.errors.append(str(e))
                return StreamEnd.TIMEOUT

            now = self.clock()

            if item is StreamSignal.EOF:
                drain_deadline = self._handle_events(parser.finish(now), now, drain_deadline)
                return StreamEnd.EOF

            if item is StreamSignal.TIMEOUT:
                if drain_deadline is not None and now >= drain_deadline:
                    return StreamEnd.DRAINED
                if now >= max_runtime_at:
                    self.errors.append(f"max runtime {self.settings.timeouts.max_runtime:g}s exceeded")
                    return StreamEnd.MAX_RUNTIME

                if grace_deadline is not None:
                    if self.continue_requested and self.continue_requested():
                        self.activity.record(Actor.OPERATOR, "continue", "operator continuation", state=self.state)
                        logger.info("Operator continuation received")
                        parser.rearm(now)
                        grace_deadline = None
                    elif now >= grace_deadline:
                        self.errors.append(
                            f"stuck: no output for {policy.window:g}s"
                            + (", continue nudge ignored" if self.nudged else "")
                        )
                        return StreamEnd.STUCK
                    continue

                for event in parser.poll(now, inv.is_alive()):
                    self._record_event(event)
                    if not self.nudged and policy.nudge:
                        self._nudge(inv, now - parser.last_output_at)
                    grace_deadline = now + policy.grace
                continue

            # An output line
            if grace_deadline is not None:
                self.activity.record(Actor.TOOL, "event", "output resumed", state=self.state)
                grace_deadline = None

            drain_deadline = self._handle_events(parser.feed(item, now), now, drain_deadline)

            if drain_deadline is not None and now >= drain_deadline:
                return StreamEnd.DRAINED
            if now >= max_runtime_at:
                self.errors.append(f"max runtime {self.settings.timeouts.max_runtime:g}s exceeded")
                return StreamEnd.MAX_RUNTIME

    def _handle_events(self, events: list[Event], now: float, drain_deadline: Optional[float]) -> Optional[float]:
        """Apply events to the terminal signal. Returns the updated drain deadline."""
        for event in events:
            self._record_event(event)
            if event.kind in (EventKind.COMPLETION, EventKind.ERROR):
                self.signal = event.kind
                if event.kind is EventKind.ERROR:
                    self.errors.append(event.payload)
                if drain_deadline is None:
                    drain_deadline = now + self.settings.timeouts.drain
            elif self.signal is EventKind.ERROR and event.kind in (EventKind.TOOL_CALL, EventKind.PROGRESS):
                # Tool kept working after reporting an error
                self.signal = None
                drain_deadline = None
        return drain_deadline

    def _record_event(self, event: Event) -> None:
        if event.kind is EventKind.PROGRESS:
            return
        self.activity.record(
            Actor.TOOL, "event", event.kind.value, state=self.state,
            payload=event.payload[:200], line_no=event.line_no,
        )
        if event.kind is EventKind.STUCK:
            logger.warning(f"Tool {self.tool.name} appears stuck: {event.payload}")

    def _nudge(self, inv: ProcessInvocation, silent_for: float) -> None:
        text = render_prompt("continue", self.prompts_dir, silent_seconds=int(silent_for)).strip()
        sent = self.bridge.send(inv, text)
        self.nudged = True
        self.activity.record(Actor.SYSTEM, "nudge", "continue" if sent else "continue (stdin closed)", state=self.state)
        logger.info(f"Sent continue nudge to {self.tool.name}" + ("" if sent else " (stdin closed, waiting only)"))

    def _build_outcome(self, head_before: Optional[str], duration: float) -> AgentOutcome:
        if self.parser is not None and not self.transcript:
            self.transcript.extend(self.parser.transcript)
        digest = digest_output(self.transcript)

        head_after = get_head_sha(self.cwd) if self.cwd else None
        if head_after and head_after != head_before:
            git_commit = head_after
        else:
            git_commit = digest.git_commit

        outcome = outcome_for(self.state, self.gate_result)
        if self.gate_result is not None:
            gates = self.gate_result.canonical()
        else:
            gates = {name: False for name in CANONICAL_CHECKS}

        return AgentOutcome(
            final_state=self.state,
            outcome=outcome,
            gates=gates,
            gate_result=self.gate_result,
            errors=_dedupe(self.errors + digest.errors)[:MAX_RECORD_ERRORS],
            learnings=digest.learnings,
            git_commit=git_commit,
            summary=summarize("\n".join(self.transcript), outcome),
            duration=duration,
            reason=self.reason,
            nudged=self.nudged,
            attempts=self.attempts,
            context_loss_count=digest.context_loss_count,
        )
