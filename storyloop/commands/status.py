"""
storyloop status - Show loop state, backlog progress, and the last iteration.
"""

import json
from pathlib import Path

from storyloop.lib.constants import (
    CANONICAL_CHECKS,
    EXIT_CONFIG_ERROR,
    EXIT_NOT_INITIALIZED,
    EXIT_SUCCESS,
    LOOP_DIR_NAME,
)
from storyloop.lib.settings import SettingsError, load_settings
from storyloop.lib.stats import format_duration
from storyloop.lib.validate import ValidationError
from storyloop.runner.locking import is_loop_running
from storyloop.workflow.loop import IterationLoop, LoopNotInitialized


def cmd_status(args, project_dir: Path) -> int:
    """Show the loop status."""
    loop_dir = project_dir / LOOP_DIR_NAME

    try:
        loop = IterationLoop(project_dir, settings=load_settings(project_dir))
        status = loop.status()
    except LoopNotInitialized as e:
        print(f"ERROR: {e}")
        return EXIT_NOT_INITIALIZED
    except (SettingsError, ValidationError) as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    status.running = is_loop_running(loop_dir)

    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return EXIT_SUCCESS

    if status.running:
        state = "running"
        if status.pause_requested:
            state += " (pause requested)"
    elif status.paused:
        state = "paused"
    elif not status.enabled:
        state = "disabled"
    else:
        state = "idle"

    print(f"Loop: {loop_dir}")
    print("=" * 60)
    print()
    print(f"State:          {state}")
    print(f"Tool:           {status.ai_tool}")
    print(f"Iteration:      {status.current_iteration}/{status.max_iterations}")
    print(f"Stories:        {status.stories_completed}/{status.stories_total} complete")
    print(f"Next story:     {status.next_story or '(none)'}")
    print()

    record = status.last_record
    if record is None:
        print("No iterations yet.")
        return EXIT_SUCCESS

    print(f"Last iteration: #{record.iteration} {record.story_id} -> {record.outcome}")
    print(f"  Duration:     {format_duration(record.duration_ms / 1000)}")
    gates = ", ".join(
        f"{name} {'ok' if record.gates.get(name) else 'FAIL'}" for name in CANONICAL_CHECKS
    )
    print(f"  Gates:        {gates}")
    if record.git_commit:
        print(f"  Commit:       {record.git_commit[:12]}")
    for error in record.errors[:3]:
        print(f"  Error:        {error}")
    return EXIT_SUCCESS
