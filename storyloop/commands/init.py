"""
storyloop init - Create the loop directory, settings, and loop state.
"""

import logging
from pathlib import Path

from storyloop.lib.atomic import PersistenceError, write_json_atomic
from storyloop.lib.constants import (
    ACTIVITY_DIR,
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_LOCK_TIMEOUT,
    EXIT_PERSISTENCE_ERROR,
    EXIT_SUCCESS,
    HISTORY_DIR,
    LOGS_DIR,
    LOOP_DIR_NAME,
    PRD_FILE,
)
from storyloop.lib.settings import DEFAULT_AI_TOOL, SettingsError, load_settings, write_default_settings
from storyloop.runner.locking import LockTimeout, loop_lock
from storyloop.workflow.history import IterationHistoryStore, LoopConfig

logger = logging.getLogger(__name__)


def cmd_init(args, project_dir: Path) -> int:
    """Initialize storyloop in a project."""
    loop_dir = project_dir / LOOP_DIR_NAME
    for sub in (HISTORY_DIR, ACTIVITY_DIR, LOGS_DIR):
        (loop_dir / sub).mkdir(parents=True, exist_ok=True)

    settings_path = write_default_settings(project_dir, args.tool or DEFAULT_AI_TOOL)
    try:
        settings = load_settings(project_dir)
        tool = args.tool or settings.ai_tool
        settings.get_tool(tool)
    except SettingsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    max_iterations = args.max_iterations or settings.max_iterations
    if max_iterations < 1:
        print("ERROR: --max-iterations must be >= 1")
        return EXIT_CONFIG_ERROR

    try:
        with loop_lock(loop_dir, timeout=2):
            store = IterationHistoryStore(loop_dir)
            if store.is_initialized() and not args.force:
                print(f"storyloop is already initialized in {loop_dir}")
                print("  Use --force to reset the loop state (history is kept)")
                return EXIT_ERROR

            # Iteration numbers are never reused, even after a reset
            last = store.last_iteration()
            config = LoopConfig(
                enabled=True,
                current_iteration=last,
                max_iterations=max(max_iterations, last),
                ai_tool=tool,
                paused=False,
            )
            store.save_config(config)

            prd_path = loop_dir / PRD_FILE
            if not prd_path.exists():
                write_json_atomic(prd_path, {"project": project_dir.name, "userStories": []})
                print(f"Created empty backlog: {prd_path}")
    except LockTimeout:
        print("ERROR: A loop is running in this project. Stop it before re-initializing.")
        return EXIT_LOCK_TIMEOUT
    except PersistenceError as e:
        print(f"ERROR: {e}")
        return EXIT_PERSISTENCE_ERROR

    logger.info(f"Initialized loop in {loop_dir}")
    print(f"Initialized storyloop in {loop_dir}")
    print(f"  Settings:       {settings_path}")
    print(f"  Tool:           {config.ai_tool}")
    print(f"  Max iterations: {config.max_iterations}")
    if last:
        print(f"  History:        {last} earlier iteration(s) kept")
    print()
    print("Next steps:")
    print(f"  Add stories to {loop_dir / PRD_FILE}")
    print("  storyloop run")
    return EXIT_SUCCESS
