"""
storyloop run - Run the iteration loop until it stops.
"""

import logging
from pathlib import Path
from typing import Optional

from storyloop.lib.atomic import PersistenceError
from storyloop.lib.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_LOCK_TIMEOUT,
    EXIT_NOT_INITIALIZED,
    EXIT_PERSISTENCE_ERROR,
    EXIT_SUCCESS,
    LOOP_DIR_NAME,
)
from storyloop.lib.prompts import PromptError
from storyloop.lib.settings import Settings, SettingsError, load_settings
from storyloop.lib.validate import ValidationError
from storyloop.runner.locking import LockTimeout, loop_lock
from storyloop.workflow.history import IterationHistoryStore, LoopConfig
from storyloop.workflow.loop import (
    STOP_COMPLETE,
    STOP_PAUSED,
    IterationLoop,
    LoopNotInitialized,
)

logger = logging.getLogger(__name__)

# A second `storyloop run` fails fast instead of queueing
RUN_LOCK_TIMEOUT = 2


def apply_run_overrides(
    store: IterationHistoryStore,
    settings: Settings,
    max_iterations: Optional[int] = None,
    tool: Optional[str] = None,
) -> LoopConfig:
    """Persist --max-iterations / --tool into the loop state.

    Raises:
        LoopNotInitialized: If there's no loop state
        SettingsError: If the tool is unknown or max_iterations is invalid
    """
    config = store.load_config()
    if config is None:
        raise LoopNotInitialized("No loop state. Run 'storyloop init' first.")

    changed = False
    if tool and tool != config.ai_tool:
        settings.get_tool(tool)
        config.ai_tool = tool
        changed = True
    if max_iterations is not None and max_iterations != config.max_iterations:
        if max_iterations < max(1, config.current_iteration):
            raise SettingsError(
                f"--max-iterations {max_iterations} is below the current iteration "
                f"({config.current_iteration})"
            )
        config.max_iterations = max_iterations
        changed = True

    if changed:
        store.save_config(config)
        logger.info(f"Run overrides saved: tool={config.ai_tool}, max_iterations={config.max_iterations}")
    return config


def print_run_summary(status: dict) -> None:
    print()
    print(f"Loop stopped: {status['stop_reason']}")
    print(f"  Iteration: {status['current_iteration']}/{status['max_iterations']}")
    print(f"  Stories:   {status['stories_completed']}/{status['stories_total']} complete")
    last = status.get("last_record")
    if last:
        print(f"  Last:      #{last['iteration']} {last['story_id']} -> {last['outcome']}")

    if status["stop_reason"] == STOP_PAUSED:
        print("\nResume with: storyloop resume && storyloop run")
    elif status["stop_reason"] != STOP_COMPLETE and status.get("next_story"):
        print(f"\nNext story: {status['next_story']}")


def cmd_run(args, project_dir: Path) -> int:
    """Run the loop in the foreground while holding the loop lock."""
    loop_dir = project_dir / LOOP_DIR_NAME

    try:
        settings = load_settings(project_dir)
    except SettingsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    try:
        with loop_lock(loop_dir, timeout=RUN_LOCK_TIMEOUT):
            store = IterationHistoryStore(loop_dir)
            apply_run_overrides(store, settings, args.max_iterations, args.tool)

            if args.no_prefect:
                loop = IterationLoop(project_dir, settings=settings)
                status = loop.run().to_dict()
            else:
                # Imported here: Prefect is slow to import and only needed for flows
                from storyloop.workflow.flows import LoopRunParams, run_loop_flow
                status = run_loop_flow(LoopRunParams(project_dir=str(project_dir)))
    except LockTimeout:
        print("ERROR: Another storyloop run is active in this project")
        print("  Check with: storyloop status")
        return EXIT_LOCK_TIMEOUT
    except LoopNotInitialized as e:
        print(f"ERROR: {e}")
        return EXIT_NOT_INITIALIZED
    except (SettingsError, ValidationError, PromptError) as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except PersistenceError as e:
        print(f"ERROR: Loop stopped, state could not be saved: {e}")
        return EXIT_PERSISTENCE_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted. The in-flight iteration was not recorded and will run again.")
        return EXIT_ERROR

    print_run_summary(status)
    return EXIT_SUCCESS
