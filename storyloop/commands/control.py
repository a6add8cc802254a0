"""
storyloop pause / resume / continue - Operator control of the loop.

A running loop holds the loop lock, so these commands leave request files
for it to pick up. When no loop is running they update state.json directly.
"""

import logging
from pathlib import Path

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
from storyloop.lib.settings import SettingsError, load_settings
from storyloop.runner.locking import LockTimeout, is_loop_running, loop_lock
from storyloop.workflow.loop import (
    IterationLoop,
    LoopNotInitialized,
    cancel_pause_request,
    request_continue,
    request_pause,
)

logger = logging.getLogger(__name__)


def _with_idle_loop(project_dir: Path, action) -> int:
    """Run action(loop) under the loop lock, mapping errors to exit codes."""
    loop_dir = project_dir / LOOP_DIR_NAME
    try:
        with loop_lock(loop_dir, timeout=10):
            action(IterationLoop(project_dir, settings=load_settings(project_dir)))
    except LockTimeout:
        print("ERROR: The loop lock is held by another process. Try again shortly.")
        return EXIT_LOCK_TIMEOUT
    except LoopNotInitialized as e:
        print(f"ERROR: {e}")
        return EXIT_NOT_INITIALIZED
    except SettingsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except PersistenceError as e:
        print(f"ERROR: {e}")
        return EXIT_PERSISTENCE_ERROR
    return EXIT_SUCCESS


def cmd_pause(args, project_dir: Path) -> int:
    """Pause the loop at the next iteration boundary."""
    loop_dir = project_dir / LOOP_DIR_NAME
    if is_loop_running(loop_dir):
        request_pause(loop_dir)
        print("Pause requested. The loop stops after the current iteration is recorded.")
        return EXIT_SUCCESS

    def pause(loop: IterationLoop):
        config = loop.pause()
        print(f"Loop paused at iteration {config.current_iteration}/{config.max_iterations}")

    return _with_idle_loop(project_dir, pause)


def cmd_resume(args, project_dir: Path) -> int:
    """Clear the paused flag so the next run continues where it left off."""
    loop_dir = project_dir / LOOP_DIR_NAME
    if is_loop_running(loop_dir):
        if cancel_pause_request(loop_dir):
            print("Pending pause request cancelled. The loop keeps running.")
        else:
            print("The loop is running and not paused.")
        return EXIT_SUCCESS

    def resume(loop: IterationLoop):
        config = loop.resume()
        print(f"Loop resumed at iteration {config.current_iteration}/{config.max_iterations}")
        print("  Continue with: storyloop run")

    return _with_idle_loop(project_dir, resume)


def cmd_continue(args, project_dir: Path) -> int:
    """Give a stuck tool more time instead of letting it be aborted."""
    loop_dir = project_dir / LOOP_DIR_NAME
    if not is_loop_running(loop_dir):
        print("ERROR: No loop is running in this project")
        return EXIT_ERROR

    request_continue(loop_dir)
    logger.info("Operator continuation requested")
    print("Continuation requested. A stuck tool gets a fresh silence window.")
    return EXIT_SUCCESS
