"""
storyloop config - Read or change persisted loop state.

    storyloop config get [KEY]
    storyloop config set KEY VALUE

Settable keys: enabled, max_iterations, ai_tool. Changes are refused while a
loop is running; pause it first.
"""

import json
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
from storyloop.workflow.history import SETTABLE_KEYS, IterationHistoryStore, coerce_config_value


def cmd_config_get(args, project_dir: Path) -> int:
    store = IterationHistoryStore(project_dir / LOOP_DIR_NAME)
    config = store.load_config()
    if config is None:
        print("ERROR: storyloop is not initialized here. Run 'storyloop init' first.")
        return EXIT_NOT_INITIALIZED

    data = config.to_dict()
    if args.key is None:
        print(json.dumps(data, indent=2))
        return EXIT_SUCCESS
    if args.key not in data:
        print(f"ERROR: Unknown key '{args.key}'. Keys: {', '.join(data)}")
        return EXIT_CONFIG_ERROR
    print(json.dumps(data[args.key]))
    return EXIT_SUCCESS


def cmd_config_set(args, project_dir: Path) -> int:
    """Set one LoopConfig key and rewrite state.json."""
    loop_dir = project_dir / LOOP_DIR_NAME

    try:
        value = coerce_config_value(args.key, args.value)
    except KeyError:
        print(f"ERROR: '{args.key}' cannot be set. Settable keys: {', '.join(SETTABLE_KEYS)}")
        return EXIT_CONFIG_ERROR
    except ValueError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    if is_loop_running(loop_dir):
        print("ERROR: A loop is running. Pause it and wait for it to stop before changing config.")
        return EXIT_ERROR

    try:
        if args.key == "ai_tool":
            load_settings(project_dir).get_tool(value)

        with loop_lock(loop_dir, timeout=10):
            store = IterationHistoryStore(loop_dir)
            config = store.load_config()
            if config is None:
                print("ERROR: storyloop is not initialized here. Run 'storyloop init' first.")
                return EXIT_NOT_INITIALIZED

            old = getattr(config, args.key)
            setattr(config, args.key, value)
            store.save_config(config)
    except SettingsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except ValueError as e:
        # current_iteration would exceed max_iterations
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR
    except LockTimeout:
        print("ERROR: The loop lock is held by another process. Try again shortly.")
        return EXIT_LOCK_TIMEOUT
    except PersistenceError as e:
        print(f"ERROR: {e}")
        return EXIT_PERSISTENCE_ERROR

    print(f"{args.key}: {json.dumps(old)} -> {json.dumps(value)}")
    return EXIT_SUCCESS
