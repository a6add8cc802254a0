"""
Lock management for storyloop.

One flock per loop directory makes the history store single-writer across
processes: a running loop holds it for the whole run, and pause/resume/
config commands take it briefly.
"""

import fcntl
import os
import signal
import sys
import threading
import time
import atexit
from pathlib import Path
from contextlib import contextmanager


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


LOCK_FILE = "loop.lock"


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str, poll: float = 0.2):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
        poll: Seconds between attempts
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    # Append mode: a waiting contender must not truncate the holder's pid
    fd = open(lock_file, 'a')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout:g}s")
            time.sleep(poll)

    def cleanup():
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)

    # Signal handlers can only be installed from the main thread
    in_main = threading.current_thread() is threading.main_thread()
    if in_main:
        original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))

    try:
        fd.truncate(0)
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        if in_main:
            signal.signal(signal.SIGTERM, original_sigterm)
        cleanup()


@contextmanager
def loop_lock(loop_dir: Path, timeout: float = 10):
    """Acquire the loop's writer lock, yield, release on exit."""
    with _acquire_lock(loop_dir / LOCK_FILE, timeout, f"loop lock in {loop_dir}"):
        yield


def is_loop_running(loop_dir: Path) -> bool:
    """True if another process currently holds the loop lock."""
    lock_file = loop_dir / LOCK_FILE
    if not lock_file.exists():
        return False
    try:
        with open(lock_file, 'r') as fd:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        return False
    return False
