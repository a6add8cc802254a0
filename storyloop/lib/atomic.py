"""
Atomic file writes for persisted loop state.

Every persisted document is written to a temp file in the same directory,
fsynced, then moved into place. Readers therefore see either the previous
document or the new one, never a torn write.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


class PersistenceError(Exception):
    """Durable state could not be written. Fatal to the loop."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


def _write_temp(path: Path, content: str) -> Path:
    """Write content to a synced temp file next to path and return it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=TEMP_SUFFIX, dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return Path(tmp_name)


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _dump(data: dict) -> str:
    return json.dumps(data, indent=2) + "\n"


def write_json_atomic(path: Path, data: dict) -> None:
    """Replace path with data as JSON, atomically.

    Raises:
        PersistenceError: If the write or rename fails
    """
    try:
        tmp = _write_temp(path, _dump(data))
        os.replace(tmp, path)
        _fsync_dir(path.parent)
    except OSError as e:
        raise PersistenceError(path, f"atomic write failed: {e}") from e


def create_json_exclusive(path: Path, data: dict) -> None:
    """Publish data at path atomically, refusing to overwrite an existing file.

    The document is fully written to a temp file first and then hard-linked
    into place, so the target either does not exist or is complete.

    Raises:
        PersistenceError: If path already exists or the write fails
    """
    try:
        tmp = _write_temp(path, _dump(data))
    except OSError as e:
        raise PersistenceError(path, f"atomic write failed: {e}") from e

    try:
        os.link(tmp, path)
    except FileExistsError:
        raise PersistenceError(path, "refusing to overwrite existing record") from None
    except OSError as e:
        raise PersistenceError(path, f"could not publish record: {e}") from e
    finally:
        tmp.unlink(missing_ok=True)
    _fsync_dir(path.parent)


def append_line(path: Path, text: str) -> None:
    """Append text plus newline to a log file, synced.

    Raises:
        PersistenceError: If the append fails
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(text + "\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise PersistenceError(path, f"append failed: {e}") from e


def clean_temp_files(directory: Path) -> int:
    """Remove temp files left behind by an interrupted write. Returns count removed."""
    if not directory.exists():
        return 0
    removed = 0
    for tmp in directory.glob(f".*{TEMP_SUFFIX}"):
        try:
            tmp.unlink()
            removed += 1
        except OSError as e:
            logger.warning(f"Could not remove stale temp file {tmp}: {e}")
    if removed:
        logger.info(f"Removed {removed} stale temp file(s) from {directory}")
    return removed
