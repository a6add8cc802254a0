"""Git utility functions for the runner."""

import subprocess
from pathlib import Path
from typing import Optional


def get_head_sha(worktree: Path) -> Optional[str]:
    """Current HEAD commit, or None outside a git repo or before the first commit."""
    try:
        result = subprocess.run(
            ["git", "-C", str(worktree), "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
