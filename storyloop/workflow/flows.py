"""Prefect flow wrapper for the iteration loop.

Each iteration runs as a task so it shows up individually when a Prefect
server is connected. Nothing is retried by Prefect: a failed iteration is
already recorded by the loop, and re-running it would break the one-record-
per-iteration rule.
"""

from pathlib import Path
from typing import Optional

from prefect import flow, get_run_logger, task
from pydantic import BaseModel

from storyloop.workflow.history import IterationRecord
from storyloop.workflow.loop import IterationLoop


class LoopRunParams(BaseModel):
    """Parameters for one `storyloop run`."""
    project_dir: str


@task(
    retries=0,
    name="iteration",
    description="Run one story through the AI tool and the quality gate",
)
def task_iteration(loop: IterationLoop) -> Optional[IterationRecord]:
    return loop.step()


@flow(
    name="storyloop-run",
    retries=0,
)
def run_loop_flow(params: LoopRunParams) -> dict:
    """Run the loop until it stops.

    Returns:
        LoopStatus as a dict
    """
    log = get_run_logger()
    log.info(f"Starting storyloop in {params.project_dir}")

    loop = IterationLoop(Path(params.project_dir))
    loop.start()

    loop.running = True
    ran = 0
    try:
        while True:
            record = task_iteration(loop)
            if record is None:
                break
            ran += 1
            log.info(f"Iteration {record.iteration}: {record.story_id} -> {record.outcome}")
    finally:
        loop.running = False

    status = loop.status()
    log.info(f"Loop stopped: {loop.stop_reason} ({ran} iteration(s) this run)")
    return status.to_dict()
