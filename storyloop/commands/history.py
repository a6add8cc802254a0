"""
storyloop history - List recorded iterations, newest first.
"""

import json
from pathlib import Path

from storyloop.lib.constants import EXIT_NOT_INITIALIZED, EXIT_SUCCESS, LOOP_DIR_NAME
from storyloop.lib.stats import format_duration, format_stats_summary
from storyloop.workflow.history import IterationHistoryStore, IterationRecord


def format_record_line(record: IterationRecord) -> str:
    commit = record.git_commit[:7] if record.git_commit else "-"
    return (
        f"#{record.iteration:<4} {record.story_id:<12} {record.outcome:<8} {record.tool:<13} "
        f"{format_duration(record.duration_ms / 1000):>8}  gates {record.passed_checks}/4  {commit}"
    )


def cmd_history(args, project_dir: Path) -> int:
    """Show iteration history or aggregate stats."""
    store = IterationHistoryStore(project_dir / LOOP_DIR_NAME)
    if not store.is_initialized():
        print("ERROR: storyloop is not initialized here. Run 'storyloop init' first.")
        return EXIT_NOT_INITIALIZED

    if args.stats:
        stats = store.statistics()
        if args.json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            print("Iteration stats:")
            for line in format_stats_summary(stats):
                print(line)
        return EXIT_SUCCESS

    records = store.history(limit=args.limit, story_id=args.story)

    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return EXIT_SUCCESS

    if not records:
        print("No iterations recorded" + (f" for {args.story}" if args.story else ""))
        return EXIT_SUCCESS

    for record in records:
        print(format_record_line(record))
        if args.verbose:
            for learning in record.learnings:
                print(f"      learning: {learning}")
            for error in record.errors:
                print(f"      error:    {error}")
    return EXIT_SUCCESS
