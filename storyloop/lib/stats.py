"""
Iteration statistics.

Aggregates iteration records into totals for `storyloop history --stats`
and the status view.
"""

from dataclasses import dataclass, field
from typing import Iterable

from storyloop.lib.constants import CANONICAL_CHECKS, OUTCOME_FAILED, OUTCOME_PARTIAL, OUTCOME_SUCCESS


@dataclass
class IterationStats:
    """Aggregated stats summary."""
    total_iterations: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {
        OUTCOME_SUCCESS: 0, OUTCOME_PARTIAL: 0, OUTCOME_FAILED: 0,
    })
    total_duration_ms: int = 0
    check_passes: dict[str, int] = field(default_factory=lambda: {name: 0 for name in CANONICAL_CHECKS})
    tools: dict[str, int] = field(default_factory=dict)
    stories_attempted: int = 0
    stories_completed: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of iterations that succeeded."""
        if not self.total_iterations:
            return 0.0
        return 100.0 * self.outcomes[OUTCOME_SUCCESS] / self.total_iterations

    @property
    def average_duration_ms(self) -> int:
        if not self.total_iterations:
            return 0
        return self.total_duration_ms // self.total_iterations

    def to_dict(self) -> dict:
        return {
            "total_iterations": self.total_iterations,
            "outcomes": dict(self.outcomes),
            "success_rate": round(self.success_rate, 1),
            "total_duration_ms": self.total_duration_ms,
            "average_duration_ms": self.average_duration_ms,
            "check_passes": dict(self.check_passes),
            "tools": dict(self.tools),
            "stories_attempted": self.stories_attempted,
            "stories_completed": self.stories_completed,
        }


def aggregate(records: Iterable[dict]) -> IterationStats:
    """Aggregate IterationRecord dicts."""
    stats = IterationStats()
    attempted = set()
    completed = set()

    for record in records:
        stats.total_iterations += 1
        outcome = record.get("outcome", OUTCOME_FAILED)
        stats.outcomes[outcome] = stats.outcomes.get(outcome, 0) + 1
        stats.total_duration_ms += int(record.get("duration_ms") or 0)

        for name, passed in (record.get("gates") or {}).items():
            if passed:
                stats.check_passes[name] = stats.check_passes.get(name, 0) + 1

        tool = record.get("tool", "?")
        stats.tools[tool] = stats.tools.get(tool, 0) + 1

        attempted.add(record.get("story_id"))
        if outcome == OUTCOME_SUCCESS:
            completed.add(record.get("story_id"))

    stats.stories_attempted = len(attempted)
    stats.stories_completed = len(completed)
    return stats


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def format_stats_summary(stats: IterationStats) -> list[str]:
    """Format stats summary as list of lines for display."""
    if not stats.total_iterations:
        return ["  No iterations recorded"]

    outcomes = stats.outcomes
    lines = [
        f"  Iterations:    {stats.total_iterations}",
        f"  Outcomes:      {outcomes.get(OUTCOME_SUCCESS, 0)} success, "
        f"{outcomes.get(OUTCOME_PARTIAL, 0)} partial, {outcomes.get(OUTCOME_FAILED, 0)} failed",
        f"  Success rate:  {stats.success_rate:.1f}%",
        f"  Total time:    {format_duration(stats.total_duration_ms / 1000)}",
        f"  Average time:  {format_duration(stats.average_duration_ms / 1000)}",
        f"  Stories:       {stats.stories_completed} completed of {stats.stories_attempted} attempted",
    ]
    checks = ", ".join(f"{name} {count}" for name, count in stats.check_passes.items())
    lines.append(f"  Check passes:  {checks}")
    if stats.tools:
        tools = ", ".join(f"{name} ({count})" for name, count in sorted(stats.tools.items()))
        lines.append(f"  Tools:         {tools}")
    return lines
