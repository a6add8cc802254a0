"""Process execution: tool bridge, quality gates, and the per-story agent state machine."""
