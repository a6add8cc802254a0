"""Iteration loop, backlog, and persisted history."""
