"""storyloop: drive AI coding CLIs through a backlog of stories behind quality gates."""

__version__ = "0.1.0"
