"""Workflow state machines with event listeners and in-memory snapshot persistence."""

__version__ = "0.1.0"

__all__ = ["errors", "utils", "state", "listener", "persistence", "machine", "examples"]