"""Phased workflow domain.

This package introduces first-class types for:
- Workflows as ordered phases, each bound to an agent role
- The agent registry and the built-in workflow catalog
- A persisted run state machine
- The engine that drives a run and reports progress as events
"""

__all__: list[str] = []
