"""Orchestration engine components.

- Settings loaded from the environment and `.env`
- Structured logging
- Workflow catalog, agent registry and the phase state machine
- Quality gates (hooks) and session persistence
"""
