"""Phased Agent Orchestrator.

Drives a feature request through an ordered pipeline of specialised workers
(design, specification, tests, implementation, QA, review, docs) with:
- quality gates that enforce TDD ordering and coverage
- budget, turn and duration ceilings
- approval checkpoints and an acknowledged autonomous mode
- persisted, resumable sessions
"""

__version__ = "0.1.0"

from phased_agent_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
