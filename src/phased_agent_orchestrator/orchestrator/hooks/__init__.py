"""Pre-phase quality gates.

Gates inspect the working directory and earlier phase results and return a
`HookResult`. They never mutate workflow state.
"""

from __future__ import annotations

from phased_agent_orchestrator.orchestrator.config import OrchestratorSettings
from phased_agent_orchestrator.orchestrator.hooks.base import (
    Gate,
    GateContext,
    GateUnavailableError,
    HookRunner,
)
from phased_agent_orchestrator.orchestrator.hooks.commands import (
    CommandCoverageRunner,
    CommandTestRunner,
)
from phased_agent_orchestrator.orchestrator.hooks.coverage import CoverageThresholdGate
from phased_agent_orchestrator.orchestrator.hooks.credentials import CredentialSafetyGate
from phased_agent_orchestrator.orchestrator.hooks.tdd import TddEnforcementGate, TestPassingGate


def build_hook_runner(settings: OrchestratorSettings) -> HookRunner:
    """Runner with the built-in gates wired to the configured commands."""

    test_runner = CommandTestRunner(settings.test_command, timeout=settings.gate_timeout_seconds)
    coverage_runner = CommandCoverageRunner(
        settings.coverage_command,
        threshold=settings.coverage_threshold,
        timeout=settings.gate_timeout_seconds,
    )
    return HookRunner(
        [
            TddEnforcementGate(test_runner),
            TestPassingGate(test_runner),
            CoverageThresholdGate(coverage_runner, settings.coverage_threshold),
            CredentialSafetyGate(),
        ],
        strict=settings.strict_gates,
    )


__all__ = [
    "Gate",
    "GateContext",
    "GateUnavailableError",
    "HookRunner",
    "build_hook_runner",
]
