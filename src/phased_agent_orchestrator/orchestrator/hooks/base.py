"""Gate protocol and the runner that applies the gate policy."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from phased_agent_orchestrator.orchestrator.workflow.models import (
    AgentResult,
    HookResult,
    PhaseKind,
    Workflow,
)

logger = logging.getLogger(__name__)


class GateUnavailableError(RuntimeError):
    """Raised by a gate whose tooling is missing (e.g. the test command is not installed)."""


@dataclass(frozen=True, slots=True)
class GateContext:
    """What a gate may inspect before a phase runs."""

    working_directory: Path
    workflow: Workflow
    phase_index: int
    phase_results: Mapping[str, AgentResult]
    verbose: bool = False

    def latest_result(self, kind: PhaseKind) -> AgentResult | None:
        """Most recent recorded result of an earlier phase of the given kind."""

        for phase in reversed(self.workflow.phases[: self.phase_index]):
            if phase.kind is kind and phase.name in self.phase_results:
                return self.phase_results[phase.name]
        return None

    def touched_files(self) -> list[str]:
        """Files created or modified by earlier phases, in first-seen order."""

        seen: dict[str, None] = {}
        for result in self.phase_results.values():
            for path in (*result.files_created, *result.files_modified):
                seen.setdefault(path, None)
        return list(seen)


class Gate(Protocol):
    name: str
    description: str

    def execute(self, context: GateContext) -> HookResult: ...


class HookRunner:
    """Registry of gates keyed by name.

    Policy:
    - unknown gate -> failed result
    - `GateUnavailableError` -> passed with a warning, or failed when `strict`
    - any other exception -> failed result carrying the error text
    """

    def __init__(self, gates: Iterable[Gate] = (), *, strict: bool = False) -> None:
        self._gates: dict[str, Gate] = {}
        self._strict = strict
        for gate in gates:
            self.register(gate)

    @property
    def strict(self) -> bool:
        return self._strict

    def register(self, gate: Gate) -> None:
        self._gates[gate.name] = gate

    def has(self, gate_id: str) -> bool:
        return gate_id in self._gates

    def names(self) -> list[str]:
        return sorted(self._gates)

    def run(self, gate_id: str, context: GateContext) -> HookResult:
        gate = self._gates.get(gate_id)
        if gate is None:
            logger.warning("Unknown gate", extra={"gate": gate_id})
            return HookResult(passed=False, error=f"Unknown gate: {gate_id}")

        try:
            result = gate.execute(context)
        except GateUnavailableError as e:
            if self._strict:
                logger.warning(
                    "Gate unavailable; failing (strict)", extra={"gate": gate_id, "error": str(e)}
                )
                return HookResult(passed=False, error=f"Gate {gate_id} could not run: {e}")
            logger.warning("Gate unavailable; skipping", extra={"gate": gate_id, "error": str(e)})
            return HookResult(
                passed=True,
                warnings=(f"Gate {gate_id} skipped: {e}",),
                data={"skipped": True},
            )
        except Exception as e:  # noqa: BLE001 (gate failures become results)
            logger.exception("Gate raised", extra={"gate": gate_id})
            return HookResult(passed=False, error=f"Gate {gate_id} raised an error: {e}")

        logger.info(
            "Gate finished",
            extra={"gate": gate_id, "passed": result.passed, "gate_error": result.error},
        )
        return result
