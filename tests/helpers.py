"""Shared test doubles for engine and CLI tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from phased_agent_orchestrator.orchestrator.workflow.models import (
    AgentResult,
    Phase,
    PhaseKind,
    Workflow,
    WorkerError,
    WorkerRequest,
)

SEVEN_PHASES = Workflow(
    name="seven-phase",
    description="Gate-free pipeline used by engine tests",
    phases=(
        Phase(agent="architect", name="Design", kind=PhaseKind.DESIGN, approval_required=True),
        Phase(agent="spec", name="Spec", kind=PhaseKind.SPECIFICATION),
        Phase(agent="test-gen", name="Tests", kind=PhaseKind.TEST_AUTHORING),
        Phase(agent="dev", name="Implement", kind=PhaseKind.IMPLEMENTATION),
        Phase(agent="qa", name="QA", kind=PhaseKind.QUALITY_ANALYSIS),
        Phase(agent="review", name="Review", kind=PhaseKind.REVIEW),
        Phase(agent="docs", name="Docs", kind=PhaseKind.DOCUMENTATION),
    ),
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Reply = AgentResult | Exception | Callable[[WorkerRequest], AgentResult]


class ScriptedWorker:
    """Worker that answers from a per-phase script.

    Each phase name maps to a list of replies consumed in order; the last
    reply repeats. Phases without a script succeed with `cost_usd` and echo
    the phase name in their output.
    """

    def __init__(self, cost_usd: float = 0.10, clock: FakeClock | None = None) -> None:
        self.cost_usd = cost_usd
        self.clock = clock
        self.seconds_per_call = 0.0
        self.scripts: dict[str, list[Reply]] = {}
        self.requests: list[WorkerRequest] = []

    def script(self, phase_name: str, *replies: Reply) -> None:
        self.scripts[phase_name] = list(replies)

    def invoke(self, request: WorkerRequest) -> AgentResult:
        self.requests.append(request)
        if self.clock is not None:
            self.clock.advance(self.seconds_per_call)

        replies = self.scripts.get(request.phase_name)
        if not replies:
            return ok(request.role, self.cost_usd, phase=request.phase_name)
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    def phases_called(self) -> list[str]:
        return [r.phase_name for r in self.requests]


def ok(role: str, cost_usd: float = 0.10, **output: Any) -> AgentResult:
    return AgentResult(role=role, success=True, output=output, cost_usd=cost_usd, turns_used=1)


def failed(role: str, error: str = "boom") -> AgentResult:
    return AgentResult(role=role, success=False, error=error, cost_usd=0.05, turns_used=1)


def worker_error(message: str = "worker crashed") -> WorkerError:
    return WorkerError(message)
