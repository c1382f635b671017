"""Events emitted by the engine while a workflow runs.

Events are facts about progress. They carry no behaviour; consumers (the CLI,
tests, an audit log) decide what to do with them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Union

from pydantic import BaseModel

from phased_agent_orchestrator.orchestrator.workflow.models import AgentResult, HookResult


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True, slots=True)
class _Event:
    type: ClassVar[str] = ""

    timestamp: datetime = field(default_factory=_utcnow, kw_only=True)

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        for f in fields(self):
            out[f.name] = _jsonable(getattr(self, f.name))
        return out


@dataclass(frozen=True, slots=True)
class WorkflowStartedEvent(_Event):
    type: ClassVar[str] = "workflow-started"

    session_id: str
    workflow: str
    description: str
    phase_count: int


@dataclass(frozen=True, slots=True)
class WorkflowResumedEvent(_Event):
    type: ClassVar[str] = "workflow-resumed"

    session_id: str
    workflow: str
    phase_index: int


@dataclass(frozen=True, slots=True)
class PhaseStartedEvent(_Event):
    type: ClassVar[str] = "phase-started"

    phase: str
    agent: str
    phase_index: int


@dataclass(frozen=True, slots=True)
class PhaseCompletedEvent(_Event):
    type: ClassVar[str] = "phase-completed"

    phase: str
    agent: str
    result: AgentResult


@dataclass(frozen=True, slots=True)
class PrePhaseHookEvent(_Event):
    type: ClassVar[str] = "pre-phase-hook"

    phase: str
    hook: str
    result: HookResult


@dataclass(frozen=True, slots=True)
class ApprovalRequestedEvent(_Event):
    type: ClassVar[str] = "approval-requested"

    session_id: str
    phase: str
    result: AgentResult | None = None


@dataclass(frozen=True, slots=True)
class ApprovalReceivedEvent(_Event):
    type: ClassVar[str] = "approval-received"

    session_id: str
    approved: bool
    feedback: str | None = None


@dataclass(frozen=True, slots=True)
class CostUpdateEvent(_Event):
    type: ClassVar[str] = "cost-update"

    phase_cost_usd: float
    total_cost_usd: float
    budget_remaining_usd: float


@dataclass(frozen=True, slots=True)
class WorkflowCompletedEvent(_Event):
    type: ClassVar[str] = "workflow-completed"

    session_id: str
    total_cost_usd: float
    total_turns: int
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class WorkflowErrorEvent(_Event):
    type: ClassVar[str] = "workflow-error"

    error: str
    recoverable: bool
    phase: str | None = None


WorkflowEvent = Union[
    WorkflowStartedEvent,
    WorkflowResumedEvent,
    PhaseStartedEvent,
    PhaseCompletedEvent,
    PrePhaseHookEvent,
    ApprovalRequestedEvent,
    ApprovalReceivedEvent,
    CostUpdateEvent,
    WorkflowCompletedEvent,
    WorkflowErrorEvent,
]
