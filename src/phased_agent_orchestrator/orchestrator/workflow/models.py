"""Workflow data model.

Static definitions (`Workflow`, `Phase`, `AgentConfig`) are frozen dataclasses
loaded once per process. Anything that is persisted or crosses the worker
boundary (`AgentResult`, `WorkflowState`) is a pydantic model so it can be
serialized with `model_dump(mode="json")` and restored with `model_validate`.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from phased_agent_orchestrator.orchestrator.config import (
    ApprovalMode,
    ModelTier,
    RejectionPolicy,
    ValidationFailurePolicy,
    WorkerFailurePolicy,
)
from phased_agent_orchestrator.orchestrator.workflow.state_machine import WorkflowStatus


class PhaseKind(str, Enum):
    DESIGN = "design"
    SPECIFICATION = "specification"
    TEST_AUTHORING = "test-authoring"
    IMPLEMENTATION = "implementation"
    QUALITY_ANALYSIS = "quality-analysis"
    REVIEW = "review"
    DOCUMENTATION = "documentation"


class WorkerError(RuntimeError):
    """Raised by a worker that could not produce a result."""


class WorkflowError(RuntimeError):
    """Engine misuse: approving when nothing is pending, resuming a finished
    session, recording a phase twice."""


class CheckResult(BaseModel):
    passed: bool
    data: Any = None


class ValidationResult(BaseModel):
    success: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    checks: dict[str, CheckResult] = Field(default_factory=dict)
    duration_seconds: float | None = None


class AgentResult(BaseModel):
    """Outcome of one worker invocation. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    role: str
    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)
    cost_usd: float = 0.0
    turns_used: int = 0
    validation: ValidationResult | None = None
    error: str | None = None


class RunSettings(BaseModel):
    """Ceilings and policies a run was started with.

    Stored on the state so that `approve` and `resume` in a later process keep
    the budget, ceilings and approval mode the run began with.
    """

    max_budget_usd: float
    max_turns_per_agent: int
    max_turns_per_workflow: int | None = None
    max_duration_seconds_per_agent: float
    max_duration_seconds_per_workflow: float
    default_model: ModelTier
    approval_mode: ApprovalMode
    on_validation_failure: ValidationFailurePolicy = "continue"
    on_worker_failure: WorkerFailurePolicy = "halt"
    on_rejection: RejectionPolicy = "fail"


class WorkflowState(BaseModel):
    """Mutable execution state of one workflow run.

    Only the engine mutates this object. `phase_results` is keyed by phase
    name and each key is written at most once.
    """

    session_id: str
    workflow: str
    description: str
    current_phase_index: int = 0
    status: WorkflowStatus = WorkflowStatus.RUNNING
    phase_results: dict[str, AgentResult] = Field(default_factory=dict)
    total_cost_usd: float = 0.0
    total_turns: int = 0
    # Active execution time only; time spent awaiting approval is excluded.
    elapsed_seconds: float = 0.0
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    additional_context: str | None = None
    approval_feedback: str | None = None
    # Directory workers and gates operate in when it differs from the
    # configured working directory (e.g. a sandbox).
    workspace: str | None = None
    run_settings: RunSettings | None = None
    # phase name -> checkpoint tag created before the phase ran
    checkpoints: dict[str, str] = Field(default_factory=dict)

    def record(self, phase_name: str, result: AgentResult) -> None:
        """Store a phase result. A successful result advances the phase index."""

        if phase_name in self.phase_results:
            raise WorkflowError(f"Phase {phase_name!r} already has a recorded result")
        self.phase_results[phase_name] = result
        if result.success:
            self.current_phase_index += 1


@dataclass(frozen=True, slots=True)
class HookResult:
    passed: bool
    error: str | None = None
    warnings: tuple[str, ...] = ()
    data: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Phase:
    agent: str
    name: str
    kind: PhaseKind
    approval_required: bool = False
    next_phase_input: Callable[[AgentResult], dict[str, Any]] | None = None
    validation: Callable[[AgentResult], bool] | None = None
    pre_phase_hooks: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Workflow:
    name: str
    description: str
    phases: tuple[Phase, ...]

    def phase_index(self, name: str) -> int:
        for i, phase in enumerate(self.phases):
            if phase.name == name:
                return i
        raise KeyError(name)


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Static description of a worker role.

    `input_schema`/`output_schema` document the fields a role expects and
    produces. They are not enforced.
    """

    name: str
    description: str
    system_prompt: str
    tools: tuple[str, ...]
    max_turns: int
    model: str | None = None
    input_schema: Mapping[str, str] = field(default_factory=dict)
    output_schema: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AgentContext:
    feature_description: str
    working_directory: Path
    previous_results: Mapping[str, AgentResult] = field(default_factory=dict)
    phase_input: Mapping[str, Any] | None = None
    additional_context: str | None = None


@dataclass(frozen=True, slots=True)
class WorkerRequest:
    role: str
    agent: AgentConfig
    model: str
    context: AgentContext
    phase_name: str
    max_turns: int
    max_duration_seconds: float
    # gate id -> failing result, populated during remediation rounds
    gate_feedback: Mapping[str, HookResult] = field(default_factory=dict)


class Worker(Protocol):
    """The external capability that performs a phase's work."""

    def invoke(self, request: WorkerRequest) -> AgentResult: ...
