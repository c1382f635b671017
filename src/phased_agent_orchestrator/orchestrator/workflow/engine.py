"""Phased workflow engine.

The engine walks a workflow's phases strictly in order. For each phase it runs
the pre-phase gates (feeding failures back to the worker until they pass or
the worker's ceilings are exhausted), invokes the worker, records the result,
applies the phase's validation predicate and enforces the budget, turn and
duration ceilings. Progress is reported as a stream of `WorkflowEvent`s.

Suspension for human approval returns control to the caller; the state is
persisted so a later process can `resume` it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from phased_agent_orchestrator.orchestrator.checkpoints import CheckpointError, create_checkpoint
from phased_agent_orchestrator.orchestrator.config import OrchestratorSettings, validate_config
from phased_agent_orchestrator.orchestrator.hooks import GateContext, HookRunner, build_hook_runner
from phased_agent_orchestrator.orchestrator.state.sessions import (
    PersistedSession,
    SessionStore,
    new_session_id,
)
from phased_agent_orchestrator.orchestrator.workflow.agents import AgentRegistry
from phased_agent_orchestrator.orchestrator.workflow.catalog import WorkflowCatalog
from phased_agent_orchestrator.orchestrator.workflow.events import (
    ApprovalReceivedEvent,
    ApprovalRequestedEvent,
    CostUpdateEvent,
    PhaseCompletedEvent,
    PhaseStartedEvent,
    PrePhaseHookEvent,
    WorkflowCompletedEvent,
    WorkflowErrorEvent,
    WorkflowEvent,
    WorkflowResumedEvent,
    WorkflowStartedEvent,
)
from phased_agent_orchestrator.orchestrator.workflow.models import (
    AgentConfig,
    AgentContext,
    AgentResult,
    CheckResult,
    HookResult,
    Phase,
    RunSettings,
    ValidationResult,
    Worker,
    WorkerError,
    WorkerRequest,
    Workflow,
    WorkflowError,
    WorkflowState,
)
from phased_agent_orchestrator.orchestrator.workflow.state_machine import (
    WorkflowStatus,
    is_terminal,
    transition,
)

logger = logging.getLogger(__name__)

# Phase generators return True when the workflow may continue.
_PhaseRun = Generator[WorkflowEvent, None, bool]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _run_settings(config: OrchestratorSettings) -> RunSettings:
    return RunSettings.model_validate(config.model_dump(include=set(RunSettings.model_fields)))


def _fold_remediation(result: AgentResult, rounds: list[AgentResult]) -> AgentResult:
    """Carry files and commits produced while fixing gate failures into `result`."""

    if not rounds:
        return result
    update: dict[str, list[str]] = {}
    for attr in ("files_created", "files_modified", "commits"):
        merged: dict[str, None] = {}
        for r in (*rounds, result):
            merged.update(dict.fromkeys(getattr(r, attr)))
        update[attr] = list(merged)
    return result.model_copy(update=update)


@dataclass(slots=True)
class _PhaseUsage:
    turns: int = 0
    seconds: float = 0.0
    cost_usd: float = 0.0


class WorkflowEngine:
    """Runs one workflow at a time.

    Args:
        config: Validated settings. `validate_config` runs here, so an invalid
            configuration fails before any phase executes.
        worker: The capability that performs each phase's work.
        hooks: Gate runner (defaults to the built-in gates).
        catalog: Workflow definitions (defaults to the built-in workflows).
        registry: Agent roles (defaults to the built-in roles).
        sessions: Session store (defaults to one under the working directory).
        clock: Monotonic clock used for duration ceilings.
    """

    def __init__(
        self,
        config: OrchestratorSettings,
        worker: Worker,
        *,
        hooks: HookRunner | None = None,
        catalog: WorkflowCatalog | None = None,
        registry: AgentRegistry | None = None,
        sessions: SessionStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        validate_config(config)
        self._config = config
        self._worker = worker
        self._hooks = hooks if hooks is not None else build_hook_runner(config)
        self._catalog = catalog or WorkflowCatalog()
        self._registry = registry or AgentRegistry()
        if sessions is None:
            sessions = SessionStore(config.working_directory)
        self._sessions = sessions
        self._clock = clock
        self._state: WorkflowState | None = None
        self._workflow: Workflow | None = None

    @property
    def config(self) -> OrchestratorSettings:
        return self._config

    @property
    def state(self) -> WorkflowState | None:
        return self._state

    @property
    def workflow(self) -> Workflow | None:
        return self._workflow

    # Public operations

    def run(
        self,
        workflow_type: str,
        description: str,
        additional_context: str | None = None,
        *,
        workspace: Path | None = None,
    ) -> Iterator[WorkflowEvent]:
        """Start a new workflow run.

        Raises:
            ConfigurationError: Unknown workflow type or unregistered role.
            WorkflowError: Another run is still in progress on this engine.
        """

        if self._state is not None and not is_terminal(self._state.status):
            raise WorkflowError(
                f"Session {self._state.session_id} is still {self._state.status.value}"
            )
        workflow = self._catalog.resolve(workflow_type)
        for phase in workflow.phases:
            self._registry.lookup(phase.agent)

        self._workflow = workflow
        self._state = WorkflowState(
            session_id=new_session_id(),
            workflow=workflow.name,
            description=description,
            started_at=_utcnow(),
            additional_context=additional_context,
            workspace=str(workspace) if workspace is not None else None,
            run_settings=_run_settings(self._config),
        )
        logger.info(
            "Workflow started",
            extra={
                "session_id": self._state.session_id,
                "workflow": workflow.name,
                "phases": len(workflow.phases),
            },
        )
        self._save()
        started = WorkflowStartedEvent(
            session_id=self._state.session_id,
            workflow=workflow.name,
            description=description,
            phase_count=len(workflow.phases),
        )
        return self._execute(self._lead(started, self._advance()))

    def approve(self, approved: bool, feedback: str | None = None) -> Iterator[WorkflowEvent]:
        """Deliver a decision for the pending approval request.

        Raises:
            WorkflowError: If the workflow is not awaiting approval.
        """

        state = self._require_state()
        if state.status is not WorkflowStatus.AWAITING_APPROVAL:
            raise WorkflowError(f"Workflow is not awaiting approval (status: {state.status.value})")
        return self._execute(self._after_approval(approved, feedback))

    def resume(self, session: PersistedSession) -> Iterator[WorkflowEvent]:
        """Continue a persisted session.

        A running session continues at its current phase. A session awaiting
        approval re-announces the pending request and waits for `approve`.
        The ceilings, approval mode and policies the run was started with
        replace the corresponding values of this engine's configuration.

        Raises:
            WorkflowError: If the session is terminal or its phase index is out of range.
            ConfigurationError: If its workflow type is no longer known.
        """

        state = session.state.model_copy(deep=True)
        if is_terminal(state.status):
            raise WorkflowError(
                f"Session {state.session_id} is {state.status.value} and cannot be resumed"
            )
        workflow = self._catalog.resolve(state.workflow)
        if not 0 <= state.current_phase_index <= len(workflow.phases):
            raise WorkflowError(
                f"Session {state.session_id} has phase index {state.current_phase_index} "
                f"outside workflow {workflow.name!r}"
            )

        if state.run_settings is not None:
            self._config = self._config.model_copy(update=state.run_settings.model_dump())
        self._state = state
        self._workflow = workflow
        logger.info(
            "Workflow resumed",
            extra={
                "session_id": state.session_id,
                "status": state.status.value,
                "phase_index": state.current_phase_index,
            },
        )
        resumed = WorkflowResumedEvent(
            session_id=state.session_id,
            workflow=workflow.name,
            phase_index=state.current_phase_index,
        )
        if state.status is WorkflowStatus.AWAITING_APPROVAL:
            pending = workflow.phases[max(state.current_phase_index - 1, 0)]
            request = ApprovalRequestedEvent(
                session_id=state.session_id,
                phase=pending.name,
                result=state.phase_results.get(pending.name),
            )
            return iter((resumed, request))
        return self._execute(self._lead(resumed, self._advance()))

    def cancel(self, reason: str | None = None) -> None:
        """Cancel the current run and persist it.

        Raises:
            IllegalTransitionError: If the run already finished.
        """

        state = self._require_state()
        state.status = transition(current=state.status, to=WorkflowStatus.CANCELLED)
        state.error = reason or "Cancelled"
        state.completed_at = _utcnow()
        logger.info(
            "Workflow cancelled", extra={"session_id": state.session_id, "reason": state.error}
        )
        self._save()

    # Driving

    def _require_state(self) -> WorkflowState:
        if self._state is None or self._workflow is None:
            raise WorkflowError("No workflow has been started or resumed")
        return self._state

    def _require_workflow(self) -> Workflow:
        self._require_state()
        assert self._workflow is not None
        return self._workflow

    def _halted(self) -> bool:
        return self._require_state().status is not WorkflowStatus.RUNNING

    @staticmethod
    def _lead(first: WorkflowEvent, rest: Iterator[WorkflowEvent]) -> Iterator[WorkflowEvent]:
        yield first
        yield from rest

    def _execute(self, body: Iterator[WorkflowEvent]) -> Iterator[WorkflowEvent]:
        try:
            yield from body
        except Exception as e:  # noqa: BLE001 (any failure ends the run as failed)
            state = self._require_state()
            logger.exception("Workflow aborted", extra={"session_id": state.session_id})
            message = f"Unexpected error: {e}"
            if not is_terminal(state.status):
                self._mark_failed(message)
            yield WorkflowErrorEvent(error=message, recoverable=False, phase=self._current_phase())

    def _current_phase(self) -> str | None:
        state, workflow = self._require_state(), self._require_workflow()
        if state.current_phase_index < len(workflow.phases):
            return workflow.phases[state.current_phase_index].name
        return None

    def _advance(self) -> Iterator[WorkflowEvent]:
        state = self._require_state()
        workflow = self._require_workflow()

        while state.current_phase_index < len(workflow.phases):
            if self._halted():
                return
            index = state.current_phase_index
            phase = workflow.phases[index]
            ok = yield from self._run_phase(index, phase)
            if not ok or self._halted():
                return
            if phase.approval_required and self._config.approval_mode == "after-each-phase":
                yield from self._suspend(phase.name, state.phase_results.get(phase.name))
                return

        if self._halted():
            return
        if self._config.approval_mode == "at-end":
            last = workflow.phases[-1]
            yield from self._suspend(last.name, state.phase_results.get(last.name))
            return
        yield from self._complete()

    def _after_approval(self, approved: bool, feedback: str | None) -> Iterator[WorkflowEvent]:
        state = self._require_state()
        workflow = self._require_workflow()

        logger.info(
            "Approval received",
            extra={"session_id": state.session_id, "approved": approved},
        )
        yield ApprovalReceivedEvent(
            session_id=state.session_id, approved=approved, feedback=feedback
        )

        if not approved:
            if self._config.on_rejection == "suspend":
                state.approval_feedback = feedback
                self._save()
                return
            reason = f"Approval rejected: {feedback}" if feedback else "Approval rejected"
            yield from self._fail(reason, phase=self._last_recorded_phase())
            return

        state.approval_feedback = feedback
        if state.current_phase_index >= len(workflow.phases):
            yield from self._complete()
            return
        state.status = transition(current=state.status, to=WorkflowStatus.RUNNING)
        self._save()
        yield from self._advance()

    def _last_recorded_phase(self) -> str | None:
        state = self._require_state()
        return next(reversed(state.phase_results), None)

    # Phases

    def _workspace(self) -> Path:
        state = self._require_state()
        if state.workspace:
            return Path(state.workspace)
        return self._config.working_directory

    def _context_for(self, index: int) -> AgentContext:
        state = self._require_state()
        workflow = self._require_workflow()

        phase_input = None
        if index > 0:
            previous = workflow.phases[index - 1]
            previous_result = state.phase_results.get(previous.name)
            if (
                previous_result is not None
                and previous_result.success
                and previous.next_phase_input is not None
            ):
                phase_input = previous.next_phase_input(previous_result)

        notes = [state.additional_context]
        if state.approval_feedback:
            notes.append(f"Approval feedback: {state.approval_feedback}")
        additional = "\n\n".join(n for n in notes if n) or None

        return AgentContext(
            feature_description=state.description,
            working_directory=self._workspace(),
            previous_results=dict(state.phase_results),
            phase_input=phase_input,
            additional_context=additional,
        )

    def _run_gates(
        self, phase: Phase, index: int
    ) -> Generator[WorkflowEvent, None, dict[str, HookResult]]:
        state = self._require_state()
        workflow = self._require_workflow()

        context = GateContext(
            working_directory=self._workspace(),
            workflow=workflow,
            phase_index=index,
            phase_results=dict(state.phase_results),
            verbose=self._config.verbose,
        )
        failing: dict[str, HookResult] = {}
        for gate_id in phase.pre_phase_hooks:
            started = self._clock()
            result = self._hooks.run(gate_id, context)
            state.elapsed_seconds += self._clock() - started
            yield PrePhaseHookEvent(phase=phase.name, hook=gate_id, result=result)
            if not result.passed:
                failing[gate_id] = result
        return failing

    def _call_worker(
        self,
        phase: Phase,
        agent: AgentConfig,
        context: AgentContext,
        usage: _PhaseUsage,
        turn_limit: int,
        feedback: dict[str, HookResult],
    ) -> AgentResult:
        state = self._require_state()
        request = WorkerRequest(
            role=phase.agent,
            agent=agent,
            model=agent.model or self._config.default_model,
            context=context,
            phase_name=phase.name,
            max_turns=turn_limit - usage.turns,
            max_duration_seconds=self._config.max_duration_seconds_per_agent - usage.seconds,
            gate_feedback=feedback,
        )
        started = self._clock()
        try:
            result = self._worker.invoke(request)
        except WorkerError as e:
            logger.warning(
                "Worker raised", extra={"phase": phase.name, "role": phase.agent, "error": str(e)}
            )
            result = AgentResult(role=phase.agent, success=False, error=str(e))
        elapsed = self._clock() - started

        # Every invocation costs at least one turn.
        turns = max(result.turns_used, 1)
        usage.turns += turns
        usage.seconds += elapsed
        usage.cost_usd += result.cost_usd
        state.total_turns += turns
        state.total_cost_usd += result.cost_usd
        state.elapsed_seconds += elapsed
        return result

    def _cost_update(self, usage: _PhaseUsage) -> CostUpdateEvent:
        state = self._require_state()
        return CostUpdateEvent(
            phase_cost_usd=usage.cost_usd,
            total_cost_usd=state.total_cost_usd,
            budget_remaining_usd=max(self._config.max_budget_usd - state.total_cost_usd, 0.0),
        )

    def _ceiling_breach(self, phase: Phase, usage: _PhaseUsage, turn_limit: int) -> str | None:
        state = self._require_state()
        config = self._config
        if state.total_cost_usd > config.max_budget_usd:
            return (
                f"Budget exceeded: ${state.total_cost_usd:.2f} spent, "
                f"budget is ${config.max_budget_usd:.2f}"
            )
        if (
            config.max_turns_per_workflow is not None
            and state.total_turns > config.max_turns_per_workflow
        ):
            return (
                f"Workflow turn limit exceeded: {state.total_turns} turns, "
                f"limit is {config.max_turns_per_workflow}"
            )
        if usage.turns > turn_limit:
            return (
                f"Agent turn limit exceeded in phase {phase.name!r}: "
                f"{usage.turns} turns, limit is {turn_limit}"
            )
        if usage.seconds > config.max_duration_seconds_per_agent:
            return (
                f"Agent timeout in phase {phase.name!r}: ran {usage.seconds:.1f}s, "
                f"limit is {config.max_duration_seconds_per_agent:g}s"
            )
        if state.elapsed_seconds > config.max_duration_seconds_per_workflow:
            return (
                f"Workflow duration exceeded: {state.elapsed_seconds:.1f}s active, "
                f"limit is {config.max_duration_seconds_per_workflow:g}s"
            )
        return None

    def _checkpoint(self, index: int, phase: Phase) -> None:
        state = self._require_state()
        try:
            checkpoint = create_checkpoint(self._workspace(), state.session_id, index, phase.name)
        except CheckpointError as e:
            logger.warning(
                "Could not create checkpoint", extra={"phase": phase.name, "error": str(e)}
            )
            return
        if checkpoint is not None:
            state.checkpoints[phase.name] = checkpoint.tag

    def _run_phase(self, index: int, phase: Phase) -> _PhaseRun:
        state = self._require_state()
        agent = self._registry.lookup(phase.agent)
        turn_limit = min(agent.max_turns, self._config.max_turns_per_agent)
        usage = _PhaseUsage()

        logger.info(
            "Phase started",
            extra={"session_id": state.session_id, "phase": phase.name, "agent": phase.agent},
        )
        yield PhaseStartedEvent(phase=phase.name, agent=phase.agent, phase_index=index)
        if self._halted():
            return False

        if self._config.checkpoints:
            self._checkpoint(index, phase)
        context = self._context_for(index)
        if state.approval_feedback:
            state.approval_feedback = None

        # Gate remediation: the worker fixes what the gates report, within its own ceilings.
        remediations: list[AgentResult] = []
        failing = yield from self._run_gates(phase, index)
        while failing:
            if self._halted():
                return False
            exhausted = (
                usage.turns >= turn_limit
                or usage.seconds >= self._config.max_duration_seconds_per_agent
            )
            if exhausted:
                gates = ", ".join(failing)
                return (
                    yield from self._fail(
                        f"Pre-phase gate(s) {gates} still failing for phase {phase.name!r} "
                        "after the worker exhausted its ceiling",
                        phase=phase.name,
                    )
                )
            logger.info(
                "Remediating failed gates",
                extra={"phase": phase.name, "gates": list(failing), "turns_used": usage.turns},
            )
            remediation = self._call_worker(phase, agent, context, usage, turn_limit, failing)
            yield self._cost_update(usage)
            if not remediation.success:
                state.record(phase.name, _fold_remediation(remediation, remediations))
                return (yield from self._worker_failed(phase, remediation, usage, turn_limit))
            remediations.append(remediation)
            breach = self._ceiling_breach(phase, usage, turn_limit)
            if breach:
                return (yield from self._fail(breach, phase=phase.name))
            failing = yield from self._run_gates(phase, index)

        if self._halted():
            return False
        if usage.turns >= turn_limit:
            return (
                yield from self._fail(
                    f"Agent turn limit reached in phase {phase.name!r} before its main run",
                    phase=phase.name,
                )
            )

        result = self._call_worker(phase, agent, context, usage, turn_limit, {})
        result = _fold_remediation(result, remediations)
        if not result.success:
            state.record(phase.name, result)
            yield PhaseCompletedEvent(phase=phase.name, agent=phase.agent, result=result)
            yield self._cost_update(usage)
            return (yield from self._worker_failed(phase, result, usage, turn_limit))

        validation_passed = True
        if phase.validation is not None:
            validation_passed = bool(phase.validation(result))
            result = result.model_copy(
                update={
                    "validation": ValidationResult(
                        success=validation_passed,
                        errors=[] if validation_passed else [f"Validation failed for {phase.name}"],
                        checks={"phase-validation": CheckResult(passed=validation_passed)},
                    )
                }
            )

        state.record(phase.name, result)
        logger.info(
            "Phase completed",
            extra={
                "session_id": state.session_id,
                "phase": phase.name,
                "cost_usd": usage.cost_usd,
                "turns": usage.turns,
                "validation_passed": validation_passed,
            },
        )
        yield PhaseCompletedEvent(phase=phase.name, agent=phase.agent, result=result)
        yield self._cost_update(usage)

        if not validation_passed:
            message = f"Validation failed for phase {phase.name!r}"
            if self._config.on_validation_failure == "halt":
                return (yield from self._fail(message, phase=phase.name, recoverable=True))
            logger.warning("Continuing after failed validation", extra={"phase": phase.name})
            yield WorkflowErrorEvent(error=message, recoverable=True, phase=phase.name)

        breach = self._ceiling_breach(phase, usage, turn_limit)
        if breach:
            return (yield from self._fail(breach, phase=phase.name))

        self._save()
        return True

    def _worker_failed(
        self, phase: Phase, result: AgentResult, usage: _PhaseUsage, turn_limit: int
    ) -> _PhaseRun:
        state = self._require_state()
        message = f"Phase {phase.name!r} failed: {result.error or 'worker reported failure'}"
        if self._config.on_worker_failure == "halt":
            return (yield from self._fail(message, phase=phase.name, recoverable=True))

        logger.warning("Continuing after worker failure", extra={"phase": phase.name})
        yield WorkflowErrorEvent(error=message, recoverable=True, phase=phase.name)
        breach = self._ceiling_breach(phase, usage, turn_limit)
        if breach:
            return (yield from self._fail(breach, phase=phase.name))
        # A failed result does not advance the index by itself.
        state.current_phase_index += 1
        self._save()
        return True

    # Transitions

    def _suspend(self, phase_name: str, result: AgentResult | None) -> Iterator[WorkflowEvent]:
        state = self._require_state()
        state.status = transition(current=state.status, to=WorkflowStatus.AWAITING_APPROVAL)
        self._save()
        logger.info(
            "Awaiting approval", extra={"session_id": state.session_id, "phase": phase_name}
        )
        yield ApprovalRequestedEvent(session_id=state.session_id, phase=phase_name, result=result)

    def _complete(self) -> Iterator[WorkflowEvent]:
        state = self._require_state()
        state.status = transition(current=state.status, to=WorkflowStatus.COMPLETED)
        state.completed_at = _utcnow()
        self._save()
        logger.info(
            "Workflow completed",
            extra={
                "session_id": state.session_id,
                "total_cost_usd": state.total_cost_usd,
                "total_turns": state.total_turns,
            },
        )
        yield WorkflowCompletedEvent(
            session_id=state.session_id,
            total_cost_usd=state.total_cost_usd,
            total_turns=state.total_turns,
            elapsed_seconds=state.elapsed_seconds,
        )

    def _mark_failed(self, message: str) -> None:
        state = self._require_state()
        if is_terminal(state.status):
            return
        state.status = transition(current=state.status, to=WorkflowStatus.FAILED)
        state.error = message
        state.completed_at = _utcnow()
        logger.error("Workflow failed", extra={"session_id": state.session_id, "error": message})
        self._save()

    def _fail(
        self, message: str, *, phase: str | None = None, recoverable: bool = False
    ) -> _PhaseRun:
        self._mark_failed(message)
        yield WorkflowErrorEvent(error=message, recoverable=recoverable, phase=phase)
        return False

    def _save(self) -> None:
        state = self._require_state()
        try:
            self._sessions.save(state)
        except OSError:
            # Losing a save point must not abort a run in progress.
            logger.exception("Could not persist session", extra={"session_id": state.session_id})
