"""Safety controls for unattended (autonomous) runs.

- explicit acknowledgment before anything runs without approval prompts
- a per-session audit log of every engine event
- an end-of-run summary
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from phased_agent_orchestrator.orchestrator.config import AutonomousMode
from phased_agent_orchestrator.orchestrator.logging import JsonFormatter
from phased_agent_orchestrator.orchestrator.workflow.events import WorkflowEvent
from phased_agent_orchestrator.orchestrator.workflow.models import (
    PhaseKind,
    Workflow,
    WorkflowState,
)

logger = logging.getLogger(__name__)

ACKNOWLEDGMENT_PHRASE = "I ACKNOWLEDGE THE RISKS"
MAX_ACKNOWLEDGMENT_ATTEMPTS = 3

AUTONOMOUS_WARNING = """\
AUTONOMOUS MODE

The full pipeline will run WITHOUT human approval prompts.
Workers can modify files, run commands and spend up to the configured budget.

Quality gates are still enforced:
  - TDD (tests must fail first, then pass)
  - coverage threshold
  - credential safety
"""


class AcknowledgmentError(RuntimeError):
    """Raised when the operator does not acknowledge the risks of autonomous mode."""


def require_acknowledgment(
    input_fn: Callable[[str], str] = input,
    output_fn: Callable[[str], None] = print,
    max_attempts: int = MAX_ACKNOWLEDGMENT_ATTEMPTS,
) -> AutonomousMode:
    """Ask the operator to type the acknowledgment phrase.

    Args:
        input_fn: Prompt function (``input`` by default).
        output_fn: Where to print the warning and prompts.
        max_attempts: Attempts before giving up.

    Returns:
        An acknowledged autonomous-mode record (via "interactive").

    Raises:
        AcknowledgmentError: After `max_attempts` wrong answers or end of input.
    """

    output_fn(AUTONOMOUS_WARNING)
    for attempt in range(1, max_attempts + 1):
        output_fn(f"To proceed, type: {ACKNOWLEDGMENT_PHRASE}")
        output_fn(f"({max_attempts - attempt + 1} attempts remaining)")
        try:
            answer = input_fn("> ")
        except EOFError as e:
            raise AcknowledgmentError("No acknowledgment received (end of input)") from e
        if answer.strip() == ACKNOWLEDGMENT_PHRASE:
            logger.info("Autonomous mode acknowledged", extra={"via": "interactive"})
            return AutonomousMode(
                enabled=True,
                acknowledged=True,
                acknowledged_via="interactive",
                acknowledged_at=datetime.now(UTC),
            )
        output_fn(f"Incorrect. Please type exactly: {ACKNOWLEDGMENT_PHRASE}")

    raise AcknowledgmentError(
        f"Acknowledgment failed after {max_attempts} attempts. Autonomous mode cancelled."
    )


def audit_log_path(working_directory: Path, session_id: str) -> Path:
    return working_directory / ".orchestrator" / f"autonomous-{session_id}.log"


class AuditLogger:
    """JSON-lines audit trail for one autonomous session.

    Uses the same `JsonFormatter` as the application log, on a dedicated,
    non-propagating logger so audit records stay out of stdout.
    """

    def __init__(self, working_directory: Path, session_id: str) -> None:
        self.path = audit_log_path(working_directory, session_id)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._handler = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(JsonFormatter())
        self._logger = logging.getLogger(f"{__name__}.audit.{session_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(self._handler)

    def record(self, event: WorkflowEvent) -> None:
        self._logger.info(event.type, extra={"event": event.to_json()})

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass(frozen=True, slots=True)
class AutonomousRunSummary:
    session_id: str
    status: str
    duration_seconds: float
    total_cost_usd: float
    phases_completed: int
    phases_total: int
    tests_run: int | None
    tests_passed: int | None
    coverage_percent: float | None
    files_created: tuple[str, ...]
    files_modified: tuple[str, ...]
    audit_log: str | None = None


def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def summarize_session(
    state: WorkflowState,
    workflow: Workflow,
    *,
    audit_log: Path | None = None,
    now: datetime | None = None,
) -> AutonomousRunSummary:
    """Summarize a run. Test figures come from the last quality-analysis phase."""

    end = state.completed_at or now or datetime.now(UTC)

    qa_output: dict[str, object] = {}
    for phase in reversed(workflow.phases):
        if phase.kind is PhaseKind.QUALITY_ANALYSIS and phase.name in state.phase_results:
            qa_output = state.phase_results[phase.name].output
            break

    created: dict[str, None] = {}
    modified: dict[str, None] = {}
    for result in state.phase_results.values():
        created.update(dict.fromkeys(result.files_created))
        modified.update(dict.fromkeys(result.files_modified))

    tests_run = _number(qa_output.get("testsRun"))
    tests_passed = _number(qa_output.get("testsPassed"))
    return AutonomousRunSummary(
        session_id=state.session_id,
        status=state.status.value,
        duration_seconds=max((end - state.started_at).total_seconds(), 0.0),
        total_cost_usd=state.total_cost_usd,
        phases_completed=sum(1 for r in state.phase_results.values() if r.success),
        phases_total=len(workflow.phases),
        tests_run=int(tests_run) if tests_run is not None else None,
        tests_passed=int(tests_passed) if tests_passed is not None else None,
        coverage_percent=_number(qa_output.get("coveragePercent")),
        files_created=tuple(created),
        files_modified=tuple(modified),
        audit_log=str(audit_log) if audit_log is not None else None,
    )


def format_summary(summary: AutonomousRunSummary) -> str:
    minutes, seconds = divmod(int(summary.duration_seconds), 60)
    lines = [
        f"Session {summary.session_id}: {summary.status}",
        f"  Duration: {minutes}m {seconds}s",
        f"  Cost: ${summary.total_cost_usd:.2f}",
        f"  Phases: {summary.phases_completed}/{summary.phases_total}",
    ]
    if summary.tests_run is not None:
        lines.append(f"  Tests: {summary.tests_passed or 0}/{summary.tests_run} passed")
    if summary.coverage_percent is not None:
        lines.append(f"  Coverage: {summary.coverage_percent:.1f}%")
    lines.append(f"  Files created: {len(summary.files_created)}")
    lines.append(f"  Files modified: {len(summary.files_modified)}")
    if summary.audit_log:
        lines.append(f"  Audit log: {summary.audit_log}")
    return "\n".join(lines)
