"""Unit tests for the workflow status state machine.

Illegal transitions must fail loudly.
"""

from __future__ import annotations

import pytest

from phased_agent_orchestrator.orchestrator.workflow.state_machine import (
    TERMINAL_STATUSES,
    IllegalTransitionError,
    WorkflowStatus,
    is_terminal,
    transition,
)


@pytest.mark.parametrize(
    ("current", "to"),
    [
        (WorkflowStatus.RUNNING, WorkflowStatus.AWAITING_APPROVAL),
        (WorkflowStatus.AWAITING_APPROVAL, WorkflowStatus.RUNNING),
        (WorkflowStatus.RUNNING, WorkflowStatus.COMPLETED),
        (WorkflowStatus.RUNNING, WorkflowStatus.FAILED),
        (WorkflowStatus.AWAITING_APPROVAL, WorkflowStatus.FAILED),
        (WorkflowStatus.AWAITING_APPROVAL, WorkflowStatus.COMPLETED),
        (WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED),
        (WorkflowStatus.AWAITING_APPROVAL, WorkflowStatus.CANCELLED),
    ],
)
def test_allowed_transitions(current: WorkflowStatus, to: WorkflowStatus) -> None:
    assert transition(current=current, to=to) is to


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
@pytest.mark.parametrize("to", list(WorkflowStatus))
def test_terminal_statuses_have_no_exits(terminal: WorkflowStatus, to: WorkflowStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition(current=terminal, to=to)


def test_running_cannot_transition_to_itself() -> None:
    with pytest.raises(IllegalTransitionError, match="running -> running"):
        transition(current=WorkflowStatus.RUNNING, to=WorkflowStatus.RUNNING)


def test_terminal_statuses() -> None:
    assert TERMINAL_STATUSES == {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    }
    assert not is_terminal(WorkflowStatus.RUNNING)
    assert not is_terminal(WorkflowStatus.AWAITING_APPROVAL)
    assert WorkflowStatus("awaiting-approval") is WorkflowStatus.AWAITING_APPROVAL
