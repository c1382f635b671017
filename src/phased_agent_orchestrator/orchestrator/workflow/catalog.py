"""Built-in workflow definitions.

Worker output keys (`testsCreated`, `allTestsFailing`, `verdict`, ...) are the
JSON keys workers report in `AgentResult.output`.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from phased_agent_orchestrator.orchestrator.config import ConfigurationError
from phased_agent_orchestrator.orchestrator.workflow.models import (
    AgentResult,
    Phase,
    PhaseKind,
    Workflow,
)


def _pick(result: AgentResult, *keys: str) -> dict[str, Any]:
    return {key: result.output.get(key) for key in keys}


def tests_created(result: AgentResult) -> int:
    """Number of tests a test-authoring result reports; 0 unless a real int."""

    value = result.output.get("testsCreated")
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


# new-feature


def _design_approved(result: AgentResult) -> bool:
    return result.output.get("approved") is True


def _spec_complete(result: AgentResult) -> bool:
    function_specs = result.output.get("functionSpecs")
    return (
        isinstance(function_specs, list)
        and len(function_specs) > 0
        and result.output.get("testScenarios") is not None
    )


def _spec_input(result: AgentResult) -> dict[str, Any]:
    return {
        "specification": dict(result.output),
        **_pick(result, "functionSpecs", "testScenarios"),
    }


def _red_phase_valid(result: AgentResult) -> bool:
    return tests_created(result) > 0 and result.output.get("allTestsFailing") is True


def _green_phase_valid(result: AgentResult) -> bool:
    return result.output.get("allTestsPassing") is True


def _implementation_input(result: AgentResult, *keys: str) -> dict[str, Any]:
    return {
        "filesCreated": list(result.files_created),
        "filesModified": list(result.files_modified),
        "commits": list(result.commits),
        "testOutput": result.output.get("testRunOutput"),
        **_pick(result, *keys),
    }


def _qa_not_failed(result: AgentResult) -> bool:
    return result.output.get("verdict") != "FAILED"


def _qa_input(result: AgentResult) -> dict[str, Any]:
    return {
        "qaVerdict": result.output.get("verdict"),
        "qaSummary": result.output.get("summary"),
        **_pick(
            result,
            "testsRun",
            "testsPassed",
            "testsFailed",
            "coveragePercent",
            "coverageGaps",
            "securityIssues",
            "recommendations",
        ),
    }


def _review_approved(result: AgentResult) -> bool:
    return result.output.get("verdict") == "APPROVED"


def _review_input(result: AgentResult, *keys: str) -> dict[str, Any]:
    return {
        "reviewVerdict": result.output.get("verdict"),
        "reviewSummary": result.output.get("summary"),
        **_pick(result, "issues", *keys),
    }


def _docs_verified(result: AgentResult) -> bool:
    return result.output.get("docsVerified") is True


NEW_FEATURE = Workflow(
    name="new-feature",
    description="Full TDD pipeline for new features",
    phases=(
        Phase(
            agent="architect",
            name="Design Review",
            kind=PhaseKind.DESIGN,
            approval_required=True,
            next_phase_input=lambda r: _pick(
                r,
                "designNotes",
                "suggestedPattern",
                "services",
                "filesToCreate",
                "filesToModify",
            ),
            validation=_design_approved,
        ),
        Phase(
            agent="spec",
            name="Specification",
            kind=PhaseKind.SPECIFICATION,
            approval_required=True,
            next_phase_input=_spec_input,
            validation=_spec_complete,
        ),
        Phase(
            agent="test-gen",
            name="TDD Red Phase",
            kind=PhaseKind.TEST_AUTHORING,
            next_phase_input=lambda r: _pick(r, "testFiles", "testsCreated"),
            validation=_red_phase_valid,
        ),
        Phase(
            agent="dev",
            name="TDD Green Phase",
            kind=PhaseKind.IMPLEMENTATION,
            pre_phase_hooks=("tdd-enforcement",),
            next_phase_input=_implementation_input,
            validation=_green_phase_valid,
        ),
        Phase(
            agent="qa",
            name="Quality Assurance",
            kind=PhaseKind.QUALITY_ANALYSIS,
            pre_phase_hooks=("coverage-threshold",),
            next_phase_input=_qa_input,
            validation=_qa_not_failed,
        ),
        Phase(
            agent="review",
            name="Code Review",
            kind=PhaseKind.REVIEW,
            approval_required=True,
            pre_phase_hooks=("credential-safety",),
            next_phase_input=_review_input,
            validation=_review_approved,
        ),
        Phase(
            agent="docs",
            name="Documentation",
            kind=PhaseKind.DOCUMENTATION,
            validation=_docs_verified,
        ),
    ),
)


# bug-fix


def _root_cause_found(result: AgentResult) -> bool:
    return (
        result.output.get("rootCause") is not None
        and result.output.get("suggestedFix") is not None
    )


def _regression_tests_valid(result: AgentResult) -> bool:
    return _red_phase_valid(result) and result.output.get("reproducedBug") is True


def _fix_review_approved(result: AgentResult) -> bool:
    return _review_approved(result) and result.output.get("isMinimalFix") is True


def _no_regressions(result: AgentResult) -> bool:
    return _qa_not_failed(result) and result.output.get("noRegressions") is True


BUG_FIX = Workflow(
    name="bug-fix",
    description="Diagnosis and fix pipeline for existing bugs",
    phases=(
        Phase(
            agent="architect",
            name="Root Cause Diagnosis",
            kind=PhaseKind.DESIGN,
            approval_required=True,
            next_phase_input=lambda r: _pick(
                r,
                "diagnosis",
                "rootCause",
                "affectedFiles",
                "suggestedFix",
                "riskAssessment",
                "reproductionSteps",
            ),
            validation=_root_cause_found,
        ),
        Phase(
            agent="test-gen",
            name="Regression Tests",
            kind=PhaseKind.TEST_AUTHORING,
            next_phase_input=lambda r: _pick(r, "testFiles", "testsCreated", "reproducedBug"),
            validation=_regression_tests_valid,
        ),
        Phase(
            agent="dev",
            name="Bug Fix Implementation",
            kind=PhaseKind.IMPLEMENTATION,
            pre_phase_hooks=("tdd-enforcement",),
            next_phase_input=lambda r: _implementation_input(r, "fixDescription"),
            validation=_green_phase_valid,
        ),
        Phase(
            agent="review",
            name="Fix Review",
            kind=PhaseKind.REVIEW,
            approval_required=True,
            next_phase_input=lambda r: _review_input(r, "isMinimalFix"),
            validation=_fix_review_approved,
        ),
        Phase(
            agent="qa",
            name="Regression Check",
            kind=PhaseKind.QUALITY_ANALYSIS,
            next_phase_input=lambda r: {
                "qaVerdict": r.output.get("verdict"),
                "qaSummary": r.output.get("summary"),
                **_pick(
                    r, "testsRun", "testsPassed", "testsFailed", "noRegressions", "coveragePercent"
                ),
            },
            validation=_no_regressions,
        ),
    ),
)


# refactor


def _baseline_green(result: AgentResult) -> bool:
    return _qa_not_failed(result) and result.output.get("testsFailed") == 0


def _refactor_plan_approved(result: AgentResult) -> bool:
    return (
        result.output.get("approved") is True
        and result.output.get("refactoringPlan") is not None
    )


def _quality_improved(result: AgentResult) -> bool:
    return _review_approved(result) and result.output.get("improvementsValidated") is True


def _final_verification(result: AgentResult) -> bool:
    return _baseline_green(result) and result.output.get("noRegressions") is True


REFACTOR = Workflow(
    name="refactor",
    description="Safe refactoring pipeline that preserves behavior",
    phases=(
        Phase(
            agent="qa",
            name="Test Baseline",
            kind=PhaseKind.QUALITY_ANALYSIS,
            pre_phase_hooks=("test-passing-enforcement",),
            next_phase_input=lambda r: {
                "baselineVerdict": r.output.get("verdict"),
                "baselineTestsRun": r.output.get("testsRun"),
                "baselineTestsPassed": r.output.get("testsPassed"),
                "baselineCoverage": r.output.get("coveragePercent"),
            },
            validation=_baseline_green,
        ),
        Phase(
            agent="architect",
            name="Refactor Review",
            kind=PhaseKind.DESIGN,
            approval_required=True,
            next_phase_input=lambda r: _pick(
                r,
                "rationale",
                "scope",
                "affectedFiles",
                "expectedImprovements",
                "risks",
                "refactoringPlan",
            ),
            validation=_refactor_plan_approved,
        ),
        Phase(
            agent="dev",
            name="Refactor Implementation",
            kind=PhaseKind.IMPLEMENTATION,
            pre_phase_hooks=("test-passing-enforcement",),
            next_phase_input=lambda r: _implementation_input(r, "changesDescription"),
            validation=_green_phase_valid,
        ),
        Phase(
            agent="review",
            name="Code Quality Review",
            kind=PhaseKind.REVIEW,
            approval_required=True,
            next_phase_input=lambda r: _review_input(r, "improvementsValidated"),
            validation=_quality_improved,
        ),
        Phase(
            agent="qa",
            name="Final Verification",
            kind=PhaseKind.QUALITY_ANALYSIS,
            pre_phase_hooks=("test-passing-enforcement",),
            next_phase_input=lambda r: {
                "finalVerdict": r.output.get("verdict"),
                **_pick(
                    r, "testsRun", "testsPassed", "testsFailed", "coveragePercent", "noRegressions"
                ),
            },
            validation=_final_verification,
        ),
    ),
)

BUILTIN_WORKFLOWS: tuple[Workflow, ...] = (NEW_FEATURE, BUG_FIX, REFACTOR)


class WorkflowCatalog:
    """Named, immutable workflow definitions."""

    def __init__(self, workflows: Iterable[Workflow] = BUILTIN_WORKFLOWS) -> None:
        self._workflows: dict[str, Workflow] = {}
        for workflow in workflows:
            names = [phase.name for phase in workflow.phases]
            if len(names) != len(set(names)):
                raise ConfigurationError(f"Workflow {workflow.name!r} has duplicate phase names")
            self._workflows[workflow.name] = workflow

    def resolve(self, workflow_type: str) -> Workflow:
        """Return the workflow registered under `workflow_type`.

        Raises:
            ConfigurationError: If the type is unknown or the workflow has no phases.
        """

        workflow = self._workflows.get(workflow_type)
        if workflow is None:
            raise ConfigurationError(
                f"Unknown workflow: {workflow_type!r}. Available: {', '.join(self.names())}"
            )
        if not workflow.phases:
            raise ConfigurationError(f"Workflow {workflow_type!r} has no phases")
        return workflow

    def names(self) -> list[str]:
        return sorted(self._workflows)
