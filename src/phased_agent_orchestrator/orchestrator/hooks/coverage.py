from __future__ import annotations

import logging

from phased_agent_orchestrator.orchestrator.hooks.base import GateContext
from phased_agent_orchestrator.orchestrator.hooks.commands import CoverageResult, CoverageRunner
from phased_agent_orchestrator.orchestrator.workflow.models import HookResult, PhaseKind

logger = logging.getLogger(__name__)

DEFAULT_COVERAGE_THRESHOLD = 80.0

# Number of under-covered files listed in a failure warning.
_MAX_LISTED_FILES = 5


def _coverage_data(result: CoverageResult, threshold: float) -> dict[str, object]:
    return {
        "coveragePercent": result.coverage_percent,
        "statementCoverage": result.statements,
        "branchCoverage": result.branches,
        "functionCoverage": result.functions,
        "lineCoverage": result.lines,
        "filesBelowThreshold": [
            {"file": f.file, "percent": f.percent, "missing": f.missing}
            for f in result.files_below_threshold
        ],
        "threshold": threshold,
    }


class CoverageThresholdGate:
    """Blocks quality analysis until implementation is green and coverage meets the threshold."""

    name = "coverage-threshold"

    def __init__(
        self, coverage_runner: CoverageRunner, threshold: float = DEFAULT_COVERAGE_THRESHOLD
    ) -> None:
        self._run_coverage = coverage_runner
        self._threshold = threshold
        self.description = f"Verifies test coverage meets {threshold:g}% before quality analysis"

    def execute(self, context: GateContext) -> HookResult:
        implementation = context.latest_result(PhaseKind.IMPLEMENTATION)
        if implementation is None:
            return HookResult(
                passed=False, error="Coverage threshold: no implementation phase has run."
            )
        if not implementation.success:
            return HookResult(
                passed=False,
                error="Coverage threshold: the implementation phase failed.",
            )
        if implementation.output.get("allTestsPassing") is not True:
            return HookResult(
                passed=False,
                error=(
                    "Coverage threshold: tests are not passing. "
                    "Fix tests before checking coverage."
                ),
            )

        result = self._run_coverage(context.working_directory)
        if result.coverage_percent is None:
            return HookResult(
                passed=False,
                error=f"Coverage threshold: {result.error or 'no coverage data'}",
                data={"rawOutput": result.raw_output},
            )

        data = _coverage_data(result, self._threshold)
        if result.coverage_percent < self._threshold:
            listed = "\n".join(
                f"  - {f.file}: {f.percent:.1f}%"
                for f in result.files_below_threshold[:_MAX_LISTED_FILES]
            )
            return HookResult(
                passed=False,
                error=(
                    f"Coverage threshold not met: {result.coverage_percent:.1f}% "
                    f"< {self._threshold:g}%"
                ),
                data=data,
                warnings=(f"Files below threshold:\n{listed}",) if listed else (),
            )

        logger.info(
            "Coverage threshold met",
            extra={"coverage": result.coverage_percent, "threshold": self._threshold},
        )
        warnings: tuple[str, ...] = ()
        if result.files_below_threshold:
            warnings = (
                f"{len(result.files_below_threshold)} file(s) below "
                f"{self._threshold:g}% coverage",
            )
        return HookResult(passed=True, data=data, warnings=warnings)
