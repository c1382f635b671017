"""Gates that read the state of the test suite.

- tdd-enforcement: tests exist and FAIL before implementation (red phase)
- test-passing-enforcement: tests exist and PASS (refactor safety baseline)
"""

from __future__ import annotations

import logging

from phased_agent_orchestrator.orchestrator.hooks.base import GateContext
from phased_agent_orchestrator.orchestrator.hooks.commands import TestRunner
from phased_agent_orchestrator.orchestrator.workflow.catalog import tests_created
from phased_agent_orchestrator.orchestrator.workflow.models import HookResult, PhaseKind

logger = logging.getLogger(__name__)


class TddEnforcementGate:
    name = "tdd-enforcement"
    description = "Verifies tests exist and fail before implementation (TDD red phase)"

    def __init__(self, test_runner: TestRunner) -> None:
        self._run_tests = test_runner

    def execute(self, context: GateContext) -> HookResult:
        authored = context.latest_result(PhaseKind.TEST_AUTHORING)
        if authored is None:
            return HookResult(
                passed=False,
                error="TDD violation: no test-authoring phase has run before implementation.",
            )
        if not authored.success:
            return HookResult(
                passed=False,
                error="TDD violation: the test-authoring phase failed.",
            )
        if tests_created(authored) <= 0:
            return HookResult(
                passed=False,
                error="TDD violation: no tests were created in the test-authoring phase.",
            )

        run = self._run_tests(context.working_directory)
        if run.error:
            return HookResult(
                passed=False,
                error=f"TDD violation: could not run tests: {run.error}",
                data={"rawOutput": run.raw_output},
            )
        if not run.tests_found:
            return HookResult(
                passed=False,
                error="TDD violation: the test command found no tests.",
                data={"rawOutput": run.raw_output},
            )

        data = {
            "totalTests": run.total,
            "passingTests": run.passing,
            "failingTests": run.failing,
        }
        if run.failing == 0:
            return HookResult(
                passed=False,
                error=(
                    f"TDD violation: all {run.total} tests already pass. "
                    "Tests must fail before implementation."
                ),
                data={**data, "rawOutput": run.raw_output},
            )

        if context.verbose:
            logger.info(
                "Red phase verified",
                extra={"gate": self.name, "failing": run.failing, "total": run.total},
            )
        warnings: tuple[str, ...] = ()
        if run.passing > 0:
            warnings = (
                f"{run.passing} tests already pass. These may be from previous work "
                "or helper tests.",
            )
        return HookResult(passed=True, data=data, warnings=warnings)


class TestPassingGate:
    __test__ = False  # not a pytest test class

    name = "test-passing-enforcement"
    description = "Verifies the existing test suite passes"

    def __init__(self, test_runner: TestRunner) -> None:
        self._run_tests = test_runner

    def execute(self, context: GateContext) -> HookResult:
        run = self._run_tests(context.working_directory)
        if run.error:
            return HookResult(
                passed=False,
                error=f"Refactor safety violation: could not run tests: {run.error}",
                data={"rawOutput": run.raw_output},
            )
        if not run.tests_found:
            return HookResult(
                passed=False,
                error=(
                    "Refactor safety violation: no tests found. "
                    "A passing test suite is required as a baseline."
                ),
                data={"rawOutput": run.raw_output},
            )
        data = {
            "totalTests": run.total,
            "passingTests": run.passing,
            "failingTests": run.failing,
        }
        if run.failing > 0:
            return HookResult(
                passed=False,
                error=(
                    f"Refactor safety violation: {run.failing} tests failing. "
                    "Fix the tests first or use the bug-fix workflow."
                ),
                data={**data, "rawOutput": run.raw_output},
            )
        return HookResult(passed=True, data=data)
