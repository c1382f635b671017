"""Run the project's test and coverage commands and interpret their output.

The commands are black boxes; only their textual summaries are read. Both
pytest (and pytest-cov) and Jest summaries are understood.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from phased_agent_orchestrator.orchestrator.hooks.base import GateUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TestRunResult:
    __test__ = False  # not a pytest test class

    tests_found: bool
    total: int = 0
    passing: int = 0
    failing: int = 0
    raw_output: str = ""
    error: str | None = None


@dataclass(frozen=True, slots=True)
class FileCoverage:
    file: str
    percent: float
    missing: str = ""


@dataclass(frozen=True, slots=True)
class CoverageResult:
    coverage_percent: float | None
    statements: float | None = None
    branches: float | None = None
    functions: float | None = None
    lines: float | None = None
    files_below_threshold: tuple[FileCoverage, ...] = field(default_factory=tuple)
    raw_output: str = ""
    error: str | None = None


TestRunner = Callable[[Path], TestRunResult]
CoverageRunner = Callable[[Path], CoverageResult]


def run_command(command: str, *, cwd: Path, timeout: float) -> str:
    """Run a shell-free command and return combined stdout/stderr.

    A non-zero exit code is not an error: failing tests are an expected outcome.

    Raises:
        GateUnavailableError: If the executable cannot be found.
        subprocess.TimeoutExpired: If the command runs longer than `timeout`.
    """

    argv = shlex.split(command)
    if not argv:
        raise GateUnavailableError("Empty command")
    logger.debug("Running gate command", extra={"command": command, "cwd": str(cwd)})
    try:
        completed = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, "CI": "true"},
            check=False,
        )
    except FileNotFoundError as e:
        raise GateUnavailableError(f"Command not found: {argv[0]}") from e
    return (completed.stdout or "") + (completed.stderr or "")


# Tests

_PYTEST_SUMMARY = re.compile(r"^=*\s*(?P<body>\d+ [a-z]+.*?)\s+in\s+[\d.]+s\b", re.MULTILINE)
_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|errors?|skipped|xfailed|xpassed|deselected)")
_JEST_TESTS = re.compile(r"^\s*Tests:\s*(?P<body>.*)$", re.MULTILINE)
_JEST_COUNT = re.compile(r"(\d+)\s*(failed|passed|skipped|todo|total)")
_JEST_SUITES_FAILED = re.compile(r"Test Suites:\s*(\d+)\s*failed")


def _parse_pytest(output: str) -> TestRunResult | None:
    matches = list(_PYTEST_SUMMARY.finditer(output))
    if not matches:
        if "no tests ran" in output:
            return TestRunResult(tests_found=False, raw_output=output)
        return None

    counts: dict[str, int] = {}
    for number, label in _PYTEST_COUNT.findall(matches[-1].group("body")):
        key = "error" if label.startswith("error") else label
        counts[key] = counts.get(key, 0) + int(number)

    passing = counts.get("passed", 0)
    failing = counts.get("failed", 0) + counts.get("error", 0)
    total = passing + failing + counts.get("skipped", 0)
    return TestRunResult(
        tests_found=total > 0,
        total=total,
        passing=passing,
        failing=failing,
        raw_output=output,
    )


def _parse_jest(output: str) -> TestRunResult | None:
    match = _JEST_TESTS.search(output)
    if match is None:
        if "No tests found" in output:
            return TestRunResult(tests_found=False, raw_output=output)
        return None

    counts = {label: int(number) for number, label in _JEST_COUNT.findall(match.group("body"))}
    failing = counts.get("failed", 0)
    passing = counts.get("passed", 0)
    total = counts.get("total", passing + failing)

    # Suites that crash (e.g. the module under test does not exist yet) are
    # failures even though no individual test reported failing.
    suites = _JEST_SUITES_FAILED.search(output)
    if suites and failing == 0:
        suites_failed = int(suites.group(1))
        failing = suites_failed
        total += suites_failed

    return TestRunResult(
        tests_found=total > 0,
        total=total,
        passing=passing,
        failing=failing,
        raw_output=output,
    )


def parse_test_output(output: str) -> TestRunResult:
    """Extract test counts from a pytest or Jest run."""

    result = _parse_jest(output) or _parse_pytest(output)
    if result is not None:
        return result
    return TestRunResult(
        tests_found=False,
        raw_output=output,
        error="Could not parse test output",
    )


class CommandTestRunner:
    def __init__(self, command: str, *, timeout: float) -> None:
        self._command = command
        self._timeout = timeout

    def __call__(self, working_directory: Path) -> TestRunResult:
        output = run_command(self._command, cwd=working_directory, timeout=self._timeout)
        return parse_test_output(output)


# Coverage

_JEST_METRIC = "{name}\\s*:\\s*([\\d.]+)%"
_PYCOV_TOTAL = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)
_PYCOV_FILE = re.compile(
    r"^(?P<file>\S+\.py)[ \t]+(?:\d+[ \t]+){2,4}(?P<percent>\d+(?:\.\d+)?)%"
    r"(?:[ \t]+(?P<missing>.*))?$",
    re.MULTILINE,
)
_JEST_FILE = re.compile(
    r"^[ \t]*(?P<file>[\w/.-]+\.(?:js|ts|jsx|tsx))\s*\|\s*(?P<percent>[\d.]+)"
    r"(?:\s*\|[^|\n]*){3}(?:\|\s*(?P<missing>[^\n]*))?",
    re.MULTILINE,
)


def _metric(output: str, name: str) -> float | None:
    match = re.search(_JEST_METRIC.format(name=name), output, re.IGNORECASE)
    return float(match.group(1)) if match else None


def parse_coverage_output(output: str, threshold: float = 80.0) -> CoverageResult:
    """Extract overall and per-file coverage from pytest-cov or Jest output.

    For Jest the overall figure is the mean of statement and branch coverage;
    for pytest-cov it is the TOTAL row.
    """

    statements = _metric(output, "Statements")
    branches = _metric(output, "Branches")
    functions = _metric(output, "Functions")
    lines = _metric(output, "Lines")

    below: list[FileCoverage] = []
    total_match = _PYCOV_TOTAL.search(output)
    if total_match is not None:
        percent: float | None = float(total_match.group(1))
        file_pattern = _PYCOV_FILE
    elif statements is not None or branches is not None:
        percent = ((statements or 0.0) + (branches or 0.0)) / 2
        file_pattern = _JEST_FILE
    else:
        return CoverageResult(
            coverage_percent=None,
            raw_output=output,
            error="Could not parse coverage data from output",
        )

    for match in file_pattern.finditer(output):
        file_percent = float(match.group("percent"))
        if file_percent < threshold:
            below.append(
                FileCoverage(
                    file=match.group("file"),
                    percent=file_percent,
                    missing=(match.group("missing") or "").strip(),
                )
            )

    return CoverageResult(
        coverage_percent=percent,
        statements=statements,
        branches=branches,
        functions=functions,
        lines=lines,
        files_below_threshold=tuple(below),
        raw_output=output,
    )


class CommandCoverageRunner:
    def __init__(self, command: str, *, threshold: float, timeout: float) -> None:
        self._command = command
        self._threshold = threshold
        self._timeout = timeout

    def __call__(self, working_directory: Path) -> CoverageResult:
        output = run_command(self._command, cwd=working_directory, timeout=self._timeout)
        return parse_coverage_output(output, self._threshold)
