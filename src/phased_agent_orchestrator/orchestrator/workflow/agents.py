"""Agent registry: role name -> static worker configuration."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from phased_agent_orchestrator.orchestrator.config import ConfigurationError
from phased_agent_orchestrator.orchestrator.workflow.models import AgentConfig

logger = logging.getLogger(__name__)

KNOWN_TOOLS: frozenset[str] = frozenset(
    {
        "Read",
        "Write",
        "Edit",
        "Glob",
        "Grep",
        "Bash",
        "WebSearch",
        "WebFetch",
        "AskUserQuestion",
    }
)

_OUTPUT_INSTRUCTIONS = (
    "Finish by replying with a single JSON object in a ```json fenced block "
    "containing the output fields listed below."
)


def _prompt(role_text: str, outputs: dict[str, str]) -> str:
    fields = "\n".join(f"- {name}: {desc}" for name, desc in outputs.items())
    return f"{role_text}\n\n{_OUTPUT_INSTRUCTIONS}\n\n{fields}"


_ARCHITECT_OUT = {
    "approved": "boolean - whether the design (or refactoring plan) is sound",
    "designNotes": "string - design review notes",
    "suggestedPattern": "string - the implementation pattern to follow",
    "filesToCreate": "string[] - new files the change needs",
    "filesToModify": "string[] - existing files the change touches",
    "rootCause": "string - root cause (bug-fix only)",
    "suggestedFix": "string - proposed fix (bug-fix only)",
    "refactoringPlan": "string - step-by-step plan (refactor only)",
}
_SPEC_OUT = {
    "functionSpecs": "object[] - one entry per function: name, inputs, outputs, errors",
    "testScenarios": "object - unit/integration scenarios keyed by function",
}
_TEST_GEN_OUT = {
    "testsCreated": "number - test files created",
    "testFiles": "string[] - test file paths",
    "allTestsFailing": "boolean - every new test fails (must be true)",
    "reproducedBug": "boolean - the tests reproduce the bug (bug-fix only)",
}
_DEV_OUT = {
    "allTestsPassing": "boolean - the full test suite passes",
    "testRunOutput": "string - tail of the final test run",
    "fixDescription": "string - what changed (bug-fix only)",
    "changesDescription": "string - what changed (refactor only)",
}
_QA_OUT = {
    "verdict": "string - PASSED | NEEDS_ATTENTION | FAILED",
    "summary": "string - one paragraph",
    "testsRun": "number",
    "testsPassed": "number",
    "testsFailed": "number",
    "coveragePercent": "number",
    "coverageGaps": "string[] - files or areas lacking coverage",
    "securityIssues": "object[]",
    "noRegressions": "boolean",
}
_REVIEW_OUT = {
    "verdict": "string - APPROVED | CHANGES_REQUESTED | REJECTED",
    "summary": "string",
    "issues": "object[] - severity, file, description",
    "isMinimalFix": "boolean (bug-fix only)",
    "improvementsValidated": "boolean (refactor only)",
}
_DOCS_OUT = {
    "filesUpdated": "string[]",
    "docsVerified": "boolean - documentation reflects the change",
}

DEFAULT_AGENTS: tuple[AgentConfig, ...] = (
    AgentConfig(
        name="architect",
        description="Design review, root-cause diagnosis and refactor planning",
        system_prompt=_prompt(
            "You are the architect. Review the request against the existing codebase, "
            "choose an implementation approach and list the files involved. "
            "You do not write code.",
            _ARCHITECT_OUT,
        ),
        tools=("Read", "Glob", "Grep"),
        max_turns=20,
        input_schema={"feature": "string - the requested change"},
        output_schema=_ARCHITECT_OUT,
    ),
    AgentConfig(
        name="spec",
        description="Detailed specification with function contracts and test scenarios",
        system_prompt=_prompt(
            "You write the specification. Turn the approved design into precise "
            "function contracts and test scenarios.",
            _SPEC_OUT,
        ),
        tools=("Read", "Glob", "Grep"),
        max_turns=30,
        input_schema={"designNotes": "string", "filesToCreate": "string[]"},
        output_schema=_SPEC_OUT,
    ),
    AgentConfig(
        name="test-gen",
        description="Writes failing tests before any implementation exists",
        system_prompt=_prompt(
            "You write tests first. Every test you add must fail against the current "
            "code. Do not implement the feature.",
            _TEST_GEN_OUT,
        ),
        tools=("Read", "Glob", "Grep", "Write", "Bash"),
        max_turns=60,
        input_schema={"functionSpecs": "object[]", "testScenarios": "object"},
        output_schema=_TEST_GEN_OUT,
    ),
    AgentConfig(
        name="dev",
        description="Implements the minimal code that makes the failing tests pass",
        system_prompt=_prompt(
            "You implement. Make the failing tests pass with the smallest change "
            "that fits the codebase. Do not edit the tests.",
            _DEV_OUT,
        ),
        tools=("Read", "Write", "Edit", "Glob", "Grep", "Bash"),
        max_turns=60,
        input_schema={"testFiles": "string[]", "testsCreated": "number"},
        output_schema=_DEV_OUT,
    ),
    AgentConfig(
        name="qa",
        description="Runs tests, measures coverage and checks for security issues",
        system_prompt=_prompt(
            "You are quality assurance. Run the test suite, report coverage and "
            "flag security issues. You do not modify code.",
            _QA_OUT,
        ),
        tools=("Read", "Glob", "Grep", "Bash"),
        max_turns=40,
        input_schema={"filesCreated": "string[]", "filesModified": "string[]"},
        output_schema=_QA_OUT,
    ),
    AgentConfig(
        name="review",
        description="Code review and security audit",
        system_prompt=_prompt(
            "You review the change for correctness, security and fit with the "
            "existing code. Be specific about any issue.",
            _REVIEW_OUT,
        ),
        tools=("Read", "Glob", "Grep"),
        max_turns=30,
        input_schema={"qaVerdict": "string", "qaSummary": "string"},
        output_schema=_REVIEW_OUT,
    ),
    AgentConfig(
        name="docs",
        description="Updates documentation for the change",
        system_prompt=_prompt(
            "You update documentation (README, docstrings, changelog) so it "
            "describes the change accurately.",
            _DOCS_OUT,
        ),
        tools=("Read", "Write", "Edit", "Glob", "Grep"),
        max_turns=20,
        input_schema={"reviewSummary": "string"},
        output_schema=_DOCS_OUT,
    ),
)


class AgentRegistry:
    def __init__(self, agents: Iterable[AgentConfig] = DEFAULT_AGENTS) -> None:
        self._agents: dict[str, AgentConfig] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: AgentConfig) -> None:
        """Register (or replace) a role.

        Raises:
            ConfigurationError: If the agent declares an unknown tool or a
                non-positive turn limit.
        """

        unknown = sorted(set(agent.tools) - KNOWN_TOOLS)
        if unknown:
            raise ConfigurationError(
                f"Agent {agent.name!r} declares unknown tools: {', '.join(unknown)}"
            )
        if agent.max_turns <= 0:
            raise ConfigurationError(f"Agent {agent.name!r} must allow at least one turn")
        if agent.name in self._agents:
            logger.info("Replacing agent configuration", extra={"role": agent.name})
        self._agents[agent.name] = agent

    def lookup(self, role: str) -> AgentConfig:
        try:
            return self._agents[role]
        except KeyError:
            raise ConfigurationError(f"Unknown agent role: {role!r}") from None

    def roles(self) -> list[str]:
        return sorted(self._agents)
