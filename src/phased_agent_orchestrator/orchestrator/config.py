"""Configuration for the phased orchestrator.

Configuration is loaded from:
- keyword overrides passed by the caller
- environment variables (prefix `ORCHESTRATOR_`)
- and a local `.env` file (if present)

The environment is read once, when the settings object is constructed. The
engine receives the resulting, validated value and never reads the
environment itself.

Autonomous mode can be requested from CI with both of:
- ORCHESTRATOR_AUTONOMOUS=true
- ORCHESTRATOR_AUTONOMOUS_ACKNOWLEDGED=true
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

ModelTier = Literal["fast", "standard", "advanced"]
ApprovalMode = Literal["after-each-phase", "at-end", "none"]
ValidationFailurePolicy = Literal["continue", "halt"]
WorkerFailurePolicy = Literal["halt", "continue"]
RejectionPolicy = Literal["fail", "suspend"]

MODEL_TIERS: tuple[str, ...] = get_args(ModelTier)
APPROVAL_MODES: tuple[str, ...] = get_args(ApprovalMode)

# Ceilings applied by `create_config` when autonomous mode is enabled and the
# caller did not set the field explicitly.
AUTONOMOUS_DEFAULTS: dict[str, float | int] = {
    "max_budget_usd": 50.0,
    "max_turns_per_agent": 200,
    "max_duration_seconds_per_agent": 3600.0,
    "max_duration_seconds_per_workflow": 14400.0,
}


class ConfigurationError(ValueError):
    """Raised when configuration is invalid. Always raised before any phase runs."""


class AutonomousMode(BaseModel):
    """Autonomous execution sub-state and how it was acknowledged."""

    enabled: bool = False
    acknowledged: bool = False
    acknowledged_via: Literal["interactive", "environment"] | None = None
    acknowledged_at: datetime | None = None


class SandboxDirective(BaseModel):
    """Request to run the workflow inside an isolated working copy."""

    enabled: bool = True
    source_directory: Path | None = None


class OrchestratorSettings(BaseSettings):
    """Settings for a workflow run.

    Environment variables (all optional):
    - ORCHESTRATOR_MAX_BUDGET_USD
    - ORCHESTRATOR_MAX_TURNS_PER_AGENT
    - ORCHESTRATOR_MAX_TURNS_PER_WORKFLOW
    - ORCHESTRATOR_MAX_DURATION_SECONDS_PER_AGENT
    - ORCHESTRATOR_MAX_DURATION_SECONDS_PER_WORKFLOW
    - ORCHESTRATOR_DEFAULT_MODEL
    - ORCHESTRATOR_APPROVAL_MODE
    - ORCHESTRATOR_ON_WORKER_FAILURE
    - ORCHESTRATOR_CHECKPOINTS
    - ORCHESTRATOR_VERBOSE
    - ORCHESTRATOR_LOG_LEVEL

    Numeric ranges are not enforced at construction time; `validate_config`
    checks them so that every configuration problem surfaces as a
    `ConfigurationError` before execution starts.
    """

    max_budget_usd: float = Field(
        default=5.0,
        description="Cumulative cost ceiling (USD) for one workflow run",
    )
    max_turns_per_agent: int = Field(
        default=50,
        description="Upper bound on turns for any single phase",
    )
    max_turns_per_workflow: int | None = Field(
        default=None,
        description="Optional cumulative turn ceiling for the whole run",
    )
    max_duration_seconds_per_agent: float = Field(
        default=1800.0,
        description="Wall-clock ceiling for one phase's worker invocations",
    )
    max_duration_seconds_per_workflow: float = Field(
        default=7200.0,
        description="Ceiling on active execution time (approval waits excluded)",
    )
    default_model: ModelTier = Field(
        default="standard",
        description="Model tier used when an agent has no override",
    )
    approval_mode: ApprovalMode = Field(
        default="after-each-phase",
        description="When the engine suspends for human approval",
    )
    autonomous_mode: AutonomousMode = Field(default_factory=AutonomousMode)
    sandbox: SandboxDirective | None = Field(
        default=None,
        description="Run inside an isolated working copy",
    )

    strict_gates: bool = Field(
        default=False,
        description="Treat gates that cannot run (missing tooling) as failures",
    )
    on_validation_failure: ValidationFailurePolicy = Field(
        default="continue",
        description="What to do when a phase's validation predicate fails",
    )
    on_worker_failure: WorkerFailurePolicy = Field(
        default="halt",
        description="What to do when a worker reports failure or raises WorkerError",
    )
    on_rejection: RejectionPolicy = Field(
        default="fail",
        description="What to do when an approval request is rejected",
    )
    checkpoints: bool = Field(
        default=True,
        description="Tag HEAD before each phase when the workspace is a git repository",
    )

    test_command: str = Field(default="pytest -q", description="Command gates use to run tests")
    coverage_command: str = Field(
        default="pytest -q --cov --cov-report=term",
        description="Command the coverage gate uses",
    )
    coverage_threshold: float = Field(default=80.0, description="Minimum coverage percent")
    gate_timeout_seconds: float = Field(default=180.0, description="Timeout for gate commands")

    working_directory: Path = Field(default_factory=Path.cwd)
    verbose: bool = Field(default=False)
    log_level: str = Field(default="INFO", description="Root logging level")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def sandbox_enabled(self) -> bool:
        return self.sandbox is not None and self.sandbox.enabled

    @property
    def sessions_dir(self) -> Path:
        """Directory where sessions for this working directory are persisted."""

        return self.working_directory / ".orchestrator" / "sessions"


class AutonomousEnvironment(BaseSettings):
    """Environment-sourced autonomous flags (CI/CD acknowledgment)."""

    autonomous: bool = Field(default=False, validation_alias="ORCHESTRATOR_AUTONOMOUS")
    acknowledged: bool = Field(
        default=False, validation_alias="ORCHESTRATOR_AUTONOMOUS_ACKNOWLEDGED"
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")


class LLMConfig(BaseSettings):
    """Configuration for the LLM provider backing the default worker."""

    provider: Literal["openai"] = Field(default="openai", description="LLM provider to use")
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    openai_base_url: str | None = Field(default=None, description="Optional API base URL")
    openai_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=8192, gt=0)

    model_ids: dict[str, str] = Field(
        default_factory=lambda: {
            "fast": "gpt-4o-mini",
            "standard": "gpt-4o",
            "advanced": "gpt-4.1",
        },
        description="Model tier -> provider model id",
    )
    # USD per million tokens: (input, output)
    pricing: dict[str, tuple[float, float]] = Field(
        default_factory=lambda: {
            "fast": (0.15, 0.60),
            "standard": (2.50, 10.00),
            "advanced": (2.00, 8.00),
        },
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_LLM_",
        env_file=".env",
        extra="ignore",
    )


def autonomous_mode_from_env(env: AutonomousEnvironment | None = None) -> AutonomousMode:
    """Build the autonomous sub-record from environment flags."""

    env = env or AutonomousEnvironment()
    if not env.autonomous:
        return AutonomousMode()
    if not env.acknowledged:
        return AutonomousMode(enabled=True)
    return AutonomousMode(
        enabled=True,
        acknowledged=True,
        acknowledged_via="environment",
        acknowledged_at=datetime.now(UTC),
    )


def apply_autonomous_defaults(settings: OrchestratorSettings) -> OrchestratorSettings:
    """Elevate ceilings the caller left at their defaults; force unattended operation."""

    explicit = settings.model_fields_set
    update: dict[str, Any] = {
        name: value for name, value in AUTONOMOUS_DEFAULTS.items() if name not in explicit
    }
    update["approval_mode"] = "none"
    if "sandbox" not in explicit:
        update["sandbox"] = SandboxDirective(
            enabled=True, source_directory=settings.working_directory
        )
    return settings.model_copy(update=update)


def create_config(**overrides: Any) -> OrchestratorSettings:
    """Merge caller overrides with environment and defaults.

    Raises:
        ConfigurationError: If a value cannot be parsed (unknown model tier,
            unknown approval mode, non-numeric ceilings, ...).
    """

    if "autonomous_mode" not in overrides:
        env_mode = autonomous_mode_from_env()
        if env_mode.enabled:
            overrides["autonomous_mode"] = env_mode

    try:
        settings = OrchestratorSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if settings.autonomous_mode.enabled:
        settings = apply_autonomous_defaults(settings)
    return settings


def _positive(value: float | int | None) -> bool:
    return value is not None and not math.isnan(value) and value > 0


def validate_config(settings: OrchestratorSettings) -> None:
    """Validate configuration values.

    Raises:
        ConfigurationError: On the first invalid value found.
    """

    if not _positive(settings.max_budget_usd):
        raise ConfigurationError("max_budget_usd must be greater than 0")
    if not _positive(settings.max_turns_per_agent):
        raise ConfigurationError("max_turns_per_agent must be greater than 0")
    if settings.max_turns_per_workflow is not None and not _positive(
        settings.max_turns_per_workflow
    ):
        raise ConfigurationError("max_turns_per_workflow must be greater than 0")
    if not _positive(settings.max_duration_seconds_per_agent):
        raise ConfigurationError("max_duration_seconds_per_agent must be greater than 0")
    if not _positive(settings.max_duration_seconds_per_workflow):
        raise ConfigurationError("max_duration_seconds_per_workflow must be greater than 0")
    if not _positive(settings.gate_timeout_seconds):
        raise ConfigurationError("gate_timeout_seconds must be greater than 0")
    if not 0 <= settings.coverage_threshold <= 100:
        raise ConfigurationError("coverage_threshold must be between 0 and 100")

    if settings.default_model not in MODEL_TIERS:
        raise ConfigurationError(f"default_model must be one of: {', '.join(MODEL_TIERS)}")
    if settings.approval_mode not in APPROVAL_MODES:
        raise ConfigurationError(f"approval_mode must be one of: {', '.join(APPROVAL_MODES)}")

    autonomous = settings.autonomous_mode
    if autonomous.enabled and not autonomous.acknowledged:
        raise ConfigurationError(
            "Autonomous mode is enabled but has not been acknowledged. "
            "Acknowledge interactively or set ORCHESTRATOR_AUTONOMOUS_ACKNOWLEDGED=true."
        )
    if autonomous.enabled and settings.approval_mode != "none":
        raise ConfigurationError("Autonomous mode requires approval_mode 'none'")
