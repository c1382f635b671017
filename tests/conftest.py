"""Test configuration and fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from phased_agent_orchestrator.orchestrator.config import OrchestratorSettings
from phased_agent_orchestrator.orchestrator.hooks import HookRunner
from phased_agent_orchestrator.orchestrator.state.sessions import SessionStore
from phased_agent_orchestrator.orchestrator.workflow.catalog import WorkflowCatalog
from phased_agent_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from phased_agent_orchestrator.orchestrator.workflow.models import Workflow
from tests.helpers import SEVEN_PHASES, FakeClock, ScriptedWorker


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer environment variables and `.env` files out of tests."""
    for name in list(os.environ):
        if name.startswith("ORCHESTRATOR_"):
            monkeypatch.delenv(name, raising=False)
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    monkeypatch.chdir(cwd)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Provide a temporary project working directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def settings(project_dir: Path) -> OrchestratorSettings:
    """Settings for an unattended, gate-free run."""
    return OrchestratorSettings(working_directory=project_dir, approval_mode="none")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def worker(clock: FakeClock) -> ScriptedWorker:
    return ScriptedWorker(clock=clock)


@pytest.fixture
def store(project_dir: Path) -> SessionStore:
    return SessionStore(project_dir)


@pytest.fixture
def make_engine(
    settings: OrchestratorSettings,
    worker: ScriptedWorker,
    store: SessionStore,
    clock: FakeClock,
) -> Callable[..., WorkflowEngine]:
    """Build an engine over the seven-phase workflow; keyword args override settings."""

    def _make(
        *, hooks: HookRunner | None = None, workflow: Workflow = SEVEN_PHASES, **overrides: Any
    ) -> WorkflowEngine:
        config = settings.model_copy(update=overrides) if overrides else settings
        return WorkflowEngine(
            config,
            worker,
            hooks=hooks or HookRunner(),
            catalog=WorkflowCatalog([workflow]),
            sessions=store,
            clock=clock,
        )

    return _make
