"""Session persistence: one JSON document per workflow run.

Layout: `<working_directory>/.orchestrator/sessions/<session_id>.json`

There is no locking. A session must only be written by one engine at a time;
if two processes write the same session, the last write wins.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, ValidationError

from phased_agent_orchestrator.orchestrator.workflow.models import WorkflowState
from phased_agent_orchestrator.orchestrator.workflow.state_machine import WorkflowStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
SESSIONS_DIR = Path(".orchestrator") / "sessions"

_SESSION_ID_RE = re.compile(r"^[0-9a-z]+-[0-9a-f]{8}$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

RESUMABLE_STATUSES = frozenset({WorkflowStatus.RUNNING, WorkflowStatus.AWAITING_APPROVAL})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_session_id() -> str:
    """`<base36 epoch millis>-<8 hex chars>`, e.g. `m1x2y3z4-9f8e7d6c`."""

    return f"{_base36(time.time_ns() // 1_000_000)}-{secrets.token_hex(4)}"


class SessionMetadata(BaseModel):
    session_id: str
    created_at: datetime
    last_updated_at: datetime
    working_directory: str
    version: str = SCHEMA_VERSION


class PersistedSession(BaseModel):
    metadata: SessionMetadata
    state: WorkflowState


class SessionSummary(BaseModel):
    session_id: str
    workflow: str
    description: str
    status: WorkflowStatus
    current_phase: int
    total_cost_usd: float
    created_at: datetime
    last_updated_at: datetime


@dataclass(frozen=True, slots=True)
class CleanupOptions:
    older_than_days: float = 7
    include_completed: bool = True
    include_failed: bool = False
    include_cancelled: bool = True

    def selects(self, status: WorkflowStatus) -> bool:
        if status is WorkflowStatus.COMPLETED:
            return self.include_completed
        if status is WorkflowStatus.FAILED:
            return self.include_failed
        if status is WorkflowStatus.CANCELLED:
            return self.include_cancelled
        # running / awaiting-approval are never cleaned up
        return False


class SessionStore:
    def __init__(
        self, working_directory: Path, *, clock: Callable[[], datetime] = _utcnow
    ) -> None:
        self._working_directory = working_directory
        self._dir = working_directory / SESSIONS_DIR
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path | None:
        # Ids become file names; anything else is treated as absent.
        if not _SESSION_ID_RE.match(session_id):
            return None
        return self._dir / f"{session_id}.json"

    def save(self, state: WorkflowState) -> PersistedSession:
        path = self._path(state.session_id)
        if path is None:
            raise ValueError(f"Invalid session id: {state.session_id!r}")

        session = PersistedSession(
            metadata=SessionMetadata(
                session_id=state.session_id,
                created_at=state.started_at,
                last_updated_at=self._clock(),
                working_directory=str(self._working_directory),
            ),
            state=state,
        )
        self._dir.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(session.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        logger.debug(
            "Session saved",
            extra={"session_id": state.session_id, "status": state.status.value},
        )
        return session

    def _read(self, path: Path) -> PersistedSession | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return PersistedSession.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                "Ignoring unreadable session",
                extra={"path": str(path), "error": str(e)},
            )
            return None

    def load(self, session_id: str) -> PersistedSession | None:
        path = self._path(session_id)
        if path is None or not path.exists():
            return None
        return self._read(path)

    def list(self) -> list[SessionSummary]:
        """Summaries of all readable sessions, most recently updated first."""

        if not self._dir.exists():
            return []

        summaries: list[SessionSummary] = []
        for path in self._dir.glob("*.json"):
            session = self._read(path)
            if session is None:
                continue
            summaries.append(
                SessionSummary(
                    session_id=session.metadata.session_id,
                    workflow=session.state.workflow,
                    description=session.state.description,
                    status=session.state.status,
                    current_phase=session.state.current_phase_index,
                    total_cost_usd=session.state.total_cost_usd,
                    created_at=session.metadata.created_at,
                    last_updated_at=session.metadata.last_updated_at,
                )
            )
        summaries.sort(key=lambda s: s.last_updated_at, reverse=True)
        return summaries

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(
                "Could not delete session",
                extra={"session_id": session_id, "error": str(e)},
            )
            return False
        logger.info("Session deleted", extra={"session_id": session_id})
        return True

    def cleanup(self, options: CleanupOptions | None = None) -> int:
        """Delete old sessions whose status the options select. Returns the count deleted."""

        options = options or CleanupOptions()
        cutoff = self._clock() - timedelta(days=options.older_than_days)

        deleted = 0
        for summary in self.list():
            if summary.last_updated_at < cutoff and options.selects(summary.status):
                if self.delete(summary.session_id):
                    deleted += 1
        logger.info("Session cleanup finished", extra={"deleted": deleted})
        return deleted

    def get_resumable(self) -> PersistedSession | None:
        """Most recently updated running or awaiting-approval session."""

        for summary in self.list():
            if summary.status in RESUMABLE_STATUSES:
                return self.load(summary.session_id)
        return None
