"""CLI entrypoint for the phased orchestrator.

Exit codes:
- 0: workflow completed, or suspended awaiting approval
- 1: workflow failed or the command raised
- 2: configuration error
- 3: session not found or not in a state that allows the command
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from phased_agent_orchestrator import __version__
from phased_agent_orchestrator.llm import LLMFactory, LLMProviderError, LLMWorker
from phased_agent_orchestrator.orchestrator.autonomous import (
    AcknowledgmentError,
    AuditLogger,
    format_summary,
    require_acknowledgment,
    summarize_session,
)
from phased_agent_orchestrator.orchestrator.checkpoints import (
    CheckpointError,
    cleanup_checkpoints,
    rollback_to_checkpoint,
)
from phased_agent_orchestrator.orchestrator.config import (
    APPROVAL_MODES,
    MODEL_TIERS,
    ConfigurationError,
    LLMConfig,
    OrchestratorSettings,
    autonomous_mode_from_env,
    create_config,
)
from phased_agent_orchestrator.orchestrator.logging import configure_logging
from phased_agent_orchestrator.orchestrator.sandbox import (
    SandboxError,
    SandboxInfo,
    cleanup_sandbox,
    copy_results_back,
    create_sandbox,
)
from phased_agent_orchestrator.orchestrator.state.sessions import CleanupOptions, SessionStore
from phased_agent_orchestrator.orchestrator.workflow.catalog import BUILTIN_WORKFLOWS
from phased_agent_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from phased_agent_orchestrator.orchestrator.workflow.events import (
    ApprovalRequestedEvent,
    CostUpdateEvent,
    PhaseCompletedEvent,
    PhaseStartedEvent,
    PrePhaseHookEvent,
    WorkflowCompletedEvent,
    WorkflowErrorEvent,
    WorkflowEvent,
    WorkflowResumedEvent,
    WorkflowStartedEvent,
)
from phased_agent_orchestrator.orchestrator.workflow.models import (
    Worker,
    WorkflowError,
    WorkflowState,
)
from phased_agent_orchestrator.orchestrator.workflow.state_machine import (
    IllegalTransitionError,
    WorkflowStatus,
    transition,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_SESSION = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Phased agent workflow orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"phased-agent-orchestrator {__version__}"
    )
    parser.add_argument(
        "--working-directory",
        type=Path,
        default=None,
        help="Project directory (defaults to the current directory)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print events as JSON lines instead of text",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start a workflow")
    run.add_argument(
        "workflow",
        choices=[w.name for w in BUILTIN_WORKFLOWS],
        help="Workflow type",
    )
    run.add_argument("description", help="Feature, bug or refactoring description")
    run.add_argument("--context", default=None, help="Additional context for every phase")
    run.add_argument(
        "--approval-mode",
        choices=APPROVAL_MODES,
        default=None,
        help="When to stop for human approval",
    )
    run.add_argument("--budget", type=float, default=None, help="Maximum spend in USD")
    run.add_argument("--max-turns", type=int, default=None, help="Turn ceiling per agent")
    run.add_argument(
        "--max-duration",
        type=float,
        default=None,
        help="Active-time ceiling for the whole workflow, in minutes",
    )
    run.add_argument("--model", choices=MODEL_TIERS, default=None, help="Default model tier")
    run.add_argument(
        "--strict-gates",
        action="store_true",
        default=None,
        help="Fail gates whose tooling is missing instead of skipping them",
    )
    run.add_argument(
        "--autonomous",
        action="store_true",
        help="Run unattended (requires acknowledgment)",
    )
    run.add_argument(
        "--no-sandbox",
        action="store_true",
        help="With --autonomous, operate on the working directory instead of a clone",
    )

    approve = subparsers.add_parser("approve", help="Approve or reject a suspended session")
    approve.add_argument("session_id")
    approve.add_argument("--reject", action="store_true", help="Reject instead of approve")
    approve.add_argument("--feedback", default=None, help="Feedback passed to the next phase")

    resume = subparsers.add_parser("resume", help="Resume a running session")
    resume.add_argument(
        "session_id",
        nargs="?",
        default=None,
        help="Session to resume (defaults to the most recent resumable session)",
    )

    cancel = subparsers.add_parser("cancel", help="Cancel a session")
    cancel.add_argument("session_id")
    cancel.add_argument("--reason", default=None)

    rollback = subparsers.add_parser(
        "rollback", help="Reset the working tree to the checkpoint taken before a phase"
    )
    rollback.add_argument("session_id")
    rollback.add_argument(
        "--phase",
        default=None,
        help="Phase whose checkpoint to restore (defaults to the most recent one)",
    )

    sessions = subparsers.add_parser("sessions", help="Manage persisted sessions")
    session_commands = sessions.add_subparsers(dest="sessions_command", required=True)
    session_commands.add_parser("list", help="List sessions, most recent first")
    delete = session_commands.add_parser("delete", help="Delete a session")
    delete.add_argument("session_id")
    cleanup = session_commands.add_parser("cleanup", help="Delete old finished sessions")
    cleanup.add_argument("--older-than-days", type=float, default=7)
    cleanup.add_argument(
        "--keep-completed", action="store_true", help="Do not delete completed sessions"
    )
    cleanup.add_argument(
        "--include-failed", action="store_true", help="Also delete failed sessions"
    )
    cleanup.add_argument(
        "--keep-cancelled", action="store_true", help="Do not delete cancelled sessions"
    )

    return parser


def _settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.working_directory is not None:
        overrides["working_directory"] = args.working_directory.resolve()
    if getattr(args, "approval_mode", None) is not None:
        overrides["approval_mode"] = args.approval_mode
    if getattr(args, "budget", None) is not None:
        overrides["max_budget_usd"] = args.budget
    if getattr(args, "max_turns", None) is not None:
        overrides["max_turns_per_agent"] = args.max_turns
    if getattr(args, "max_duration", None) is not None:
        overrides["max_duration_seconds_per_workflow"] = args.max_duration * 60
    if getattr(args, "model", None) is not None:
        overrides["default_model"] = args.model
    if getattr(args, "strict_gates", None):
        overrides["strict_gates"] = True
    if getattr(args, "no_sandbox", False):
        overrides["sandbox"] = None
    return overrides


def _default_worker() -> Worker:
    try:
        config = LLMConfig()
        provider = LLMFactory.create(config)
    except ValueError as e:
        raise ConfigurationError(f"LLM provider is not configured: {e}") from e
    return LLMWorker(provider, config)


def _describe(event: WorkflowEvent) -> str | None:
    match event:
        case WorkflowStartedEvent():
            return (
                f"Started {event.workflow} ({event.phase_count} phases), "
                f"session {event.session_id}"
            )
        case WorkflowResumedEvent():
            return f"Resumed session {event.session_id} at phase {event.phase_index + 1}"
        case PhaseStartedEvent():
            return f"[{event.phase_index + 1}] {event.phase} ({event.agent})"
        case PrePhaseHookEvent():
            status = "passed" if event.result.passed else f"FAILED: {event.result.error}"
            lines = [f"    gate {event.hook}: {status}"]
            lines.extend(f"      warning: {w}" for w in event.result.warnings)
            return "\n".join(lines)
        case PhaseCompletedEvent():
            status = "ok" if event.result.success else f"failed: {event.result.error}"
            return f"    {event.phase}: {status} (${event.result.cost_usd:.2f})"
        case CostUpdateEvent():
            return None
        case ApprovalRequestedEvent():
            return (
                f"Awaiting approval after {event.phase!r}.\n"
                f"  orchestrator approve {event.session_id} [--reject] [--feedback TEXT]"
            )
        case WorkflowCompletedEvent():
            return (
                f"Completed: ${event.total_cost_usd:.2f}, {event.total_turns} turns, "
                f"{event.elapsed_seconds:.0f}s active"
            )
        case WorkflowErrorEvent():
            kind = "warning" if event.recoverable else "error"
            where = f" [{event.phase}]" if event.phase else ""
            return f"{kind}{where}: {event.error}"
    return None


def _emit(events: Iterable[WorkflowEvent], *, as_json: bool, audit: AuditLogger | None) -> None:
    for event in events:
        if audit is not None:
            audit.record(event)
        if as_json:
            print(json.dumps(event.to_json(), ensure_ascii=False))
            continue
        text = _describe(event)
        if text:
            print(text)


def _exit_code(engine: WorkflowEngine) -> int:
    state = engine.state
    if state is None or state.status in (WorkflowStatus.FAILED, WorkflowStatus.CANCELLED):
        return EXIT_FAILED
    return EXIT_OK


def _load_settings(args: argparse.Namespace, **extra: Any) -> OrchestratorSettings:
    return create_config(**_settings_overrides(args), **extra)


def _cmd_run(args: argparse.Namespace, worker: Worker | None) -> int:
    extra: dict[str, Any] = {}
    if args.autonomous:
        from_env = autonomous_mode_from_env()
        acknowledged = from_env.enabled and from_env.acknowledged
        extra["autonomous_mode"] = from_env if acknowledged else require_acknowledgment()
    settings = _load_settings(args, **extra)
    configure_logging(settings.log_level)

    engine = WorkflowEngine(settings, worker or _default_worker())
    sandbox: SandboxInfo | None = None
    if settings.sandbox_enabled:
        assert settings.sandbox is not None
        sandbox = create_sandbox(settings.sandbox.source_directory or settings.working_directory)
        print(f"Sandbox: {sandbox.directory}")

    events = engine.run(
        args.workflow,
        args.description,
        args.context,
        workspace=sandbox.directory if sandbox else None,
    )
    state = engine.state
    assert state is not None
    audit = (
        AuditLogger(settings.working_directory, state.session_id)
        if settings.autonomous_mode.enabled
        else None
    )
    try:
        _emit(events, as_json=args.json, audit=audit)
    finally:
        if audit is not None:
            audit.close()

    if sandbox is not None and state.status is not WorkflowStatus.AWAITING_APPROVAL:
        if state.status is WorkflowStatus.COMPLETED:
            copied = copy_results_back(sandbox)
            print(f"Copied {len(copied.files_copied)} file(s) back from the sandbox")
        cleanup_sandbox(sandbox.directory)

    if settings.autonomous_mode.enabled:
        assert engine.workflow is not None
        summary = summarize_session(
            state,
            engine.workflow,
            audit_log=audit.path if audit is not None else None,
        )
        print(format_summary(summary))
    return _exit_code(engine)


def _cmd_approve(
    args: argparse.Namespace,
    settings: OrchestratorSettings,
    worker: Worker | None,
    store: SessionStore,
) -> int:
    session = store.load(args.session_id)
    if session is None:
        print(f"Session not found: {args.session_id}", file=sys.stderr)
        return EXIT_SESSION
    if session.state.status is not WorkflowStatus.AWAITING_APPROVAL:
        print(
            f"Session {args.session_id} is not awaiting approval "
            f"(status: {session.state.status.value})",
            file=sys.stderr,
        )
        return EXIT_SESSION

    engine = WorkflowEngine(settings, worker or _default_worker(), sessions=store)
    # Re-announces the pending request; nothing runs until the decision arrives.
    for _ in engine.resume(session):
        pass
    _emit(engine.approve(not args.reject, args.feedback), as_json=args.json, audit=None)
    return _exit_code(engine)


def _cmd_resume(
    args: argparse.Namespace,
    settings: OrchestratorSettings,
    worker: Worker | None,
    store: SessionStore,
) -> int:
    session = store.load(args.session_id) if args.session_id else store.get_resumable()
    if session is None:
        if args.session_id:
            print(f"Session not found: {args.session_id}", file=sys.stderr)
        else:
            print("No resumable session", file=sys.stderr)
        return EXIT_SESSION

    engine = WorkflowEngine(settings, worker or _default_worker(), sessions=store)
    _emit(engine.resume(session), as_json=args.json, audit=None)
    return _exit_code(engine)


def _cmd_cancel(args: argparse.Namespace, store: SessionStore) -> int:
    session = store.load(args.session_id)
    if session is None:
        print(f"Session not found: {args.session_id}", file=sys.stderr)
        return EXIT_SESSION

    state = session.state
    try:
        state.status = transition(current=state.status, to=WorkflowStatus.CANCELLED)
    except IllegalTransitionError as e:
        print(str(e), file=sys.stderr)
        return EXIT_SESSION
    state.error = args.reason or "Cancelled"
    state.completed_at = datetime.now(UTC)
    store.save(state)
    logger.info("Session cancelled", extra={"session_id": state.session_id})
    print(f"Cancelled session {args.session_id}")
    return EXIT_OK


def _session_workspace(state: WorkflowState, settings: OrchestratorSettings) -> Path:
    return Path(state.workspace) if state.workspace else settings.working_directory


def _cmd_rollback(
    args: argparse.Namespace, settings: OrchestratorSettings, store: SessionStore
) -> int:
    session = store.load(args.session_id)
    if session is None:
        print(f"Session not found: {args.session_id}", file=sys.stderr)
        return EXIT_SESSION

    state = session.state
    phase = args.phase or next(reversed(state.checkpoints), None)
    tag = state.checkpoints.get(phase) if phase else None
    if tag is None:
        target = f"phase {phase!r}" if phase else "any phase"
        print(f"Session {args.session_id} has no checkpoint for {target}", file=sys.stderr)
        return EXIT_SESSION
    directory = _session_workspace(state, settings)
    if not directory.is_dir():
        print(f"Workspace no longer exists: {directory}", file=sys.stderr)
        return EXIT_SESSION

    rollback_to_checkpoint(directory, tag)
    print(f"Rolled back {directory} to {tag}")
    return EXIT_OK


def _cmd_sessions(
    args: argparse.Namespace, settings: OrchestratorSettings, store: SessionStore
) -> int:
    if args.sessions_command == "list":
        summaries = store.list()
        if args.json:
            for summary in summaries:
                print(json.dumps(summary.model_dump(mode="json"), ensure_ascii=False))
            return EXIT_OK
        if not summaries:
            print("No sessions")
        for s in summaries:
            print(
                f"{s.session_id}  {s.status.value:<17} {s.workflow:<12} "
                f"phase {s.current_phase:<2} ${s.total_cost_usd:.2f}  "
                f"{s.last_updated_at:%Y-%m-%d %H:%M}  {s.description}"
            )
        return EXIT_OK

    if args.sessions_command == "delete":
        session = store.load(args.session_id)
        if not store.delete(args.session_id):
            print(f"Session not found: {args.session_id}", file=sys.stderr)
            return EXIT_SESSION
        if session is not None:
            workspace = _session_workspace(session.state, settings)
            cleanup_checkpoints(workspace, args.session_id)
        print(f"Deleted session {args.session_id}")
        return EXIT_OK

    deleted = store.cleanup(
        CleanupOptions(
            older_than_days=args.older_than_days,
            include_completed=not args.keep_completed,
            include_failed=args.include_failed,
            include_cancelled=not args.keep_cancelled,
        )
    )
    print(f"Deleted {deleted} session(s)")
    return EXIT_OK


def main(argv: list[str] | None = None, *, worker: Worker | None = None) -> int:
    """Run the CLI.

    Args:
        argv: Arguments (defaults to ``sys.argv[1:]``).
        worker: Worker to use instead of the configured LLM worker.
    """

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return _cmd_run(args, worker)

        settings = _load_settings(args)
        configure_logging(settings.log_level)
        store = SessionStore(settings.working_directory)

        if args.command == "approve":
            return _cmd_approve(args, settings, worker, store)
        if args.command == "resume":
            return _cmd_resume(args, settings, worker, store)
        if args.command == "cancel":
            return _cmd_cancel(args, store)
        if args.command == "rollback":
            return _cmd_rollback(args, settings, store)
        if args.command == "sessions":
            return _cmd_sessions(args, settings, store)

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG
    except (ConfigurationError, AcknowledgmentError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except WorkflowError as e:
        print(str(e), file=sys.stderr)
        return EXIT_SESSION
    except (SandboxError, CheckpointError, LLMProviderError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
