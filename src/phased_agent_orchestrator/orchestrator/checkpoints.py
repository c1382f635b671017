"""Git checkpoints at phase boundaries.

Before a phase runs, HEAD of the workspace repository is tagged
`orchestrator-checkpoint/<session>/pre-<index>-<slug>`. A phase that went
wrong can then be undone with `rollback_to_checkpoint`.

Checkpoints are only taken when the workspace is the top level of a git
repository with at least one commit; anywhere else they are skipped.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TAG_PREFIX = "orchestrator-checkpoint"


class CheckpointError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Checkpoint:
    tag: str
    commit: str


def _git(*args: str, cwd: Path) -> str:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except (FileNotFoundError, NotADirectoryError) as e:
        raise CheckpointError(f"git {' '.join(args)} could not run: {e}") from e
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise CheckpointError(f"git {' '.join(args)} failed: {detail}") from e
    return completed.stdout.strip()


def phase_slug(phase_name: str) -> str:
    """Lowercase the name and collapse anything that is not [a-z0-9] into '-'."""

    return re.sub(r"[^a-z0-9]+", "-", phase_name.lower()).strip("-")


def checkpoint_tag(session_id: str, phase_index: int, phase_name: str) -> str:
    return f"{TAG_PREFIX}/{session_id}/pre-{phase_index}-{phase_slug(phase_name)}"


def is_repository_root(directory: Path) -> bool:
    if not directory.is_dir():
        return False
    try:
        top = _git("rev-parse", "--show-toplevel", cwd=directory)
    except CheckpointError:
        return False
    return Path(top).resolve() == directory.resolve()


def create_checkpoint(
    directory: Path, session_id: str, phase_index: int, phase_name: str
) -> Checkpoint | None:
    """Tag HEAD before a phase runs.

    Returns None when `directory` is not the root of a repository with
    commits. An existing tag for the same phase is reused.

    Raises:
        CheckpointError: If the tag cannot be created.
    """

    if not is_repository_root(directory):
        return None
    try:
        head = _git("rev-parse", "--verify", "HEAD", cwd=directory)
    except CheckpointError:
        logger.info("Repository has no commits; checkpoint skipped", extra={"path": str(directory)})
        return None

    tag = checkpoint_tag(session_id, phase_index, phase_name)
    try:
        existing = _git("rev-parse", "--verify", f"refs/tags/{tag}^{{commit}}", cwd=directory)
    except CheckpointError:
        existing = None
    if existing is not None:
        return Checkpoint(tag=tag, commit=existing)

    _git("tag", tag, head, cwd=directory)
    logger.info("Checkpoint created", extra={"tag": tag, "commit": head})
    return Checkpoint(tag=tag, commit=head)


def rollback_to_checkpoint(directory: Path, tag: str) -> None:
    """Reset the working tree to `tag` and drop untracked files.

    Ignored files and the orchestrator's own `.orchestrator/` directory are
    left in place.

    Raises:
        CheckpointError: If git refuses the reset or clean.
    """

    _git("reset", "--hard", tag, cwd=directory)
    _git("clean", "-fd", "-e", ".orchestrator/", cwd=directory)
    logger.info("Rolled back to checkpoint", extra={"tag": tag, "path": str(directory)})


def list_checkpoints(directory: Path, session_id: str) -> list[str]:
    if not is_repository_root(directory):
        return []
    try:
        output = _git("tag", "--list", f"{TAG_PREFIX}/{session_id}/*", cwd=directory)
    except CheckpointError:
        return []
    return [line for line in output.splitlines() if line.strip()]


def cleanup_checkpoints(directory: Path, session_id: str) -> list[str]:
    """Delete every checkpoint tag of a session and return the deleted tags."""

    deleted: list[str] = []
    for tag in list_checkpoints(directory, session_id):
        try:
            _git("tag", "-d", tag, cwd=directory)
        except CheckpointError as e:
            logger.warning("Could not delete checkpoint", extra={"tag": tag, "error": str(e)})
            continue
        deleted.append(tag)
    return deleted
