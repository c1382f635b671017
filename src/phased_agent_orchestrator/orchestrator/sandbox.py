"""Isolated working copies for unattended runs.

A sandbox is a `git clone --local` of a clean source repository in a temporary
directory. Workers operate on the clone; changed files can be copied back
afterwards.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Sessions and audit logs live here; they never count as project changes.
STATE_DIR = ".orchestrator"


class SandboxError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class SandboxInfo:
    directory: Path
    source_directory: Path
    start_commit: str


@dataclass(slots=True)
class CopyBackResult:
    files_copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _git(*args: str, cwd: Path) -> str:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as e:
        raise SandboxError("git is not installed") from e
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise SandboxError(f"git {' '.join(args)} failed: {detail}") from e
    return completed.stdout.strip()


def _lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def _is_state_path(relative: str) -> bool:
    return relative == STATE_DIR or relative.startswith(f"{STATE_DIR}/")


def create_sandbox(source_directory: Path) -> SandboxInfo:
    """Clone `source_directory` into a fresh temporary directory.

    Raises:
        SandboxError: If the source is not a git repository, has uncommitted
            changes, or the clone fails.
    """

    source = source_directory.resolve()
    try:
        _git("rev-parse", "--git-dir", cwd=source)
    except SandboxError as e:
        raise SandboxError(f"Source directory is not a git repository: {source}") from e

    dirty = [
        line
        for line in _lines(_git("status", "--porcelain", "--untracked-files=all", cwd=source))
        if not _is_state_path(line[2:].strip().strip('"'))
    ]
    if dirty:
        raise SandboxError(
            f"Source directory has uncommitted changes: {source}. Commit or stash them first."
        )

    directory = Path(tempfile.mkdtemp(prefix="orchestrator-sandbox-"))
    try:
        _git("clone", "--local", str(source), str(directory), cwd=directory.parent)
        start_commit = _git("rev-parse", "HEAD", cwd=directory)
    except SandboxError:
        cleanup_sandbox(directory)
        raise

    logger.info(
        "Sandbox created",
        extra={"sandbox": str(directory), "source": str(source), "start_commit": start_commit},
    )
    return SandboxInfo(directory=directory, source_directory=source, start_commit=start_commit)


def copy_results_back(sandbox: SandboxInfo) -> CopyBackResult:
    """Copy files changed in the sandbox (committed, uncommitted, untracked) to the source."""

    changed: dict[str, None] = {}
    for args in (
        ("diff", "--name-only", f"{sandbox.start_commit}..HEAD"),
        ("diff", "--name-only"),
        ("ls-files", "--others", "--exclude-standard"),
    ):
        changed.update(dict.fromkeys(_lines(_git(*args, cwd=sandbox.directory))))

    result = CopyBackResult()
    for relative in changed:
        if _is_state_path(relative):
            continue
        src = sandbox.directory / relative
        dest = (sandbox.source_directory / relative).resolve()
        if not dest.is_relative_to(sandbox.source_directory) or not src.is_file():
            # Deleted in the sandbox, or a path that escapes the source tree.
            result.skipped.append(relative)
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
        result.files_copied.append(relative)

    logger.info(
        "Sandbox results copied back",
        extra={"copied": len(result.files_copied), "skipped": len(result.skipped)},
    )
    return result


def cleanup_sandbox(directory: Path) -> None:
    """Remove a sandbox directory.

    Missing directories are ignored. A directory that cannot be removed is
    logged and left behind; the run it belonged to has already finished.
    """

    if not directory.exists():
        return
    try:
        shutil.rmtree(directory)
    except OSError as e:
        logger.warning(
            "Could not remove sandbox", extra={"sandbox": str(directory), "error": str(e)}
        )
        return
    logger.info("Sandbox removed", extra={"sandbox": str(directory)})
