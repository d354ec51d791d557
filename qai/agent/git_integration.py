"""
qai.agent.git_integration — Git tools for the agent.

Wraps the read-only (status, diff, log) and mutating (add, commit) Git
commands the model may call. Every command runs through the shared process
runner so a cancelled task kills the git child too. Failures are raised as
``ToolFailure`` and become observations:

  - git missing or workspace not a repository → VcsNotPresent
  - commit with nothing staged                → NothingToCommit
  - any other non-zero exit                   → CommandFailed
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from qai.agent.process import run_process
from qai.core.errors import ToolFailure, ToolFailureKind

logger = logging.getLogger("qai.agent.git_integration")

GIT_TIMEOUT = 30.0
DEFAULT_LOG_LIMIT = 10
_NOTHING_TO_COMMIT = ("nothing to commit", "nothing added to commit", "no changes added to commit")


def is_git_repo(workspace: Path) -> bool:
    """Check if the workspace is inside a Git repository."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            capture_output=True,
            text=True,
            cwd=str(workspace),
            timeout=5,
        )
        return result.returncode == 0 and result.stdout.strip() == "true"
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


def _split_args(args: str) -> list[str]:
    try:
        return shlex.split(args)
    except ValueError as e:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, f"Cannot parse arguments {args!r}: {e}") from e


async def run_git(workspace: Path, args: list[str], timeout: float = GIT_TIMEOUT) -> str:
    """Run ``git <args>`` in *workspace* and return its merged output."""
    logger.debug("git %s", " ".join(args))
    try:
        result = await run_process(workspace, timeout, argv=["git", *args])
    except FileNotFoundError as e:
        raise ToolFailure(ToolFailureKind.VCS_NOT_PRESENT, "git is not installed or not on PATH") from e
    except OSError as e:
        raise ToolFailure(ToolFailureKind.PROCESS_SPAWN_FAILURE, f"Could not start git: {e}") from e

    output = result.output.strip()
    if result.returncode == 0:
        return output

    lowered = output.lower()
    if "not a git repository" in lowered:
        raise ToolFailure(ToolFailureKind.VCS_NOT_PRESENT, f"{workspace} is not a Git repository")
    if any(s in lowered for s in _NOTHING_TO_COMMIT):
        raise ToolFailure(ToolFailureKind.NOTHING_TO_COMMIT, "Nothing to commit — working tree clean")
    raise ToolFailure(
        ToolFailureKind.COMMAND_FAILED,
        f"git {args[0]} exited with status {result.returncode}:\n{output}",
    )


async def git_status(workspace: Path, args: str = "") -> str:
    output = await run_git(workspace, ["status", "--short", *_split_args(args)])
    return output or "Working tree clean"


async def git_diff(workspace: Path, args: str = "") -> str:
    output = await run_git(workspace, ["diff", *_split_args(args)])
    return output or "No changes"


async def git_log(workspace: Path, args: str = "") -> str:
    """``git log --oneline -N``. A bare number sets N (default 10)."""
    args = args.strip()
    if args.isdigit():
        cmd = ["log", "--oneline", f"-{int(args)}"]
    else:
        cmd = ["log", "--oneline", f"-{DEFAULT_LOG_LIMIT}", *_split_args(args)]
    output = await run_git(workspace, cmd)
    return output or "No commits yet"


async def git_add(workspace: Path, paths: str) -> str:
    targets = _split_args(paths)
    if not targets:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "git_add needs at least one path")
    output = await run_git(workspace, ["add", "--", *targets])
    return output or f"Staged: {' '.join(targets)}"


async def git_commit(workspace: Path, message: str) -> str:
    message = message.strip()
    if not message:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "git_commit needs a commit message")
    return await run_git(workspace, ["commit", "-m", message])
