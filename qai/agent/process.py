"""
qai.agent.process — Subprocess runner shared by the shell and git tools.

Runs one child process with merged stdout/stderr under a wall-clock limit.
On timeout or task cancellation the whole process group is killed and
reaped before control returns, so no orphan outlives its tool call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from qai.core.errors import ToolFailure, ToolFailureKind

logger = logging.getLogger("qai.agent.process")

_POSIX = sys.platform != "win32"
_DRAIN_TIMEOUT = 2.0


@dataclass
class ProcessOutput:
    returncode: int
    output: str


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """
    Kill the whole process group, then reap the child and drain its pipe.

    The group is signalled even when the shell itself has exited: a
    backgrounded grandchild holding stdout open keeps the group alive.
    """
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()
    with contextlib.suppress(asyncio.TimeoutError):
        # Reads to EOF so the pipe transport is closed while the loop is alive
        await asyncio.wait_for(proc.communicate(), timeout=_DRAIN_TIMEOUT)
    logger.info("Killed process %d", proc.pid)


async def run_process(
    cwd: Path,
    timeout: float,
    *,
    command: str | None = None,
    argv: Sequence[str] | None = None,
) -> ProcessOutput:
    """
    Run *command* through the shell, or *argv* directly, inside *cwd*.

    Raises ``ToolFailure(Timeout)`` when *timeout* elapses. Spawn errors
    (``OSError``, including ``FileNotFoundError`` for a missing binary)
    propagate so callers can classify them.
    """
    kwargs = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.STDOUT,
        "cwd": str(cwd),
    }
    if _POSIX:
        kwargs["start_new_session"] = True

    if command is not None:
        proc = await asyncio.create_subprocess_shell(command, **kwargs)
    elif argv:
        proc = await asyncio.create_subprocess_exec(*argv, **kwargs)
    else:
        raise ValueError("run_process() needs either command or argv")

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Process %d exceeded %.0fs, killing it", proc.pid, timeout)
        await _kill(proc)
        raise ToolFailure(
            ToolFailureKind.TIMEOUT, f"Command timed out after {timeout:g}s and was killed"
        ) from None
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    return ProcessOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        output=stdout.decode("utf-8", errors="replace") if stdout else "",
    )
