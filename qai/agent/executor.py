"""
qai.agent.executor — Tool execution engine for the agent.

Executes tool invocations against the local filesystem, the shell, Git and
the web. Every tool takes the raw text body of its ``<tool>`` tag. Paths are
resolved relative to the workspace root.

Handlers raise ``ToolFailure`` for expected failures; ``execute`` turns
those into failed ``ToolResult`` objects so the loop can feed them back to
the model. Anything else a handler raises propagates to the caller.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable

import httpx

from qai.agent import git_integration
from qai.agent.process import run_process
from qai.agent.web_search import web_search
from qai.core.errors import ToolFailure, ToolFailureKind
from qai.core.models import ToolInvocation, ToolResult

logger = logging.getLogger("qai.agent.executor")

# Max output size to prevent context window explosion
MAX_OUTPUT_CHARS = 30_000
MAX_GREP_LINES = 200
DEFAULT_SHELL_TIMEOUT = 60.0

_SKIP_DIRS = ("node_modules", "__pycache__", ".git", "venv", ".venv", "target")
_BINARY_SUFFIXES = (
    ".pyc", ".so", ".dll", ".exe", ".bin", ".dat", ".db", ".sqlite", ".whl",
    ".tar", ".gz", ".zip", ".jpg", ".png", ".gif", ".pdf",
)

Handler = Callable[[str], Awaitable[str]]


class ToolExecutor:
    """
    Maps tool names to handlers through a dispatch table built once.

    One executor serves one session; the loop never calls ``execute`` again
    before the previous call has returned.
    """

    def __init__(
        self,
        workspace: Path,
        shell_timeout: float = DEFAULT_SHELL_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.workspace = workspace.resolve()
        self.shell_timeout = shell_timeout
        self._http_client = http_client
        self._dispatch: dict[str, Handler] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "edit_file": self._edit_file,
            "shell": self._shell,
            "grep_search": self._grep_search,
            "web_search": self._web_search,
            "git_status": self._git_status,
            "git_diff": self._git_diff,
            "git_log": self._git_log,
            "git_add": self._git_add,
            "git_commit": self._git_commit,
        }

    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        """Run one tool call and return its result (success or failure)."""
        name = invocation.name
        handler = self._dispatch.get(name)
        if handler is None:
            logger.warning("Model requested unknown tool %r", name)
            return ToolResult.failure(
                name,
                ToolFailureKind.UNKNOWN_TOOL,
                f"Unknown tool '{name}'. Available tools: {', '.join(self._dispatch)}",
            )

        logger.info("Running tool %s", name)
        start = time.monotonic()
        try:
            output = await handler(invocation.raw_input)
        except ToolFailure as exc:
            elapsed = time.monotonic() - start
            logger.info("Tool %s failed (%s) after %.2fs", name, exc.failure_kind, elapsed)
            return ToolResult.failure(name, exc.failure_kind, exc.detail, elapsed)

        elapsed = time.monotonic() - start
        logger.debug("Tool %s finished in %.2fs", name, elapsed)
        return ToolResult.success(name, self._truncate(output), elapsed)

    # ── Path Resolution ──────────────────────────────────────────────────

    def _resolve_path(self, path_str: str) -> Path:
        """Resolve a path relative to the workspace root."""
        path_str = path_str.strip()
        if not path_str:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, "Path must not be empty")
        p = Path(path_str).expanduser()
        if not p.is_absolute():
            p = self.workspace / p
        return p.resolve()

    def _display(self, path: Path) -> str:
        return str(path.relative_to(self.workspace)) if path.is_relative_to(self.workspace) else str(path)

    # ── File Operations ──────────────────────────────────────────────────

    def _read_text(self, path: Path) -> str:
        if not path.exists():
            raise ToolFailure(ToolFailureKind.NOT_FOUND, f"File not found: {self._display(path)}")
        if not path.is_file():
            raise ToolFailure(ToolFailureKind.NOT_READABLE, f"Not a file: {self._display(path)}")
        try:
            return path.read_bytes().decode("utf-8")
        except PermissionError as e:
            raise ToolFailure(ToolFailureKind.PERMISSION_DENIED, f"Cannot read {self._display(path)}: {e}") from e
        except UnicodeDecodeError as e:
            raise ToolFailure(ToolFailureKind.NOT_READABLE, f"{self._display(path)} is not UTF-8 text") from e
        except OSError as e:
            raise ToolFailure(ToolFailureKind.NOT_READABLE, f"Cannot read {self._display(path)}: {e}") from e

    def _write_text(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content.encode("utf-8"))
        except IsADirectoryError as e:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, f"{self._display(path)} is a directory") from e
        except OSError as e:
            raise ToolFailure(ToolFailureKind.PERMISSION_DENIED, f"Cannot write {self._display(path)}: {e}") from e

    async def _read_file(self, raw: str) -> str:
        return self._read_text(self._resolve_path(raw))

    async def _write_file(self, raw: str) -> str:
        path_str, sep, content = raw.partition("\n")
        if not sep:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, "write_file input must be 'path\\ncontent'")
        path = self._resolve_path(path_str)
        existed = path.exists()
        self._write_text(path, content)
        action = "Updated" if existed else "Created"
        return f"{action} {self._display(path)} ({len(content.encode('utf-8'))} bytes)"

    async def _edit_file(self, raw: str) -> str:
        path_str, search, replacement = parse_edit_input(raw)
        path = self._resolve_path(path_str)
        content = self._read_text(path)

        count = count_occurrences(content, search, limit=2)
        if count == 0:
            snippet = search[:80].replace("\n", "\\n")
            raise ToolFailure(
                ToolFailureKind.NO_MATCH,
                f"Search block not found in {self._display(path)}: '{snippet}'. "
                "It must match exactly, including whitespace.",
            )
        if count > 1:
            raise ToolFailure(
                ToolFailureKind.AMBIGUOUS_MATCH,
                f"Search block matches more than once in {self._display(path)}. "
                "Include more context to make it unique.",
            )

        self._write_text(path, content.replace(search, replacement, 1))
        old_lines = search.count("\n") + 1
        new_lines = replacement.count("\n") + 1 if replacement else 0
        return f"Edited {self._display(path)}: replaced {old_lines} line(s) with {new_lines} line(s)"

    # ── Shell ────────────────────────────────────────────────────────────

    async def _shell(self, raw: str) -> str:
        command = raw.strip()
        if not command:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, "shell needs a command")
        try:
            result = await run_process(self.workspace, self.shell_timeout, command=command)
        except OSError as e:
            raise ToolFailure(ToolFailureKind.PROCESS_SPAWN_FAILURE, f"Could not start shell: {e}") from e

        output = result.output.rstrip()
        if result.returncode != 0:
            suffix = f"[exit status: {result.returncode}]"
            return f"{output}\n{suffix}" if output else suffix
        return output

    # ── Search ───────────────────────────────────────────────────────────

    async def _grep_search(self, raw: str) -> str:
        lines = raw.split("\n")
        pattern_str = lines[0].strip()
        root_str = lines[1].strip() if len(lines) > 1 and lines[1].strip() else "."
        include = lines[2].strip() if len(lines) > 2 else ""

        if not pattern_str:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, "grep_search pattern must not be empty")
        try:
            regex = re.compile(pattern_str)
        except re.error as e:
            raise ToolFailure(ToolFailureKind.INVALID_INPUT, f"Invalid regex {pattern_str!r}: {e}") from e

        root = self._resolve_path(root_str)
        if not root.exists():
            raise ToolFailure(ToolFailureKind.NOT_FOUND, f"Path not found: {root_str}")

        results: list[str] = []
        truncated = False

        def _search_file(fpath: Path) -> None:
            nonlocal truncated
            try:
                text = fpath.read_text(encoding="utf-8", errors="replace")
            except OSError:
                return
            for i, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    if len(results) >= MAX_GREP_LINES:
                        truncated = True
                        return
                    results.append(f"{self._display(fpath)}:{i}:{line.rstrip()}")

        if root.is_file():
            _search_file(root)
        else:
            for fpath in sorted(root.rglob("*")):
                if truncated:
                    break
                if not fpath.is_file():
                    continue
                if any(skip in fpath.relative_to(root).parts for skip in _SKIP_DIRS):
                    continue
                if include and not fnmatch.fnmatch(fpath.name, include):
                    continue
                if fpath.suffix in _BINARY_SUFFIXES:
                    continue
                _search_file(fpath)

        if not results:
            return "No matches found"
        output = "\n".join(results)
        if truncated:
            output += f"\n[... output truncated to {MAX_GREP_LINES} lines]"
        return output

    async def _web_search(self, raw: str) -> str:
        return await web_search(raw, client=self._http_client)

    # ── Git ──────────────────────────────────────────────────────────────

    async def _git_status(self, raw: str) -> str:
        return await git_integration.git_status(self.workspace, raw)

    async def _git_diff(self, raw: str) -> str:
        return await git_integration.git_diff(self.workspace, raw)

    async def _git_log(self, raw: str) -> str:
        return await git_integration.git_log(self.workspace, raw)

    async def _git_add(self, raw: str) -> str:
        return await git_integration.git_add(self.workspace, raw)

    async def _git_commit(self, raw: str) -> str:
        return await git_integration.git_commit(self.workspace, raw)

    # ── Utilities ────────────────────────────────────────────────────────

    @staticmethod
    def _truncate(text: str) -> str:
        if len(text) > MAX_OUTPUT_CHARS:
            cut = text[:MAX_OUTPUT_CHARS]
            remaining = len(text) - MAX_OUTPUT_CHARS
            return cut + f"\n\n... (truncated, {remaining:,} chars omitted)"
        return text


def parse_edit_input(raw: str) -> tuple[str, str, str]:
    """Split ``path\\n<<<\\nsearch\\n===\\nreplacement\\n>>>`` into its parts."""
    path, _, patch = raw.partition("\n")
    if not path.strip():
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "edit_file input must start with a path line")
    if not patch.startswith("<<<\n"):
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "edit_file input must have '<<<' on the line after the path")

    body = patch[len("<<<\n"):]
    search, sep, rest = body.partition("\n===\n")
    if not sep:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "edit_file input is missing the '===' separator")

    rest = rest.rstrip("\n")
    if rest.endswith("\n>>>"):
        replacement = rest[: -len("\n>>>")]
    elif rest.endswith(">>>"):
        replacement = rest[: -len(">>>")]
    else:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "edit_file input must end with '>>>'")

    if not search:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "edit_file search block must not be empty")
    return path.strip(), search, replacement


def count_occurrences(haystack: str, needle: str, limit: int | None = None) -> int:
    """Count (possibly overlapping) occurrences, stopping early at *limit*."""
    count = 0
    start = 0
    while limit is None or count < limit:
        idx = haystack.find(needle, start)
        if idx == -1:
            break
        count += 1
        start = idx + 1
    return count
