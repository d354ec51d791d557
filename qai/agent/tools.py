"""
qai.agent.tools — Built-in tool definitions.

Defines every tool the agent can call, grouped by category:
  - File operations: read_file, write_file, edit_file
  - Terminal: shell
  - Search: grep_search, web_search
  - Git: git_status, git_diff, git_log, git_add, git_commit

Tools take a single raw text input (the body of a ``<tool>`` tag); the
``input_format`` field documents how that text is laid out.
"""

from __future__ import annotations

from qai.core.models import ToolSpec

FILE_OPERATIONS = "File operations"
TERMINAL = "Terminal / shell"
SEARCH = "Search"
GIT = "Git"

# Pseudo-tool some models use instead of an <answer> tag
ANSWER_TOOL = "answer"


_BUILTIN_TOOLS: tuple[ToolSpec, ...] = (
    # ── File Operations ───────────────────────────────────────────────────
    ToolSpec(
        name="read_file",
        description="Read a file and return its contents exactly as stored.",
        input_format="path",
        category=FILE_OPERATIONS,
    ),
    ToolSpec(
        name="write_file",
        description=(
            "Create or overwrite a file. Parent directories are created "
            "automatically."
        ),
        input_format="path\\ncontent",
        category=FILE_OPERATIONS,
    ),
    ToolSpec(
        name="edit_file",
        description=(
            "Replace the single exact occurrence of the search block with the "
            "replacement. Fails without writing if the search block matches "
            "zero times or more than once."
        ),
        input_format="path\\n<<<\\nsearch\\n===\\nreplacement\\n>>>",
        category=FILE_OPERATIONS,
    ),
    # ── Terminal ──────────────────────────────────────────────────────────
    ToolSpec(
        name="shell",
        description=(
            "Run a shell command in the workspace and return combined "
            "stdout and stderr. A non-zero exit status is reported with the "
            "output. Commands are killed after the shell timeout."
        ),
        input_format="command",
        category=TERMINAL,
    ),
    # ── Search ────────────────────────────────────────────────────────────
    ToolSpec(
        name="grep_search",
        description="Regex search over files in the workspace (max 200 result lines).",
        input_format="pattern\\n[path]\\n[glob]",
        category=SEARCH,
    ),
    ToolSpec(
        name="web_search",
        description="Search the web and return a short instant-answer summary.",
        input_format="query",
        category=SEARCH,
    ),
    # ── Git ───────────────────────────────────────────────────────────────
    ToolSpec(
        name="git_status",
        description="Show the working tree status (git status --short).",
        input_format="[args]",
        category=GIT,
    ),
    ToolSpec(
        name="git_diff",
        description="Show unstaged changes, or the diff for the given arguments.",
        input_format="[args]",
        category=GIT,
    ),
    ToolSpec(
        name="git_log",
        description="Show recent commits, one per line (default 10).",
        input_format="[count]",
        category=GIT,
    ),
    ToolSpec(
        name="git_add",
        description="Stage the given path(s) for commit.",
        input_format="path [path ...]",
        category=GIT,
    ),
    ToolSpec(
        name="git_commit",
        description="Commit staged changes with the given message.",
        input_format="message",
        category=GIT,
    ),
)


def builtin_tools() -> list[ToolSpec]:
    """Return the built-in tools, in display order."""
    return list(_BUILTIN_TOOLS)


def tools_by_category() -> dict[str, list[ToolSpec]]:
    grouped: dict[str, list[ToolSpec]] = {}
    for tool in _BUILTIN_TOOLS:
        grouped.setdefault(tool.category, []).append(tool)
    return grouped
