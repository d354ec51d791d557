"""
qai.agent.system_prompt — System prompt file handling and ReAct instructions.

The agent prompt itself lives in a Markdown file and is treated as opaque
text. This module reads and validates that file, and appends the ReAct tag
grammar plus the built-in tool list before the prompt is sent to a provider.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from qai.agent.tools import builtin_tools
from qai.core.errors import ConfigurationError
from qai.core.models import ToolSpec

logger = logging.getLogger("qai.agent.system_prompt")

DEFAULT_PROMPT_PATH = Path("qa-agent-system-prompt.md")

REQUIRED_SECTIONS: tuple[str, ...] = (
    "## ENVIRONMENT",
    "### PRIMARY OBJECTIVE",
    "### MODE SELECTION PRIMER",
)

FALLBACK_PROMPT = """\
You are QAI, an autonomous coding and QA assistant working inside the user's \
project directory. Inspect the code before changing it, make small verifiable \
edits, run the relevant commands to check your work, and report clearly what \
you did and what you found."""


def read_prompt(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read prompt at {path}: {e}") from e


def load_prompt_or_default(path: Path) -> str:
    """Read the prompt file, falling back to a built-in prompt if it is absent."""
    if not path.exists():
        logger.warning("Prompt file %s not found, using the built-in prompt", path)
        return FALLBACK_PROMPT
    return read_prompt(path)


def missing_sections(content: str) -> list[str]:
    """Required section headers that do not appear in *content*."""
    return [marker for marker in REQUIRED_SECTIONS if marker not in content]


def react_instructions(tools: Iterable[ToolSpec] | None = None) -> str:
    tool_lines = "\n".join(
        f"  - {t.name}: {t.description} Input: {t.input_format}"
        for t in (tools if tools is not None else builtin_tools())
    )
    return f"""\
You are operating in ReAct mode. For each step you MUST output exactly one of:
  <think>your reasoning</think>
  <tool name="TOOL_NAME">tool input</tool>
  <answer>final answer to the user</answer>

Call at most one tool per step and stop after the closing </tool> tag; the \
result comes back to you as an <observation>. Do NOT output plain text \
outside these tags.

Available tools:
{tool_lines}"""


def build_system_prompt(base_prompt: str, tools: Iterable[ToolSpec] | None = None) -> str:
    """Append the ReAct grammar and tool list to the opaque agent prompt."""
    return f"{base_prompt.rstrip()}\n\n{react_instructions(tools)}"
