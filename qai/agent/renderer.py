"""
qai.agent.renderer — Rich terminal rendering for the agent.

Handles all visual output: the banner, streamed prose and reasoning, tool
call lines with result summaries, the final answer as Markdown and the
closing status line. ``LoopRenderer`` adapts the loop controller's
``on_event`` / ``on_update`` callbacks onto these primitives; it only ever
sees parsed events and read-only session snapshots.
"""

from __future__ import annotations

import sys
import time

from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich import box
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.styles import Style as PTStyle

from qai.agent.parser import EventType, StreamEvent, strip_model_tags
from qai.agent.tools import ANSWER_TOOL
from qai.core.models import Role, SessionSnapshot, TaskOutcome, TaskStatus, ToolSpec

# ---------------------------------------------------------------------------
# QAI Theme
# ---------------------------------------------------------------------------

THEME = {
    "primary": "#1E6F8C",       # Deep teal: borders, accents
    "primary_dim": "#15485A",   # Muted teal: secondary borders
    "primary_bright": "#3FA7CC",  # Bright teal: highlights
    "accent": "#5FD3F3",        # Cyan: user input, important
    "text": "#D6E6EC",          # Cool light: readable text
    "text_dim": "#7A909A",      # Dimmed text, reasoning
    "success": "#55AA55",       # Green for success
    "warning": "#CCAA33",       # Yellow for warnings
    "error": "#FF3333",         # Bright red for errors
    "tool_name": "#66B2CC",     # Tool name color
    "tool_result": "#88A4AA",   # Tool result color
}

console = Console(force_terminal=sys.stdout.isatty())


def agent_banner(version: str, provider: str, model: str, workspace: str) -> None:
    """Print the interactive session banner."""
    content = Text()
    content.append("QAI", style=f"bold {THEME['primary_bright']}")
    content.append(f"  v{version}\n", style=THEME["text_dim"])
    content.append("ReAct coding & QA assistant", style=THEME["text"])

    console.print(Panel(content, border_style=THEME["primary"], padding=(1, 4)))

    config_text = Text()
    config_text.append("  Provider  ", style=THEME["text_dim"])
    config_text.append(provider, style=f"bold {THEME['accent']}")
    config_text.append("  │  ", style=THEME["primary_dim"])
    config_text.append("Model  ", style=THEME["text_dim"])
    config_text.append(model, style=f"bold {THEME['accent']}")
    console.print(Panel(config_text, border_style=THEME["primary_dim"], padding=(0, 2)))

    console.print(
        f"  [{THEME['text_dim']}]Workspace:[/{THEME['text_dim']}] "
        f"[bold {THEME['text']}]{workspace}[/bold {THEME['text']}]"
    )
    console.print(
        f"  [{THEME['text_dim']}]Type a task, or use[/{THEME['text_dim']}] "
        f"[bold {THEME['accent']}]/help[/bold {THEME['accent']}] "
        f"[{THEME['text_dim']}]for commands. Ctrl+C twice cancels a running task.[/{THEME['text_dim']}]"
    )
    console.print()


def print_help() -> None:
    """Show the REPL commands."""
    table = Table(
        box=box.ROUNDED,
        border_style=THEME["primary_dim"],
        show_header=True,
        header_style=f"bold {THEME['primary_bright']}",
    )
    table.add_column("Command", style=f"bold {THEME['accent']}", width=14)
    table.add_column("Description", style=THEME["text"])
    for cmd, desc in (
        ("/help", "Show this help message"),
        ("/new", "Start a new conversation"),
        ("/tools", "List the built-in tools"),
        ("/exit, /quit", "Exit"),
    ):
        table.add_row(cmd, desc)
    console.print(Panel(table, border_style=THEME["primary"], title="Commands", padding=(1, 1)))


def render_tools(tools: list[ToolSpec]) -> None:
    table = Table(box=box.SIMPLE, header_style=f"bold {THEME['primary_bright']}")
    table.add_column("Tool", style=f"bold {THEME['tool_name']}")
    table.add_column("Category", style=THEME["text_dim"])
    table.add_column("Input", style=THEME["accent"])
    table.add_column("Description", style=THEME["text"])
    for t in tools:
        table.add_row(t.name, escape(t.category), escape(t.input_format), escape(t.description))
    console.print(table)


def render_error(msg: str) -> None:
    """Show an error message."""
    console.print(f"  [{THEME['error']}]✗[/{THEME['error']}] {escape(msg)}")


def render_success(msg: str) -> None:
    """Show a success message."""
    console.print(f"  [{THEME['success']}]✓[/{THEME['success']}] {escape(msg)}")


def render_info(msg: str) -> None:
    """Show an info message."""
    console.print(f"  [{THEME['text_dim']}]→[/{THEME['text_dim']}] {escape(msg)}")


def render_cancel_notice() -> None:
    console.print(
        f"\n  [{THEME['warning']}]Press Ctrl+C again to cancel the running task[/{THEME['warning']}]"
    )


def render_markdown_response(text: str, title: str = "Answer") -> None:
    """Render text as a Rich Markdown panel."""
    if not text.strip():
        return
    console.print()
    console.print(
        Panel(
            Markdown(text),
            border_style=THEME["primary_dim"],
            title=f"[bold {THEME['primary_bright']}]{title}[/bold {THEME['primary_bright']}]",
            title_align="left",
            padding=(1, 2),
        )
    )


# ---------------------------------------------------------------------------
# Tool lines
# ---------------------------------------------------------------------------

_TOOL_DISPLAY: dict[str, tuple[str, str]] = {
    "read_file":   ("Reading file",      "📄"),
    "write_file":  ("Writing file",      "✏️"),
    "edit_file":   ("Editing file",      "🔧"),
    "shell":       ("Running command",   "⚡"),
    "grep_search": ("Searching code",    "🔍"),
    "web_search":  ("Searching the web", "🌐"),
    "git_status":  ("Git status",        "🌿"),
    "git_diff":    ("Git diff",          "🌿"),
    "git_log":     ("Git log",           "🌿"),
    "git_add":     ("Staging files",     "🌿"),
    "git_commit":  ("Committing",        "💾"),
}


def _tool_display(name: str) -> tuple[str, str]:
    return _TOOL_DISPLAY.get(name, (name, "🔧"))


def _input_summary(raw_input: str, limit: int = 70) -> str:
    first = raw_input.strip().split("\n", 1)[0]
    return first if len(first) <= limit else first[: limit - 1] + "…"


def render_tool_call_start(tool_name: str, raw_input: str) -> None:
    label, icon = _tool_display(tool_name)
    desc = escape(_input_summary(raw_input))
    console.print(
        f"\n  [{THEME['primary_dim']}]⟫[/{THEME['primary_dim']}] "
        f"{icon} [{THEME['tool_name']}]{label}[/{THEME['tool_name']}]"
        f"{'  ' if desc else ''}"
        f"[{THEME['text_dim']}]{desc}[/{THEME['text_dim']}]",
        highlight=False,
    )


def render_tool_call_result(observation: str, elapsed: float) -> None:
    elapsed_str = f"{elapsed:.1f}s" if elapsed >= 0.1 else f"{elapsed * 1000:.0f}ms"
    lines = observation.count("\n") + 1 if observation else 0
    console.print(
        f"    [{THEME['success']}]✓[/{THEME['success']}] "
        f"[{THEME['text_dim']}]{elapsed_str}  ({lines} line{'s' if lines != 1 else ''})[/{THEME['text_dim']}]",
        highlight=False,
    )


def render_tool_error(observation: str) -> None:
    console.print(
        f"    [{THEME['error']}]✗[/{THEME['error']}] "
        f"[{THEME['text_dim']}]{escape(observation[:200])}[/{THEME['text_dim']}]",
        highlight=False,
    )


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

_OUTCOME_STYLE = {
    TaskStatus.ANSWERED: ("success", "✓"),
    TaskStatus.STEP_CAP_EXCEEDED: ("warning", "⚠"),
    TaskStatus.CANCELLED: ("warning", "■"),
    TaskStatus.FAILED: ("error", "✗"),
}


def render_outcome(outcome: TaskOutcome) -> None:
    style, icon = _OUTCOME_STYLE[outcome.status]
    if outcome.status == TaskStatus.FAILED:
        msg = f"Failed ({outcome.error_kind}): {outcome.detail}"
    elif outcome.status == TaskStatus.STEP_CAP_EXCEEDED:
        msg = outcome.text
    else:
        msg = f"{outcome.status} after {outcome.steps} step(s)"
    console.print()
    console.print(
        Text(f"  {icon} ", style=THEME[style]) + Text(msg, style=THEME["text_dim"])
    )


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class StreamingRenderer:
    """
    Renders a streamed region token-by-token using a Rich Live display, then
    replaces it with a final panel (Markdown) or a dimmed block (reasoning).
    """

    # Number of characters to accumulate before switching from raw text to markdown
    _MD_THRESHOLD = 80

    def __init__(self, title: str = "Agent", markdown: bool = True) -> None:
        self.title = title
        self.markdown = markdown
        self._buffer = ""
        self._live: Live | None = None
        self._started = False

    def start(self) -> None:
        self._buffer = ""
        self._live = Live(
            Text("", style=THEME["text_dim"]),
            console=console,
            refresh_per_second=12,
            transient=True,
            vertical_overflow="visible",
        )
        self._live.start()
        self._started = True

    def add_text(self, text: str) -> None:
        if not self._started or self._live is None:
            return
        self._buffer += text
        if self.markdown and len(self._buffer) >= self._MD_THRESHOLD:
            self._live.update(Markdown(self._buffer + "▌"))
        else:
            self._live.update(Text(self._buffer + "▌", style=None if self.markdown else THEME["text_dim"]))

    def finish(self) -> str:
        """Stop the live display and print the final rendering. Returns the text."""
        if self._live is not None:
            self._live.stop()
            self._live = None
        self._started = False

        text = self._buffer
        self._buffer = ""
        if not text.strip():
            return text
        if self.markdown:
            render_markdown_response(text, title=self.title)
        else:
            console.print(Text(f"  {text.strip()}", style=f"italic {THEME['text_dim']}"))
        return text


class LoopRenderer:
    """Maps controller callbacks onto the terminal."""

    def __init__(self) -> None:
        self._stream: StreamingRenderer | None = None
        self._answer_shown = False
        self._tool_started: float = 0.0
        self._tool_name: str | None = None
        self._seen = 0
        self._prose_pending = False
        self._prose_shown = False

    def reset(self) -> None:
        self.close()
        self._answer_shown = False
        self._prose_pending = False
        self._prose_shown = False
        self._seen = 0

    def on_event(self, event: StreamEvent) -> None:
        etype = event.type
        if etype == EventType.TEXT_DELTA:
            if self._stream is None:
                self._begin(StreamingRenderer(title="Agent"))
                self._prose_pending = True
            self._stream.add_text(event.text)
        elif etype == EventType.THINK_OPEN:
            self._begin(StreamingRenderer(title="Thinking", markdown=False))
        elif etype == EventType.ANSWER_OPEN:
            self._begin(StreamingRenderer(title="Answer"))
        elif etype in (EventType.THINK_CLOSE, EventType.STREAM_END, EventType.STREAM_ERROR):
            self.close()
        elif etype == EventType.ANSWER_CLOSE:
            self.close()
            self._answer_shown = True
        elif etype == EventType.TOOL_CALL and event.tool_call is not None:
            self.close()
            if event.tool_call.name == ANSWER_TOOL:
                return
            self._tool_name = event.tool_call.name
            self._tool_started = time.monotonic()
            render_tool_call_start(event.tool_call.name, event.tool_call.raw_input)

    def on_update(self, snapshot: SessionSnapshot) -> None:
        new = snapshot.messages[self._seen:]
        self._seen = len(snapshot.messages)
        for msg in new:
            if msg.role == Role.ASSISTANT:
                self._prose_shown = self._prose_pending
                self._prose_pending = False
            elif msg.role == Role.OBSERVATION and self._tool_name is not None:
                elapsed = time.monotonic() - self._tool_started
                if msg.content.startswith(f"[{self._tool_name} failed:"):
                    render_tool_error(msg.content)
                else:
                    render_tool_call_result(msg.content, elapsed)
                self._tool_name = None

    def finish(self, outcome: TaskOutcome) -> None:
        self.close()
        if outcome.status == TaskStatus.ANSWERED and not (self._answer_shown or self._prose_shown):
            render_markdown_response(strip_model_tags(outcome.text))
        render_outcome(outcome)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.finish()
            self._stream = None

    def _begin(self, stream: StreamingRenderer) -> None:
        self.close()
        self._stream = stream
        stream.start()


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

SLASH_COMMANDS = ["/help", "/new", "/tools", "/exit", "/quit"]


async def get_input_with_completion(turn: int) -> str:
    """
    Read one line with tab completion for slash commands.
    Uses prompt_async() to avoid nested asyncio.run() errors.
    """
    completer = WordCompleter(SLASH_COMMANDS, sentence=True)
    style = PTStyle.from_dict({"prompt": THEME["primary_bright"]})
    session = PromptSession(completer=completer, style=style, complete_while_typing=True)

    console.print(
        f"[{THEME['primary_dim']}]╭─[/{THEME['primary_dim']}]"
        f"[bold {THEME['accent']}] QAI[/bold {THEME['accent']}]"
        f"[{THEME['text_dim']}] (task {turn})[/{THEME['text_dim']}]"
    )
    try:
        line = await session.prompt_async("╰─▸ ")
    except KeyboardInterrupt:
        # Ctrl+C at the prompt discards the line; Ctrl+D or /exit leaves
        return ""
    except EOFError:
        return "/exit"
    return line.strip()


def render_goodbye() -> None:
    console.print()
    console.print(f"  [{THEME['text_dim']}]Session ended.[/{THEME['text_dim']}]")
    console.print()
