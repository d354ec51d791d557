"""
qai.agent.parser — Incremental tag scanner for streamed model output.

Reassembles ``<think>``, ``<tool name="...">`` and ``<answer>`` regions from
a sequence of text deltas that may split markers anywhere, including in the
middle of a tag name. The parser keeps one structural context and holds back
only the shortest tail that could still turn into a marker, so feeding a
response in any chunking produces the same events as feeding it whole.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from qai.core.errors import QaiError, UnterminatedTag
from qai.core.models import ToolInvocation


class EventType(StrEnum):
    TEXT_DELTA = "text_delta"
    THINK_OPEN = "think_open"
    THINK_CLOSE = "think_close"
    TOOL_CALL = "tool_call"
    ANSWER_OPEN = "answer_open"
    ANSWER_CLOSE = "answer_close"
    STREAM_END = "stream_end"
    STREAM_ERROR = "stream_error"


@dataclass
class StreamEvent:
    """A single structural event recovered from the model's output."""
    type: EventType
    text: str = ""                          # delta text, or the full body on *_CLOSE
    tool_call: ToolInvocation | None = None
    error: QaiError | None = None
    end: int = 0                            # offset just past the event's closing marker


class Context(StrEnum):
    TEXT = "text"
    THINK = "think"
    TOOL = "tool"
    ANSWER = "answer"


_SIMPLE_OPENS: dict[str, Context] = {
    "<think>": Context.THINK,
    "<answer>": Context.ANSWER,
}
_TOOL_OPEN = "<tool"
_CLOSERS: dict[Context, str] = {
    Context.THINK: "</think>",
    Context.TOOL: "</tool>",
    Context.ANSWER: "</answer>",
}
# Longest ``<tool ...>`` opening tag we are willing to buffer before giving up
_MAX_OPEN_TAG = 256
_PARTIAL = -1

_TOOL_NAME_RE = re.compile(r"""name\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))""")


def _held_suffix(buf: str, marker: str) -> int:
    """Length of the longest tail of *buf* that is a proper prefix of *marker*."""
    for k in range(min(len(buf), len(marker) - 1), 0, -1):
        if buf.endswith(marker[:k]):
            return k
    return 0


def _strip_one_newline(text: str) -> str:
    if text.startswith("\r\n"):
        text = text[2:]
    elif text.startswith("\n"):
        text = text[1:]
    if text.endswith("\r\n"):
        text = text[:-2]
    elif text.endswith("\n"):
        text = text[:-1]
    return text


class TagParser:
    """
    Stateful scanner: ``feed(delta)`` returns the events completed by that
    delta, ``finish()`` flushes the tail when the stream ends.

    Inside ``<think>`` and ``<answer>`` the body is streamed as TEXT_DELTA
    events between the OPEN and CLOSE events; the CLOSE event also carries
    the whole body. Tool bodies are buffered and only surface as a single
    TOOL_CALL event.
    """

    def __init__(self) -> None:
        self.context = Context.TEXT
        self.position = 0
        self._buf = ""
        self._body: list[str] = []
        self._tool_name: str | None = None
        self._finished = False

    def feed(self, delta: str) -> list[StreamEvent]:
        if self._finished:
            raise RuntimeError("TagParser.feed() called after finish()")
        events: list[StreamEvent] = []
        self._buf += delta
        while self._buf:
            if self.context is Context.TEXT:
                progressed = self._scan_text(events)
            else:
                progressed = self._scan_region(events)
            if not progressed:
                break
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush held text and close any open region at end of stream."""
        events: list[StreamEvent] = []
        self._finished = True

        if self.context is Context.TEXT:
            if self._buf:
                events.append(StreamEvent(EventType.TEXT_DELTA, text=self._buf))
                self._advance(len(self._buf))
        elif self.context is Context.TOOL:
            events.append(StreamEvent(EventType.STREAM_ERROR, error=UnterminatedTag("tool")))
            return events
        else:
            # An unclosed think/answer region ends with the stream
            if self._buf:
                self._append_body(self._buf, events)
                self._advance(len(self._buf))
            self._close_region(events)

        events.append(StreamEvent(EventType.STREAM_END, end=self.position))
        return events

    # ── Scanning ─────────────────────────────────────────────────────────

    def _advance(self, n: int) -> None:
        self._buf = self._buf[n:]
        self.position += n

    def _scan_text(self, events: list[StreamEvent]) -> bool:
        buf = self._buf
        lt = buf.find("<")
        if lt == -1:
            events.append(StreamEvent(EventType.TEXT_DELTA, text=buf))
            self._advance(len(buf))
            return True
        if lt > 0:
            events.append(StreamEvent(EventType.TEXT_DELTA, text=buf[:lt]))
            self._advance(lt)
            return True

        for marker, ctx in _SIMPLE_OPENS.items():
            if buf.startswith(marker):
                self._advance(len(marker))
                self._open_region(ctx, events)
                return True

        consumed = self._match_tool_open()
        if consumed == _PARTIAL:
            return False
        if consumed:
            self._advance(consumed)
            self._open_region(Context.TOOL, events)
            return True

        if any(m.startswith(buf) for m in (*_SIMPLE_OPENS, _TOOL_OPEN)):
            return False

        # A literal '<' in prose
        events.append(StreamEvent(EventType.TEXT_DELTA, text="<"))
        self._advance(1)
        return True

    def _match_tool_open(self) -> int:
        """
        Length of a complete ``<tool ...>`` opener at the head of the buffer,
        ``_PARTIAL`` if more input is needed, or 0 if it is not an opener.
        Sets ``_tool_name`` (None for the bare ``<tool>name\\n...`` form).
        """
        buf = self._buf
        if not buf.startswith(_TOOL_OPEN) or len(buf) == len(_TOOL_OPEN):
            return 0
        nxt = buf[len(_TOOL_OPEN)]
        if nxt == ">":
            self._tool_name = None
            return len(_TOOL_OPEN) + 1
        if not nxt.isspace():
            return 0
        gt = buf.find(">", len(_TOOL_OPEN))
        if gt == -1:
            return _PARTIAL if len(buf) < _MAX_OPEN_TAG else 0
        match = _TOOL_NAME_RE.search(buf[len(_TOOL_OPEN):gt])
        name = next((g for g in match.groups() if g), None) if match else None
        self._tool_name = name.strip() if name else None
        return gt + 1

    def _scan_region(self, events: list[StreamEvent]) -> bool:
        closer = _CLOSERS[self.context]
        idx = self._buf.find(closer)
        if idx != -1:
            if idx:
                self._append_body(self._buf[:idx], events)
            self._advance(idx + len(closer))
            self._close_region(events)
            return True

        keep = _held_suffix(self._buf, closer)
        chunk = self._buf[: len(self._buf) - keep]
        if chunk:
            self._append_body(chunk, events)
            self._advance(len(chunk))
        return False

    # ── Region bookkeeping ───────────────────────────────────────────────

    def _open_region(self, ctx: Context, events: list[StreamEvent]) -> None:
        self.context = ctx
        self._body = []
        if ctx is Context.THINK:
            events.append(StreamEvent(EventType.THINK_OPEN))
        elif ctx is Context.ANSWER:
            events.append(StreamEvent(EventType.ANSWER_OPEN))

    def _append_body(self, chunk: str, events: list[StreamEvent]) -> None:
        self._body.append(chunk)
        if self.context is not Context.TOOL:
            events.append(StreamEvent(EventType.TEXT_DELTA, text=chunk))

    def _close_region(self, events: list[StreamEvent]) -> None:
        body = "".join(self._body)
        ctx = self.context
        self.context = Context.TEXT
        self._body = []

        if ctx is Context.THINK:
            events.append(StreamEvent(EventType.THINK_CLOSE, text=body, end=self.position))
        elif ctx is Context.ANSWER:
            events.append(StreamEvent(EventType.ANSWER_CLOSE, text=body, end=self.position))
        elif ctx is Context.TOOL:
            events.append(StreamEvent(
                EventType.TOOL_CALL,
                tool_call=self._invocation(body),
                end=self.position,
            ))

    def _invocation(self, body: str) -> ToolInvocation:
        name = self._tool_name
        self._tool_name = None
        if name is None:
            # Bare form: first line is the tool name
            head, _, rest = _strip_one_newline(body).partition("\n")
            return ToolInvocation(name=head.strip(), raw_input=rest)
        return ToolInvocation(name=name, raw_input=_strip_one_newline(body))


def parse_response(text: str) -> list[StreamEvent]:
    """Parse a complete response in one go."""
    parser = TagParser()
    return parser.feed(text) + parser.finish()


# ── Display helpers ──────────────────────────────────────────────────────

_MARKUP_TAG_RE = re.compile(r"<[A-Za-z/][^<>]*>")
_BLANK_RUN_RE = re.compile(r"\n[ \t]*(?:\n[ \t]*)+\n")


def strip_model_tags(text: str) -> str:
    """Remove markup tags and collapse runs of blank lines to a single one."""
    stripped = _MARKUP_TAG_RE.sub("", text)
    return _BLANK_RUN_RE.sub("\n\n", stripped).strip()
