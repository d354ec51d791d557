"""
qai.agent.loop — The ReAct loop controller.

Sequences think → tool → observe cycles for one task:

    AwaitingModel → StreamingResponse → DispatchingTool → AwaitingModel ...
                                      ↘ Answered | StepCapExceeded | Cancelled | Failed

The controller is the only writer of the Session. It pulls raw lines from
the transport one at a time and races every pull (and every tool call)
against the cancel signal, so a confirmed cancel closes the connection or
kills the subprocess right away. Each terminal state appends a system
message explaining why the task ended.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from qai.agent.cancel import CancelSignal
from qai.agent.executor import ToolExecutor
from qai.agent.parser import EventType, StreamEvent, TagParser, strip_model_tags
from qai.agent.providers import build_request, parse_chunk
from qai.agent.system_prompt import build_system_prompt
from qai.agent.tools import ANSWER_TOOL, builtin_tools
from qai.agent.transport import StreamingTransport
from qai.core.errors import ErrorKind, ProtocolMismatch, QaiError
from qai.core.models import (
    Message,
    ProviderConfig,
    Role,
    SessionSnapshot,
    TaskOutcome,
    TaskStatus,
    ToolInvocation,
    ToolResult,
)
from qai.core.session import Session

logger = logging.getLogger("qai.agent.loop")

DEFAULT_MAX_STEPS = 15

T = TypeVar("T")

EventCallback = Callable[[StreamEvent], None]
UpdateCallback = Callable[[SessionSnapshot], None]


class LoopState(StrEnum):
    AWAITING_MODEL = "AwaitingModel"
    STREAMING_RESPONSE = "StreamingResponse"
    DISPATCHING_TOOL = "DispatchingTool"
    ANSWERED = "Answered"
    STEP_CAP_EXCEEDED = "StepCapExceeded"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class _Cancelled(Exception):
    """Internal: the cancel signal won a race."""


class _ToolPanic(QaiError):
    """A tool handler raised something other than ToolFailure."""
    kind = ErrorKind.TOOL_PANIC


@dataclass
class _Turn:
    """What one streamed model response amounted to."""
    raw: list[str] = field(default_factory=list)
    content: str | None = None          # assistant message, cut after the deciding tag
    tool_call: ToolInvocation | None = None
    answer: str | None = None
    thoughts: list[str] = field(default_factory=list)
    prose: list[str] = field(default_factory=list)
    in_region: bool = False

    @property
    def done(self) -> bool:
        return self.tool_call is not None or self.answer is not None

    def full_text(self) -> str:
        return "".join(self.raw)


async def _race(aw: Awaitable[T], cancel: CancelSignal) -> T:
    """
    Await *aw* unless the cancel signal fires first. If cancel wins, the
    pending work is cancelled and its result (a straggler) is discarded.
    """
    work = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if cancel.is_set():
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, StopAsyncIteration, QaiError):
            # Anything the cancelled work produced is dropped
            pass
        raise _Cancelled()
    return work.result()


class ReActController:
    """
    Drives a provider through a bounded ReAct loop for one task at a time.

    ``on_event`` receives every structural event as it is parsed;
    ``on_update`` receives a read-only snapshot after every message append.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        system_prompt: str,
        executor: ToolExecutor,
        transport: StreamingTransport,
        model: str | None = None,
        api_token: str = "",
        endpoint: str | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        on_event: EventCallback | None = None,
        on_update: UpdateCallback | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.provider = provider
        self.system_prompt = build_system_prompt(system_prompt, builtin_tools())
        self.executor = executor
        self.transport = transport
        self.model = model or provider.default_model
        self.api_token = api_token
        self.endpoint = endpoint
        self.max_steps = max_steps
        self.on_event = on_event
        self.on_update = on_update
        self.state = LoopState.AWAITING_MODEL
        self.session = Session()
        self._last_progress = ""

    # ── Public API ───────────────────────────────────────────────────────

    async def run(
        self,
        task: str,
        history: Iterable[Message] = (),
        cancel: CancelSignal | None = None,
    ) -> TaskOutcome:
        """Run *task* to a terminal state and report the outcome."""
        cancel = cancel or CancelSignal()
        self.session = Session(history)
        self._last_progress = ""
        self._set_state(LoopState.AWAITING_MODEL)
        self._append(Role.USER, task)

        try:
            while True:
                if cancel.is_set():
                    return self._cancelled()
                if self.session.step_count >= self.max_steps:
                    return self._step_cap_exceeded()

                self._set_state(LoopState.STREAMING_RESPONSE)
                turn = await self._stream_turn(cancel)

                if turn.content:
                    self._append(Role.ASSISTANT, turn.content)

                if turn.tool_call is not None:
                    self.session.step_count += 1
                    self._set_state(LoopState.DISPATCHING_TOOL)
                    result = await self._dispatch(turn.tool_call, cancel)
                    self._append(Role.OBSERVATION, result.as_observation())
                    self._last_progress = f"last tool: {result.name}"
                    self._set_state(LoopState.AWAITING_MODEL)
                    continue

                if turn.answer is not None:
                    return self._answered(turn.answer)

                if turn.thoughts:
                    # A reasoning-only turn is a step of its own
                    self.session.step_count += 1
                    self._last_progress = turn.thoughts[-1].strip()
                    self._set_state(LoopState.AWAITING_MODEL)
                    continue

                prose = strip_model_tags("".join(turn.prose))
                if not prose:
                    raise ProtocolMismatch("Model returned an empty response")
                return self._answered(prose)

        except _Cancelled:
            return self._cancelled()
        except QaiError as exc:
            return self._failed(exc.kind, exc.detail or str(exc))

    # ── Streaming ────────────────────────────────────────────────────────

    async def _stream_turn(self, cancel: CancelSignal) -> _Turn:
        request = build_request(
            self.session.messages,
            self.provider,
            self.system_prompt,
            model=self.model,
            api_token=self.api_token,
            endpoint=self.endpoint,
        )
        logger.info(
            "Requesting %s/%s (step %d/%d, %d messages)",
            self.provider.id, self.model, self.session.step_count, self.max_steps, len(self.session),
        )

        parser = TagParser()
        turn = _Turn()
        stream = self.transport.open(request)
        try:
            while not turn.done:
                line = await _race(_next_or_none(stream), cancel)
                if line is None:
                    for event in parser.finish():
                        self._handle_event(event, turn)
                    break
                for delta in parse_chunk(self.provider, line):
                    turn.raw.append(delta)
                    for event in parser.feed(delta):
                        self._handle_event(event, turn)
                        if turn.done:
                            break
                    if turn.done:
                        break
        finally:
            # Closing the generator drops the HTTP connection
            await stream.aclose()

        if turn.content is None:
            turn.content = turn.full_text()
        return turn

    def _handle_event(self, event: StreamEvent, turn: _Turn) -> None:
        if turn.done:
            return
        if self.on_event is not None:
            self.on_event(event)

        etype = event.type
        if etype == EventType.TEXT_DELTA:
            if not turn.in_region:
                turn.prose.append(event.text)
        elif etype in (EventType.THINK_OPEN, EventType.ANSWER_OPEN):
            turn.in_region = True
        elif etype == EventType.THINK_CLOSE:
            turn.in_region = False
            turn.thoughts.append(event.text)
        elif etype == EventType.ANSWER_CLOSE:
            turn.in_region = False
            turn.answer = event.text.strip()
            turn.content = turn.full_text()[: event.end]
        elif etype == EventType.TOOL_CALL and event.tool_call is not None:
            turn.content = turn.full_text()[: event.end]
            if event.tool_call.name == ANSWER_TOOL:
                turn.answer = event.tool_call.raw_input.strip()
            else:
                turn.tool_call = event.tool_call
        elif etype == EventType.STREAM_ERROR and event.error is not None:
            raise event.error

    # ── Tool dispatch ────────────────────────────────────────────────────

    async def _dispatch(self, invocation: ToolInvocation, cancel: CancelSignal) -> ToolResult:
        self.session.active_tool = invocation.name
        self._notify()
        try:
            return await _race(self.executor.execute(invocation), cancel)
        except (_Cancelled, QaiError):
            raise
        except Exception as exc:
            logger.exception("Tool %s crashed", invocation.name)
            raise _ToolPanic(f"{invocation.name} crashed: {type(exc).__name__}: {exc}") from exc
        finally:
            self.session.active_tool = None

    # ── Terminal states ──────────────────────────────────────────────────

    def _answered(self, text: str) -> TaskOutcome:
        steps = self.session.step_count
        self._set_state(LoopState.ANSWERED)
        self._append(Role.SYSTEM, f"Task answered after {steps} step(s).")
        return TaskOutcome(status=TaskStatus.ANSWERED, text=text, steps=steps)

    def _step_cap_exceeded(self) -> TaskOutcome:
        steps = self.session.step_count
        self._set_state(LoopState.STEP_CAP_EXCEEDED)
        text = f"Step budget exhausted: used {steps} of {self.max_steps} steps without a final answer."
        if self._last_progress:
            text += f"\nPartial progress ({self._last_progress[:500]})"
        self._append(Role.SYSTEM, text)
        return TaskOutcome(status=TaskStatus.STEP_CAP_EXCEEDED, text=text, steps=steps)

    def _cancelled(self) -> TaskOutcome:
        steps = self.session.step_count
        self.session.cancelled = True
        self._set_state(LoopState.CANCELLED)
        self._append(Role.SYSTEM, f"Task cancelled by user after {steps} step(s).")
        return TaskOutcome(status=TaskStatus.CANCELLED, steps=steps)

    def _failed(self, kind: ErrorKind, detail: str) -> TaskOutcome:
        steps = self.session.step_count
        self._set_state(LoopState.FAILED)
        logger.error("Task failed (%s): %s", kind, detail)
        self._append(Role.SYSTEM, f"Task failed ({kind}): {detail}")
        return TaskOutcome(status=TaskStatus.FAILED, error_kind=kind, detail=detail, steps=steps)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _set_state(self, state: LoopState) -> None:
        if state != self.state:
            logger.debug("Loop state %s → %s", self.state, state)
        self.state = state

    def _append(self, role: Role, content: str) -> Message:
        msg = self.session.append(role, content)
        self._notify()
        return msg

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.session.snapshot())


async def _next_or_none(stream: AsyncIterator[str]) -> str | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None
