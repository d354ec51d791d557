import asyncio
import json
import sys
import time

import httpx
import pytest

from qai.agent.cancel import CancelSignal
from qai.agent.executor import ToolExecutor
from qai.agent.loop import LoopState, ReActController
from qai.agent.parser import EventType
from qai.agent.providers import PROVIDERS
from qai.agent.transport import StreamingTransport
from qai.core.errors import ErrorKind
from qai.core.models import Role, TaskStatus


def sse(text, size=7):
    """Encode *text* as an OpenAI-style SSE body split into small deltas."""
    lines = []
    for i in range(0, len(text), size):
        chunk = {"choices": [{"index": 0, "delta": {"content": text[i:i + size]}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class ScriptedModel:
    """MockTransport handler that plays back one response per request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []

    def __call__(self, request):
        self.bodies.append(json.loads(request.content))
        if not self.responses:
            raise AssertionError("model called more times than scripted")
        response = self.responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, content=sse(response))


class HangingTransport:
    """Yields one line, then never produces another until cancelled."""

    def __init__(self):
        self.closed = False

    async def open(self, request):
        try:
            yield 'data: {"choices":[{"delta":{"content":"<think>working"}}]}'
            await asyncio.sleep(3600)
        finally:
            self.closed = True

    async def aclose(self):
        pass


def run_controller(
    workspace, handler=None, transport=None, task="do it", cancel_after=None,
    provider=PROVIDERS["openai"], executor=None, api_token="sk-test", **kwargs,
):
    events, snapshots = [], []

    async def _run():
        tr = transport or StreamingTransport(transport=httpx.MockTransport(handler))
        controller = ReActController(
            provider=provider,
            system_prompt="You are a test agent.",
            executor=executor or ToolExecutor(workspace),
            transport=tr,
            api_token=api_token,
            on_event=events.append,
            on_update=snapshots.append,
            **kwargs,
        )
        cancel = CancelSignal()
        if cancel_after is not None:
            asyncio.get_running_loop().call_later(cancel_after, cancel.cancel)
        try:
            outcome = await controller.run(task, cancel=cancel)
        finally:
            await tr.aclose()
        return controller, outcome

    controller, outcome = asyncio.run(_run())
    return controller, outcome, events, snapshots


def test_direct_answer(workspace):
    model = ScriptedModel("<think>easy</think><answer>It is 4.</answer>")

    controller, outcome, events, snapshots = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    assert outcome.text == "It is 4."
    assert outcome.exit_code == 0
    assert controller.state == LoopState.ANSWERED
    roles = [m.role for m in controller.session.messages]
    assert roles == [Role.USER, Role.ASSISTANT, Role.SYSTEM]
    assert controller.session.messages[-1].content == "Task answered after 0 step(s)."
    assert len(snapshots) == 3
    assert any(e.type == EventType.ANSWER_CLOSE for e in events)


def test_tool_then_answer(workspace):
    (workspace / "data.txt").write_text("secret=7", encoding="utf-8")
    model = ScriptedModel(
        'Checking.<tool name="read_file">data.txt</tool> ignored trailing text',
        "<answer>The secret is 7.</answer>",
    )

    controller, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    assert outcome.text == "The secret is 7."
    assert outcome.steps == 1
    messages = controller.session.messages
    assert [m.role for m in messages] == [
        Role.USER, Role.ASSISTANT, Role.OBSERVATION, Role.ASSISTANT, Role.SYSTEM,
    ]
    assert messages[1].content == 'Checking.<tool name="read_file">data.txt</tool>'
    assert messages[2].content == "secret=7"

    second = model.bodies[1]["messages"]
    assert second[0]["role"] == "system"
    assert "<tool name=" in second[0]["content"]
    assert second[-1] == {"role": "user", "content": "<observation>secret=7</observation>"}


def test_tool_failure_is_fed_back(workspace):
    model = ScriptedModel(
        '<tool name="read_file">missing.txt</tool>',
        "<answer>File does not exist.</answer>",
    )

    controller, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    observation = controller.session.last(Role.OBSERVATION).content
    assert observation.startswith("[read_file failed: NotFound]")


def test_answer_tool_alias(workspace):
    model = ScriptedModel('<tool name="answer">\nAll done.\n</tool>')

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    assert outcome.text == "All done."


def test_plain_prose_is_the_answer(workspace):
    model = ScriptedModel("The answer is **42**.")

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    assert outcome.text == "The answer is **42**."


def test_thinking_only_turn_counts_as_step(workspace):
    model = ScriptedModel("<think>hmm</think>", "<answer>ok</answer>")

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.ANSWERED
    assert outcome.steps == 1


def test_step_cap(workspace):
    model = ScriptedModel(*['<tool name="shell">echo again</tool>'] * 3)

    controller, outcome, _, _ = run_controller(workspace, model, max_steps=2)

    assert outcome.status == TaskStatus.STEP_CAP_EXCEEDED
    assert outcome.exit_code == 2
    assert outcome.steps == 2
    assert len(model.bodies) == 2
    assert outcome.text.startswith("Step budget exhausted: used 2 of 2 steps")
    assert controller.session.messages[-1].role == Role.SYSTEM


def test_http_failure(workspace):
    model = ScriptedModel(httpx.Response(429, content=b"rate limited"))

    controller, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.FAILED
    assert outcome.error_kind == ErrorKind.HTTP_FAILURE
    assert "429" in outcome.detail
    assert controller.session.messages[-1].content.startswith("Task failed (HttpFailure)")


def test_network_failure(workspace):
    def handler(request):
        raise httpx.ReadTimeout("no bytes")

    _, outcome, _, _ = run_controller(workspace, handler)

    assert outcome.error_kind == ErrorKind.NETWORK_FAILURE
    assert outcome.exit_code == 1


def test_unterminated_tool_tag(workspace):
    model = ScriptedModel('<tool name="shell">ls -la')

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.status == TaskStatus.FAILED
    assert outcome.error_kind == ErrorKind.UNTERMINATED_TAG


def test_protocol_mismatch(workspace):
    model = ScriptedModel(httpx.Response(200, content=b'data: {"unexpected": true}\n\n'))

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.error_kind == ErrorKind.PROTOCOL_MISMATCH


def test_empty_response_fails(workspace):
    model = ScriptedModel(httpx.Response(200, content=b"data: [DONE]\n\n"))

    _, outcome, _, _ = run_controller(workspace, model)

    assert outcome.error_kind == ErrorKind.PROTOCOL_MISMATCH


def test_missing_token_is_configuration_failure(workspace):
    model = ScriptedModel()

    _, outcome, _, _ = run_controller(workspace, model, api_token="")

    assert outcome.error_kind == ErrorKind.CONFIGURATION
    assert model.bodies == []


def test_tool_panic(workspace, monkeypatch):
    executor = ToolExecutor(workspace)

    async def boom(raw):
        raise RuntimeError("handler bug")

    monkeypatch.setitem(executor._dispatch, "shell", boom)
    model = ScriptedModel('<tool name="shell">ls</tool>')

    _, outcome, _, _ = run_controller(workspace, model, executor=executor)

    assert outcome.status == TaskStatus.FAILED
    assert outcome.error_kind == ErrorKind.TOOL_PANIC
    assert "handler bug" in outcome.detail


def test_cancel_while_streaming_closes_stream(workspace):
    transport = HangingTransport()

    controller, outcome, _, _ = run_controller(workspace, transport=transport, cancel_after=0.05)

    assert outcome.status == TaskStatus.CANCELLED
    assert outcome.exit_code == 130
    assert transport.closed
    assert controller.session.cancelled
    assert controller.session.messages[-1].content == "Task cancelled by user after 0 step(s)."


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell command")
def test_cancel_while_tool_runs(workspace):
    model = ScriptedModel('<tool name="shell">sleep 10</tool>')

    start = time.monotonic()
    controller, outcome, _, _ = run_controller(workspace, model, cancel_after=0.3)

    assert outcome.status == TaskStatus.CANCELLED
    assert outcome.steps == 1
    assert time.monotonic() - start < 5
    assert controller.session.active_tool is None
    assert controller.session.last(Role.OBSERVATION) is None


def test_anthropic_stream(workspace):
    def handler(request):
        assert request.headers["x-api-key"] == "ak"
        body = b"".join(
            f"event: {kind}\ndata: {json.dumps(data)}\n\n".encode()
            for kind, data in [
                ("message_start", {"type": "message_start", "message": {}}),
                ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "<answer>Hi"}}),
                ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " there</answer>"}}),
                ("message_stop", {"type": "message_stop"}),
            ]
        )
        return httpx.Response(200, content=body)

    _, outcome, _, _ = run_controller(workspace, handler, provider=PROVIDERS["anthropic"], api_token="ak")

    assert outcome.text == "Hi there"
