import asyncio
import json

import httpx
import pytest

from qai.agent.chat import resolve_settings, run_task
from qai.agent.transport import StreamingTransport
from qai.core.errors import ConfigurationError
from qai.core.models import GlobalConfig, Role, TaskStatus


def test_defaults_come_from_provider():
    settings = resolve_settings(GlobalConfig())

    assert settings.provider.id == "openai"
    assert settings.model == "gpt-4o"
    assert settings.api_token == ""
    assert settings.max_steps == 15
    assert settings.endpoint is None


def test_flag_beats_env_beats_config(monkeypatch):
    config = GlobalConfig(provider="xai", models={"anthropic": "claude-from-config"})
    monkeypatch.setenv("QAI_PROVIDER", "anthropic")

    from_env = resolve_settings(config)
    from_flag = resolve_settings(config, provider_id="ollama", model="llama3", max_steps=4)

    assert from_env.provider.id == "anthropic"
    assert from_env.model == "claude-from-config"
    assert from_flag.provider.id == "ollama"
    assert from_flag.model == "llama3"
    assert from_flag.max_steps == 4


def test_token_from_env_then_config(monkeypatch):
    config = GlobalConfig(api_tokens={"openai": "from-config"})

    assert resolve_settings(config).api_token == "from-config"

    monkeypatch.setenv("QAI_API_KEY", "generic")
    assert resolve_settings(config).api_token == "generic"

    monkeypatch.setenv("OPENAI_API_KEY", "vendor")
    assert resolve_settings(config).api_token == "vendor"


def test_ollama_host_sets_endpoint(monkeypatch):
    monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")

    settings = resolve_settings(GlobalConfig(provider="ollama"))

    assert settings.endpoint == "http://gpu-box:11434/api/chat"


def test_configured_endpoint_wins_over_ollama_host(monkeypatch):
    monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")
    config = GlobalConfig(provider="ollama", endpoints={"ollama": "http://other:1/api/chat"})

    assert resolve_settings(config).endpoint == "http://other:1/api/chat"


def test_unknown_provider_rejected():
    with pytest.raises(ConfigurationError):
        resolve_settings(GlobalConfig(), provider_id="mystery")


class RecordingRenderer:
    def __init__(self):
        self.events = []
        self.snapshots = []
        self.outcome = None

    def on_event(self, event):
        self.events.append(event)

    def on_update(self, snapshot):
        self.snapshots.append(snapshot)

    def finish(self, outcome):
        self.outcome = outcome


def test_run_task_carries_history(workspace):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        chunk = {"choices": [{"delta": {"content": f"<answer>reply {len(bodies)}</answer>"}}]}
        return httpx.Response(200, content=f"data: {json.dumps(chunk)}\n\ndata: [DONE]\n\n".encode())

    settings = resolve_settings(GlobalConfig(api_tokens={"openai": "sk"}))
    renderer = RecordingRenderer()

    async def _run():
        async with StreamingTransport(transport=httpx.MockTransport(handler)) as transport:
            first, session = await run_task(
                "first", settings, workspace, "SYS", renderer=renderer, transport=transport,
            )
            second, _ = await run_task(
                "second", settings, workspace, "SYS",
                history=session.messages, renderer=renderer, transport=transport,
            )
        return first, second

    first, second = asyncio.run(_run())

    assert first.status == TaskStatus.ANSWERED
    assert second.text == "reply 2"
    assert renderer.outcome == second
    user_turns = [m["content"] for m in bodies[1]["messages"] if m["role"] == "user"]
    assert user_turns == ["first", "second"]
    assert renderer.snapshots[-1].messages[-1].role == Role.SYSTEM
