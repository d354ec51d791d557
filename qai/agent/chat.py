"""
qai.agent.chat — Task runner and interactive REPL.

Resolves provider settings (flag → environment → config file → provider
default), wires the controller to the transport, the executor and the
renderer, and turns Ctrl+C into the two-press cancel signal while a task
is running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from qai import __version__
from qai.agent.cancel import CancelRequest, CancelSignal
from qai.agent.executor import ToolExecutor
from qai.agent.git_integration import is_git_repo
from qai.agent.loop import ReActController
from qai.agent.providers import TOKEN_ENV_VARS, get_provider
from qai.agent.renderer import (
    LoopRenderer,
    agent_banner,
    get_input_with_completion,
    print_help,
    render_cancel_notice,
    render_error,
    render_goodbye,
    render_info,
    render_success,
    render_tools,
)
from qai.agent.tools import builtin_tools
from qai.agent.transport import StreamingTransport
from qai.core.models import GlobalConfig, Message, ProviderConfig, RequestShape, TaskOutcome
from qai.core.session import Session

logger = logging.getLogger("qai.agent.chat")


@dataclass(frozen=True)
class AgentSettings:
    provider: ProviderConfig
    model: str
    api_token: str = ""
    endpoint: str | None = None
    max_steps: int = 15
    connect_timeout: float = 5.0
    read_timeout: float = 120.0
    shell_timeout: float = 60.0


def resolve_settings(
    config: GlobalConfig,
    provider_id: str | None = None,
    model: str | None = None,
    max_steps: int | None = None,
) -> AgentSettings:
    """Merge CLI overrides, environment variables and the saved config."""
    provider = get_provider(provider_id or os.getenv("QAI_PROVIDER") or config.provider)

    model = (
        model
        or os.getenv("QAI_MODEL")
        or config.models.get(provider.id)
        or provider.default_model
    )

    token = ""
    for var in TOKEN_ENV_VARS.get(provider.id, ()):
        token = os.getenv(var, "").strip()
        if token:
            break
    if not token:
        token = config.api_tokens.get(provider.id, "")

    endpoint = config.endpoints.get(provider.id) or None
    ollama_host = os.getenv("OLLAMA_HOST")
    if provider.request_shape == RequestShape.OLLAMA_CHAT and ollama_host and not endpoint:
        host = ollama_host if "://" in ollama_host else f"http://{ollama_host}"
        endpoint = f"{host.rstrip('/')}/api/chat"

    return AgentSettings(
        provider=provider,
        model=model,
        api_token=token,
        endpoint=endpoint,
        max_steps=max_steps or config.max_steps,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        shell_timeout=config.shell_timeout,
    )


def _install_sigint(loop: asyncio.AbstractEventLoop, cancel: CancelSignal) -> bool:
    def _on_sigint() -> None:
        if cancel.request() == CancelRequest.NOTICE:
            render_cancel_notice()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this platform/thread; Ctrl+C falls back to KeyboardInterrupt
        return False
    return True


async def run_task(
    task: str,
    settings: AgentSettings,
    workspace: Path,
    system_prompt: str,
    history: Iterable[Message] = (),
    renderer: LoopRenderer | None = None,
    transport: StreamingTransport | None = None,
) -> tuple[TaskOutcome, Session]:
    """Run one task to completion and render it. Returns the outcome and the session."""
    renderer = renderer or LoopRenderer()
    own_transport = transport is None
    transport = transport or StreamingTransport(settings.connect_timeout, settings.read_timeout)
    executor = ToolExecutor(workspace, shell_timeout=settings.shell_timeout)
    controller = ReActController(
        provider=settings.provider,
        system_prompt=system_prompt,
        executor=executor,
        transport=transport,
        model=settings.model,
        api_token=settings.api_token,
        endpoint=settings.endpoint,
        max_steps=settings.max_steps,
        on_event=renderer.on_event,
        on_update=renderer.on_update,
    )

    cancel = CancelSignal()
    loop = asyncio.get_running_loop()
    installed = _install_sigint(loop, cancel)
    try:
        outcome = await controller.run(task, history, cancel)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        if own_transport:
            await transport.aclose()

    renderer.finish(outcome)
    logger.info("Task ended: %s after %d step(s)", outcome.status, outcome.steps)
    return outcome, controller.session


def run_once(task: str, settings: AgentSettings, workspace: Path, system_prompt: str) -> TaskOutcome:
    """Entry point for ``qai run``."""
    outcome, _ = asyncio.run(run_task(task, settings, workspace.resolve(), system_prompt))
    return outcome


async def _run_chat_async(settings: AgentSettings, workspace: Path, system_prompt: str) -> None:
    agent_banner(
        version=__version__,
        provider=settings.provider.id,
        model=settings.model,
        workspace=str(workspace),
    )
    if is_git_repo(workspace):
        render_info("Git repository detected; git tools are available.")

    history: tuple[Message, ...] = ()
    renderer = LoopRenderer()
    transport = StreamingTransport(settings.connect_timeout, settings.read_timeout)
    turn = 1
    try:
        while True:
            user_input = await get_input_with_completion(turn)
            if not user_input:
                continue

            if user_input.startswith("/"):
                cmd = user_input.split()[0].lower()
                if cmd in ("/exit", "/quit"):
                    break
                if cmd == "/new":
                    history = ()
                    turn = 1
                    render_success("Started a new conversation.")
                elif cmd == "/help":
                    print_help()
                elif cmd == "/tools":
                    render_tools(builtin_tools())
                else:
                    render_error(f"Unknown command: {cmd}. Type /help for commands.")
                continue

            renderer.reset()
            _, session = await run_task(
                user_input,
                settings,
                workspace,
                system_prompt,
                history=history,
                renderer=renderer,
                transport=transport,
            )
            history = session.messages
            turn += 1
    finally:
        await transport.aclose()
        render_goodbye()


def run_chat(settings: AgentSettings, workspace: Path, system_prompt: str) -> None:
    """Start the interactive REPL. Entry point for ``qai chat``."""
    try:
        asyncio.run(_run_chat_async(settings, workspace.resolve(), system_prompt))
    except KeyboardInterrupt:
        pass
