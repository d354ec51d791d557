"""
qai.agent.providers — Provider adapter for every supported chat API.

Translates a uniform ``(history, system prompt, model)`` request into the
vendor-specific URL, headers and JSON body, and parses vendor-specific
streamed lines back into plain text deltas:

  - openai-chat:        OpenAI, xAI, Zen and custom OpenAI-compatible endpoints
  - anthropic-messages: Anthropic Messages API (top-level ``system`` field)
  - ollama-chat:        local Ollama ``/api/chat`` (NDJSON, no auth)

No retries happen here; errors surface to the loop controller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from qai.core.errors import ConfigurationError, ProtocolMismatch
from qai.core.models import AuthScheme, Message, ProviderConfig, RequestShape, Role

logger = logging.getLogger("qai.agent.providers")

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


# ---------------------------------------------------------------------------
# Provider table
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        id="openai",
        label="OpenAI (GPT-4o)",
        chat_endpoint_url="https://api.openai.com/v1/chat/completions",
        auth_scheme=AuthScheme.BEARER,
        request_shape=RequestShape.OPENAI_CHAT,
        default_model="gpt-4o",
        description="Cloud · Requires API key · https://platform.openai.com/",
    ),
    "anthropic": ProviderConfig(
        id="anthropic",
        label="Anthropic (Claude)",
        chat_endpoint_url="https://api.anthropic.com/v1/messages",
        auth_scheme=AuthScheme.X_API_KEY,
        request_shape=RequestShape.ANTHROPIC_MESSAGES,
        default_model="claude-3-5-sonnet-20241022",
        description="Cloud · Requires API key · https://www.anthropic.com/",
    ),
    "xai": ProviderConfig(
        id="xai",
        label="xAI (Grok)",
        chat_endpoint_url="https://api.x.ai/v1/chat/completions",
        auth_scheme=AuthScheme.BEARER,
        request_shape=RequestShape.OPENAI_CHAT,
        default_model="grok-3",
        description="Cloud · Requires API key · https://x.ai/",
    ),
    "ollama": ProviderConfig(
        id="ollama",
        label="Ollama (local)",
        chat_endpoint_url="http://localhost:11434/api/chat",
        auth_scheme=AuthScheme.NONE,
        request_shape=RequestShape.OLLAMA_CHAT,
        default_model="gemma3",
        description="Local · No API key needed · https://ollama.com/",
    ),
    "zen": ProviderConfig(
        id="zen",
        label="Zen API",
        chat_endpoint_url="https://api.opencode.ai/v1/chat/completions",
        auth_scheme=AuthScheme.BEARER,
        request_shape=RequestShape.OPENAI_CHAT,
        default_model="anthropic/claude-sonnet-4-5",
        description="Cloud · Requires API key · https://opencode.ai/zen",
    ),
    "custom": ProviderConfig(
        id="custom",
        label="Custom endpoint",
        chat_endpoint_url="",
        auth_scheme=AuthScheme.BEARER,
        request_shape=RequestShape.OPENAI_CHAT,
        default_model="custom-model",
        description="Custom OpenAI-compatible endpoint · Configure the URL first",
    ),
}

# Environment variables consulted for each provider's token, in order.
TOKEN_ENV_VARS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY", "QAI_API_KEY"),
    "anthropic": ("ANTHROPIC_API_KEY", "QAI_API_KEY"),
    "xai": ("XAI_API_KEY", "QAI_API_KEY"),
    "ollama": (),
    "zen": ("ZEN_API_KEY", "QAI_API_KEY"),
    "custom": ("QAI_API_KEY",),
}


def get_provider(provider_id: str) -> ProviderConfig:
    try:
        return PROVIDERS[provider_id.lower()]
    except KeyError:
        known = ", ".join(PROVIDERS)
        raise ConfigurationError(f"Unknown provider '{provider_id}'. Known providers: {known}") from None


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderRequest:
    """A fully-formed HTTP request for one model turn."""
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> dict[str, Any]:
        return json.loads(self.body)


def encode_body(body: dict[str, Any]) -> bytes:
    """Compact, key-order-preserving JSON so equal inputs give equal bytes."""
    return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def to_wire_messages(history: Iterable[Message]) -> list[dict[str, str]]:
    """
    Map session messages onto the ``{role, content}`` pairs every vendor
    accepts. Observations go back to the model as user turns; transcript-only
    system notices are not sent.
    """
    wire: list[dict[str, str]] = []
    for msg in history:
        if msg.role == Role.USER:
            wire.append({"role": "user", "content": msg.content})
        elif msg.role == Role.ASSISTANT:
            wire.append({"role": "assistant", "content": msg.content})
        elif msg.role == Role.OBSERVATION:
            wire.append({"role": "user", "content": f"<observation>{msg.content}</observation>"})
    return wire


def _fix_anthropic_alternation(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    """
    Anthropic requires strict user/assistant alternation.
    Fix consecutive same-role messages by merging them.
    """
    if not messages:
        return messages

    fixed = [dict(messages[0])]
    for msg in messages[1:]:
        if msg["role"] == fixed[-1]["role"]:
            fixed[-1]["content"] = fixed[-1]["content"] + "\n" + msg["content"]
        else:
            fixed.append(dict(msg))
    return fixed


def build_body(
    history: Iterable[Message],
    provider: ProviderConfig,
    system_prompt: str,
    model: str | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> dict[str, Any]:
    """Build the vendor-specific JSON body (as a dict, keys in wire order)."""
    model = model or provider.default_model
    messages = to_wire_messages(history)

    if provider.request_shape == RequestShape.ANTHROPIC_MESSAGES:
        return {
            "model": model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": _fix_anthropic_alternation(messages),
            "stream": True,
        }

    # openai-chat and ollama-chat both carry the system prompt as a leading message
    return {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
        "stream": True,
    }


def build_headers(provider: ProviderConfig, api_token: str = "") -> dict[str, str]:
    token = api_token.strip()
    headers = {"Content-Type": "application/json"}

    if provider.auth_scheme == AuthScheme.NONE:
        return headers

    if not token:
        if provider.id == "custom":
            # Custom endpoints are often local servers without auth
            return headers
        raise ConfigurationError(f"API token for provider '{provider.id}' is empty")

    if provider.auth_scheme == AuthScheme.X_API_KEY:
        headers["x-api-key"] = token
        headers["anthropic-version"] = ANTHROPIC_VERSION
    else:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def resolve_endpoint(provider: ProviderConfig, endpoint: str | None = None) -> str:
    url = (endpoint or provider.chat_endpoint_url).strip()
    if not url:
        raise ConfigurationError(
            f"No endpoint URL configured for provider '{provider.id}'. "
            f"Set one with: qai config endpoint {provider.id} <url>"
        )
    return url


def build_request(
    history: Iterable[Message],
    provider: ProviderConfig,
    system_prompt: str,
    model: str | None = None,
    api_token: str = "",
    endpoint: str | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> ProviderRequest:
    """Translate a uniform request into ``{url, headers, body}`` for *provider*."""
    url = resolve_endpoint(provider, endpoint)
    headers = build_headers(provider, api_token)
    body = build_body(history, provider, system_prompt, model=model, max_tokens=max_tokens)
    logger.debug(
        "Built %s request for %s (model=%s, %d messages)",
        provider.request_shape, provider.id, body["model"], len(body["messages"]),
    )
    return ProviderRequest(url=url, headers=headers, body=encode_body(body))


# ---------------------------------------------------------------------------
# Chunk parsing
# ---------------------------------------------------------------------------

_SSE_IGNORED_PREFIXES = ("event:", "id:", "retry:", ":")


def _payload_of(line: str) -> str | None:
    """Strip SSE framing. Returns None for lines carrying no data."""
    line = line.strip()
    if not line:
        return None
    if line.startswith("data:"):
        return line[5:].strip()
    if line.startswith(_SSE_IGNORED_PREFIXES):
        return None
    # Ollama NDJSON: each line is a full JSON object
    return line


def _provider_error(data: dict[str, Any]) -> str | None:
    err = data.get("error")
    if err is None and data.get("type") != "error":
        return None
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def parse_chunk(provider: ProviderConfig, raw_chunk: bytes | str) -> list[str]:
    """
    Parse one raw streamed line into zero or more text deltas.

    Raises ``ProtocolMismatch`` when the vendor payload is malformed or is
    missing the fields its shape requires.
    """
    line = raw_chunk.decode("utf-8", errors="replace") if isinstance(raw_chunk, bytes) else raw_chunk
    payload = _payload_of(line)
    if payload is None or payload == "[DONE]" or not payload:
        return []

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        raise ProtocolMismatch(f"Unparseable {provider.id} chunk: {payload[:200]}") from None
    if not isinstance(data, dict):
        raise ProtocolMismatch(f"Expected a JSON object from {provider.id}, got: {payload[:200]}")

    error = _provider_error(data)
    if error is not None:
        raise ProtocolMismatch(f"{provider.id} reported an error mid-stream: {error}")

    if provider.request_shape == RequestShape.ANTHROPIC_MESSAGES:
        return _parse_anthropic(data)
    if provider.request_shape == RequestShape.OLLAMA_CHAT:
        return _parse_ollama(data)
    return _parse_openai(data)


def _text_or_mismatch(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, str):
        raise ProtocolMismatch(f"Expected text at {where}, got {type(value).__name__}")
    return [value] if value else []


def _parse_openai(data: dict[str, Any]) -> list[str]:
    choices = data.get("choices")
    if not isinstance(choices, list):
        raise ProtocolMismatch("OpenAI-style chunk is missing the 'choices' list")
    if not choices:
        # Usage-only final chunk
        return []
    choice = choices[0]
    if not isinstance(choice, dict):
        raise ProtocolMismatch("OpenAI-style choice is not an object")
    delta = choice.get("delta")
    if delta is None:
        delta = choice.get("message", {})
    if not isinstance(delta, dict):
        raise ProtocolMismatch("OpenAI-style 'delta' is not an object")
    return _text_or_mismatch(delta.get("content"), "choices[0].delta.content")


def _parse_anthropic(data: dict[str, Any]) -> list[str]:
    event_type = data.get("type")
    if not isinstance(event_type, str):
        raise ProtocolMismatch("Anthropic event is missing its 'type'")
    if event_type != "content_block_delta":
        # message_start, content_block_start, ping, message_delta, message_stop, ...
        return []
    delta = data.get("delta")
    if not isinstance(delta, dict):
        raise ProtocolMismatch("Anthropic content_block_delta is missing 'delta'")
    if delta.get("type") != "text_delta":
        return []
    return _text_or_mismatch(delta.get("text"), "delta.text")


def _parse_ollama(data: dict[str, Any]) -> list[str]:
    msg = data.get("message")
    if msg is None:
        if data.get("done"):
            return []
        raise ProtocolMismatch("Ollama chunk is missing 'message'")
    if not isinstance(msg, dict):
        raise ProtocolMismatch("Ollama 'message' is not an object")
    return _text_or_mismatch(msg.get("content"), "message.content")
