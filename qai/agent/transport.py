"""
qai.agent.transport — Streaming HTTP transport for model turns.

Owns the httpx connection lifecycle and exposes each response as a lazy,
cancellable async iterator of raw lines. The loop controller pulls from it
one line at a time, so stopping is just "stop pulling and close": closing
the iterator exits the ``client.stream`` context and drops the connection.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from qai.agent.providers import ProviderRequest
from qai.core.errors import HttpFailure, NetworkFailure, ProtocolMismatch

logger = logging.getLogger("qai.agent.transport")

# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------
DEFAULT_CONNECT_TIMEOUT = 5.0     # TCP + TLS handshake (seconds)
DEFAULT_READ_TIMEOUT = 120.0      # Longest silence allowed between chunks
_WRITE_TIMEOUT = 30.0             # Request body upload
_POOL_TIMEOUT = 10.0              # Waiting for a connection from the pool

_POOL_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
    keepalive_expiry=120,
)


def make_timeout(connect: float, read: float) -> httpx.Timeout:
    return httpx.Timeout(connect=connect, read=read, write=_WRITE_TIMEOUT, pool=_POOL_TIMEOUT)


class StreamingTransport:
    """
    One HTTP client per task host, reused across model turns so repeated
    requests skip the TLS handshake.

    Pass ``transport=httpx.MockTransport(...)`` to drive it without a network.
    """

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=make_timeout(connect_timeout, read_timeout),
            limits=_POOL_LIMITS,
            transport=transport,
        )

    async def open(self, request: ProviderRequest) -> AsyncIterator[str]:
        """
        POST *request* and yield every non-empty line of the streamed body.

        Raises ``HttpFailure`` for a status >= 400 (after reading the error
        body) and ``NetworkFailure`` for connect/read timeouts and other
        transport errors. Nothing is retried.
        """
        logger.debug("Opening stream to %s", request.url)
        try:
            async with self._client.stream(
                "POST", request.url, headers=request.headers, content=request.body,
            ) as resp:
                if resp.status_code >= 400:
                    # Must read the body inside the streaming context
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    logger.warning("Provider returned HTTP %d from %s", resp.status_code, request.url)
                    raise HttpFailure(resp.status_code, body)
                async for line in resp.aiter_lines():
                    if line.strip():
                        yield line
        except httpx.TimeoutException as exc:
            logger.warning("Timed out waiting on %s: %s", request.url, type(exc).__name__)
            raise NetworkFailure(f"Timed out talking to {request.url} ({type(exc).__name__})") from exc
        except httpx.TransportError as exc:
            logger.warning("Transport error on %s: %s", request.url, exc)
            raise NetworkFailure(f"Cannot reach {request.url}: {exc}") from exc
        except httpx.DecodingError as exc:
            raise ProtocolMismatch(f"Undecodable response body from {request.url}: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "StreamingTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Ollama model discovery
# ---------------------------------------------------------------------------

def ollama_base_url(chat_endpoint: str) -> str:
    """``http://host:11434/api/chat`` → ``http://host:11434``."""
    base, sep, _ = chat_endpoint.rpartition("/api/")
    return base if sep else chat_endpoint.rstrip("/")


async def fetch_ollama_models(
    chat_endpoint: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> list[str]:
    """Return the names of the models installed in a local Ollama server."""
    url = f"{ollama_base_url(chat_endpoint)}/api/tags"
    owns = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        resp = await client.get(url)
        if resp.status_code >= 400:
            raise HttpFailure(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolMismatch(f"Ollama /api/tags returned non-JSON: {exc}") from exc
    except httpx.TransportError as exc:
        raise NetworkFailure(
            f"Cannot connect to Ollama at {url}. Make sure Ollama is running (ollama serve)."
        ) from exc
    finally:
        if owns:
            await client.aclose()

    models = data.get("models", []) if isinstance(data, dict) else []
    return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]
