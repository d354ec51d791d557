"""
qai.agent.web_search — Web search capability for the agent.

Backs the ``web_search`` tool with the DuckDuckGo Instant Answer API
(no API key required). Returns a short text summary: the abstract if there
is one, else the direct answer, else the first few related topics.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from qai.core.errors import ToolFailure, ToolFailureKind

logger = logging.getLogger("qai.agent.web_search")

# DuckDuckGo Instant Answer endpoint, no API key needed
DDG_URL = "https://api.duckduckgo.com/"

MAX_RELATED = 3
SEARCH_TIMEOUT = 10


async def web_search(query: str, client: httpx.AsyncClient | None = None) -> str:
    """
    Query the instant-answer service and return a text summary.

    Raises ``ToolFailure(NetworkFailure)`` if the service cannot be reached
    and ``ToolFailure(EmptyResult)`` if it has nothing to say.
    """
    query = query.strip()
    if not query:
        raise ToolFailure(ToolFailureKind.INVALID_INPUT, "web_search needs a query")

    params = {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"}
    owns = client is None
    client = client or httpx.AsyncClient(timeout=SEARCH_TIMEOUT)
    try:
        resp = await client.get(
            DDG_URL,
            params=params,
            headers={"User-Agent": "Mozilla/5.0 (compatible; QAI-Agent/1.0)"},
        )
        if resp.status_code != 200:
            logger.warning("DuckDuckGo returned status %d", resp.status_code)
            raise ToolFailure(ToolFailureKind.NETWORK_FAILURE, f"Search service returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ToolFailure(ToolFailureKind.NETWORK_FAILURE, f"Search service returned invalid JSON: {e}") from e
    except httpx.TimeoutException as e:
        logger.warning("Web search timed out for query: %s", query)
        raise ToolFailure(ToolFailureKind.NETWORK_FAILURE, f"Search timed out after {SEARCH_TIMEOUT}s") from e
    except httpx.HTTPError as e:
        logger.warning("Web search failed: %s", e)
        raise ToolFailure(ToolFailureKind.NETWORK_FAILURE, f"Search request failed: {e}") from e
    finally:
        if owns:
            await client.aclose()

    summary = summarize_instant_answer(data if isinstance(data, dict) else {})
    if not summary:
        raise ToolFailure(ToolFailureKind.EMPTY_RESULT, f"No instant answer found for: {query}")
    return summary


def summarize_instant_answer(data: dict[str, Any]) -> str:
    """Pick the most useful text out of an Instant Answer payload."""
    abstract = str(data.get("AbstractText") or "").strip()
    if abstract:
        source = str(data.get("AbstractURL") or "").strip()
        return f"{abstract}\n\nSource: {source}" if source else abstract

    answer = str(data.get("Answer") or "").strip()
    if answer:
        return answer

    definition = str(data.get("Definition") or "").strip()
    if definition:
        return definition

    lines = []
    for topic in data.get("RelatedTopics") or []:
        if not isinstance(topic, dict):
            continue
        text = str(topic.get("Text") or "").strip()
        if text:
            lines.append(f"- {text}")
        if len(lines) >= MAX_RELATED:
            break
    return "\n".join(lines)
