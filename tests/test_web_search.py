import asyncio

import httpx
import pytest

from qai.agent.executor import ToolExecutor
from qai.agent.web_search import summarize_instant_answer, web_search
from qai.core.errors import ToolFailure, ToolFailureKind
from qai.core.models import ToolInvocation


def _search(handler, query="python asyncio"):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await web_search(query, client=client)

    return asyncio.run(_run())


def test_abstract_with_source():
    def handler(request):
        assert request.url.params["q"] == "python asyncio"
        assert request.url.params["format"] == "json"
        return httpx.Response(
            200,
            json={"AbstractText": "asyncio is a library.", "AbstractURL": "https://docs.python.org/3/library/asyncio.html"},
        )

    assert _search(handler) == "asyncio is a library.\n\nSource: https://docs.python.org/3/library/asyncio.html"


def test_related_topics_fallback():
    data = {
        "AbstractText": "",
        "RelatedTopics": [
            {"Text": "First"},
            {"Name": "group", "Topics": []},
            {"Text": "Second"},
            {"Text": "Third"},
            {"Text": "Fourth"},
        ],
    }

    assert summarize_instant_answer(data) == "- First\n- Second\n- Third"


def test_answer_preferred_over_topics():
    assert summarize_instant_answer({"Answer": "42", "RelatedTopics": [{"Text": "x"}]}) == "42"


def test_empty_result():
    with pytest.raises(ToolFailure) as exc_info:
        _search(lambda request: httpx.Response(200, json={"AbstractText": "", "RelatedTopics": []}))

    assert exc_info.value.failure_kind == ToolFailureKind.EMPTY_RESULT


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(503),
        lambda request: httpx.Response(200, content=b"<html>"),
    ],
)
def test_service_problems_are_network_failures(handler):
    with pytest.raises(ToolFailure) as exc_info:
        _search(handler)

    assert exc_info.value.failure_kind == ToolFailureKind.NETWORK_FAILURE


def test_unreachable_service_through_executor(workspace):
    def handler(request):
        raise httpx.ConnectError("no route")

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = ToolExecutor(workspace, http_client=client)
            return await executor.execute(ToolInvocation(name="web_search", raw_input="anything"))

    result = asyncio.run(_run())

    assert result.failure_kind == ToolFailureKind.NETWORK_FAILURE
