"""
Tests for HttpRequestDispatcher

Requests are served by httpx.MockTransport; no network access is needed.
"""

import json
from typing import List

import httpx
import pytest

from nodeflow.exceptions import ErrorCode
from nodeflow.workflows.dispatchers import HttpRequestDispatcher
from nodeflow.workflows.nodes import Node, NodeType
from nodeflow.workflows.outcome import Error, Success


def http_node(**data) -> Node:
    return Node(id="call", type=NodeType.HTTP_REQUEST, data=data)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpRequests:
    """Tests for building and sending requests."""

    @pytest.mark.asyncio
    async def test_post_json_with_templates(self):
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": 7})

        async with mock_client(handler) as client:
            node = http_node(
                url="https://api.test/users/{{user_id}}",
                method="post",
                headers={"X-Trace": "{{trace}}"},
                body={"name": "{{name}}", "tags": "{{tags}}"},
            )
            outcome = await HttpRequestDispatcher(client=client).dispatch(
                node, {"user_id": 42, "trace": "t-1", "name": "Ada", "tags": ["a", "b"]}
            )

        assert isinstance(outcome, Success)
        assert outcome.outputs["statusCode"] == 201
        assert outcome.outputs["body"] == {"id": 7}
        assert outcome.outputs["success"] is True
        assert outcome.outputs["response"]["truncated"] is False

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.test/users/42"
        assert request.headers["X-Trace"] == "t-1"
        assert json.loads(request.content) == {"name": "Ada", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_get_params(self):
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="ok")

        async with mock_client(handler) as client:
            node = http_node(url="https://api.test/search", params={"q": "{{term}}"}, body={"ignored": 1})
            outcome = await HttpRequestDispatcher(client=client).dispatch(node, {"term": "shoes"})

        assert outcome.outputs["body"] == "ok"
        assert seen[0].url.params["q"] == "shoes"
        assert seen[0].content == b""

    @pytest.mark.asyncio
    async def test_non_2xx_is_not_an_error(self):
        async with mock_client(lambda request: httpx.Response(404, json={"detail": "missing"})) as client:
            outcome = await HttpRequestDispatcher(client=client).dispatch(http_node(url="https://api.test/x"), {})

        assert isinstance(outcome, Success)
        assert outcome.outputs["statusCode"] == 404
        assert outcome.outputs["success"] is False
        assert outcome.outputs["body"] == {"detail": "missing"}

    @pytest.mark.asyncio
    async def test_response_truncated(self):
        async with mock_client(lambda request: httpx.Response(200, content=b"0123456789ABCDEF")) as client:
            dispatcher = HttpRequestDispatcher(client=client, max_response_size=10)
            outcome = await dispatcher.dispatch(http_node(url="https://api.test/big"), {})

        assert outcome.outputs["truncated"] is True
        assert outcome.outputs["body"] == "0123456789"

    @pytest.mark.asyncio
    async def test_form_body(self):
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async with mock_client(handler) as client:
            node = http_node(
                url="https://api.test/form",
                method="POST",
                contentType="application/x-www-form-urlencoded",
                body={"a": "1"},
            )
            await HttpRequestDispatcher(client=client).dispatch(node, {})

        assert seen[0].content == b"a=1"
        assert seen[0].headers["content-type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_text_body(self):
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async with mock_client(handler) as client:
            node = http_node(
                url="https://api.test/echo",
                method="PUT",
                contentType="text/plain",
                body="hello {{name}}",
            )
            await HttpRequestDispatcher(client=client).dispatch(node, {"name": "Ada"})

        assert seen[0].content == b"hello Ada"
        assert seen[0].headers["content-type"] == "text/plain"


class TestHttpErrors:
    """Tests for failed requests."""

    @pytest.mark.asyncio
    async def test_no_url(self):
        outcome = await HttpRequestDispatcher().dispatch(http_node(), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "No URL provided"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as client:
            outcome = await HttpRequestDispatcher(client=client).dispatch(http_node(url="https://api.test/"), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "HTTP request failed: refused"
        assert outcome.error_code == ErrorCode.SERVICE_EXTERNAL_ERROR
