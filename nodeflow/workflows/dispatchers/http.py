"""
HTTP Request Dispatcher

Builds a request from node configuration, interpolating ``{{path}}``
placeholders into the URL, headers, query params and body, and returns
the response as node outputs. Non-2xx responses are not errors: status
and body are passed downstream so a conditional can branch on them.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from nodeflow.exceptions import ErrorCode
from ..nodes import HttpRequestConfig, Node, NodeType
from ..outcome import Error, NodeOutcome, Success
from ..template import build_scope, render, render_text
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


JSON_CONTENT = "application/json"
FORM_CONTENT = "application/x-www-form-urlencoded"
MULTIPART_CONTENT = "multipart/form-data"
TEXT_CONTENT = "text/plain"

BODYLESS_METHODS = {"GET", "HEAD", "DELETE"}


class HttpRequestDispatcher(NodeDispatcher):
    """
    Dispatcher for ``httpRequest468``.

    A shared ``httpx.AsyncClient`` may be injected; otherwise a client is
    opened per request.
    """

    node_type = NodeType.HTTP_REQUEST.value
    config_model = HttpRequestConfig

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout_ms: int = 30000,
        max_response_size: int = 1024 * 1024,
    ):
        self._client = client
        self.default_timeout_ms = default_timeout_ms
        self.max_response_size = max_response_size

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: HttpRequestConfig = node.config
        scope = build_scope(inputs)

        url = render_text(config.url, scope).strip()
        if not url:
            return Error(message="No URL provided")

        method = config.method.upper()
        headers = {key: render_text(str(value), scope) for key, value in config.headers.items()}
        params = {key: render(value, scope) for key, value in config.params.items()}
        timeout = httpx.Timeout((config.timeout or self.default_timeout_ms) / 1000)

        request_kwargs: Dict[str, Any] = {"headers": headers, "params": params, "timeout": timeout}
        if method not in BODYLESS_METHODS and config.body is not None:
            encoded = self._encode_body(render(config.body, scope), config.content_type)
            for key, value in encoded.pop("headers_extra", {}).items():
                if not any(name.lower() == key.lower() for name in headers):
                    headers[key] = value
            request_kwargs.update(encoded)

        logger.info(f"HTTP node {node.id}: {method} {url}")

        try:
            if self._client is not None:
                status_code, response_headers, raw, truncated = await self._send(
                    self._client, method, url, request_kwargs
                )
            else:
                async with httpx.AsyncClient() as client:
                    status_code, response_headers, raw, truncated = await self._send(
                        client, method, url, request_kwargs
                    )
        except httpx.HTTPError as e:
            logger.warning(f"HTTP node {node.id} request failed: {e}")
            return Error(
                message=f"HTTP request failed: {str(e) or e.__class__.__name__}",
                error_code=ErrorCode.SERVICE_EXTERNAL_ERROR,
            )

        body = self._parse_body(raw, response_headers.get("content-type", ""))
        response = {
            "statusCode": status_code,
            "headers": response_headers,
            "body": body,
            "truncated": truncated,
        }

        return Success(
            outputs={
                "response": response,
                "statusCode": status_code,
                "body": body,
                "headers": response_headers,
                "success": 200 <= status_code < 300,
                "truncated": truncated,
            },
            metadata={"method": method, "url": url, "response_size": len(raw)},
        )

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        request_kwargs: Dict[str, Any],
    ) -> Tuple[int, Dict[str, str], bytes, bool]:
        """Send the request and read at most ``max_response_size`` bytes."""
        chunks = []
        size = 0
        truncated = False

        async with client.stream(method, url, **request_kwargs) as response:
            async for chunk in response.aiter_bytes():
                remaining = self.max_response_size - size
                if len(chunk) > remaining:
                    chunks.append(chunk[:remaining])
                    truncated = True
                    break
                chunks.append(chunk)
                size += len(chunk)

            return response.status_code, dict(response.headers), b"".join(chunks), truncated

    @staticmethod
    def _encode_body(body: Any, content_type: str) -> Dict[str, Any]:
        content_type = (content_type or JSON_CONTENT).lower()

        if content_type.startswith(FORM_CONTENT):
            return {"data": body if isinstance(body, dict) else {"value": body}}

        if content_type.startswith(MULTIPART_CONTENT):
            fields = body if isinstance(body, dict) else {"value": body}
            files = {
                key: value for key, value in fields.items()
                if isinstance(value, (bytes, tuple))
            }
            data = {
                key: value for key, value in fields.items()
                if key not in files
            }
            if not files:
                # Force multipart encoding even without file parts
                files = {key: (None, str(value)) for key, value in data.items()}
                data = {}
            return {"data": data, "files": files}

        if content_type.startswith(TEXT_CONTENT):
            text = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)
            return {"content": text, "headers_extra": {"Content-Type": TEXT_CONTENT}}

        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                return {"content": body, "headers_extra": {"Content-Type": JSON_CONTENT}}
        return {"json": body}

    @staticmethod
    def _parse_body(raw: bytes, content_type: str) -> Any:
        text = raw.decode("utf-8", errors="replace")
        if not text:
            return ""
        if "json" in content_type.lower() or text.lstrip()[:1] in ("{", "["):
            try:
                return json.loads(text)
            except ValueError:
                pass
        return text
