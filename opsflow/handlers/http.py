"""Outbound HTTP action handler."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..errors import HandlerError
from ..registry.models import HandlerContext

logger = logging.getLogger(__name__)

HTTP_ACTION = "http.request"


class HttpRequestInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    json_body: Any = Field(default=None, alias="json")
    timeout: Optional[float] = Field(default=None, gt=0)


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpRequestHandler:
    """Calls an external HTTP API and classifies failures by status code.

    Timeouts, connection errors, 429 and 5xx responses are retryable; any
    other 4xx is a permanent failure.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = client
        self._transport = transport

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(transport=self._transport) as client:
            yield client

    async def __call__(self, context: HandlerContext, request: HttpRequestInput) -> Dict[str, Any]:
        headers = {**context.settings.http.default_headers, **request.headers}
        timeout = request.timeout or context.settings.http.timeout
        method = request.method.upper()
        logger.info(f"{method} {request.url} for run {context.run_id} step {context.step_id}")
        try:
            async with self._session() as client:
                response = await client.request(
                    method,
                    request.url,
                    headers=headers,
                    params=request.params or None,
                    json=request.json_body,
                    timeout=timeout,
                )
        except httpx.TimeoutException as exc:
            raise HandlerError(f"Request to {request.url} timed out: {exc}", retryable=True, code="timeout") from exc
        except httpx.TransportError as exc:
            raise HandlerError(f"Request to {request.url} failed: {exc}", retryable=True, code="transport") from exc

        body = _body(response)
        status = response.status_code
        if status == 429 or status >= 500:
            raise HandlerError(
                f"{method} {request.url} returned {status}: {body}", retryable=True, code=f"http_{status}"
            )
        if status >= 400:
            raise HandlerError(
                f"{method} {request.url} returned {status}: {body}", retryable=False, code=f"http_{status}"
            )
        return {"status_code": status, "body": body, "headers": dict(response.headers)}
