"""
httpx integration: a transport that rate limits every request it sends.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx

from .limiting.interceptor import ThrottleInterceptor
from .limiting.models import ThrottleConfig
from .limiting.retry import RETRY_ATTEMPT_KEY
from .logging_utils import log_operation


class ThrottledTransport(httpx.AsyncBaseTransport):
    """
    Wraps another async transport with request gating and 429 retries.

    Requests pass the interceptor's request hook before they reach the
    wrapped transport. Error responses are offered to the response-error
    hook; a scheduled retry re-enters this transport, so it is gated (and
    possibly retried) again.
    """

    def __init__(
        self,
        config: ThrottleConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.interceptor = ThrottleInterceptor(config, clock)
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._send(request)
        finally:
            # The retry count belongs to this send only; the caller may send
            # the same request object again
            request.extensions.pop(RETRY_ATTEMPT_KEY, None)

    async def _send(self, request: httpx.Request) -> httpx.Response:
        if self.interceptor.request is not None:
            admitted = self.interceptor.request(request)
            if isinstance(admitted, asyncio.Future):
                request = await admitted

        response = await self._transport.handle_async_request(request)

        if response.is_error and self.interceptor.response_error is not None:
            response.request = request
            outcome = self.interceptor.response_error(response, self._send)
            if isinstance(outcome, asyncio.Future):
                # The retry replaces this response
                await response.aclose()
                return await outcome

        return response

    @log_operation("close_throttled_transport")
    async def aclose(self) -> None:
        """
        Abandon held requests and pending retries, then close the wrapped
        transport. Their callers get ThrottleClosedError.
        """
        await self.interceptor.aclose()
        await self._transport.aclose()

    def get_statistics(self) -> dict[str, Any]:
        return self.interceptor.get_statistics()


def create_client(
    config: ThrottleConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    **client_kwargs: Any,
) -> httpx.AsyncClient:
    """
    Create an AsyncClient whose requests are throttled by ``config``.

    Args:
        config: Validated limiter configuration
        transport: Transport that actually sends requests (default: httpx's)
        **client_kwargs: Passed through to httpx.AsyncClient

    Returns:
        AsyncClient using a ThrottledTransport
    """
    return httpx.AsyncClient(
        transport=ThrottledTransport(config, transport), **client_kwargs
    )
