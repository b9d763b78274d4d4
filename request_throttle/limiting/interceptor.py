"""
Hook points mounted on the HTTP request lifecycle.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx

from .gate import RequestGate
from .models import ThrottleConfig
from .retry import Resubmit, RetryPolicy
from .rules import RuleSet

RequestHook = Callable[[httpx.Request], "httpx.Request | asyncio.Future[httpx.Request]"]
ResponseErrorHook = Callable[
    [httpx.Response, Resubmit],
    "httpx.Response | asyncio.Future[httpx.Response]",
]


class ThrottleInterceptor:
    """
    Request and response-error hooks built from one configuration.

    A hook is only installed when it has work to do: ``request`` is None
    without rules, ``response_error`` is None when retry is disabled.
    """

    def __init__(
        self,
        config: ThrottleConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.rules = RuleSet(config, clock)
        self.gate = RequestGate(self.rules, config.request_delay)
        self.retry_policy = RetryPolicy.from_config(config)

        self.request: RequestHook | None = self.gate.admit if len(self.rules) else None
        self.response_error: ResponseErrorHook | None = (
            self.retry_policy.on_response if self.retry_policy else None
        )

    async def aclose(self) -> None:
        """Abandon pending retries first so none of them re-enters the gate."""
        if self.retry_policy is not None:
            await self.retry_policy.aclose()
        await self.gate.aclose()

    def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "rules": self.rules.get_statistics(),
            "gate": self.gate.get_statistics(),
        }
        if self.retry_policy is not None:
            stats["retry"] = self.retry_policy.get_statistics()
        return stats
