"""
Request gate: holds outgoing requests until their bucket yields a token.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, TypeVar

from ..exceptions import ThrottleClosedError
from ..logging_utils import ContextualLogger
from .bucket import TokenBucket
from .models import PendingRequest
from .rules import RuleSet

RequestT = TypeVar("RequestT")


class RequestGate:
    """
    Admits requests against the rule set without blocking the event loop.

    A request that cannot take a token immediately gets its own poller,
    which retries the bucket every ``request_delay`` seconds. Pollers do not
    queue behind each other, so held requests on one bucket may be released
    out of submission order.
    """

    def __init__(self, rules: RuleSet, request_delay: float):
        self._rules = rules
        self._request_delay = request_delay
        self._pending: set[PendingRequest] = set()
        self._log = ContextualLogger({"component": "request_gate"})

        # Statistics
        self.stats = {
            'passthrough': 0,
            'immediate': 0,
            'deferred': 0,
            'released': 0,
            'poll_attempts': 0,
        }

    @property
    def request_delay(self) -> float:
        return self._request_delay

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def admit(self, request: RequestT) -> RequestT | asyncio.Future[RequestT]:
        """
        Decide whether a request may be sent now.

        Args:
            request: Outgoing request (anything with a ``url`` attribute)

        Returns:
            The same request if it may proceed, otherwise a future that
            resolves to that request once a token has been taken
        """
        bucket = self._rules.resolve(request)
        if bucket is None:
            self.stats['passthrough'] += 1
            return request

        if bucket.try_withdraw(1):
            self.stats['immediate'] += 1
            return request

        return self._delay_request(request, bucket)

    async def acquire(self, request: RequestT) -> RequestT:
        """Wait until the request may be sent and return it."""
        admitted = self.admit(request)
        if isinstance(admitted, asyncio.Future):
            return await admitted
        return admitted

    async def aclose(self) -> None:
        """
        Stop every poller still waiting for a token.

        Callers awaiting a held request get ThrottleClosedError.
        """
        pending = list(self._pending)
        if pending:
            self._log.warning(
                "Closing gate with requests still held", pending=len(pending)
            )
        for item in pending:
            if not item.future.done():
                item.future.set_exception(
                    ThrottleClosedError("Request throttle closed while request was held")
                )
        for item in pending:
            if item.poller is not None:
                item.poller.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await item.poller
        self._pending.clear()

    def get_statistics(self) -> dict[str, int | float]:
        return {
            **self.stats,
            'pending': len(self._pending),
            'request_delay': self._request_delay,
        }

    def _delay_request(
        self, request: RequestT, bucket: TokenBucket
    ) -> asyncio.Future[RequestT]:
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            request=request, bucket=bucket, future=loop.create_future()
        )
        pending.poller = loop.create_task(self._poll(pending))
        pending.future.add_done_callback(lambda _: self._discard(pending))
        self._pending.add(pending)
        self.stats['deferred'] += 1

        pending.log = self._log.bind(url=str(getattr(request, "url", "")))
        pending.log.debug(
            "Request held until a token is available",
            request_delay=self._request_delay,
            bucket_content=round(bucket.content, 3),
        )
        return pending.future

    async def _poll(self, pending: PendingRequest) -> None:
        while not pending.future.done():
            await asyncio.sleep(self._request_delay)
            if pending.future.done():
                return

            pending.attempts += 1
            self.stats['poll_attempts'] += 1
            if pending.bucket.try_withdraw(1):
                self.stats['released'] += 1
                pending.log.debug(
                    "Held request released",
                    attempts=pending.attempts,
                )
                pending.future.set_result(pending.request)

    def _discard(self, pending: PendingRequest) -> None:
        self._pending.discard(pending)
        # Once the future is done no token may be taken for it
        if pending.poller is not None:
            pending.poller.cancel()
