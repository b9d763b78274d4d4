"""
Retry policy for responses rejected with 429 Too Many Requests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from ..exceptions import ThrottleClosedError
from ..logging_utils import ContextualLogger, operation_context
from .models import RetryState, ThrottleConfig

# Stored on request.extensions while a request is being retried; the
# transport removes it once the caller's send returns
RETRY_ATTEMPT_KEY = "request_throttle.retry_attempt"

Resubmit = Callable[[httpx.Request], Awaitable[httpx.Response]]


class RetryPolicy:
    """
    Resubmits requests whose response is 429 after a fixed delay.

    The resubmission goes back through the whole pipeline, so it is gated
    again and a repeated 429 is retried again. Without ``max_retries`` a
    server that keeps answering 429 is retried indefinitely.
    """

    def __init__(self, retry_interval: float, max_retries: int | None = None):
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self._scheduled: set[RetryState] = set()
        self._in_flight: set[RetryState] = set()
        self._log = ContextualLogger({"component": "retry_policy"})

        # Statistics
        self.stats = {
            'scheduled': 0,
            'dispatched': 0,
            'exhausted': 0,
            'abandoned': 0,
        }

    @classmethod
    def from_config(cls, config: ThrottleConfig) -> RetryPolicy | None:
        """Return a policy, or None when retry is disabled."""
        if not config.retry_enabled:
            return None
        return cls(config.retry_interval, config.max_retries)

    @staticmethod
    def is_too_many_requests(response: httpx.Response) -> bool:
        return response.status_code == httpx.codes.TOO_MANY_REQUESTS

    def on_response(
        self,
        response: httpx.Response,
        resubmit: Resubmit,
    ) -> httpx.Response | asyncio.Future[httpx.Response]:
        """
        Inspect a completed response.

        Args:
            response: Response carrying the request it answers
            resubmit: Sends a request through the full pipeline again

        Returns:
            The response unchanged, or a future resolving to the outcome of
            resubmitting its request after ``retry_interval`` seconds
        """
        if not self.is_too_many_requests(response):
            return response

        request = response.request
        log = self._log.bind(url=str(request.url))
        attempt = request.extensions.get(RETRY_ATTEMPT_KEY, 0)
        if self.max_retries is not None and attempt >= self.max_retries:
            self.stats['exhausted'] += 1
            log.warning(
                "Retry limit reached for rate limited request",
                attempts=attempt,
                max_retries=self.max_retries,
            )
            return response

        loop = asyncio.get_running_loop()
        future: asyncio.Future[httpx.Response] = loop.create_future()
        state = RetryState(
            request=request,
            scheduled_at=loop.time() + self.retry_interval,
            attempt=attempt + 1,
            future=future,
        )
        state.timer = loop.call_later(
            self.retry_interval, self._dispatch, state, future, resubmit
        )
        future.add_done_callback(lambda _: self._discard(state))
        self._scheduled.add(state)
        self.stats['scheduled'] += 1

        log.info(
            "Too many requests, retry scheduled",
            retry_interval=self.retry_interval,
            attempt=state.attempt,
        )
        return future

    @property
    def scheduled_count(self) -> int:
        return len(self._scheduled)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def aclose(self) -> None:
        """
        Abandon every retry that has not completed yet.

        Callers waiting on a retry get ThrottleClosedError. Resubmissions
        already running are cancelled and awaited.
        """
        states = [*self._scheduled, *self._in_flight]
        if not states:
            return

        self._log.warning("Closing with retries outstanding", outstanding=len(states))
        tasks = []
        for state in states:
            if not state.future.done():
                state.future.set_exception(
                    ThrottleClosedError(
                        "Request throttle closed before retry completed",
                        request=state.request,
                    )
                )
            if state.timer is not None:
                state.timer.cancel()
            if state.task is not None:
                state.task.cancel()
                tasks.append(state.task)
            self.stats['abandoned'] += 1

        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()
        self._in_flight.clear()

    def get_statistics(self) -> dict[str, int | float | None]:
        return {
            **self.stats,
            'retries_scheduled_now': len(self._scheduled),
            'retries_in_flight': len(self._in_flight),
            'retry_interval': self.retry_interval,
            'max_retries': self.max_retries,
        }

    def _dispatch(
        self,
        state: RetryState,
        future: asyncio.Future[httpx.Response],
        resubmit: Resubmit,
    ) -> None:
        if future.done():
            return

        self._scheduled.discard(state)
        self._in_flight.add(state)
        self.stats['dispatched'] += 1
        state.request.extensions[RETRY_ATTEMPT_KEY] = state.attempt

        state.task = asyncio.get_running_loop().create_task(
            self._resubmit(state, resubmit)
        )
        state.task.add_done_callback(lambda t: self._settle(t, future))

    async def _resubmit(
        self, state: RetryState, resubmit: Resubmit
    ) -> httpx.Response:
        async with operation_context(
            "retry_too_many_requests",
            context={"url": str(state.request.url), "attempt": state.attempt},
        ):
            return await resubmit(state.request)

    @staticmethod
    def _settle(
        task: asyncio.Task[httpx.Response],
        future: asyncio.Future[httpx.Response],
    ) -> None:
        if future.done():
            return
        if task.cancelled():
            future.cancel()
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())

    def _discard(self, state: RetryState) -> None:
        self._scheduled.discard(state)
        self._in_flight.discard(state)
        if state.timer is not None:
            state.timer.cancel()
        # Abandoned by the caller: stop the resubmission as well
        if state.task is not None:
            state.task.cancel()
