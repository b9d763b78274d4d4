"""
Tests for resubmitting 429 Too Many Requests responses.
"""

import asyncio

import httpx
import pytest

from request_throttle.exceptions import ThrottleClosedError
from request_throttle.limiting.models import ThrottleConfigBuilder
from request_throttle.limiting.retry import RETRY_ATTEMPT_KEY, RetryPolicy

URL = "https://api.example.com/items"


def make_response(status_code, request=None):
    return httpx.Response(status_code, request=request or httpx.Request("GET", URL))


class TestFromConfig:
    """Installing the policy."""

    def test_disabled_by_negative_interval(self):
        config = ThrottleConfigBuilder().set_retry_delay(-1).build()
        assert RetryPolicy.from_config(config) is None

    def test_enabled(self):
        config = ThrottleConfigBuilder().set_retry_delay(0.2).set_max_retries(3).build()

        policy = RetryPolicy.from_config(config)

        assert policy.retry_interval == 0.2
        assert policy.max_retries == 3


class TestOnResponse:
    """Reacting to completed responses."""

    @pytest.mark.parametrize("status_code", [200, 400, 404, 500, 503])
    def test_other_statuses_pass_through(self, status_code):
        policy = RetryPolicy(0.01)
        response = make_response(status_code)

        async def resubmit(request):
            raise AssertionError("must not resubmit")

        assert policy.on_response(response, resubmit) is response
        assert policy.stats["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_too_many_requests_is_resubmitted(self):
        policy = RetryPolicy(0.01)
        request = httpx.Request("GET", URL)
        resubmitted = []

        async def resubmit(req):
            resubmitted.append(req)
            return httpx.Response(200, request=req)

        outcome = policy.on_response(make_response(429, request), resubmit)

        assert isinstance(outcome, asyncio.Future)
        assert policy.scheduled_count == 1

        response = await asyncio.wait_for(outcome, timeout=1.0)

        assert response.status_code == 200
        assert resubmitted == [request]
        assert request.extensions[RETRY_ATTEMPT_KEY] == 1
        assert policy.scheduled_count == 0
        assert policy.stats["dispatched"] == 1

    @pytest.mark.asyncio
    async def test_waits_for_retry_interval(self):
        policy = RetryPolicy(0.05)
        loop = asyncio.get_running_loop()
        dispatched_at = []

        async def resubmit(req):
            dispatched_at.append(loop.time())
            return httpx.Response(200, request=req)

        started = loop.time()
        await asyncio.wait_for(policy.on_response(make_response(429), resubmit), 1.0)

        assert dispatched_at[0] - started >= 0.04

    @pytest.mark.asyncio
    async def test_resubmission_error_reaches_caller(self):
        policy = RetryPolicy(0.0)

        async def resubmit(req):
            raise httpx.ConnectError("connection refused", request=req)

        with pytest.raises(httpx.ConnectError, match="connection refused"):
            await asyncio.wait_for(policy.on_response(make_response(429), resubmit), 1.0)

    @pytest.mark.asyncio
    async def test_retry_ceiling(self):
        policy = RetryPolicy(0.0, max_retries=2)
        request = httpx.Request("GET", URL)
        request.extensions[RETRY_ATTEMPT_KEY] = 2
        response = make_response(429, request)

        async def resubmit(req):
            raise AssertionError("must not resubmit")

        assert policy.on_response(response, resubmit) is response
        assert policy.stats["exhausted"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_dispatch(self):
        policy = RetryPolicy(0.05)
        calls = []

        async def resubmit(req):
            calls.append(req)
            return httpx.Response(200, request=req)

        outcome = policy.on_response(make_response(429), resubmit)
        outcome.cancel()
        await asyncio.sleep(0.1)

        assert calls == []
        assert policy.scheduled_count == 0

    @pytest.mark.asyncio
    async def test_statistics(self):
        policy = RetryPolicy(0.0, max_retries=5)

        async def resubmit(req):
            return httpx.Response(200, request=req)

        await asyncio.wait_for(policy.on_response(make_response(429), resubmit), 1.0)
        stats = policy.get_statistics()

        assert stats["scheduled"] == 1
        assert stats["dispatched"] == 1
        assert stats["exhausted"] == 0
        assert stats["retries_scheduled_now"] == 0
        assert stats["retry_interval"] == 0.0
        assert stats["max_retries"] == 5


class TestClose:
    """Shutting the policy down with retries outstanding."""

    @pytest.mark.asyncio
    async def test_scheduled_retry_never_fires(self):
        policy = RetryPolicy(0.05)
        calls = []

        async def resubmit(req):
            calls.append(req)
            return httpx.Response(200, request=req)

        outcome = policy.on_response(make_response(429), resubmit)
        await policy.aclose()
        await asyncio.sleep(0.1)

        assert calls == []
        assert policy.scheduled_count == 0
        assert policy.stats["abandoned"] == 1
        with pytest.raises(ThrottleClosedError):
            await outcome

    @pytest.mark.asyncio
    async def test_running_resubmission_is_cancelled(self):
        policy = RetryPolicy(0.0)
        started = asyncio.Event()
        cancelled = []

        async def resubmit(req):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(req)
                raise
            return httpx.Response(200, request=req)

        outcome = policy.on_response(make_response(429), resubmit)
        await asyncio.wait_for(started.wait(), 1.0)
        assert policy.in_flight_count == 1

        await policy.aclose()

        assert len(cancelled) == 1
        assert policy.in_flight_count == 0
        with pytest.raises(ThrottleClosedError):
            await outcome

    @pytest.mark.asyncio
    async def test_aclose_without_retries(self):
        policy = RetryPolicy(0.01)
        await policy.aclose()
        assert policy.stats["abandoned"] == 0
