#!/usr/bin/env python3
"""
Throttle Demo Script

This script shows the configured limiter settings and sends a burst of
requests through a throttled client against a local mock server, so the
effect of the rules and the 429 retry can be seen without network access.
"""

import asyncio
import time

import httpx

from request_throttle import Configuration, ThrottleConfigBuilder, ThrottledTransport
from request_throttle.logging_utils import configure_logging

DEMO_RULE = {
    "match": "api.example.com",
    "bucket_size": 3,
    "tokens_per_interval": 1,
    "token_interval": 0.2,
}


def mock_server():
    """Answer every fifth request with 429 Too Many Requests."""
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        if calls % 5 == 0:
            return httpx.Response(429, json={"error": "slow down"})
        return httpx.Response(200, json={"call": calls, "path": request.url.path})

    return handler


async def send_burst(config, count=8):
    transport = ThrottledTransport(config, httpx.MockTransport(mock_server()))
    async with httpx.AsyncClient(transport=transport) as client:
        started = time.perf_counter()

        async def timed_get(index):
            response = await client.get(f"https://api.example.com/items/{index}")
            elapsed = time.perf_counter() - started
            print(f"  • request {index}: {response.status_code} after {elapsed:.2f}s")

        await asyncio.gather(*(timed_get(i) for i in range(count)))
        return transport.get_statistics()


def main():
    """Demonstrate limiter configuration and behaviour."""
    print("🔧 Request Throttle Demo")
    print("=" * 50)

    configuration = Configuration()
    configure_logging(configuration.get_logging_config())
    config = configuration.get_throttle_config()

    print(f"\n📋 Loaded from: {configuration.config_path}")
    print(f"  • Request delay: {config.request_delay}s")
    print(f"  • Retry interval: {config.retry_interval}")
    print(f"  • Max retries: {config.max_retries}")
    print(f"  • Rules: {len(config.rules)}")

    if not config.rules:
        print("\n➕ No rules configured, using a demo rule:")
        print(f"  {DEMO_RULE}")
        config = (
            ThrottleConfigBuilder()
            .add_rate_limiter(DEMO_RULE)
            .set_request_delay(config.request_delay)
            .set_retry_delay(config.retry_interval if config.retry_enabled else -1)
            .set_max_retries(config.max_retries)
            .build()
        )

    print("\n🌊 Sending a burst of requests:")
    stats = asyncio.run(send_burst(config))

    print("\n📊 Statistics:")
    for section, values in stats.items():
        print(f"  • {section}: {values}")


if __name__ == "__main__":
    main()
