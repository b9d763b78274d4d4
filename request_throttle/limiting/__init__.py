"""
Rate limiting engine for outgoing requests.

This package contains:
- Token buckets with continuous refill
- Ordered rule matching (substring, pattern, predicate)
- The request gate that holds requests until a token is free
- The retry policy for 429 Too Many Requests responses
"""

from __future__ import annotations

from .bucket import TokenBucket
from .gate import RequestGate
from .interceptor import ThrottleInterceptor
from .models import (
    Matcher,
    MatcherKind,
    PendingRequest,
    RetryState,
    RuleConfig,
    ThrottleConfig,
    ThrottleConfigBuilder,
)
from .retry import RETRY_ATTEMPT_KEY, RetryPolicy
from .rules import RuleSet

__all__ = [
    "RETRY_ATTEMPT_KEY",
    "Matcher",
    "MatcherKind",
    "PendingRequest",
    "RequestGate",
    "RetryPolicy",
    "RetryState",
    "RuleConfig",
    "RuleSet",
    "ThrottleConfig",
    "ThrottleConfigBuilder",
    "ThrottleInterceptor",
    "TokenBucket",
]
