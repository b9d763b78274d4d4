"""
Client-side rate limiting for outgoing HTTP requests.

This package throttles requests made through httpx with:
- Per-endpoint token buckets selected by ordered rules
- Non-blocking hold and release of requests that exceed their rate
- Automatic resubmission of 429 Too Many Requests responses
- YAML and environment based configuration
"""

from __future__ import annotations

from .config import Configuration
from .exceptions import ConfigurationError, ThrottleClosedError, ThrottleError
from .limiting import (
    Matcher,
    MatcherKind,
    RequestGate,
    RetryPolicy,
    RuleConfig,
    RuleSet,
    ThrottleConfig,
    ThrottleConfigBuilder,
    ThrottleInterceptor,
    TokenBucket,
)
from .transport import ThrottledTransport, create_client

__all__ = [
    # Configuration
    "Configuration",
    "ConfigurationError",
    # Engine
    "Matcher",
    "MatcherKind",
    "RequestGate",
    "RetryPolicy",
    "RuleConfig",
    "RuleSet",
    "ThrottleConfig",
    "ThrottleConfigBuilder",
    "ThrottleClosedError",
    "ThrottleError",
    "ThrottleInterceptor",
    # httpx integration
    "ThrottledTransport",
    "TokenBucket",
    "create_client",
]
