"""
Error types for the request throttle.

The package raises errors of its own in two situations:
- Invalid limiter configuration (bucket sizes, refill settings, rule placement,
  malformed configuration files)
- Requests still held or awaiting a retry when the transport is closed

Admission and retry outcomes are otherwise values, not exceptions.
"""

from __future__ import annotations

import httpx


class ThrottleError(Exception):
    """Base error for the request throttle."""


class ConfigurationError(ThrottleError, ValueError):
    """Invalid limiter configuration, raised before any request is gated."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: object | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.value = value


class ThrottleClosedError(ThrottleError, httpx.TransportError):
    """A held or retrying request was abandoned because the throttle closed."""
