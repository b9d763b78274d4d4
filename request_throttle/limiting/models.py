"""
Rate limiting models: rule configuration, matchers and in-flight state.
"""

from __future__ import annotations

import asyncio
import math
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

import structlog

from ..exceptions import ConfigurationError
from ..logging_utils import ContextualLogger
from .bucket import TokenBucket

logger = structlog.get_logger(__name__)

# Defaults applied to fields a rule leaves out
DEFAULT_BUCKET_SIZE = 20
DEFAULT_TOKENS_PER_INTERVAL = 20
DEFAULT_TOKEN_INTERVAL = 1.0

DEFAULT_REQUEST_DELAY = 0.05
DEFAULT_RETRY_INTERVAL = 0.05

RULE_FIELDS = frozenset(
    {"match", "bucket_size", "tokens_per_interval", "token_interval"}
)

RequestPredicate = Callable[[Any], bool]


class MatcherKind(Enum):
    """How a rule decides whether it applies to a request."""
    ALL = "all"
    SUBSTRING = "substring"
    PATTERN = "pattern"
    PREDICATE = "predicate"


@dataclass(frozen=True)
class Matcher:
    """Request matcher, classified once at configuration time."""
    kind: MatcherKind
    value: str | re.Pattern[str] | RequestPredicate | None = None

    @classmethod
    def from_value(cls, value: Any) -> Matcher:
        """
        Classify a configured ``match`` value.

        Args:
            value: None or empty string, a substring, a compiled regular
                expression, or a callable taking the request

        Returns:
            Matcher of the corresponding kind

        Raises:
            ConfigurationError: If the value is none of the above
        """
        if isinstance(value, Matcher):
            return value
        if value is None or value == "":
            return cls(MatcherKind.ALL)
        if isinstance(value, str):
            return cls(MatcherKind.SUBSTRING, value)
        if isinstance(value, re.Pattern):
            return cls(MatcherKind.PATTERN, value)
        if callable(value):
            return cls(MatcherKind.PREDICATE, value)
        raise ConfigurationError(
            f"Unsupported match value of type {type(value).__name__}",
            field="match",
            value=value,
        )

    @classmethod
    def pattern(cls, expression: str) -> Matcher:
        """Build a pattern matcher from a regular expression string."""
        try:
            return cls(MatcherKind.PATTERN, re.compile(expression))
        except re.error as e:
            raise ConfigurationError(
                f"Invalid match pattern {expression!r}: {e}",
                field="pattern",
                value=expression,
            ) from e

    @property
    def matches_all(self) -> bool:
        return self.kind is MatcherKind.ALL

    def matches(self, request: Any) -> bool:
        """Check the request (its URL for string and pattern matchers)."""
        match self.kind:
            case MatcherKind.ALL:
                return True
            case MatcherKind.SUBSTRING:
                return self.value in str(request.url)
            case MatcherKind.PATTERN:
                return self.value.search(str(request.url)) is not None
            case MatcherKind.PREDICATE:
                return bool(self.value(request))


@dataclass(frozen=True)
class RuleConfig:
    """A single limiter rule: which requests, and how fast."""
    match: Matcher = field(default_factory=lambda: Matcher(MatcherKind.ALL))
    bucket_size: float = DEFAULT_BUCKET_SIZE
    tokens_per_interval: float = DEFAULT_TOKENS_PER_INTERVAL
    token_interval: float = DEFAULT_TOKEN_INTERVAL  # seconds

    def create_bucket(
        self, clock: Callable[[], float] = time.monotonic
    ) -> TokenBucket:
        """Create the bucket owned by this rule."""
        return TokenBucket(
            self.bucket_size, self.tokens_per_interval, self.token_interval, clock
        )


@dataclass(frozen=True)
class ThrottleConfig:
    """Immutable limiter configuration. Build it with ThrottleConfigBuilder."""
    rules: tuple[RuleConfig, ...] = ()
    request_delay: float = DEFAULT_REQUEST_DELAY  # seconds between token polls
    retry_interval: float | None = DEFAULT_RETRY_INTERVAL  # None disables retry
    max_retries: int | None = None  # None retries 429 responses forever

    @property
    def retry_enabled(self) -> bool:
        return self.retry_interval is not None


@dataclass(eq=False)
class PendingRequest:
    """A request waiting for a token from its bucket."""
    request: Any
    bucket: TokenBucket
    future: asyncio.Future[Any]
    poller: asyncio.Task[None] | None = None
    attempts: int = 0
    log: ContextualLogger | None = None


@dataclass(eq=False)
class RetryState:
    """A 429 response scheduled for resubmission."""
    request: Any
    scheduled_at: float  # event loop time
    attempt: int
    future: asyncio.Future[Any]  # resolves to the retried response
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[Any] | None = None  # set once the resubmission starts


def _as_number(value: Any) -> float | None:
    """Return the value as a float, or None if it is not a finite number."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _as_seconds(value: Any) -> float | None:
    """Durations may be given in seconds or as a timedelta."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return _as_number(value)


def parse_retry_interval(value: Any) -> float | None:
    """Negative, missing or non-numeric retry intervals disable retry."""
    seconds = _as_seconds(value)
    if seconds is None or seconds < 0:
        return None
    return seconds


class ThrottleConfigBuilder:
    """
    Collects rules and delays, validating each as it is added.

    Rules keep the order they were added in; the first matching rule wins.
    """

    def __init__(self) -> None:
        self._rules: list[RuleConfig] = []
        self._request_delay: float = DEFAULT_REQUEST_DELAY
        self._retry_interval: float | None = DEFAULT_RETRY_INTERVAL
        self._max_retries: int | None = None

    def add_rate_limiter(
        self,
        option: RuleConfig | Mapping[str, Any] | Iterable[RuleConfig | Mapping[str, Any]],
    ) -> ThrottleConfigBuilder:
        """
        Add a rule, or a list of rules one by one.

        Args:
            option: RuleConfig or mapping with ``match``, ``bucket_size``,
                ``tokens_per_interval`` and ``token_interval`` keys; omitted
                keys take the defaults

        Raises:
            ConfigurationError: If the rule is invalid or conflicts with the
                rules already added
        """
        if isinstance(option, RuleConfig | Mapping):
            self._add_rule(self._to_rule(option))
            return self
        if isinstance(option, str | bytes):
            raise ConfigurationError(
                "Rate limiter option must be a mapping or a list of mappings",
                value=option,
            )

        for item in option:
            self.add_rate_limiter(item)
        return self

    def set_request_delay(self, value: Any) -> ThrottleConfigBuilder:
        """Set how long a held request waits before polling its bucket again."""
        seconds = _as_seconds(value)
        if seconds is None:
            raise ConfigurationError(
                "Invalid value for request delay", field="request_delay", value=value
            )
        if seconds <= 0:
            raise ConfigurationError(
                "request_delay must be positive", field="request_delay", value=value
            )
        self._request_delay = seconds
        return self

    def set_retry_delay(self, value: Any) -> ThrottleConfigBuilder:
        """Set the delay before resubmitting a 429 response; -1 disables retry."""
        self._retry_interval = parse_retry_interval(value)
        return self

    def set_max_retries(self, value: int | None) -> ThrottleConfigBuilder:
        """Cap consecutive 429 resubmissions of one request (None: no cap)."""
        if value is not None and (
            isinstance(value, bool) or not isinstance(value, int) or value < 0
        ):
            raise ConfigurationError(
                "max_retries must be a non-negative integer or None",
                field="max_retries",
                value=value,
            )
        self._max_retries = value
        return self

    def build(self) -> ThrottleConfig:
        return ThrottleConfig(
            rules=tuple(self._rules),
            request_delay=self._request_delay,
            retry_interval=self._retry_interval,
            max_retries=self._max_retries,
        )

    def _to_rule(self, option: RuleConfig | Mapping[str, Any]) -> RuleConfig:
        if isinstance(option, RuleConfig):
            values: dict[str, Any] = {
                "match": option.match,
                "bucket_size": option.bucket_size,
                "tokens_per_interval": option.tokens_per_interval,
                "token_interval": option.token_interval,
            }
        else:
            unknown = set(option) - RULE_FIELDS
            if unknown:
                raise ConfigurationError(
                    f"Unknown rate limiter option(s): {', '.join(sorted(unknown))}",
                    field=sorted(unknown)[0],
                )
            values = {
                "match": None,
                "bucket_size": DEFAULT_BUCKET_SIZE,
                "tokens_per_interval": DEFAULT_TOKENS_PER_INTERVAL,
                "token_interval": DEFAULT_TOKEN_INTERVAL,
                **option,
            }

        matcher = Matcher.from_value(values["match"])

        bucket_size = _as_number(values["bucket_size"])
        if not bucket_size or bucket_size < 0:
            raise ConfigurationError(
                "No valid bucket_size configured for rate limiter",
                field="bucket_size",
                value=values["bucket_size"],
            )

        tokens = _as_number(values["tokens_per_interval"])
        if tokens is None or tokens < 0:
            raise ConfigurationError(
                "Invalid tokens_per_interval value",
                field="tokens_per_interval",
                value=values["tokens_per_interval"],
            )

        interval = _as_seconds(values["token_interval"])
        if interval is None or interval <= 0:
            raise ConfigurationError(
                "Invalid token_interval value",
                field="token_interval",
                value=values["token_interval"],
            )

        return RuleConfig(
            match=matcher,
            bucket_size=bucket_size,
            tokens_per_interval=tokens,
            token_interval=interval,
        )

    def _add_rule(self, rule: RuleConfig) -> None:
        if rule.match.matches_all:
            if self._rules:
                raise ConfigurationError(
                    "Cannot add rate limiter that matches all requests "
                    "when other rules are defined",
                    field="match",
                )
            logger.debug("Adding match-all rate limiter rule")
        elif self._rules and self._rules[0].match.matches_all:
            raise ConfigurationError(
                "Cannot add rate limiter after a rule that matches all requests",
                field="match",
            )

        self._rules.append(rule)
