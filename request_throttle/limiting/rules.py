"""
Rule set: maps each outgoing request to at most one token bucket.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

from .bucket import TokenBucket
from .models import Matcher, MatcherKind, ThrottleConfig


class RuleSet:
    """Ordered (matcher, bucket) pairs; the first matching rule wins."""

    def __init__(
        self,
        config: ThrottleConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limiters: tuple[tuple[Matcher, TokenBucket], ...] = tuple(
            (rule.match, rule.create_bucket(clock)) for rule in config.rules
        )

    def resolve(self, request: Any) -> TokenBucket | None:
        """Return the bucket of the first rule matching the request, if any."""
        for matcher, bucket in self._limiters:
            if matcher.matches(request):
                return bucket
        return None

    def __len__(self) -> int:
        return len(self._limiters)

    def __iter__(self) -> Iterator[tuple[Matcher, TokenBucket]]:
        return iter(self._limiters)

    def get_statistics(self) -> list[dict[str, Any]]:
        """Snapshot of every bucket, in rule order."""
        stats = []
        for matcher, bucket in self._limiters:
            value = matcher.value
            if matcher.kind is MatcherKind.PATTERN:
                value = value.pattern
            elif matcher.kind is MatcherKind.PREDICATE:
                value = getattr(value, "__name__", repr(value))
            stats.append({
                'match_kind': matcher.kind.value,
                'match': value,
                'capacity': bucket.capacity,
                'content': round(bucket.content, 3),
            })
        return stats
