"""
Tests for rule matching and bucket resolution.
"""

import re

import httpx
import pytest

from request_throttle.exceptions import ConfigurationError
from request_throttle.limiting.models import Matcher, MatcherKind, ThrottleConfigBuilder
from request_throttle.limiting.rules import RuleSet


def make_rules(clock, *options):
    builder = ThrottleConfigBuilder()
    for option in options:
        builder.add_rate_limiter(option)
    return RuleSet(builder.build(), clock)


class TestMatcher:
    """Matcher classification and dispatch."""

    @pytest.mark.parametrize(
        ("value", "kind"),
        [
            (None, MatcherKind.ALL),
            ("", MatcherKind.ALL),
            ("api.example.com", MatcherKind.SUBSTRING),
            (re.compile(r"example\.com$"), MatcherKind.PATTERN),
            (lambda request: True, MatcherKind.PREDICATE),
        ],
    )
    def test_classifies_match_values(self, value, kind):
        assert Matcher.from_value(value).kind is kind

    def test_rejects_unsupported_value(self):
        with pytest.raises(ConfigurationError, match="Unsupported match value") as exc_info:
            Matcher.from_value(42)
        assert exc_info.value.field == "match"

    def test_pattern_from_string(self):
        matcher = Matcher.pattern(r"^https://api\.")
        assert matcher.kind is MatcherKind.PATTERN
        assert matcher.matches(httpx.Request("GET", "https://api.example.com/"))
        assert not matcher.matches(httpx.Request("GET", "https://www.example.com/"))

    def test_invalid_pattern(self):
        with pytest.raises(ConfigurationError, match="Invalid match pattern"):
            Matcher.pattern("([unclosed")

    def test_substring_matches_anywhere_in_url(self):
        matcher = Matcher.from_value("mydomain.com")
        assert matcher.matches(httpx.Request("GET", "https://api.mydomain.com/rest"))
        assert matcher.matches(httpx.Request("GET", "https://example.com/?ref=mydomain.com"))
        assert not matcher.matches(httpx.Request("GET", "https://example.com"))

    def test_predicate_receives_request(self):
        seen = []

        def only_posts(request):
            seen.append(request)
            return request.method == "POST"

        matcher = Matcher.from_value(only_posts)
        post = httpx.Request("POST", "https://example.com")

        assert matcher.matches(post)
        assert not matcher.matches(httpx.Request("GET", "https://example.com"))
        assert seen[0] is post


class TestRuleSet:
    """Resolving requests to buckets."""

    def test_first_match_wins(self, clock):
        rules = make_rules(
            clock,
            {"match": "example.com", "bucket_size": 1},
            {"match": "api.", "bucket_size": 5},
        )
        (_, first), (_, second) = list(rules)

        request = httpx.Request("GET", "https://api.example.com/v1")
        for _ in range(3):
            assert rules.resolve(request) is first
        assert rules.resolve(request) is not second

    def test_later_rule_used_when_earlier_does_not_match(self, clock):
        rules = make_rules(
            clock,
            {"match": "mydomain.com"},
            {"match": "other.org"},
        )
        (_, _first), (_, second) = list(rules)

        assert rules.resolve(httpx.Request("GET", "https://other.org/")) is second

    def test_no_match(self, clock):
        rules = make_rules(clock, {"match": "mydomain.com"})
        assert rules.resolve(httpx.Request("GET", "https://example.com")) is None

    def test_regexp_rule(self, clock):
        rules = make_rules(
            clock,
            {"match": re.compile(r"^(.*)://(api|rest)\.test\.com"), "bucket_size": 2},
        )

        assert rules.resolve(httpx.Request("GET", "https://api.test.com")) is not None
        assert rules.resolve(httpx.Request("GET", "http://rest.test.com")) is not None
        assert rules.resolve(httpx.Request("GET", "http://www.test.com")) is None

    def test_predicate_rule_that_never_matches(self, clock):
        rules = make_rules(clock, {"match": lambda request: False})
        assert rules.resolve(httpx.Request("GET", "https://example.com")) is None

    def test_match_all_rule(self, clock):
        rules = make_rules(clock, {"bucket_size": 3})
        assert rules.resolve(httpx.Request("GET", "https://anything.example")) is not None

    def test_each_rule_owns_a_bucket(self, clock):
        rules = make_rules(
            clock,
            {"match": "a.example", "bucket_size": 1},
            {"match": "b.example", "bucket_size": 1},
        )
        bucket_a = rules.resolve(httpx.Request("GET", "https://a.example"))
        bucket_b = rules.resolve(httpx.Request("GET", "https://b.example"))

        assert bucket_a.try_withdraw(1)
        assert not bucket_a.try_withdraw(1)
        assert bucket_b.try_withdraw(1)

    def test_buckets_use_rule_settings(self, clock):
        rules = make_rules(
            clock,
            {"match": "a", "bucket_size": 10, "tokens_per_interval": 1, "token_interval": 0.1},
        )
        (_, bucket), = list(rules)

        assert bucket.capacity == 10
        assert bucket.refill_rate == 1
        assert bucket.refill_period == 0.1
        assert bucket.content == 10

    def test_statistics(self, clock):
        rules = make_rules(
            clock,
            {"match": "mydomain.com", "bucket_size": 2},
            {"match": re.compile(r"test\.com"), "bucket_size": 4},
        )
        rules.resolve(httpx.Request("GET", "https://mydomain.com")).try_withdraw(1)

        stats = rules.get_statistics()

        assert len(rules) == 2
        assert stats[0] == {
            "match_kind": "substring",
            "match": "mydomain.com",
            "capacity": 2,
            "content": 1,
        }
        assert stats[1]["match_kind"] == "pattern"
        assert stats[1]["match"] == r"test\.com"
