"""
Unit tests for the numeric helpers, retry policy and rate limiters.

Pure computation; no database.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from bizpulse.errors import RateLimitedError, RemoteRequestError, TransientRemoteError
from bizpulse.utils.helpers import (
    minor_to_major,
    normalize_mrr,
    parse_timestamp,
    percent_change,
    quantize_money,
)
from bizpulse.utils.rate_limiter import SlidingWindowLimiter
from bizpulse.utils.retry import RetryPolicy, RetryStats, call_with_retry

from tests.conftest import run


# ────────────────────────────────────────────
# PERCENT CHANGE
# ────────────────────────────────────────────


class TestPercentChange:

    def test_zero_baseline_with_growth_is_100(self):
        assert percent_change(100, 0) == Decimal("100")

    def test_zero_baseline_without_growth_is_0(self):
        assert percent_change(0, 0) == Decimal("0")

    def test_regular_change(self):
        assert percent_change(Decimal("1000"), Decimal("880")).quantize(Decimal("0.1")) == Decimal("13.6")

    def test_decline_against_negative_baseline(self):
        """Net revenue can be negative; the sign follows the direction of travel"""
        assert percent_change(-50, -100) == Decimal("50")


# ────────────────────────────────────────────
# MRR NORMALIZATION
# ────────────────────────────────────────────


class TestNormalizeMrr:

    def test_weekly(self):
        assert normalize_mrr(Decimal("70"), "week") == Decimal("303.10")

    def test_yearly(self):
        assert quantize_money(normalize_mrr(Decimal("1200"), "year")) == Decimal("100.00")

    def test_daily_and_monthly(self):
        assert normalize_mrr(Decimal("2"), "day") == Decimal("60")
        assert normalize_mrr(Decimal("49"), "month") == Decimal("49")

    def test_interval_count_and_quantity(self):
        """Every 3 months, 2 seats at 30 -> 20 per month"""
        assert normalize_mrr(Decimal("30"), "month", interval_count=3, quantity=2) == Decimal("20")

    def test_unknown_interval(self):
        with pytest.raises(ValueError):
            normalize_mrr(10, "fortnight")


class TestAmounts:

    def test_minor_units(self):
        assert minor_to_major(1999, "usd") == Decimal("19.99")

    def test_zero_decimal_currency(self):
        assert minor_to_major(500, "JPY") == Decimal("500")

    def test_no_float_drift(self):
        total = sum((minor_to_major(10, "usd") for _ in range(1000)), Decimal("0"))
        assert total == Decimal("100")


class TestParseTimestamp:

    def test_unix_seconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1)

    def test_iso_with_offset_is_converted_to_utc(self):
        assert parse_timestamp("2024-03-01T10:00:00+10:00") == datetime(2024, 3, 1, 0, 0)

    def test_iso_zulu(self):
        assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0)

    def test_ga4_compact_date(self):
        assert parse_timestamp("20240301") == datetime(2024, 3, 1)

    def test_garbage(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None


# ────────────────────────────────────────────
# RETRY
# ────────────────────────────────────────────


class TestCallWithRetry:

    def _policy(self, attempts=3):
        return RetryPolicy(max_attempts=attempts, base_delay=0.5, max_delay=4, jitter=False)

    def test_retries_transient_then_succeeds(self):
        calls = []
        delays = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientRemoteError("503", "stripe", 503)
            return "ok"

        async def fake_sleep(seconds):
            delays.append(seconds)

        stats = RetryStats()
        assert run(call_with_retry(self._policy(), flaky, stats=stats, sleep=fake_sleep)) == "ok"
        assert len(calls) == 3
        assert delays == [0.5, 1.0]
        assert stats.success and stats.attempts == 3

    def test_non_retryable_raises_immediately(self):
        calls = []

        async def bad_request():
            calls.append(1)
            raise RemoteRequestError("400", "stripe", 400)

        async def fake_sleep(seconds):
            raise AssertionError("should not sleep")

        with pytest.raises(RemoteRequestError):
            run(call_with_retry(self._policy(), bad_request, sleep=fake_sleep))
        assert len(calls) == 1

    def test_gives_up_after_max_attempts(self):
        calls = []

        async def always_down():
            calls.append(1)
            raise TransientRemoteError("timeout", "shopify")

        async def fake_sleep(seconds):
            return None

        stats = RetryStats()
        with pytest.raises(TransientRemoteError):
            run(call_with_retry(self._policy(attempts=2), always_down, stats=stats, sleep=fake_sleep))
        assert len(calls) == 2
        assert len(stats.errors) == 2

    def test_retry_after_sets_minimum_delay(self):
        policy = self._policy()
        error = RateLimitedError("429", "shopify", retry_after=3)
        assert policy.delay_for(1, error) == 3
        # Capped by max_delay
        assert policy.delay_for(1, RateLimitedError("429", "shopify", retry_after=60)) == 4


# ────────────────────────────────────────────
# RATE LIMITING
# ────────────────────────────────────────────


class TestSlidingWindowLimiter:

    def test_limits_per_key_within_window(self):
        now = [0.0]
        limiter = SlidingWindowLimiter(2, 60, clock=lambda: now[0])

        assert limiter.allow(1)
        assert limiter.allow(1)
        assert not limiter.allow(1)
        assert limiter.allow(2)  # Separate key

        now[0] = 61
        assert limiter.allow(1)
        assert limiter.remaining(1) == 1
