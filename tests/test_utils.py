"""
Tests for shared helpers.
"""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from apiguard.services.errors import HttpStatusError, RateLimitError
from apiguard.utils import observer_guard, parse_retry_after


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        "raw,expected",
        [("120", 120.0), ("1.5", 1.5), (3, 3.0), ("-4", 0.0), (0, 0.0)],
    )
    def test_delta_seconds(self, raw, expected):
        assert parse_retry_after(raw) == expected

    @pytest.mark.parametrize(
        "raw", [None, "", "soon", "inf", "-inf", "nan", "1e400", float("inf"), float("nan")]
    )
    def test_missing_or_invalid(self, raw):
        assert parse_retry_after(raw) is None

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        seconds = parse_retry_after(format_datetime(when, usegmt=True))
        assert 25 <= seconds <= 31

    def test_past_http_date_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_header_lookup_is_case_insensitive(self):
        assert HttpStatusError(429, headers={"retry-after": "7"}).retry_after == 7.0
        assert HttpStatusError(429, headers={"Retry-After": "7"}).retry_after == 7.0
        assert HttpStatusError(429).retry_after is None


class TestObserverGuard:
    @pytest.mark.asyncio
    async def test_sync_observer_is_called(self):
        seen = []
        await observer_guard(seen.append)("x")
        assert seen == ["x"]

    @pytest.mark.asyncio
    async def test_async_observer_is_awaited(self):
        seen = []

        async def observer(value):
            seen.append(value)

        await observer_guard(observer)("x")
        assert seen == ["x"]

    @pytest.mark.asyncio
    async def test_exceptions_are_swallowed(self):
        def explode():
            raise RuntimeError("boom")

        assert await observer_guard(explode)() is None


class TestErrors:
    def test_to_dict(self):
        error = RateLimitError("venues", retry_after=2.0, retry_count=3)
        data = error.to_dict()

        assert data["kind"] == "rate_limit"
        assert data["status"] == 429
        assert data["retry_count"] == 3
        assert "venues" in data["message"]
