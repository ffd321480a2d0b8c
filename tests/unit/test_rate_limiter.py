#!/usr/bin/env python3
"""
Unit tests for the sliding-window rate limiter
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from autopilot.clock import FakeClock
from autopilot.config import AutopilotConfig, EndpointQuota
from autopilot.errors import RateLimitExceeded, UnknownEndpointError
from autopilot.rate_limiter import RateLimiter


class TestRateLimiter:
    """Test window accounting, reset hints and admission."""

    @pytest.fixture
    def clock(self):
        return FakeClock(start=1000)

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter({"tweets/post": EndpointQuota(max_calls=3, window_sec=60)}, clock=clock)

    def test_fresh_window_allows(self, limiter):
        result = limiter.check_limit("tweets/post")
        assert result.allowed
        assert result.remaining == 3
        assert result.reset_time is None

    def test_check_does_not_record(self, limiter):
        limiter.check_limit("tweets/post")
        limiter.check_limit("tweets/post")
        assert limiter.check_limit("tweets/post").remaining == 3

    def test_full_window_refuses_until_oldest_ages_out(self, limiter, clock):
        limiter.record_call("tweets/post")
        clock.advance(10)
        limiter.record_call("tweets/post")
        limiter.record_call("tweets/post")

        result = limiter.check_limit("tweets/post")
        assert not result.allowed
        assert result.remaining == 0
        assert result.reset_time == 1060

        clock.set(1059.9)
        assert not limiter.check_limit("tweets/post").allowed

        clock.set(1060)
        result = limiter.check_limit("tweets/post")
        assert result.allowed
        assert result.remaining == 1

    def test_time_until_reset(self, limiter, clock):
        assert limiter.get_time_until_reset("tweets/post") == 0
        limiter.record_call("tweets/post")
        clock.advance(15)
        assert limiter.get_time_until_reset("tweets/post") == 45

    def test_admit_records_and_raises_when_full(self, limiter, clock):
        for _ in range(3):
            limiter.admit("tweets/post")

        clock.advance(20)
        with pytest.raises(RateLimitExceeded) as excinfo:
            limiter.admit("tweets/post")

        assert excinfo.value.wait_seconds == 40
        assert excinfo.value.code == "rate_limited"
        # the refused call was not recorded
        clock.advance(40)
        assert limiter.check_limit("tweets/post").remaining == 3

    def test_unknown_endpoint_is_configuration_error(self, limiter):
        with pytest.raises(UnknownEndpointError):
            limiter.check_limit("dm/send")

    def test_status_report(self, limiter, clock):
        for _ in range(3):
            limiter.record_call("tweets/post")

        report = limiter.status()["tweets/post"]
        assert report["status"] == "rate_limited"
        assert report["remaining"] == 0
        assert report["timeUntilReset"] == 60
        assert report["resetTime"].startswith("1970-01-01T00:17:40")


class TestDefaultQuotas:
    def test_default_endpoints(self):
        limiter = RateLimiter(AutopilotConfig.from_dict({}).rate_limits, clock=FakeClock())
        assert limiter.endpoints == ["tweets/post", "tweets/lookup", "users/lookup", "search/recent"]
        assert limiter.check_limit("search/recent").remaining == 180
