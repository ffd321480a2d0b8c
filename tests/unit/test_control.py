#!/usr/bin/env python3
"""
Unit tests for the operator control surface
"""

import asyncio
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from autopilot.clock import FakeClock
from autopilot.config import AutopilotConfig
from autopilot.control import build_control_plane
from autopilot.errors import UnknownBreakerError
from autopilot.scheduler import Scheduler


class Task:
    def __init__(self, error=None):
        self.error = error

    async def __call__(self):
        if self.error:
            raise self.error
        return {"processed": 0}


@pytest.fixture
def clock():
    return FakeClock(start=0)


@pytest.fixture
def control(clock):
    scheduler = Scheduler({"tweets": Task(), "replies": Task(RuntimeError("down"))}, interval_seconds=60)
    return build_control_plane(AutopilotConfig.from_dict({}), clock=clock, scheduler=scheduler)


class TestControlPlane:
    def test_start_and_stop_scheduler(self, control):
        async def scenario():
            first = control.start_scheduler()
            second = control.start_scheduler()
            stopped = control.stop_scheduler()
            return first, second, stopped

        first, second, stopped = asyncio.run(scenario())

        assert first == {"success": True, "message": "Scheduler started", "running": True}
        assert second["message"] == "Scheduler already running"
        assert stopped["running"] is False
        assert control.stop_scheduler()["message"] == "Scheduler was not running"

    def test_trigger_and_trigger_all(self, control):
        assert asyncio.run(control.trigger("tweets")) == {
            "success": True, "kind": "tweets", "result": {"processed": 0},
        }

        result = asyncio.run(control.trigger_all())
        assert result["success"] is False
        assert result["result"]["replies"] == {"ok": False, "error": "down"}

    def test_trigger_errors_propagate(self, control):
        with pytest.raises(RuntimeError):
            asyncio.run(control.trigger("replies"))

    def test_circuit_breakers_and_reset(self, control):
        payload = control.circuit_breakers()
        assert payload["timestamp"] == "1970-01-01T00:00:00+00:00"
        assert set(payload["circuitBreakers"]) == {"post_tweet", "token_refresh", "user_lookup"}
        assert payload["summary"]["closedCircuits"] == 3

        assert control.reset_circuit_breaker("all")["message"] == "All circuit breakers reset"
        assert control.reset_circuit_breaker("post_tweet")["reset"] == ["post_tweet"]
        with pytest.raises(UnknownBreakerError):
            control.reset_circuit_breaker("dm_send")

    def test_rate_limits(self, control):
        for _ in range(50):
            control.rate_limiter.record_call("tweets/post")

        payload = control.rate_limits()

        assert payload["rateLimits"]["tweets/post"]["status"] == "rate_limited"
        assert payload["summary"] == {
            "totalEndpoints": 4,
            "availableEndpoints": 3,
            "rateLimitedEndpoints": 1,
        }

    def test_scraping_status(self, control, clock):
        assert control.scraping_status()["canScrapeNow"] is True

        control.scrape_limiter.record_attempt(2)
        clock.advance(60)
        payload = control.scraping_status()

        assert payload["canScrapeNow"] is False
        assert payload["scrapingEnabled"] is False
        assert payload["maxUsersPerSession"] == 3
        assert payload["usersInLastHour"] == 2
        assert payload["nextAllowedTimeFormatted"] == "14 minutes"
        assert payload["nextAllowedTime"] == "1970-01-01T00:15:00+00:00"

    def test_scheduler_status(self, control):
        status = control.scheduler_status()
        assert status["isRunning"] is False
        assert status["tasks"] == ["tweets", "replies"]
