#!/usr/bin/env python3
"""
Sliding-window rate limiter for X API endpoint quotas

One window per endpoint key (tweets/post, tweets/lookup, users/lookup,
search/recent). Advisory only: check_limit() answers "may I call now?",
record_call() is made by the caller once the call actually goes out.

Skipping record_call() for a call that never happened leaves the window
untouched, so refused or abandoned work never eats quota.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Mapping, Optional

from .config import EndpointQuota
from .errors import RateLimitExceeded, UnknownEndpointError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: Optional[float] = None


class RateLimiter:
    """
    Per-endpoint sliding windows.

    The endpoint set is fixed at construction. Asking about an endpoint
    that was never configured is a configuration error, not a refusal.
    """

    def __init__(
        self,
        quotas: Mapping[str, EndpointQuota],
        clock: Callable[[], float] = time.time,
    ):
        self._quotas: Dict[str, EndpointQuota] = dict(quotas)
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {endpoint: deque() for endpoint in self._quotas}

    @property
    def endpoints(self) -> list:
        return list(self._quotas)

    # ── Window maintenance ──

    def _window(self, endpoint: str) -> Deque[float]:
        if endpoint not in self._quotas:
            raise UnknownEndpointError(
                f"Unknown rate-limited endpoint '{endpoint}'. "
                f"Configured: {', '.join(self._quotas)}"
            )
        return self._calls[endpoint]

    def _prune(self, endpoint: str, now: float) -> Deque[float]:
        calls = self._window(endpoint)
        cutoff = now - self._quotas[endpoint].window_sec
        while calls and calls[0] <= cutoff:
            calls.popleft()
        return calls

    # ── Admission ──

    def check_limit(self, endpoint: str) -> RateLimitResult:
        """Is one more call to ``endpoint`` allowed right now? Does not record."""
        now = self._clock()
        calls = self._prune(endpoint, now)
        quota = self._quotas[endpoint]

        reset_time = calls[0] + quota.window_sec if calls else None
        return RateLimitResult(
            allowed=len(calls) < quota.max_calls,
            remaining=max(0, quota.max_calls - len(calls)),
            reset_time=reset_time,
        )

    def record_call(self, endpoint: str) -> None:
        """Called after the caller actually made the call."""
        self._window(endpoint).append(self._clock())

    def get_time_until_reset(self, endpoint: str) -> float:
        result = self.check_limit(endpoint)
        if result.reset_time is None:
            return 0.0
        return max(0.0, result.reset_time - self._clock())

    def admit(self, endpoint: str) -> RateLimitResult:
        """check_limit + record_call for callers that will proceed immediately.

        Raises RateLimitExceeded with the wait hint when the window is full.
        """
        result = self.check_limit(endpoint)
        if not result.allowed:
            wait = self.get_time_until_reset(endpoint)
            logger.warning("Rate limit hit for %s, window frees in %.0fs", endpoint, wait)
            raise RateLimitExceeded(endpoint, wait)
        self.record_call(endpoint)
        return result

    # ── Diagnostics ──

    def status(self) -> Dict[str, dict]:
        """Per-endpoint snapshot for operator tooling."""
        report = {}
        for endpoint in self._quotas:
            result = self.check_limit(endpoint)
            until_reset = self.get_time_until_reset(endpoint)
            report[endpoint] = {
                "allowed": result.allowed,
                "remaining": result.remaining,
                "resetTime": (
                    datetime.fromtimestamp(result.reset_time, tz=timezone.utc).isoformat()
                    if result.reset_time is not None
                    else None
                ),
                "timeUntilReset": until_reset,
                "status": "available" if result.allowed else "rate_limited",
            }
        return report
