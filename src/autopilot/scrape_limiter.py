"""Admission control for bulk scraping of target accounts."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

HOUR = 3600.0


@dataclass(frozen=True)
class ScrapeAttempt:
    timestamp: float
    user_count: int


@dataclass(frozen=True)
class ScrapeDecision:
    allowed: bool
    reason: Optional[str] = None
    wait_time: Optional[float] = None
    code: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"allowed": self.allowed}
        if not self.allowed:
            payload.update(reason=self.reason, waitTime=self.wait_time, code=self.code)
        return payload


@dataclass(frozen=True)
class ScrapeStatus:
    attempts_in_last_hour: int
    users_in_last_hour: int
    max_attempts: int
    max_users: int
    next_allowed_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "attemptsInLastHour": self.attempts_in_last_hour,
            "usersInLastHour": self.users_in_last_hour,
            "maxAttempts": self.max_attempts,
            "maxUsers": self.max_users,
            "nextAllowedTime": self.next_allowed_time,
        }


class ScrapeLimiter:
    """
    Three ANDed constraints over the last hour of scrape attempts:
    attempts per hour, total users per hour and a cooldown since the last
    attempt. Checks run in that order and only the first refusal is reported.
    """

    def __init__(
        self,
        max_attempts_per_hour: int = 3,
        max_users_per_hour: int = 10,
        cooldown_minutes: int = 15,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts_per_hour = max_attempts_per_hour
        self.max_users_per_hour = max_users_per_hour
        self.cooldown_minutes = cooldown_minutes
        self._clock = clock
        self._attempts: List[ScrapeAttempt] = []

    @classmethod
    def from_config(cls, limits, clock: Callable[[], float] = time.time) -> "ScrapeLimiter":
        return cls(
            max_attempts_per_hour=limits.max_attempts_per_hour,
            max_users_per_hour=limits.max_users_per_hour,
            cooldown_minutes=limits.cooldown_minutes,
            clock=clock,
        )

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_minutes * 60.0

    def _cleanup(self, now: float) -> None:
        one_hour_ago = now - HOUR
        self._attempts = [a for a in self._attempts if a.timestamp > one_hour_ago]

    def can_scrape(self, user_count: int = 1) -> ScrapeDecision:
        now = self._clock()
        self._cleanup(now)

        attempts = len(self._attempts)
        if attempts >= self.max_attempts_per_hour:
            oldest = min(a.timestamp for a in self._attempts)
            return ScrapeDecision(
                allowed=False,
                reason=(
                    f"Too many scraping attempts "
                    f"({attempts}/{self.max_attempts_per_hour} per hour)"
                ),
                wait_time=max(0.0, oldest + HOUR - now),
                code="too_many_attempts",
            )

        users = sum(a.user_count for a in self._attempts)
        if users + user_count > self.max_users_per_hour:
            return ScrapeDecision(
                allowed=False,
                reason=(
                    f"Too many users scraped "
                    f"({users + user_count}/{self.max_users_per_hour} per hour)"
                ),
                wait_time=HOUR,
                code="too_many_users",
            )

        if self._attempts:
            since_last = now - max(a.timestamp for a in self._attempts)
            if since_last < self.cooldown_seconds:
                return ScrapeDecision(
                    allowed=False,
                    reason=(
                        f"Cooldown period active "
                        f"({self.cooldown_minutes} min between attempts)"
                    ),
                    wait_time=self.cooldown_seconds - since_last,
                    code="cooldown",
                )

        return ScrapeDecision(allowed=True)

    def record_attempt(self, user_count: int) -> None:
        """Only call after an admitted attempt actually ran."""
        self._attempts.append(ScrapeAttempt(timestamp=self._clock(), user_count=user_count))
        logger.info(
            "Scrape attempt recorded: %d users. Total attempts in last hour: %d",
            user_count, len(self._attempts),
        )

    def get_status(self) -> ScrapeStatus:
        now = self._clock()
        self._cleanup(now)

        next_allowed: Optional[float] = None
        if self._attempts:
            next_allowed = max(a.timestamp for a in self._attempts) + self.cooldown_seconds

        return ScrapeStatus(
            attempts_in_last_hour=len(self._attempts),
            users_in_last_hour=sum(a.user_count for a in self._attempts),
            max_attempts=self.max_attempts_per_hour,
            max_users=self.max_users_per_hour,
            next_allowed_time=next_allowed,
        )

    @staticmethod
    def format_wait_time(wait_seconds: float) -> str:
        return format_wait_time(wait_seconds)


def format_wait_time(wait_seconds: float) -> str:
    """'N minute(s)' under an hour, otherwise 'N hour(s)'. Rounds up."""
    minutes = math.ceil(wait_seconds / 60)
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'}"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'' if hours == 1 else 's'}"
