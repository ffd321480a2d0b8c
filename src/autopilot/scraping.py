"""
Scrape scheduling and execution.

ScrapeScheduler finds accounts whose active targets have gone stale and
enqueues one job per account, never one per target, so a whole account's
targets are scraped in a single limiter-admitted session. ScrapeRunner runs
such a job under the ScrapeLimiter and the user_lookup circuit breaker.
ScrapeQueue joins the two as one scheduler task.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol

from .circuit_breaker import CircuitBreaker
from .errors import AdmissionDenied
from .scrape_limiter import ScrapeDecision, ScrapeLimiter, format_wait_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScrapeTarget:
    id: str
    username: str
    last_scraped: Optional[float] = None
    is_active: bool = True


@dataclass(frozen=True)
class ScrapeJob:
    user_id: str
    target_id: Optional[str] = None


@dataclass
class ScrapeRunResult:
    allowed: bool
    scraped: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    decision: Optional[ScrapeDecision] = None
    wait: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "allowed": self.allowed,
            "scraped": self.scraped,
            "failures": self.failures,
            "skipped": self.skipped,
        }
        if self.decision is not None and not self.decision.allowed:
            payload.update(self.decision.to_dict())
            payload["waitFormatted"] = self.wait
        return payload


class TargetDirectory(Protocol):
    async def accounts_with_active_targets(self) -> Dict[str, List[ScrapeTarget]]: ...

    async def mark_scraped(self, target_id: str, when: float) -> None: ...


Enqueue = Callable[[ScrapeJob], Awaitable[Any]]
Lookup = Callable[[ScrapeTarget], Awaitable[Any]]


class ScrapeScheduler:
    def __init__(
        self,
        directory: TargetDirectory,
        enqueue: Enqueue,
        stale_after: float = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.enqueue = enqueue
        self.stale_after = stale_after
        self._clock = clock

    def is_stale(self, target: ScrapeTarget, now: float) -> bool:
        return target.last_scraped is None or target.last_scraped < now - self.stale_after

    async def schedule_stale(self) -> Dict[str, Any]:
        now = self._clock()
        accounts = await self.directory.accounts_with_active_targets()
        scheduled = 0
        errors: Dict[str, str] = {}

        for user_id, targets in accounts.items():
            if not any(t.is_active and self.is_stale(t, now) for t in targets):
                continue
            try:
                await self.enqueue(ScrapeJob(user_id=user_id))
                scheduled += 1
            except Exception as e:
                logger.error("Failed to schedule scraping for user %s: %s", user_id, e)
                errors[user_id] = str(e)

        logger.info("Scheduled %d scraping jobs across %d accounts", scheduled, len(accounts))
        return {
            "accountsProcessed": len(accounts),
            "jobsScheduled": scheduled,
            "errors": errors,
        }


class ScrapeRunner:
    def __init__(
        self,
        limiter: ScrapeLimiter,
        breaker: CircuitBreaker,
        lookup: Lookup,
        enabled: bool = False,
        max_users_per_session: int = 3,
    ) -> None:
        self.limiter = limiter
        self.breaker = breaker
        self.lookup = lookup
        self.enabled = enabled
        self.max_users_per_session = max_users_per_session

    async def run(self, job: ScrapeJob, targets: List[ScrapeTarget]) -> ScrapeRunResult:
        if not self.enabled:
            decision = ScrapeDecision(False, "Scraping is disabled", None, "disabled")
            return ScrapeRunResult(allowed=False, decision=decision)

        active = [t for t in targets if t.is_active and (job.target_id is None or t.id == job.target_id)]
        batch = active[: self.max_users_per_session]
        skipped = [t.id for t in active[self.max_users_per_session:]]
        if not batch:
            return ScrapeRunResult(allowed=True, skipped=skipped)

        decision = self.limiter.can_scrape(len(batch))
        if not decision.allowed:
            wait = format_wait_time(decision.wait_time or 0)
            logger.warning("Scraping refused for %s: %s (retry in %s)", job.user_id, decision.reason, wait)
            return ScrapeRunResult(
                allowed=False, decision=decision, wait=wait, skipped=[t.id for t in active],
            )

        self.limiter.record_attempt(len(batch))
        result = ScrapeRunResult(allowed=True, skipped=skipped, decision=decision)
        for target in batch:
            try:
                await self.breaker.execute(lambda target=target: self.lookup(target))
                result.scraped.append(target.id)
            except AdmissionDenied as e:
                result.failures[target.id] = e.reason
            except Exception as e:
                logger.error("Scrape of @%s failed: %s", target.username, e)
                result.failures[target.id] = str(e)
        return result


class ScrapeQueue:
    """
    In-process job queue feeding ScrapeRunner.

    Each call schedules stale accounts, then runs pending jobs in order
    until one is refused; the refused job stays at the front for the next
    call. An account has at most one pending job.
    """

    def __init__(
        self,
        directory: TargetDirectory,
        runner: ScrapeRunner,
        stale_after: float = 1800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.runner = runner
        self.pending: Deque[ScrapeJob] = deque()
        self.scheduler = ScrapeScheduler(directory, self.enqueue, stale_after, clock)
        self._clock = clock

    async def enqueue(self, job: ScrapeJob) -> None:
        if any(p.user_id == job.user_id for p in self.pending):
            return
        self.pending.append(job)

    async def __call__(self) -> Dict[str, Any]:
        summary = await self.scheduler.schedule_stale()
        accounts = await self.directory.accounts_with_active_targets()

        runs: Dict[str, Any] = {}
        while self.pending:
            job = self.pending.popleft()
            result = await self.runner.run(job, accounts.get(job.user_id, []))
            runs[job.user_id] = result.to_dict()
            if not result.allowed:
                self.pending.appendleft(job)
                break
            for target_id in result.scraped:
                await self.directory.mark_scraped(target_id, self._clock())

        return {**summary, "runs": runs, "pending": len(self.pending)}
