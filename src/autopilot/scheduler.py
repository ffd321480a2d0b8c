#!/usr/bin/env python3
"""
Periodic scheduler for the queue-processing endpoints

Fires on a fixed period and runs every registered task once per tick:

  process-scheduled-tweets → publish due scheduled tweets
  process-reply-queue      → drain due replies (retry/backoff lives there)

In-process tasks (reply draining, scraping) can take an endpoint's place
or run beside them.

Scheduled ticks never raise: failures are logged and the cadence holds.
Manual triggers run outside the cadence and DO raise, so operator tooling
can report them. A tick that is still running when the next one is due
makes that next tick a skip, never an overlap.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import requests

from .errors import ConfigurationError, EndpointError, UnknownTaskError
from .observability import ControlEventRecord, emit_event

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]

SCHEDULED_TWEETS_PATH = "/api/cron/process-scheduled-tweets"
REPLY_QUEUE_PATH = "/api/cron/process-reply-queue"


@dataclass
class TriggerOutcome:
    ok: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "result": self.result}
        return {"ok": False, "error": self.error}


class EndpointTask:
    """
    POSTs to an internal processing endpoint with the cron secret.

    ``attempts`` > 1 retries transient failures after ``retry_delay``
    seconds. A missing secret is a configuration error and is never retried.
    """

    def __init__(
        self,
        base_url: str,
        path: str,
        cron_secret: Optional[str],
        attempts: int = 1,
        retry_delay: float = 5.0,
        timeout: float = 30.0,
        user_agent: str = "internal-cron-scheduler",
    ):
        self.url = f"{base_url.rstrip('/')}{path}"
        self.cron_secret = cron_secret
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.user_agent = user_agent

    def _post(self) -> Dict[str, Any]:
        response = requests.post(
            self.url,
            headers={
                "Authorization": f"Bearer {self.cron_secret}",
                "Content-Type": "application/json",
                "User-Agent": self.user_agent,
            },
            timeout=self.timeout,
        )
        if not response.ok:
            raise EndpointError(self.url, response.status_code, response.text[:200])
        return response.json()

    async def __call__(self) -> Dict[str, Any]:
        if not self.cron_secret:
            raise ConfigurationError(f"CRON_SECRET is not configured; refusing to call {self.url}")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                result = await asyncio.to_thread(self._post)
                processed = result.get("processed", 0) if isinstance(result, dict) else 0
                if processed:
                    logger.info("%s processed %s items", self.url, processed)
                return result
            except (requests.RequestException, EndpointError) as e:
                last_error = e
                logger.warning(
                    "Attempt %d/%d to %s failed: %s", attempt, self.attempts, self.url, e,
                )
                if attempt < self.attempts:
                    await asyncio.sleep(self.retry_delay)
        raise last_error


class Scheduler:
    """
    STOPPED ⇄ RUNNING interval runner over named async tasks.

    start() and stop() are idempotent. stop() only prevents future ticks;
    a tick already running finishes on its own.
    """

    def __init__(
        self,
        tasks: Dict[str, Task],
        interval_seconds: float = 60.0,
        run_immediately: bool = False,
    ):
        if not tasks:
            raise ConfigurationError("Scheduler needs at least one task")
        self.tasks: Dict[str, Task] = dict(tasks)
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately

        self._timer: Optional[asyncio.Task] = None
        self._current_tick: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.last_tick_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def tick_in_progress(self) -> bool:
        return self._current_tick is not None and not self._current_tick.done()

    # ── Lifecycle ──

    def start(self) -> bool:
        """Start the timer. Returns False if it was already running."""
        if self.is_running:
            logger.info("Scheduler already running")
            return False
        self._timer = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Scheduler started (every %ss, tasks: %s)",
            self.interval_seconds, ", ".join(self.tasks),
        )
        return True

    def stop(self) -> bool:
        """Stop the timer. Returns False if it was not running."""
        if not self.is_running:
            return False
        self._timer.cancel()
        self._timer = None
        logger.info("Scheduler stopped")
        return True

    async def wait_idle(self) -> None:
        """Wait for an in-flight tick to finish."""
        if self._current_tick is not None:
            await asyncio.gather(self._current_tick, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        if not self.run_immediately:
            next_at += self.interval_seconds
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            next_at += self.interval_seconds
            self._fire()

    def _fire(self) -> None:
        if self.tick_in_progress:
            self.skipped_ticks += 1
            logger.warning("Previous tick still running; skipping this one")
            emit_event(ControlEventRecord(kind="tick", subject="scheduler", ok=False, reason="skipped: tick in progress"))
            return
        self._current_tick = asyncio.get_running_loop().create_task(self.tick())

    # ── Ticks ──

    async def tick(self) -> Dict[str, TriggerOutcome]:
        """One scheduled invocation of every task. Never raises."""
        started = time.monotonic()
        self.ticks += 1
        self.last_tick_at = time.time()
        outcomes = await self._run_all()

        failed = [kind for kind, outcome in outcomes.items() if not outcome.ok]
        if failed:
            self.last_error = "; ".join(f"{k}: {outcomes[k].error}" for k in failed)
            logger.error("Scheduler tick failed for %s: %s", ", ".join(failed), self.last_error)
        else:
            self.last_error = None
        emit_event(ControlEventRecord(
            kind="tick",
            subject="scheduler",
            ok=not failed,
            reason=self.last_error if failed else None,
            duration_ms=(time.monotonic() - started) * 1000,
            detail={"tasks": list(outcomes), "failed": failed},
        ))
        return outcomes

    async def _run_all(self) -> Dict[str, TriggerOutcome]:
        outcomes: Dict[str, TriggerOutcome] = {}
        for kind, task in self.tasks.items():
            try:
                outcomes[kind] = TriggerOutcome(ok=True, result=await task())
            except Exception as e:
                outcomes[kind] = TriggerOutcome(ok=False, error=str(e) or type(e).__name__)
        return outcomes

    # ── Manual triggers ──

    async def trigger(self, kind: str) -> Any:
        """Run one task now. Its errors propagate to the caller."""
        task = self.tasks.get(kind)
        if task is None:
            raise UnknownTaskError(
                f"Unknown task '{kind}'. Available: {', '.join(self.tasks)}"
            )
        logger.info("Manually triggering %s", kind)
        try:
            result = await task()
        except Exception as e:
            emit_event(ControlEventRecord(kind="trigger", subject=kind, ok=False, reason=str(e)))
            raise
        emit_event(ControlEventRecord(kind="trigger", subject=kind, ok=True))
        return result

    async def trigger_now(self) -> Any:
        """Run the primary (first registered) task now."""
        return await self.trigger(next(iter(self.tasks)))

    async def trigger_all(self) -> Dict[str, TriggerOutcome]:
        """Run every task now; one failure does not stop the rest."""
        logger.info("Manually triggering all tasks")
        return await self._run_all()

    def get_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "tickInProgress": self.tick_in_progress,
            "intervalSeconds": self.interval_seconds,
            "tasks": list(self.tasks),
            "ticks": self.ticks,
            "skippedTicks": self.skipped_ticks,
            "lastTickAt": self.last_tick_at,
            "lastError": self.last_error,
        }


def build_scheduler(config, tasks: Optional[Dict[str, Task]] = None) -> Scheduler:
    """
    Scheduler over the two processing endpoints, from SchedulerConfig.

    ``tasks`` adds in-process tasks; a name that matches an endpoint task
    replaces it.
    """
    tweets = EndpointTask(
        config.base_url,
        SCHEDULED_TWEETS_PATH,
        config.cron_secret,
        attempts=config.retry_attempts,
        retry_delay=config.retry_delay_sec,
        timeout=config.request_timeout_sec,
        user_agent="enhanced-tweet-scheduler",
    )
    replies = EndpointTask(
        config.base_url,
        REPLY_QUEUE_PATH,
        config.cron_secret,
        timeout=config.request_timeout_sec,
        user_agent="enhanced-tweet-scheduler",
    )
    registered: Dict[str, Task] = {"tweets": tweets, "replies": replies}
    registered.update(tasks or {})
    return Scheduler(
        registered,
        interval_seconds=config.interval_sec,
        run_immediately=config.run_immediately,
    )
