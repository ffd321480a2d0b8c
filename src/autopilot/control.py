"""
Operator control surface.

Plain methods returning JSON-ready dicts; the Telegram bot (or any other
front end) is a thin layer over these.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .circuit_breaker import CircuitBreakerRegistry
from .config import AutopilotConfig
from .observability import ControlEventRecord, emit_event
from .rate_limiter import RateLimiter
from .scheduler import Scheduler, build_scheduler
from .scrape_limiter import ScrapeLimiter, format_wait_time

logger = logging.getLogger(__name__)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class ControlPlane:
    def __init__(
        self,
        scheduler: Scheduler,
        breakers: CircuitBreakerRegistry,
        rate_limiter: RateLimiter,
        scrape_limiter: ScrapeLimiter,
        config: AutopilotConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.scheduler = scheduler
        self.breakers = breakers
        self.rate_limiter = rate_limiter
        self.scrape_limiter = scrape_limiter
        self.config = config
        self._clock = clock

    # ── Scheduler ──

    def start_scheduler(self) -> Dict[str, Any]:
        started = self.scheduler.start()
        return {
            "success": True,
            "message": "Scheduler started" if started else "Scheduler already running",
            "running": self.scheduler.is_running,
        }

    def stop_scheduler(self) -> Dict[str, Any]:
        stopped = self.scheduler.stop()
        return {
            "success": True,
            "message": "Scheduler stopped" if stopped else "Scheduler was not running",
            "running": self.scheduler.is_running,
        }

    async def trigger(self, kind: str) -> Dict[str, Any]:
        result = await self.scheduler.trigger(kind)
        return {"success": True, "kind": kind, "result": result}

    async def trigger_all(self) -> Dict[str, Any]:
        outcomes = await self.scheduler.trigger_all()
        return {
            "success": all(o.ok for o in outcomes.values()),
            "kind": "all",
            "result": {kind: o.to_dict() for kind, o in outcomes.items()},
        }

    def scheduler_status(self) -> Dict[str, Any]:
        return {"timestamp": _iso(self._clock()), **self.scheduler.get_status()}

    # ── Circuit breakers ──

    def circuit_breakers(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self._clock()),
            "circuitBreakers": self.breakers.states(),
            "summary": self.breakers.summary(),
        }

    def reset_circuit_breaker(self, name: str) -> Dict[str, Any]:
        reset = self.breakers.reset(name)
        logger.info("Circuit breaker(s) reset by operator: %s", ", ".join(reset))
        emit_event(ControlEventRecord(kind="breaker_reset", subject=name, ok=True, detail={"reset": reset}))
        message = (
            "All circuit breakers reset"
            if name == CircuitBreakerRegistry.ALL
            else f"Circuit breaker '{name}' reset"
        )
        return {"success": True, "message": message, "reset": reset}

    # ── Rate limits ──

    def rate_limits(self) -> Dict[str, Any]:
        limits = self.rate_limiter.status()
        limited = [e for e, s in limits.items() if not s["allowed"]]
        return {
            "timestamp": _iso(self._clock()),
            "rateLimits": limits,
            "summary": {
                "totalEndpoints": len(limits),
                "availableEndpoints": len(limits) - len(limited),
                "rateLimitedEndpoints": len(limited),
            },
        }

    # ── Scraping ──

    def scraping_status(self) -> Dict[str, Any]:
        status = self.scrape_limiter.get_status()
        decision = self.scrape_limiter.can_scrape(1)

        next_allowed: Optional[str] = None
        if status.next_allowed_time is not None:
            wait = status.next_allowed_time - self._clock()
            next_allowed = format_wait_time(wait) if wait > 0 else "now"

        payload = status.to_dict()
        if status.next_allowed_time is not None:
            payload["nextAllowedTime"] = _iso(status.next_allowed_time)
        payload.update(
            canScrapeNow=decision.allowed,
            reason=decision.reason,
            scrapingEnabled=self.config.scraping.enabled,
            maxUsersPerSession=self.config.scraping.max_users_per_session,
            nextAllowedTimeFormatted=next_allowed,
        )
        return payload


def build_control_plane(
    config: AutopilotConfig,
    clock: Callable[[], float] = time.time,
    scheduler: Optional[Scheduler] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    rate_limiter: Optional[RateLimiter] = None,
    scrape_limiter: Optional[ScrapeLimiter] = None,
) -> ControlPlane:
    """
    Wire every component from one config. Nothing here is a module global.

    Pass the breakers and limiters the workers use so the operator views
    report the same objects the work goes through.
    """
    return ControlPlane(
        scheduler=scheduler or build_scheduler(config.scheduler),
        breakers=breakers or CircuitBreakerRegistry.from_config(config.circuit_breakers, clock=clock),
        rate_limiter=rate_limiter or RateLimiter(config.rate_limits, clock=clock),
        scrape_limiter=scrape_limiter or ScrapeLimiter.from_config(config.scrape_limits, clock=clock),
        config=config,
        clock=clock,
    )
