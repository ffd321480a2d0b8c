"""
Composition root.

build_autopilot wires the reply processor, the dispatcher and the scrape
queue to one set of circuit breakers and limiters, registers them as
scheduler tasks, and hands the same objects to the ControlPlane. Storage,
per-user settings, account tokens and the target directory are supplied
by the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .circuit_breaker import CircuitBreakerRegistry
from .config import AutopilotConfig
from .control import ControlPlane, build_control_plane
from .dispatch import AccountTokens, ReplyDispatcher, TokenManager
from .rate_limiter import RateLimiter
from .reply_queue import ReplyQueueProcessor, ReplyQueueStore, SettingsLookup
from .scheduler import build_scheduler
from .scrape_limiter import ScrapeLimiter
from .scraping import ScrapeQueue, ScrapeRunner, ScrapeTarget, TargetDirectory
from .state_store import MemoryStateStore, OAuthStateManager, StateStore
from .x_client import XApiClient

logger = logging.getLogger(__name__)

LOOKUP_ENDPOINT = "users/lookup"


@dataclass
class Autopilot:
    control: ControlPlane
    processor: ReplyQueueProcessor
    dispatcher: ReplyDispatcher
    scrape_queue: ScrapeQueue
    oauth_state: OAuthStateManager


def build_autopilot(
    config: AutopilotConfig,
    *,
    store: ReplyQueueStore,
    settings: SettingsLookup,
    tokens: AccountTokens,
    directory: TargetDirectory,
    client: XApiClient,
    clock: Callable[[], float] = time.time,
    state_store: Optional[StateStore] = None,
) -> Autopilot:
    breakers = CircuitBreakerRegistry.from_config(config.circuit_breakers, clock=clock)
    rate_limiter = RateLimiter(config.rate_limits, clock=clock)
    scrape_limiter = ScrapeLimiter.from_config(config.scrape_limits, clock=clock)

    token_manager = TokenManager(client, tokens, breakers.get("token_refresh"))
    dispatcher = ReplyDispatcher(rate_limiter, breakers.get("post_tweet"), client, token_manager)
    processor = ReplyQueueProcessor(
        store,
        settings,
        dispatcher,
        batch_size=config.queue.batch_size,
        max_retries=config.queue.max_retries,
        clock=clock,
    )

    async def lookup(target: ScrapeTarget) -> Dict[str, Any]:
        rate_limiter.admit(LOOKUP_ENDPOINT)
        return await asyncio.to_thread(client.get_user_by_username, target.username)

    runner = ScrapeRunner(
        scrape_limiter,
        breakers.get("user_lookup"),
        lookup,
        enabled=config.scraping.enabled,
        max_users_per_session=config.scraping.max_users_per_session,
    )
    scrape_queue = ScrapeQueue(directory, runner, stale_after=config.scraping.stale_after_sec, clock=clock)

    async def drain_replies() -> Dict[str, Any]:
        return (await processor.process_due()).to_dict()

    scheduler = build_scheduler(config.scheduler, {"replies": drain_replies, "scraping": scrape_queue})
    control = build_control_plane(
        config,
        clock=clock,
        scheduler=scheduler,
        breakers=breakers,
        rate_limiter=rate_limiter,
        scrape_limiter=scrape_limiter,
    )
    logger.info("Autopilot wired (tasks: %s)", ", ".join(scheduler.tasks))
    return Autopilot(
        control=control,
        processor=processor,
        dispatcher=dispatcher,
        scrape_queue=scrape_queue,
        oauth_state=OAuthStateManager(state_store or MemoryStateStore(clock=clock)),
    )
