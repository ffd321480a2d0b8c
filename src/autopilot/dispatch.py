"""Posting admitted replies through the rate limiter and circuit breakers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Tuple

from .circuit_breaker import CircuitBreaker
from .errors import InvalidReplyError, RateLimitExceeded, XAuthError
from .rate_limiter import RateLimiter
from .reply_queue import ReplyJob
from .x_client import XApiClient

logger = logging.getLogger(__name__)

MAX_REPLY_LENGTH = 280
POST_ENDPOINT = "tweets/post"


class AccountTokens(Protocol):
    async def get_tokens(self, account_id: str) -> Tuple[str, Optional[str]]: ...

    async def save_tokens(self, account_id: str, access_token: str, refresh_token: Optional[str]) -> None: ...


class TokenManager:
    """Runs an X call with the account's token, refreshing once on a 401."""

    def __init__(self, client: XApiClient, tokens: AccountTokens, breaker: CircuitBreaker) -> None:
        self.client = client
        self.tokens = tokens
        self.breaker = breaker

    async def with_token_refresh(self, account_id: str, operation: Callable[[str], Awaitable[Any]]) -> Any:
        access_token, refresh_token = await self.tokens.get_tokens(account_id)
        try:
            return await operation(access_token)
        except XAuthError as e:
            if e.status != 401 or not refresh_token:
                raise
            logger.info("Token expired for account %s, refreshing", account_id)

        fresh = await self.breaker.execute(
            lambda: asyncio.to_thread(self.client.refresh_token, refresh_token)
        )
        await self.tokens.save_tokens(
            account_id, fresh["access_token"], fresh.get("refresh_token", refresh_token)
        )
        return await operation(fresh["access_token"])


class ReplyDispatcher:
    """
    Submitter for ReplyQueueProcessor.

    Content is validated before admission, so an unsendable reply never
    uses quota. The quota is checked before the post breaker, and a call is
    recorded only when the breaker lets the post run. A retry after a token
    refresh is a second post and is recorded again.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        client: XApiClient,
        token_manager: TokenManager,
    ) -> None:
        self.limiter = limiter
        self.breaker = breaker
        self.client = client
        self.token_manager = token_manager

    async def __call__(self, job: ReplyJob) -> Any:
        if not job.content or len(job.content) > MAX_REPLY_LENGTH:
            raise InvalidReplyError(
                f"Reply must be 1-{MAX_REPLY_LENGTH} characters, got {len(job.content or '')}"
            )

        if not self.limiter.check_limit(POST_ENDPOINT).allowed:
            raise RateLimitExceeded(POST_ENDPOINT, self.limiter.get_time_until_reset(POST_ENDPOINT))

        async def post(access_token: str) -> Any:
            self.limiter.admit(POST_ENDPOINT)
            return await asyncio.to_thread(
                self.client.post_tweet, job.content, job.target_id, access_token
            )

        response = await self.breaker.execute(
            lambda: self.token_manager.with_token_refresh(job.account_id, post)
        )
        logger.info(
            "Reply %s sent: %s (rate limit remaining: %d)",
            job.item_id, response.get("data", {}).get("id"),
            self.limiter.check_limit(POST_ENDPOINT).remaining,
        )
        return response
