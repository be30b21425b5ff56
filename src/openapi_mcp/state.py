"""Process-wide runtime state shared by every tool call."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .auth import OAuth2TokenCache
from .concurrency import ConcurrencyTracker
from .policy import PolicyEnforcer
from .rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


class RuntimeState:
    """Owns the rate limiter, concurrency tracker, token cache and HTTP client.

    Built once at server start and passed into the request pipeline; call
    ``aclose`` at shutdown.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        token_cache: Optional[OAuth2TokenCache] = None,
    ) -> None:
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = ConcurrencyTracker()
        self.policy = PolicyEnforcer()
        self.token_cache = token_cache or OAuth2TokenCache(self.client)

    async def aclose(self) -> None:
        if self.concurrency.in_flight:
            logger.warning("Closing runtime with %s calls in flight", self.concurrency.in_flight)
        await self.client.aclose()

    async def __aenter__(self) -> "RuntimeState":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
