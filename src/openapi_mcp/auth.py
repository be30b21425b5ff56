"""OAuth2 client-credentials token acquisition and caching."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .errors import AuthenticationError


logger = logging.getLogger(__name__)

EXPIRY_SKEW_MS = 5_000
DEFAULT_EXPIRES_IN_SECONDS = 3600
MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 0.2

CacheKey = Tuple[str, str, Tuple[str, ...]]


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[float] = None


@dataclass
class OAuth2TokenCacheEntry:
    access_token: str
    expiry_epoch_millis: float

    def is_valid(self, now_ms: float) -> bool:
        return now_ms + EXPIRY_SKEW_MS < self.expiry_epoch_millis


def _epoch_millis() -> float:
    return time.time() * 1000


class OAuth2TokenCache:
    def __init__(
        self,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = _epoch_millis,
        timeout_seconds: float = 10,
    ) -> None:
        self.client = client
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self._entries: Dict[CacheKey, OAuth2TokenCacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    def cached(
        self, token_url: str, client_id: str, scopes: Sequence[str] = ()
    ) -> Optional[OAuth2TokenCacheEntry]:
        entry = self._entries.get((token_url, client_id, tuple(scopes)))
        if entry and entry.is_valid(self.clock()):
            return entry
        return None

    async def get_token(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scopes: Sequence[str] = (),
    ) -> str:
        key: CacheKey = (token_url, client_id, tuple(scopes))
        entry = self.cached(*key)
        if entry:
            return entry.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another call may have fetched the token while this one waited.
            entry = self.cached(*key)
            if entry:
                return entry.access_token
            token = await self._fetch(token_url, client_id, client_secret, tuple(scopes))
            expires_in = token.expires_in or DEFAULT_EXPIRES_IN_SECONDS
            self._entries[key] = OAuth2TokenCacheEntry(
                access_token=token.access_token,
                expiry_epoch_millis=self.clock() + expires_in * 1000,
            )
            return token.access_token

    async def _fetch(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scopes: Tuple[str, ...],
    ) -> TokenResponse:
        form = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scopes:
            form["scope"] = " ".join(scopes)

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.post(
                    token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout_seconds,
                )
                break
            except httpx.TransportError as exc:
                if attempt >= MAX_ATTEMPTS:
                    raise AuthenticationError(
                        f"OAuth2 token request to {token_url} failed after {attempt} attempts: {exc}"
                    ) from exc
                backoff = BACKOFF_SECONDS * attempt
                logger.warning(
                    "OAuth2 token request failed (attempt %s/%s). Retrying in %ss. url=%s",
                    attempt,
                    MAX_ATTEMPTS,
                    backoff,
                    token_url,
                )
                await asyncio.sleep(backoff)

        if not response.is_success:
            raise AuthenticationError(
                f"OAuth2 token endpoint returned {response.status_code}: {response.text}"
            )
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise AuthenticationError(
                f"OAuth2 token response from {token_url} is missing access_token"
            ) from exc
