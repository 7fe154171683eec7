"""
Token cache

Per-channel access token storage with expiry and single-flight refresh.

Each channel registers a fetcher coroutine that talks to the platform's
token endpoint. ``get_or_refresh`` serves the cached token while it is
valid beyond a safety margin; otherwise exactly one caller per channel
performs the refresh and every concurrent caller waits for its result.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, Set

from logger import get_logger

from core.gateway.errors import AuthError, ConfigError, GatewayError
from core.gateway.types import AccessToken

logger = get_logger("gateway.token_cache")

TokenFetcher = Callable[[], Awaitable[AccessToken]]

DEFAULT_SAFETY_MARGIN = 60.0


class TokenCache:
    """
    Explicit token store keyed by channel id.

    Created once at gateway startup and passed by handle to the connectors
    that need it. Readers of a valid token take no lock; the per-channel
    lock is only held around a refresh.
    """

    def __init__(
        self,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._safety_margin = safety_margin
        self._clock = clock
        self._entries: Dict[str, AccessToken] = {}
        self._fetchers: Dict[str, TokenFetcher] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations: Dict[str, int] = {}
        self._invalidated: Set[str] = set()

    def register(self, channel_id: str, fetcher: TokenFetcher) -> None:
        """Register the token fetcher for a channel."""
        if channel_id in self._fetchers:
            logger.warning("Token fetcher already registered, replacing", extra={"channel": channel_id})
        self._fetchers[channel_id] = fetcher

    def peek(self, channel_id: str) -> Optional[AccessToken]:
        """Return the stored entry (possibly expired) without refreshing."""
        return self._entries.get(channel_id)

    def _is_fresh(self, channel_id: str, entry: Optional[AccessToken]) -> bool:
        if entry is None or channel_id in self._invalidated:
            return False
        return entry.is_valid(self._clock(), self._safety_margin)

    async def get_or_refresh(self, channel_id: str) -> AccessToken:
        """
        Return a usable token for ``channel_id``.

        Raises:
            AuthError: the refresh failed; the previous entry is left untouched.
            ConfigError: no fetcher is registered for the channel.
        """
        entry = self._entries.get(channel_id)
        if self._is_fresh(channel_id, entry):
            return entry

        generation = self._generations.get(channel_id, 0)
        lock = self._locks.setdefault(channel_id, asyncio.Lock())

        async with lock:
            # A refresh that completed while we waited is reused as long as
            # it has not expired, even if it is already inside the margin.
            entry = self._entries.get(channel_id)
            if self._is_fresh(channel_id, entry):
                return entry
            if (
                entry is not None
                and self._generations.get(channel_id, 0) != generation
                and channel_id not in self._invalidated
                and entry.is_valid(self._clock())
            ):
                return entry

            return await self._refresh(channel_id)

    async def _refresh(self, channel_id: str) -> AccessToken:
        fetcher = self._fetchers.get(channel_id)
        if fetcher is None:
            raise ConfigError(f"No token fetcher registered for channel '{channel_id}'", channel_id)

        logger.info("Refreshing access token", extra={"channel": channel_id})
        try:
            token = await fetcher()
        except AuthError as e:
            if e.channel_id is None:
                e.channel_id = channel_id
            logger.warning(
                "Access token refresh failed",
                extra={"channel": channel_id, "error": str(e), "transient": e.transient},
            )
            raise
        except asyncio.CancelledError:
            raise
        except GatewayError as e:
            logger.warning(
                "Access token refresh failed",
                extra={"channel": channel_id, "error": str(e), "transient": True},
            )
            raise AuthError(f"Token refresh failed: {e}", channel_id, transient=True) from e
        except Exception as e:
            logger.error(
                "Access token refresh raised unexpected error",
                extra={"channel": channel_id, "error": str(e)},
                exc_info=True,
            )
            raise AuthError(f"Token refresh failed: {e}", channel_id, transient=True) from e

        if not token.is_valid(self._clock()):
            raise AuthError("Platform returned an already expired token", channel_id)

        self._entries[channel_id] = token
        self._generations[channel_id] = self._generations.get(channel_id, 0) + 1
        self._invalidated.discard(channel_id)

        logger.info(
            "Access token refreshed",
            extra={
                "channel": channel_id,
                "expires_in": round(token.expires_at - self._clock()),
            },
        )
        return token

    def invalidate(self, channel_id: str) -> None:
        """Force the next get_or_refresh() for this channel to bypass the cache."""
        self._invalidated.add(channel_id)
        logger.info("Access token invalidated", extra={"channel": channel_id})

    def clear(self) -> None:
        """Drop all entries (gateway shutdown)."""
        self._entries.clear()
        self._generations.clear()
        self._invalidated.clear()
