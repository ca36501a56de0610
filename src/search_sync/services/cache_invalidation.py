"""Best-effort invalidation of derived-statistics caches."""

from __future__ import annotations

import aiohttp

from search_sync.config import Settings
from search_sync.core.constants import CATEGORY_COUNTS_CACHE_KEY
from search_sync.core.logging import get_logger

logger = get_logger(__name__)


class CacheServiceClient:
    """Deletes cache keys on the cache service over HTTP.

    Failures are logged and reported as ``False``; nothing here raises.
    """

    def __init__(
        self,
        base_url: str | None,
        timeout: float = 2.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheServiceClient:
        return cls(settings.cache_service_url, settings.cache_service_timeout)

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def delete_key(self, key: str) -> bool:
        """Delete one cache key.

        Args:
            key: Cache key to delete.

        Returns:
            bool: True if the cache service acknowledged the delete.
        """
        if self.base_url is None:
            logger.debug("Cache service not configured; skipping invalidation of '%s'", key)
            return False

        url = f"{self.base_url}/api/v1/cache/delete"
        try:
            async with self._get_session().delete(
                url, json={"key": key}, timeout=self.timeout
            ) as response:
                if response.status >= 400:
                    logger.warning(
                        "Cache service rejected delete of '%s': HTTP %s", key, response.status
                    )
                    return False
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.warning("Cache invalidation of '%s' failed: %s", key, exc)
            return False

        logger.info("Invalidated cache key '%s'", key)
        return True

    async def invalidate_category_counts(self) -> bool:
        return await self.delete_key(CATEGORY_COUNTS_CACHE_KEY)
