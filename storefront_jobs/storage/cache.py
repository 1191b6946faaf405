from typing import Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from storefront_jobs.errors import ExternalServiceError


class RedisCache:
    """Key lookups against the storefront's Redis cache.

    Shares the worker's Redis connection rather than opening its own.
    """

    def __init__(self, client_provider: Callable[[], Awaitable[Redis]]):
        self._client_provider = client_provider

    async def exists(self, key: str) -> bool:
        """Return True if ``key`` is present in the cache.

        Raises:
            ExternalServiceError: If Redis cannot be queried
        """
        try:
            client = await self._client_provider()
            return await client.exists(key) > 0
        except (RedisError, OSError) as e:
            raise ExternalServiceError("cache", f"EXISTS {key} failed: {e}") from e

    async def missing(self, keys: list[str]) -> list[str]:
        """Return the subset of ``keys`` not currently cached, in order."""
        cold = []
        for key in keys:
            if not await self.exists(key):
                cold.append(key)
        return cold
