from contextlib import asynccontextmanager
from typing import List, Optional, Protocol

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from constants import (
    REDIS_CONNECT_TIMEOUT,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    REDIS_RETRIES,
    REDIS_USERNAME,
)
from errors import StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)


class DurableStore(Protocol):
    """Key-value store with per-key expiry, as used by the relay core."""

    @property
    def is_ready(self) -> bool: ...

    async def ping(self) -> bool: ...

    async def set_with_expiry(self, key: str, value: str, ttl: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...

    async def ttl(self, key: str) -> int: ...


class RedisBackend:
    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, username: Optional[str] = REDIS_USERNAME,
                 password: Optional[str] = REDIS_PASSWORD):
        self.host = host
        self.port = port
        self.connected = False
        logger.info(f"Initializing RedisBackend for {host}:{port}")
        # The client reconnects on its own with a capped backoff (50ms steps, 1s ceiling)
        self.redis_client = redis.Redis(
            host=host,
            port=port,
            username=username if password else None,
            password=password,
            decode_responses=True,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
            retry=Retry(ExponentialBackoff(cap=1.0, base=0.05), REDIS_RETRIES),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )

    @property
    def is_ready(self) -> bool:
        return self.connected

    async def connect(self) -> bool:
        logger.info(f"Attempting to connect to Redis at {self.host}:{self.port}")
        try:
            await self.redis_client.ping()
        except RedisError as e:
            logger.error(f"Failed to connect to Redis at {self.host}:{self.port}: {e}")
            self.connected = False
            return False
        self.connected = True
        logger.info(f"Redis client connected successfully to {self.host}:{self.port}")
        return True

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except RedisError as e:
            logger.warning(f"Redis {operation} failed: {e}")
            raise StoreUnavailable(f"Redis {operation} failed") from e

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.redis_client.ping())

    async def set_with_expiry(self, key: str, value: str, ttl: int) -> None:
        async with self._guard("set"):
            await self.redis_client.set(key, value, ex=ttl)
        logger.debug(f"Stored {key} with TTL {ttl}s")

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.redis_client.get(key)

    async def delete(self, key: str) -> int:
        async with self._guard("delete"):
            deleted = await self.redis_client.delete(key)
        logger.debug(f"Deleted {key}: {deleted}")
        return deleted

    async def scan_keys(self, pattern: str) -> List[str]:
        # SCAN rather than KEYS so a large keyspace never blocks the server
        async with self._guard("scan"):
            return [key async for key in self.redis_client.scan_iter(match=pattern, count=200)]

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -1 when the key has no expiry, -2 when it is gone."""
        async with self._guard("ttl"):
            return await self.redis_client.ttl(key)

    async def close(self):
        logger.info("Closing Redis connection")
        self.connected = False
        try:
            await self.redis_client.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")


redis_backend = RedisBackend()
