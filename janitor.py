import asyncio

from backend import DurableStore
from blob_store import BlobStore
from constants import BLOB_MAX_AGE_SECONDS, BLOB_SWEEP_INTERVAL, STORE_SWEEP_INTERVAL
from errors import InvalidRequest, StoreUnavailable
from logging_config import get_logger
from redis_keys import REDIS_ALL_MESSAGES_PATTERN

logger = get_logger(__name__)


class Janitor:
    """Backstop sweeps for blobs and stored messages that outlived their expiry.

    Scheduled deletions are in-memory and die with the process, and a store
    restarted without persistence may keep keys past their TTL.
    """

    def __init__(self, blobs: BlobStore, store: DurableStore, max_blob_age: float = BLOB_MAX_AGE_SECONDS,
                 blob_interval: float = BLOB_SWEEP_INTERVAL, store_interval: float = STORE_SWEEP_INTERVAL):
        self.blobs = blobs
        self.store = store
        self.max_blob_age = max_blob_age
        self.blob_interval = blob_interval
        self.store_interval = store_interval

    async def sweep_blobs(self) -> int:
        cleaned = 0
        for filename in await self.blobs.list():
            try:
                age = await self.blobs.age_seconds(filename)
                if age is None or age <= self.max_blob_age:
                    continue
                if await self.blobs.delete(filename):
                    cleaned += 1
                    logger.info(f"Cleaned up old file: {filename}")
            except (OSError, InvalidRequest) as e:
                logger.warning(f"Could not clean up {filename}: {e}")
        if cleaned:
            logger.info(f"Blob cleanup completed: {cleaned} files removed")
        return cleaned

    async def sweep_store(self) -> int:
        if not self.store.is_ready:
            logger.debug("Store not ready, skipping message sweep")
            return 0
        try:
            keys = await self.store.scan_keys(REDIS_ALL_MESSAGES_PATTERN)
        except StoreUnavailable as e:
            logger.warning(f"Message sweep skipped: {e}")
            return 0

        cleaned = 0
        for key in keys:
            try:
                remaining = await self.store.ttl(key)
                if remaining > 0:
                    continue
                if await self.store.delete(key):
                    cleaned += 1
                    logger.info(f"Removed stale message key {key} (ttl {remaining})")
            except StoreUnavailable as e:
                logger.warning(f"Could not sweep {key}: {e}")
        if cleaned:
            logger.info(f"Message sweep completed: {cleaned} keys removed")
        return cleaned

    async def _every(self, interval: float, sweep, name: str):
        logger.info(f"Starting {name} sweeps every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception as e:
                logger.error(f"Error during {name} sweep: {e}", exc_info=True)

    async def run_blob_sweeps(self):
        await self._every(self.blob_interval, self.sweep_blobs, "blob")

    async def run_store_sweeps(self):
        await self._every(self.store_interval, self.sweep_store, "message")
