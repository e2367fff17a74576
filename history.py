from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import ValidationError

from backend import DurableStore
from blob_store import BlobStore
from errors import InvalidRequest, StoreUnavailable
from logging_config import get_logger
from messages import format_timestamp, parse_timestamp
from redis_keys import REDIS_ALL_MESSAGES_PATTERN, REDIS_ROOM_MESSAGES_PATTERN
from registry import is_valid_room_token, utcnow
from scheduler import MediaDeletionScheduler
from schemas.messages import message_adapter

logger = get_logger(__name__)


@dataclass
class HistoryResult:
    messages: List = field(default_factory=list)
    timestamp: str = ""
    note: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.messages)


class HistoryService:
    """Rebuilds a room's visible history from the durable store."""

    def __init__(self, store: DurableStore, blobs: BlobStore, deletions: MediaDeletionScheduler,
                 now: Callable[[], datetime] = utcnow):
        self.store = store
        self.blobs = blobs
        self.deletions = deletions
        self.now = now

    def is_live(self, message, now: datetime) -> bool:
        # The store expires keys on its own; this re-check covers clock skew and missed expiries.
        if message.ttl == 0:
            return True
        return parse_timestamp(message.timestamp) + timedelta(seconds=message.ttl) > now

    async def get_history(self, room_token: str) -> HistoryResult:
        logger.info(f"History request for room: {room_token}")
        if not is_valid_room_token(room_token):
            raise InvalidRequest("Invalid room token")

        now = self.now()
        if not self.store.is_ready:
            logger.info("Store not available, returning empty history")
            return HistoryResult(timestamp=format_timestamp(now), note="Redis not available - no message history")

        pattern = REDIS_ROOM_MESSAGES_PATTERN.format(room_token=room_token)
        try:
            keys = await self.store.scan_keys(pattern)
        except StoreUnavailable:
            return HistoryResult(timestamp=format_timestamp(now), note="Redis not available - no message history")
        logger.debug(f"Found {len(keys)} message keys for pattern {pattern}")

        messages = []
        for key in keys:
            try:
                raw = await self.store.get(key)
                if raw is None:
                    continue
                message = message_adapter.validate_json(raw)
                if self.is_live(message, now):
                    messages.append(message)
                else:
                    logger.debug(f"Message {message.id} expired, evicting {key}")
                    await self.store.delete(key)
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning(f"Failed to parse message {key}: {e}")
            except StoreUnavailable as e:
                logger.warning(f"Skipping message {key}: {e}")

        messages.sort(key=lambda m: parse_timestamp(m.timestamp))
        logger.info(f"Returning {len(messages)} messages for room {room_token}")
        return HistoryResult(messages=messages, timestamp=format_timestamp(now))

    async def delete_image_record(self, image_id: str) -> bool:
        """Remove the stored image message matching image_id, and its blob."""
        if not self.store.is_ready:
            raise StoreUnavailable("Redis not available")

        keys = await self.store.scan_keys(REDIS_ALL_MESSAGES_PATTERN)
        for key in keys:
            try:
                raw = await self.store.get(key)
                if raw is None:
                    continue
                message = message_adapter.validate_json(raw)
            except (ValidationError, ValueError) as e:
                logger.warning(f"Failed to parse message during image cleanup {key}: {e}")
                continue
            if message.type != "image" or message.imageData.imageId != image_id:
                continue

            await self.store.delete(key)
            filename = message.imageData.storedFilename
            self.deletions.cancel(filename)
            try:
                await self.blobs.delete(filename)
            except InvalidRequest:
                logger.warning(f"Stored message {message.id} has an unusable filename {filename!r}")
            logger.info(f"Deleted image message: {message.id}")
            return True
        return False
