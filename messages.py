import asyncio
import base64
import binascii
import os
import re
import secrets
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set, Tuple

from backend import DurableStore
from blob_store import BlobStore
from constants import ALLOWED_IMAGE_TYPES, BURN_NOTICE_DELAY, DEFAULT_MESSAGE_TTL, MAX_UPLOAD_BYTES
from errors import InvalidRequest, StoreUnavailable
from logging_config import get_logger
from redis_keys import REDIS_MESSAGE_KEY
from registry import utcnow
from scheduler import MediaDeletionScheduler, ScheduledTask, Scheduler
from schemas.images import UploadImageResponse
from schemas.messages import ImageMessage, ImageMetadata, ImagePayload, TextMessage

logger = get_logger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
CLIENT_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def format_timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00") if "Z" in value else value)


def generate_message_id(moment: datetime, prefix: str = "msg") -> str:
    return f"{prefix}_{epoch_ms(moment)}_{uuid.uuid4().hex[:9]}"


def generate_secure_filename(original_name: str, message_id: str, moment: datetime) -> str:
    # only the extension survives so stored names cannot be enumerated
    ext = os.path.splitext(original_name)[1].lower()
    return f"{message_id}_{epoch_ms(moment)}_{secrets.token_hex(8)}{ext}"


def parse_ttl(value, default: int = DEFAULT_MESSAGE_TTL) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidRequest("Invalid ttl")
    try:
        ttl = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest("Invalid ttl")
    if ttl < 0:
        raise InvalidRequest("Invalid ttl")
    return ttl


def check_image_type(filename: str, mime_type: Optional[str]) -> Tuple[str, str]:
    """Return (extension, mime type) or reject anything that is not a plain image."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in ALLOWED_IMAGE_TYPES:
        raise InvalidRequest("Invalid file type. Only JPEG, PNG, GIF, and WebP are allowed.")
    if mime_type is None:
        return ext, ALLOWED_IMAGE_TYPES[ext]
    mime_type = mime_type.lower()
    if mime_type not in ALLOWED_IMAGE_TYPES.values():
        raise InvalidRequest("Invalid file type. Only JPEG, PNG, GIF, and WebP are allowed.")
    return ext, mime_type


def decode_image_data(data: str) -> bytes:
    try:
        decoded = base64.b64decode(DATA_URL_PREFIX.sub("", data), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Image data is not valid base64")
    if not decoded:
        raise InvalidRequest("Image data is empty")
    return decoded


class MessageManager:
    """Builds messages, mirrors them to the durable store and arms their expiry."""

    def __init__(self, store: DurableStore, blobs: BlobStore, scheduler: Scheduler,
                 deletions: MediaDeletionScheduler, now: Callable[[], datetime] = utcnow,
                 default_ttl: int = DEFAULT_MESSAGE_TTL, max_bytes: int = MAX_UPLOAD_BYTES,
                 burn_notice_delay: float = BURN_NOTICE_DELAY):
        self.store = store
        self.blobs = blobs
        self.scheduler = scheduler
        self.deletions = deletions
        self.now = now
        self.default_ttl = default_ttl
        self.max_bytes = max_bytes
        self.burn_notice_delay = burn_notice_delay
        self._mirrors: Set[asyncio.Task] = set()

    async def send_text(self, room_token: str, message: str, sender: str, ttl=None) -> TextMessage:
        logger.debug(f"Received text message for room {room_token} from {sender}, length {len(message or '')}, ttl {ttl}")
        if not room_token or not message or not sender:
            raise InvalidRequest("Missing required message data")
        ttl = parse_ttl(ttl, self.default_ttl)

        moment = self.now()
        text = TextMessage(
            id=generate_message_id(moment),
            message=message,
            sender=sender,
            timestamp=format_timestamp(moment),
            ttl=ttl,
            roomToken=room_token,
        )
        self._mirror(text)
        return text

    async def send_image(self, room_token: str, image: Optional[ImagePayload], sender: str, ttl=None,
                         caption: Optional[str] = "") -> ImageMessage:
        logger.debug(f"Received image for room {room_token} from {sender}, ttl {ttl}, caption {bool(caption)}")
        if not room_token or image is None or not image.data or not sender:
            raise InvalidRequest("Missing required image data")
        ttl = parse_ttl(ttl, self.default_ttl)
        _, mime_type = check_image_type(image.name, image.mimeType)
        if image.size is not None and image.size > self.max_bytes:
            raise InvalidRequest("Image exceeds the size limit")
        data = decode_image_data(image.data)
        self._check_size(len(data))

        moment = self.now()
        message_id = generate_message_id(moment)
        filename = generate_secure_filename(image.name, message_id, moment)
        await self.blobs.write(filename, data)
        self.deletions.schedule(filename, ttl)

        picture = ImageMessage(
            id=message_id,
            imageData=ImageMetadata(
                imageId=image.id or message_id,
                originalName=image.name,
                storedFilename=filename,
                url=f"/api/image/{filename}",
                byteSize=len(data),
                mimeType=mime_type,
                dimensions=image.dimensions,
            ),
            caption=caption or "",
            sender=sender,
            timestamp=format_timestamp(moment),
            ttl=ttl,
            roomToken=room_token,
        )
        self._mirror(picture)
        return picture

    async def store_upload(self, original_name: str, content_type: Optional[str], data: bytes,
                           message_id: Optional[str] = None, ttl=None) -> UploadImageResponse:
        if not data:
            raise InvalidRequest("No image file provided")
        _, mime_type = check_image_type(original_name, content_type or "")
        self._check_size(len(data))
        ttl = parse_ttl(ttl, self.default_ttl)
        if message_id and not CLIENT_ID.match(message_id):
            raise InvalidRequest("Invalid messageId")

        moment = self.now()
        image_id = message_id or generate_message_id(moment, prefix="img")
        filename = generate_secure_filename(original_name, image_id, moment)
        await self.blobs.write(filename, data)
        self.deletions.schedule(filename, ttl)
        logger.info(f"Image saved: {filename} (TTL: {ttl}s)")
        return UploadImageResponse(
            imageId=image_id,
            filename=filename,
            imageUrl=f"/api/image/{filename}",
            size=len(data),
            mimeType=mime_type,
        )

    def schedule_expiry_notice(self, message, notify: Callable[[str], Awaitable[None]]) -> Optional[ScheduledTask]:
        """Burn-after-reading text gets a message-expired notice shortly after broadcast."""
        if message.type != "text" or message.ttl != 0:
            return None

        async def _expire():
            logger.info(f"Expiring burn-after-reading message {message.id}")
            await notify(message.id)

        return self.scheduler.call_later(self.burn_notice_delay, _expire, label=f"expire {message.id}")

    def _check_size(self, size: int):
        if size > self.max_bytes:
            raise InvalidRequest(f"Image exceeds the {self.max_bytes} byte limit")

    def _mirror(self, message):
        if message.ttl <= 0:
            return
        if not self.store.is_ready:
            logger.debug(f"Store not ready, message {message.id} kept live only")
            return
        task = asyncio.create_task(self._write_mirror(message))
        self._mirrors.add(task)
        task.add_done_callback(self._mirrors.discard)

    async def _write_mirror(self, message):
        key = REDIS_MESSAGE_KEY.format(room_token=message.roomToken, message_id=message.id)
        try:
            await self.store.set_with_expiry(key, message.model_dump_json(), message.ttl)
            logger.debug(f"Message {message.id} stored with TTL {message.ttl}s")
        except StoreUnavailable as e:
            logger.warning(f"Storage failed for message {message.id}, continuing without persistence: {e}")
        except Exception as e:
            logger.error(f"Unexpected error storing message {message.id}: {e}", exc_info=True)

    async def drain(self):
        """Wait for in-flight mirror writes."""
        if self._mirrors:
            await asyncio.gather(*list(self._mirrors), return_exceptions=True)
