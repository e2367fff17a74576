import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Request

from backend import DurableStore
from blob_store import BlobStore
from constants import APP_ENV, UPLOADS_DIR
from gateway import Gateway
from history import HistoryService
from janitor import Janitor
from logging_config import get_logger
from messages import MessageManager
from registry import RoomRegistry, utcnow
from scheduler import MediaDeletionScheduler, Scheduler

logger = get_logger(__name__)


@dataclass
class Services:
    store: DurableStore
    blobs: BlobStore
    scheduler: Scheduler
    deletions: MediaDeletionScheduler
    registry: RoomRegistry
    messages: MessageManager
    history: HistoryService
    gateway: Gateway
    janitor: Janitor
    _background: List[asyncio.Task] = field(default_factory=list)

    async def start(self, run_janitor: bool = True):
        self.blobs.ensure_root()
        connect = getattr(self.store, "connect", None)
        if connect is not None:
            connected = await connect()
            if not connected:
                if APP_ENV == "production":
                    raise RuntimeError("Redis is required in production")
                logger.warning("Running without Redis, message history is disabled")
        self.scheduler.start()
        if run_janitor:
            self._background = [
                asyncio.create_task(self.janitor.run_blob_sweeps()),
                asyncio.create_task(self.janitor.run_store_sweeps()),
            ]
        logger.info("Relay services started")

    async def stop(self):
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background = []
        await self.scheduler.stop()
        await self.messages.drain()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()
        logger.info("Relay services stopped")


def build_services(store: DurableStore, uploads_dir: str = UPLOADS_DIR, blobs: Optional[BlobStore] = None,
                   clock: Callable[[], float] = time.monotonic, now: Callable[[], datetime] = utcnow) -> Services:
    blobs = blobs or BlobStore(uploads_dir)
    scheduler = Scheduler(clock=clock)
    deletions = MediaDeletionScheduler(scheduler, blobs)
    registry = RoomRegistry(now=now)
    messages = MessageManager(store, blobs, scheduler, deletions, now=now)
    return Services(
        store=store,
        blobs=blobs,
        scheduler=scheduler,
        deletions=deletions,
        registry=registry,
        messages=messages,
        history=HistoryService(store, blobs, deletions, now=now),
        gateway=Gateway(registry, messages),
        janitor=Janitor(blobs, store),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
