import asyncio
import os
import time
from functools import partial
from typing import List, Optional

from errors import InvalidRequest
from logging_config import get_logger

logger = get_logger(__name__)


class BlobStore:
    """Flat directory of uploaded image files.

    Every method runs its filesystem call in the default executor so a slow
    disk never stalls the event loop. Deletes are delete-if-exists.
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def ensure_root(self):
        if not os.path.isdir(self.root):
            os.makedirs(self.root, exist_ok=True)
            logger.info(f"Created uploads directory: {self.root}")

    def path_for(self, filename: str) -> str:
        if not filename or filename != os.path.basename(filename) or filename.startswith("."):
            raise InvalidRequest("Invalid filename")
        return os.path.join(self.root, filename)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def write(self, filename: str, data: bytes) -> None:
        path = self.path_for(filename)
        await self._run(self._write, path, data)
        logger.debug(f"Wrote blob {filename} ({len(data)} bytes)")

    @staticmethod
    def _write(path: str, data: bytes):
        with open(path, "wb") as fh:
            fh.write(data)

    async def read(self, filename: str) -> Optional[bytes]:
        return await self._run(self._read, self.path_for(filename))

    @staticmethod
    def _read(path: str) -> Optional[bytes]:
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    async def exists(self, filename: str) -> bool:
        return await self._run(os.path.isfile, self.path_for(filename))

    async def delete(self, filename: str) -> bool:
        """Remove the blob; returns False when it was already gone."""
        return await self._run(self._delete, self.path_for(filename))

    @staticmethod
    def _delete(path: str) -> bool:
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        return True

    async def list(self) -> List[str]:
        return await self._run(self._list)

    def _list(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        return [name for name in os.listdir(self.root) if os.path.isfile(os.path.join(self.root, name))]

    async def age_seconds(self, filename: str) -> Optional[float]:
        """Seconds since last modification, None when the blob is gone."""
        return await self._run(self._age, self.path_for(filename))

    @staticmethod
    def _age(path: str) -> Optional[float]:
        try:
            return time.time() - os.stat(path).st_mtime
        except FileNotFoundError:
            return None
