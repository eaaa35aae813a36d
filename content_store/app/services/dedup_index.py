import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from content_store.app.models.file_record import FileRecord
from content_store.app.services.chunked_store import ChunkedStore
from content_store.app.services.inline_store import InlineStore
from content_store.logger_config import setup_logger

logger = setup_logger()


class DedupIndex:
    """Answers "is this content already stored?" across both tiers.

    Writers of the same checksum are serialized with ``guard``: the lookup and
    the write that follows it must happen while the guard is held.
    """

    def __init__(self, inline_store: InlineStore, chunked_store: ChunkedStore):
        self.inline_store = inline_store
        self.chunked_store = chunked_store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    async def lookup(self, checksum: str) -> Optional[FileRecord]:
        record = await self.inline_store.find(checksum)
        if record is not None:
            return record
        matches = await self.chunked_store.find_by_checksum(checksum)
        if matches:
            return matches[0]
        return None

    @asynccontextmanager
    async def guard(self, checksum: str):
        """Hold the single-writer lock for ``checksum``."""
        lock = self._locks.setdefault(checksum, asyncio.Lock())
        self._waiters[checksum] = self._waiters.get(checksum, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[checksum] -= 1
            if self._waiters[checksum] == 0:
                del self._waiters[checksum]
                del self._locks[checksum]

    @property
    def active_guards(self) -> int:
        return len(self._locks)
