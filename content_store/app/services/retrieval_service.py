from dataclasses import dataclass
from typing import AsyncIterator

from content_store.app.errors import NotFound
from content_store.app.models.file_record import Tier
from content_store.app.services.chunked_store import ChunkedStore
from content_store.app.services.inline_store import InlineStore
from content_store.logger_config import setup_logger

logger = setup_logger()


@dataclass
class RetrievedFile:
    stream: AsyncIterator[bytes]
    content_type: str
    filename: str
    size: int
    tier: Tier


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class RetrievalService:
    """Locates content by checksum in either tier.

    The inline tier is probed first because it is an exact lookup; the chunked
    tier needs a metadata scan.
    """

    def __init__(self, inline_store: InlineStore, chunked_store: ChunkedStore):
        self.inline_store = inline_store
        self.chunked_store = chunked_store

    async def retrieve(self, checksum: str) -> RetrievedFile:
        """Return a lazy byte stream plus the stored metadata.

        Raises:
            NotFound: neither tier holds ``checksum``
            StorageFailure: the persistence layer failed while reading
        """
        found = await self.inline_store.get(checksum)
        if found is not None:
            record, data = found
            logger.debug(f"Serving {checksum} from inline record {record.id}")
            return RetrievedFile(_single_chunk(data), record.content_type, record.original_name, record.size, Tier.INLINE)

        matches = await self.chunked_store.find_by_checksum(checksum)
        if matches:
            record = matches[0]
            stream = await self.chunked_store.open_download(record.id)
            logger.debug(f"Streaming {checksum} from chunked object {record.id}")
            return RetrievedFile(stream, record.content_type, record.original_name, record.size, Tier.CHUNKED)

        logger.info(f"No record for checksum {checksum}")
        raise NotFound(checksum)
