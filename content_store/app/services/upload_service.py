from dataclasses import dataclass
from typing import Optional

from content_store import config
from content_store.app.errors import DuplicateContent, NoPayload, PayloadTooLarge, StorageFailure
from content_store.app.models.file_record import FileMetadata, FileRecord
from content_store.app.services.chunked_store import ChunkedStore
from content_store.app.services.dedup_index import DedupIndex
from content_store.app.services.hasher import sha256_hex
from content_store.app.services.inline_store import InlineStore
from content_store.app.services.storage_manager import StorageManager
from content_store.app.services.storage_router import Route, route
from content_store.logger_config import setup_logger

logger = setup_logger()

UPLOADED_MESSAGE = "File uploaded successfully"
DUPLICATE_MESSAGE = "File already exists"


@dataclass(frozen=True)
class UploadReceipt:
    message: str
    file_id: str
    sha256: str
    created: bool


class UploadService:
    def __init__(
        self,
        storage: StorageManager,
        inline_store: InlineStore,
        chunked_store: ChunkedStore,
        dedup_index: DedupIndex,
    ):
        self.storage = storage
        self.inline_store = inline_store
        self.chunked_store = chunked_store
        self.dedup_index = dedup_index

    async def upload(self, data: Optional[bytes], original_name: str, content_type: str) -> UploadReceipt:
        """Store ``data`` unless identical content is already present.

        Returns a receipt for both new and duplicate content; ``created`` tells
        them apart.

        Raises:
            NoPayload: no file content was supplied
            PayloadTooLarge: ``data`` exceeds the upload ceiling
            StorageFailure: the write failed; nothing was published
        """
        if data is None:
            raise NoPayload()

        size = len(data)
        decision = route(size)
        if decision is Route.REJECT:
            logger.info(f"Rejected upload of {original_name}: {size} bytes")
            raise PayloadTooLarge(size, config.MAX_UPLOAD_SIZE)

        checksum = sha256_hex(data)
        metadata = FileMetadata(
            original_name=original_name,
            content_type=content_type,
            size=size,
            checksum=checksum,
        )

        async with self.dedup_index.guard(checksum):
            existing = await self.dedup_index.lookup(checksum)
            if existing is not None:
                logger.info(f"Duplicate upload of {checksum}, existing record {existing.id}")
                return UploadReceipt(DUPLICATE_MESSAGE, existing.id, checksum, created=False)

            if not await self.storage.reserve_space(size):
                raise StorageFailure("Disk quota exceeded")

            try:
                if decision is Route.INLINE:
                    record = await self.inline_store.put(data, metadata)
                else:
                    record = await self._store_chunked(data, metadata)
            except DuplicateContent as e:
                logger.info(f"Inline record for {checksum} was committed concurrently")
                return UploadReceipt(DUPLICATE_MESSAGE, e.file_id, checksum, created=False)
            finally:
                await self.storage.release_space(size)

        logger.info(f"Stored {original_name} as {record.tier.value} record {record.id} ({size} bytes)")
        return UploadReceipt(UPLOADED_MESSAGE, record.id, checksum, created=True)

    async def _store_chunked(self, data: bytes, metadata: FileMetadata) -> FileRecord:
        view = memoryview(data)
        chunk_size = self.chunked_store.chunk_size
        async with await self.chunked_store.open_upload(metadata.original_name, metadata) as upload:
            for offset in range(0, len(view), chunk_size):
                await upload.write(view[offset:offset + chunk_size])
            result = await upload.finalize()
        if not result.ok:
            raise result.error
        return result.record
