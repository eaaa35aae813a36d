from typing import Optional, Tuple

import aiofiles
import aiofiles.os

from content_store.app.errors import DuplicateContent, StorageFailure
from content_store.app.models.file_record import CHECKSUM_PATTERN, FileMetadata, FileRecord, Tier
from content_store.app.services.storage_manager import StorageManager
from content_store.logger_config import setup_logger

logger = setup_logger()


class InlineStore:
    """Keeps small payloads as one self-contained record file per checksum.

    A record file is a JSON header line holding the FileRecord followed by the
    raw bytes. The record path is derived from the checksum, so committing a
    record with an exclusive hard link doubles as a uniqueness constraint.
    """

    def __init__(self, storage: StorageManager):
        self.storage = storage

    async def put(self, data: bytes, metadata: FileMetadata) -> FileRecord:
        """Persist ``data`` as a new inline record.

        Raises:
            DuplicateContent: a record with the same checksum was committed first
            StorageFailure: the record could not be written
        """
        self.storage.ensure_open()
        record = FileRecord(**metadata.model_dump(), tier=Tier.INLINE)
        record_path = self.storage.inline_record_path(record.checksum)
        temp_path = self.storage.staging_path(f"{record.id}.record")

        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(record.model_dump_json().encode() + b"\n")
                await f.write(data)
            record_size = await self.storage.get_file_size(temp_path)

            record_path.parent.mkdir(exist_ok=True, parents=True)
            await aiofiles.os.link(temp_path, record_path)
        except FileExistsError:
            existing = await self.find(record.checksum)
            logger.info(f"Inline record for {record.checksum} already committed")
            raise DuplicateContent(record.checksum, existing.id if existing else None)
        except OSError as e:
            logger.error(f"Failed to write inline record {record.checksum}: {e}", exc_info=True)
            raise StorageFailure(f"Failed to write inline record: {e}") from e
        finally:
            if await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.unlink(temp_path)

        await self.storage.update_disk_usage(record_size)
        logger.debug(f"Stored inline record {record.id} ({record.size} bytes) at {record_path}")
        return record

    async def find(self, checksum: str) -> Optional[FileRecord]:
        """Read only the header of the record for ``checksum``."""
        record_path = self._existing_path(checksum)
        if record_path is None or not await aiofiles.os.path.exists(record_path):
            return None
        try:
            async with aiofiles.open(record_path, 'rb') as f:
                header = await f.readline()
        except OSError as e:
            raise StorageFailure(f"Failed to read inline record: {e}") from e
        return FileRecord.model_validate_json(header)

    async def get(self, checksum: str) -> Optional[Tuple[FileRecord, bytes]]:
        """Return the record and its full payload, or None if absent."""
        record_path = self._existing_path(checksum)
        if record_path is None or not await aiofiles.os.path.exists(record_path):
            return None
        try:
            async with aiofiles.open(record_path, 'rb') as f:
                header = await f.readline()
                data = await f.read()
        except OSError as e:
            logger.error(f"Failed to read inline record {checksum}: {e}", exc_info=True)
            raise StorageFailure(f"Failed to read inline record: {e}") from e
        return FileRecord.model_validate_json(header), data

    def _existing_path(self, checksum: str):
        self.storage.ensure_open()
        if not CHECKSUM_PATTERN.match(checksum):
            return None
        return self.storage.inline_record_path(checksum)
