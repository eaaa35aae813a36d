from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import AsyncIterator, List, Optional

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field, ValidationError

from content_store import config
from content_store.app.errors import StorageFailure
from content_store.app.models.file_record import FileMetadata, FileRecord, Tier, new_record_id
from content_store.app.services.storage_manager import StorageManager
from content_store.logger_config import setup_logger

logger = setup_logger()

META_FILE_NAME = "meta.json"
RECORD_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def chunk_file_name(index: int) -> str:
    return f"{index:08d}.chunk"


class ChunkedObject(BaseModel):
    """Contents of ``meta.json`` next to an object's chunk files."""
    id: str
    filename: str
    length: int
    chunk_size: int
    chunk_count: int
    upload_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: FileMetadata

    def to_record(self) -> FileRecord:
        return FileRecord(
            **self.metadata.model_dump(),
            id=self.id,
            tier=Tier.CHUNKED,
            created_at=self.upload_date,
        )


@dataclass(frozen=True)
class UploadResult:
    """Terminal outcome of a chunked upload: either a record or an error."""
    record: Optional[FileRecord] = None
    error: Optional[StorageFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def file_id(self) -> Optional[str]:
        return self.record.id if self.record else None


class ChunkedUpload:
    """Sequential write handle for one chunked object.

    Bytes are staged in a private directory under the temp dir, at most one
    chunk is buffered in memory, and nothing is visible to lookups until
    ``finalize`` moves the staged directory into the chunked tier.
    """

    def __init__(self, storage: StorageManager, filename: str, metadata: FileMetadata, chunk_size: int):
        self.storage = storage
        self.filename = filename
        self.metadata = metadata
        self.chunk_size = chunk_size
        self.id = new_record_id()
        self.staging_dir = storage.staging_path(self.id)
        self._buffer = bytearray()
        self._chunk_count = 0
        self._length = 0
        self._error: Optional[StorageFailure] = None
        self._closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if not self._closed:
            await self.abort()

    async def _start(self):
        await aiofiles.os.mkdir(self.staging_dir)

    async def write(self, data: bytes):
        """Append ``data``. A write error is remembered and reported by ``finalize``."""
        if self._closed:
            raise StorageFailure(f"Upload {self.id} is already closed")
        if self._error is not None:
            return
        self._buffer.extend(data)
        self._length += len(data)
        try:
            while len(self._buffer) >= self.chunk_size:
                await self._flush_chunk(bytes(self._buffer[:self.chunk_size]))
                del self._buffer[:self.chunk_size]
        except OSError as e:
            logger.error(f"Failed to write chunk {self._chunk_count} of upload {self.id}: {e}", exc_info=True)
            self._error = StorageFailure(f"Failed to write chunk: {e}")
            self._buffer.clear()

    async def _flush_chunk(self, chunk: bytes):
        async with aiofiles.open(self.staging_dir / chunk_file_name(self._chunk_count), 'wb') as f:
            await f.write(chunk)
        self._chunk_count += 1

    async def finalize(self) -> UploadResult:
        """Commit the staged object. Can be called once."""
        if self._closed:
            raise StorageFailure(f"Upload {self.id} is already closed")
        self._closed = True

        if self._error is not None:
            await self._discard()
            return UploadResult(error=self._error)

        try:
            if self._buffer:
                await self._flush_chunk(bytes(self._buffer))
                self._buffer.clear()

            stored = ChunkedObject(
                id=self.id,
                filename=self.filename,
                length=self._length,
                chunk_size=self.chunk_size,
                chunk_count=self._chunk_count,
                metadata=self.metadata,
            )
            async with aiofiles.open(self.staging_dir / META_FILE_NAME, 'w') as f:
                await f.write(stored.model_dump_json())

            usage = await self.storage.calculate_dir_size(self.staging_dir)
            await aiofiles.os.rename(self.staging_dir, self.storage.chunked_object_dir(self.id))
        except OSError as e:
            logger.error(f"Failed to store file {self.id}: {e}", exc_info=True)
            await self._discard()
            return UploadResult(error=StorageFailure(f"Failed to finalize upload: {e}"))

        await self.storage.update_disk_usage(usage)
        logger.info(f"Stored chunked object {self.id} ({self._length} bytes in {self._chunk_count} chunks)")
        return UploadResult(record=stored.to_record())

    async def abort(self):
        """Discard staged data without publishing anything."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        await self._discard()
        logger.info(f"Aborted chunked upload {self.id}")

    async def _discard(self):
        if not await aiofiles.os.path.exists(self.staging_dir):
            return
        for file in self.staging_dir.glob("*"):
            await aiofiles.os.unlink(file)
        await aiofiles.os.rmdir(self.staging_dir)


class ChunkedStore:
    """Keeps large payloads as numbered chunk files plus a metadata document.

    The checksum lives in the metadata document rather than in the path, so
    ``find_by_checksum`` scans every object's metadata.
    """

    def __init__(self, storage: StorageManager, chunk_size: int = None):
        self.storage = storage
        self.chunk_size = chunk_size or config.CHUNK_SIZE

    async def open_upload(self, name: str, metadata: FileMetadata) -> ChunkedUpload:
        self.storage.ensure_open()
        upload = ChunkedUpload(self.storage, name, metadata, self.chunk_size)
        try:
            await upload._start()
        except OSError as e:
            raise StorageFailure(f"Failed to open upload: {e}") from e
        logger.debug(f"Opened chunked upload {upload.id} for {name}")
        return upload

    async def find_by_checksum(self, checksum: str) -> List[FileRecord]:
        self.storage.ensure_open()
        matches = []
        for object_dir in self.storage.chunked_dir.glob("*"):
            stored = await self._read_meta(object_dir.name)
            if stored is not None and stored.metadata.checksum == checksum:
                matches.append(stored.to_record())
        return sorted(matches, key=lambda record: record.created_at)

    async def open_download(self, file_id: str) -> AsyncIterator[bytes]:
        """Return a lazy stream over the object's chunks.

        Raises:
            StorageFailure: if no committed object has this id
        """
        self.storage.ensure_open()
        stored = await self._read_meta(file_id)
        if stored is None:
            raise StorageFailure(f"Chunked object {file_id} not found")
        return self._iter_chunks(stored)

    async def _iter_chunks(self, stored: ChunkedObject) -> AsyncIterator[bytes]:
        object_dir = self.storage.chunked_object_dir(stored.id)
        for index in range(stored.chunk_count):
            try:
                async with aiofiles.open(object_dir / chunk_file_name(index), 'rb') as f:
                    chunk = await f.read()
            except OSError as e:
                logger.error(f"Failed to read chunk {index} of {stored.id}: {e}", exc_info=True)
                raise StorageFailure(f"Failed to read chunk: {e}") from e
            yield chunk

    async def _read_meta(self, file_id: str) -> Optional[ChunkedObject]:
        if not RECORD_ID_PATTERN.match(file_id):
            return None
        meta_path = self.storage.chunked_object_dir(file_id) / META_FILE_NAME
        try:
            async with aiofiles.open(meta_path, 'r') as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(f"Failed to read chunked metadata: {e}") from e
        try:
            return ChunkedObject.model_validate_json(content)
        except ValidationError:
            logger.warning(f"Ignoring unreadable metadata for chunked object {file_id}")
            return None
