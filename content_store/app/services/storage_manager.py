import os
from pathlib import Path
import asyncio
import aiofiles.os

from content_store import config
from content_store.app.errors import StorageFailure
from content_store.logger_config import setup_logger

logger = setup_logger()

INLINE_DIR_NAME = "inline"
CHUNKED_DIR_NAME = "chunked"


class StorageManager:
    """Owns the on-disk layout shared by both storage tiers.

    Created once at startup and handed to every store; ``initialize`` and
    ``close`` are driven by the caller.
    """

    def __init__(self, data_dir: Path, temp_dir: Path, max_disk_quota: int = None):
        self.data_dir = Path(data_dir)
        self.temp_dir = Path(temp_dir)
        self.inline_dir = self.data_dir / INLINE_DIR_NAME
        self.chunked_dir = self.data_dir / CHUNKED_DIR_NAME
        self.max_disk_quota = max_disk_quota if max_disk_quota is not None else config.MAX_DISK_QUOTA
        self.disk_usage: int = 0
        self.reserved_space: int = 0
        self.disk_usage_lock = asyncio.Lock()
        self.is_open = False

    async def get_file_size(self, path: Path) -> int:
        """Get file size asynchronously."""
        if await aiofiles.os.path.exists(path):
            stat = await aiofiles.os.stat(path)
            return stat.st_size
        return 0

    async def initialize(self):
        """Create the storage layout, drop abandoned staging data and compute disk usage.

        Raises:
            StorageFailure: if the storage root cannot be prepared
        """
        logger.info("Initializing storage manager...")
        try:
            for directory in (self.data_dir, self.temp_dir, self.inline_dir, self.chunked_dir):
                directory.mkdir(exist_ok=True, parents=True)
            logger.debug(f"Storage directories created/verified: {self.data_dir}, {self.temp_dir}")

            files_removed = await self.clean_temp_dir()
            logger.info(f"Cleaned temporary directory, removed {files_removed} files")

            self.disk_usage = await self.calculate_disk_usage()
        except OSError as e:
            logger.error(f"Failed to initialize storage at {self.data_dir}: {e}", exc_info=True)
            raise StorageFailure(f"Storage unavailable: {e}") from e

        self.is_open = True
        logger.info(f"Current disk usage: {self.disk_usage / (1024*1024):.2f} MB")

    async def close(self):
        self.is_open = False
        logger.info("Storage manager closed")

    def ensure_open(self):
        if not self.is_open:
            raise StorageFailure("Storage is not open")

    async def clean_temp_dir(self) -> int:
        """Remove partial uploads left behind by an earlier process."""
        files_removed = 0
        for entry in self.temp_dir.glob("*"):
            if entry.is_dir():
                for file in entry.glob("*"):
                    await aiofiles.os.unlink(file)
                    files_removed += 1
                await aiofiles.os.rmdir(entry)
            elif entry.is_file():
                await aiofiles.os.unlink(entry)
                files_removed += 1
        return files_removed

    async def calculate_disk_usage(self) -> int:
        return await self.calculate_dir_size(self.data_dir)

    async def calculate_dir_size(self, directory: Path) -> int:
        usage = 0
        for folder_path, _, files in os.walk(directory):
            for file in files:
                usage += await self.get_file_size(Path(folder_path) / file)
        return usage

    def inline_record_path(self, checksum: str) -> Path:
        """Inline records are sharded by the first two characters of their checksum."""
        return self.inline_dir / checksum[:2] / f"{checksum}.record"

    def chunked_object_dir(self, file_id: str) -> Path:
        return self.chunked_dir / file_id

    def staging_path(self, name: str) -> Path:
        return self.temp_dir / name

    async def update_disk_usage(self, size_change: int):
        """Update the disk usage counter thread-safely."""
        async with self.disk_usage_lock:
            previous_usage = self.disk_usage
            self.disk_usage += size_change
        logger.debug(f"Disk usage updated. Previous: {previous_usage}, Change: {size_change}, New: {self.disk_usage}")

    async def reserve_space(self, size: int) -> bool:
        """Claim room for a pending write so concurrent writers cannot overshoot the quota."""
        async with self.disk_usage_lock:
            if not self.check_disk_quota(size):
                return False
            self.reserved_space += size
        return True

    async def release_space(self, size: int):
        async with self.disk_usage_lock:
            self.reserved_space -= size

    def check_disk_quota(self, additional_size: int) -> bool:
        """Check if storing additional data would exceed the disk quota.

        Args:
            additional_size: Size in bytes of new data to be stored

        Returns:
            bool: True if adding the data won't exceed quota, False otherwise
        """
        return (self.disk_usage + self.reserved_space + additional_size) <= self.max_disk_quota
