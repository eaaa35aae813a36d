"""Error taxonomy surfaced by the content store core.

Every error carries a ``kind`` and a human readable ``message`` so callers can
map outcomes without parsing strings.
"""
from enum import Enum


class ErrorKind(str, Enum):
    NO_PAYLOAD = "no_payload"
    DUPLICATE_CONTENT = "duplicate_content"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    STORAGE_FAILURE = "storage_failure"
    NOT_FOUND = "not_found"


class ContentStoreError(Exception):
    """Base class for all content store errors."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoPayload(ContentStoreError):
    """No file content was supplied."""

    kind = ErrorKind.NO_PAYLOAD

    def __init__(self, message: str = "No files were uploaded."):
        super().__init__(message)


class DuplicateContent(ContentStoreError):
    """The checksum is already stored in one of the tiers."""

    kind = ErrorKind.DUPLICATE_CONTENT

    def __init__(self, checksum: str, file_id: str = None):
        super().__init__("File already exists")
        self.checksum = checksum
        self.file_id = file_id


class PayloadTooLarge(ContentStoreError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE

    def __init__(self, size: int, limit: int):
        super().__init__(f"File size greater than {limit // (1024 * 1024)}MB is not allowed.")
        self.size = size
        self.limit = limit


class StorageFailure(ContentStoreError):
    """The persistence layer failed mid-write or mid-read."""

    kind = ErrorKind.STORAGE_FAILURE


class NotFound(ContentStoreError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, checksum: str):
        super().__init__("File not found")
        self.checksum = checksum
