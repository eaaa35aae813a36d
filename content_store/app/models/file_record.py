from datetime import datetime, timezone
from enum import Enum
import re
import uuid

from pydantic import BaseModel, Field, field_validator

CHECKSUM_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class Tier(str, Enum):
    INLINE = "inline"
    CHUNKED = "chunked"


def new_record_id() -> str:
    return uuid.uuid4().hex


class FileMetadata(BaseModel):
    """Descriptive metadata supplied by the uploader, never checked against content."""
    original_name: str
    content_type: str
    size: int
    checksum: str

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v):
        if not CHECKSUM_PATTERN.match(v):
            raise ValueError("checksum must be 64 lowercase hex characters")
        return v


class FileRecord(FileMetadata):
    id: str = Field(default_factory=new_record_id)
    tier: Tier
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}


class UploadResponse(BaseModel):
    message: str
    fileId: str
    sha256: str
