import hashlib
from typing import AsyncIterable


class Hasher:
    """Incremental SHA-256 over a byte stream."""

    def __init__(self):
        self._digest = hashlib.sha256()

    def update(self, chunk: bytes) -> "Hasher":
        self._digest.update(chunk)
        return self

    def hexdigest(self) -> str:
        return self._digest.hexdigest()


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


async def hash_chunks(chunks: AsyncIterable[bytes]) -> str:
    hasher = Hasher()
    async for chunk in chunks:
        hasher.update(chunk)
    return hasher.hexdigest()
