import os
import tempfile

# Keep test logs out of the working tree; must run before content_store is imported
os.environ.setdefault("CONTENT_STORE_LOG_DIR", tempfile.mkdtemp(prefix="content_store_logs_"))

import pytest
import pytest_asyncio

from content_store.app.services.chunked_store import ChunkedStore
from content_store.app.services.dedup_index import DedupIndex
from content_store.app.services.inline_store import InlineStore
from content_store.app.services.retrieval_service import RetrievalService
from content_store.app.services.storage_manager import StorageManager
from content_store.app.services.upload_service import UploadService

MiB = 1024 * 1024


@pytest_asyncio.fixture
async def storage(tmp_path):
    """An opened storage manager rooted in a per-test directory."""
    manager = StorageManager(tmp_path / "data", tmp_path / "temp")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def inline_store(storage):
    return InlineStore(storage)


@pytest.fixture
def chunked_store(storage):
    return ChunkedStore(storage)


@pytest.fixture
def dedup_index(inline_store, chunked_store):
    return DedupIndex(inline_store, chunked_store)


@pytest.fixture
def retrieval_service(inline_store, chunked_store):
    return RetrievalService(inline_store, chunked_store)


@pytest.fixture
def upload_service(storage, inline_store, chunked_store, dedup_index):
    return UploadService(storage, inline_store, chunked_store, dedup_index)


def generate_random_content(size_bytes):
    """Generate random binary content of specified size."""
    return os.urandom(size_bytes)


async def collect(stream):
    return b"".join([chunk async for chunk in stream])


def count_records(storage):
    """Number of committed records across both tiers."""
    inline = sum(1 for _ in storage.inline_dir.glob("*/*.record"))
    chunked = sum(1 for _ in storage.chunked_dir.glob("*/meta.json"))
    return inline + chunked
