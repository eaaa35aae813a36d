import asyncio

import pytest

from content_store.app.errors import DuplicateContent, ErrorKind, NoPayload, PayloadTooLarge, StorageFailure
from content_store.app.models.file_record import FileMetadata, Tier
from content_store.app.services.hasher import sha256_hex
from conftest import MiB, collect, count_records, generate_random_content


@pytest.mark.asyncio
async def test_small_upload_is_stored_inline(upload_service, inline_store, storage):
    content = generate_random_content(1024)
    receipt = await upload_service.upload(content, "photo.jpg", "image/jpeg")

    assert receipt.created
    assert receipt.message == "File uploaded successfully"
    assert receipt.sha256 == sha256_hex(content)

    record = await inline_store.find(receipt.sha256)
    assert record.id == receipt.file_id
    assert record.tier is Tier.INLINE
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_sequential_duplicate_reports_first_record(upload_service, storage):
    """Same content under another name is recognised by its checksum."""
    content = generate_random_content(2048)
    first = await upload_service.upload(content, "a.bin", "application/octet-stream")
    second = await upload_service.upload(content, "b.txt", "text/plain")

    assert first.created
    assert not second.created
    assert second.message == "File already exists"
    assert second.file_id == first.file_id
    assert second.sha256 == first.sha256
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_concurrent_identical_uploads_store_one_copy(upload_service, dedup_index, storage):
    content = generate_random_content(64 * 1024)
    receipts = await asyncio.gather(
        *[upload_service.upload(content, f"copy-{i}.bin", "application/octet-stream") for i in range(10)]
    )

    assert sum(1 for receipt in receipts if receipt.created) == 1
    assert len({receipt.file_id for receipt in receipts}) == 1
    assert count_records(storage) == 1
    assert dedup_index.active_guards == 0


@pytest.mark.asyncio
async def test_concurrent_identical_chunked_uploads_store_one_copy(upload_service, storage):
    content = generate_random_content(17 * MiB)
    receipts = await asyncio.gather(
        *[upload_service.upload(content, f"movie-{i}.mp4", "video/mp4") for i in range(3)]
    )

    assert sum(1 for receipt in receipts if receipt.created) == 1
    assert len({receipt.file_id for receipt in receipts}) == 1
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_inline_uniqueness_holds_without_guard(inline_store, storage):
    """Racing writers that skip the guard are still stopped by the storage layer."""
    content = generate_random_content(4096)
    metadata = FileMetadata(
        original_name="race.bin",
        content_type="application/octet-stream",
        size=len(content),
        checksum=sha256_hex(content),
    )
    results = await asyncio.gather(
        *[inline_store.put(content, metadata) for _ in range(5)],
        return_exceptions=True,
    )

    stored = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, DuplicateContent)]
    assert len(stored) == 1
    assert len(refused) == 4
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_17_mib_upload_is_chunked_and_streamed_back(upload_service, chunked_store, retrieval_service):
    content = generate_random_content(17 * MiB)
    receipt = await upload_service.upload(content, "big.iso", "application/x-iso9660-image")
    assert receipt.created

    matches = await chunked_store.find_by_checksum(receipt.sha256)
    assert [record.id for record in matches] == [receipt.file_id]

    found = await retrieval_service.retrieve(receipt.sha256)
    assert found.tier is Tier.CHUNKED
    chunk_sizes = []
    received = bytearray()
    async for chunk in found.stream:
        chunk_sizes.append(len(chunk))
        received.extend(chunk)
    assert bytes(received) == content
    assert max(chunk_sizes) <= chunked_store.chunk_size
    assert len(chunk_sizes) > 1


@pytest.mark.asyncio
async def test_chunked_duplicate_is_detected(upload_service, storage):
    content = generate_random_content(16 * MiB + 1)
    first = await upload_service.upload(content, "one.bin", "application/octet-stream")
    second = await upload_service.upload(content, "two.bin", "application/octet-stream")

    assert first.created
    assert not second.created
    assert second.file_id == first.file_id
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_200_mib_upload_is_rejected(upload_service, storage):
    content = bytes(200 * MiB)
    with pytest.raises(PayloadTooLarge) as exc_info:
        await upload_service.upload(content, "huge.bin", "application/octet-stream")

    assert exc_info.value.kind is ErrorKind.PAYLOAD_TOO_LARGE
    assert "128MB" in exc_info.value.message
    assert count_records(storage) == 0
    assert list(storage.temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_payload_is_rejected(upload_service, storage):
    with pytest.raises(NoPayload):
        await upload_service.upload(None, "missing.txt", "text/plain")
    assert count_records(storage) == 0


@pytest.mark.asyncio
async def test_empty_payload_is_stored_inline(upload_service, inline_store, storage):
    receipt = await upload_service.upload(b"", "empty.txt", "text/plain")

    assert receipt.created
    assert receipt.sha256 == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    record, data = await inline_store.get(receipt.sha256)
    assert data == b""
    assert record.size == 0
    assert count_records(storage) == 1


@pytest.mark.asyncio
async def test_quota_exceeded_is_a_storage_failure(upload_service, storage):
    storage.max_disk_quota = storage.disk_usage + 100
    with pytest.raises(StorageFailure) as exc_info:
        await upload_service.upload(generate_random_content(1024), "a.bin", "application/octet-stream")

    assert exc_info.value.message == "Disk quota exceeded"
    assert count_records(storage) == 0


@pytest.mark.asyncio
async def test_concurrent_uploads_share_the_quota(upload_service, storage):
    """Different contents racing for the last free space cannot both be stored."""
    storage.max_disk_quota = storage.disk_usage + 1500
    results = await asyncio.gather(
        upload_service.upload(generate_random_content(1024), "a.bin", "application/octet-stream"),
        upload_service.upload(generate_random_content(1024), "b.bin", "application/octet-stream"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, StorageFailure)) == 1
    assert count_records(storage) == 1
    assert storage.reserved_space == 0


@pytest.mark.asyncio
async def test_storage_failure_leaves_no_record(upload_service, inline_store, storage, monkeypatch):
    async def failing_put(data, metadata):
        raise StorageFailure("connection lost")

    monkeypatch.setattr(inline_store, "put", failing_put)
    with pytest.raises(StorageFailure):
        await upload_service.upload(generate_random_content(1024), "a.bin", "application/octet-stream")
    assert count_records(storage) == 0


@pytest.mark.asyncio
async def test_failed_chunked_write_leaves_no_record(upload_service, storage, monkeypatch):
    from content_store.app.services.chunked_store import ChunkedUpload

    async def broken_flush(self, chunk):
        raise OSError("disk full")

    monkeypatch.setattr(ChunkedUpload, "_flush_chunk", broken_flush)
    content = generate_random_content(17 * MiB)
    with pytest.raises(StorageFailure):
        await upload_service.upload(content, "big.bin", "application/octet-stream")

    assert count_records(storage) == 0
    assert list(storage.temp_dir.iterdir()) == []

    # The failed attempt must not block a later upload of the same content
    monkeypatch.undo()
    receipt = await upload_service.upload(content, "big.bin", "application/octet-stream")
    assert receipt.created
    assert await collect((await upload_service.chunked_store.open_download(receipt.file_id))) == content
