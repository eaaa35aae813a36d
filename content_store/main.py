import re
from pathlib import Path
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import FastAPI, Request, HTTPException, Depends, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, JSONResponse
import uvicorn

from content_store import config
from content_store.app.errors import ContentStoreError, NoPayload, NotFound, PayloadTooLarge
from content_store.app.models.file_record import UploadResponse
from content_store.app.services.chunked_store import ChunkedStore
from content_store.app.services.dedup_index import DedupIndex
from content_store.app.services.inline_store import InlineStore
from content_store.app.services.retrieval_service import RetrievalService
from content_store.app.services.storage_manager import StorageManager
from content_store.app.services.upload_service import UploadService
from content_store.logger_config import setup_logger
from content_store.rate_limiter import upload_limiter

logger = setup_logger()

STORAGE_FAILURE_MESSAGE = "Failed to upload the file."
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def build_services(app: FastAPI, storage: StorageManager):
    """Wire the stores and services around an opened storage manager."""
    inline_store = InlineStore(storage)
    chunked_store = ChunkedStore(storage)
    dedup_index = DedupIndex(inline_store, chunked_store)
    app.state.storage_manager = storage
    app.state.upload_service = UploadService(storage, inline_store, chunked_store, dedup_index)
    app.state.retrieval_service = RetrievalService(inline_store, chunked_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = StorageManager(Path(config.DATA_DIR), Path(config.TEMP_DIR))
    # Fails fast: an exception here aborts startup
    await storage.initialize()
    build_services(app, storage)
    yield
    await storage.close()


app = FastAPI(title="Content Store", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def check_content_length(request: Request):
    """Refuse an upload whose declared Content-Length cannot fit under the ceiling."""
    content_length = request.headers.get("content-length")
    if content_length is None:
        return

    try:
        content_length_value = int(content_length)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    if content_length_value > config.MAX_UPLOAD_SIZE + config.MULTIPART_OVERHEAD:
        too_large = PayloadTooLarge(content_length_value, config.MAX_UPLOAD_SIZE)
        raise HTTPException(status_code=413, detail=too_large.message)


@app.middleware("http")
async def limit_upload_size(request: Request, call_next):
    # Runs before the multipart body is parsed
    if request.method == "POST" and request.url.path == "/upload":
        try:
            check_content_length(request)
        except HTTPException as e:
            logger.info(f"Refused upload before reading body: {e.detail}")
            return JSONResponse(status_code=e.status_code, content={"detail": e.detail})
    return await call_next(request)


def content_disposition(filename: str) -> str:
    """Attachment header that survives any stored filename."""
    fallback = "".join(c if 32 <= ord(c) < 127 else "_" for c in filename)
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    header = f'attachment; filename="{fallback}"'
    quoted = quote(filename)
    if quoted != filename:
        header += f"; filename*=utf-8''{quoted}"
    return header


async def read_upload(file: UploadFile) -> bytes:
    """Decode the multipart file into memory, refusing anything over the ceiling."""
    if file.size is not None and file.size > config.MAX_UPLOAD_SIZE:
        raise PayloadTooLarge(file.size, config.MAX_UPLOAD_SIZE)
    data = await file.read(config.MAX_UPLOAD_SIZE + 1)
    if len(data) > config.MAX_UPLOAD_SIZE:
        raise PayloadTooLarge(len(data), config.MAX_UPLOAD_SIZE)
    return data


@app.post("/upload", dependencies=[Depends(upload_limiter)])
async def upload_file(request: Request, file: UploadFile = File(None)):
    """Store an uploaded file under its SHA-256 checksum."""
    upload_service = request.app.state.upload_service

    try:
        if file is None:
            raise NoPayload()
        logger.info(f"Receiving upload request for {file.filename}")
        data = await read_upload(file)
        receipt = await upload_service.upload(
            data,
            file.filename or "",
            file.content_type or "application/octet-stream",
        )
    except NoPayload as e:
        raise HTTPException(status_code=400, detail=e.message)
    except PayloadTooLarge as e:
        raise HTTPException(status_code=413, detail=e.message)
    except ContentStoreError as e:
        logger.error(f"Error uploading {file.filename if file else None}: {e.message}", exc_info=True)
        raise HTTPException(status_code=500, detail=STORAGE_FAILURE_MESSAGE)

    body = UploadResponse(message=receipt.message, fileId=receipt.file_id, sha256=receipt.sha256)
    if not receipt.created:
        return JSONResponse(status_code=409, content=body.model_dump())
    return body


@app.get("/{sha}")
async def get_file(sha: str, request: Request):
    """Stream stored content back by checksum."""
    retrieval_service = request.app.state.retrieval_service
    logger.info(f"Receiving download request for {sha}")

    # Anything that cannot be a checksum is a miss like any other
    if not SHA256_PATTERN.match(sha):
        raise HTTPException(status_code=404, detail="File not found")

    try:
        found = await retrieval_service.retrieve(sha.lower())
    except NotFound:
        raise HTTPException(status_code=404, detail="File not found")
    except ContentStoreError as e:
        logger.error(f"Error retrieving {sha}: {e.message}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to retrieve the file.")

    headers = {'content-disposition': content_disposition(found.filename)}
    return StreamingResponse(found.stream, media_type=found.content_type, headers=headers)


if __name__ == "__main__":
    logger.info("Starting Content Store...")
    logger.info(f"Data directory: {config.DATA_DIR}")
    logger.info(f"Temporary directory: {config.TEMP_DIR}")
    logger.info(f"Maximum disk quota: {config.MAX_DISK_QUOTA / (1024*1024):.2f} MB")
    uvicorn.run(app, host="0.0.0.0", port=8000)
