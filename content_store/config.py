"""Configuration settings for the content store."""
import os

MiB = 1024 * 1024

# Size policy
INLINE_MAX_SIZE = 16 * MiB  # 16MB, largest payload kept as a single record
MAX_UPLOAD_SIZE = 128 * MiB  # 128MB, hard ceiling

# Chunked tier
CHUNK_SIZE = 255 * 1024  # 255KB per chunk file
READ_CHUNK_SIZE = 64 * 1024

# Storage limits
MAX_DISK_QUOTA = 10 * 1024 * MiB  # 10GB

# Upload rate limiting
RATE_LIMIT_WINDOW_SECONDS = 5 * 60
RATE_LIMIT_MAX_UPLOADS = 10

# Directory paths
DATA_DIR = os.getenv("CONTENT_STORE_DATA_DIR", "./data")
TEMP_DIR = os.getenv("CONTENT_STORE_TEMP_DIR", "./temp")
LOG_DIR = os.getenv("CONTENT_STORE_LOG_DIR", "./logs")

# Allowance for multipart boundaries and part headers on top of the file itself
MULTIPART_OVERHEAD = 64 * 1024

# Cross-origin browser clients
CORS_ALLOW_ORIGINS = ["*"]
