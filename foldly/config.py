from pathlib import Path

import humanfriendly
from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()


class Config(BaseModel):
    # Database
    DATABASE_URL: str

    # JWT & Security
    JWT_SECRET: str
    JWT_ALG: str
    ACCESS_TTL_MIN: int
    CLERK_WEBHOOK_SECRET: str
    TRUST_FORWARDED_FOR: bool

    # Storage
    STORAGE_PATH: Path
    DEFAULT_STORAGE_LIMIT: int
    DEFAULT_MAX_FILE_SIZE: int
    DEFAULT_MAX_FILES: int

    # Upload pipeline
    REALTIME_DEBOUNCE_MS: int
    PARTIAL_UPLOAD_TIMEOUT_MIN: int
    BATCH_TIMEOUT_MIN: int

    # Rate limits
    LINK_RATE_LIMIT: int
    LINK_RATE_WINDOW_SEC: int
    RATE_BLOCK_SEC: int

    # Logging
    LOG_LEVEL: str

    # Async I/O
    MAX_CONCURRENT_IO: int


config = Config(
    DATABASE_URL=os.environ["DATABASE_URL"],

    JWT_SECRET=os.environ["JWT_SECRET"],
    JWT_ALG=os.getenv("JWT_ALG", "HS256"),
    ACCESS_TTL_MIN=int(os.getenv("ACCESS_TTL_MIN", "15")),
    CLERK_WEBHOOK_SECRET=os.environ["CLERK_WEBHOOK_SECRET"],
    TRUST_FORWARDED_FOR=os.getenv("TRUST_FORWARDED_FOR", "false").lower() in ("1", "true", "yes"),

    STORAGE_PATH=Path(os.environ["STORAGE_PATH"]),
    DEFAULT_STORAGE_LIMIT=humanfriendly.parse_size(os.getenv("DEFAULT_STORAGE_LIMIT", "2GiB")),
    DEFAULT_MAX_FILE_SIZE=humanfriendly.parse_size(os.getenv("DEFAULT_MAX_FILE_SIZE", "100MiB")),
    DEFAULT_MAX_FILES=int(os.getenv("DEFAULT_MAX_FILES", "100")),

    REALTIME_DEBOUNCE_MS=int(os.getenv("REALTIME_DEBOUNCE_MS", "200")),
    PARTIAL_UPLOAD_TIMEOUT_MIN=int(os.getenv("PARTIAL_UPLOAD_TIMEOUT_MIN", "60")),
    BATCH_TIMEOUT_MIN=int(os.getenv("BATCH_TIMEOUT_MIN", "120")),

    LINK_RATE_LIMIT=int(os.getenv("LINK_RATE_LIMIT", "20")),
    LINK_RATE_WINDOW_SEC=int(os.getenv("LINK_RATE_WINDOW_SEC", "60")),
    RATE_BLOCK_SEC=int(os.getenv("RATE_BLOCK_SEC", "60")),

    LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),

    MAX_CONCURRENT_IO=int(os.getenv("MAX_CONCURRENT_IO", "16")),
)

__all__ = ["config"]
