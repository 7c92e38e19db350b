import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from uploadq.utils.exceptions import InvalidInputError

load_dotenv()

MIB = 1024 * 1024
DEFAULT_PART_SIZE = 5 * MIB  # S3 minimum for non-final parts


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidInputError(f"{name} must be an integer, got {value!r}")


class Settings:
    APP_NAME = "uploadq"
    UPLOAD_API_BASE = os.getenv("UPLOAD_API_BASE", "http://localhost:8000")
    UPLOAD_API_TOKEN = os.getenv("UPLOAD_API_TOKEN", None)

    BUCKET_NAME = os.getenv("BUCKET_NAME", "public")
    BUCKET_ENDPOINT = os.getenv("BUCKET_ENDPOINT", "http://localhost:9000")
    BUCKET_ACCESS_KEY_ID = os.getenv("BUCKET_ACCESS_KEY_ID", "minioadmin")
    BUCKET_SECRET_ACCESS_KEY = os.getenv("BUCKET_SECRET_ACCESS_KEY", "minioadmin")
    BUCKET_REGION = os.getenv("BUCKET_REGION", "us-east-1")
    BUCKET_PUBLIC_URL = os.getenv("BUCKET_PUBLIC_URL", "http://localhost:9000/public")
    PRESIGNED_URL_EXPIRY = _env_int("PRESIGNED_URL_EXPIRY", 3600)
    MIN_PART_SIZE = _env_int("MIN_PART_SIZE", DEFAULT_PART_SIZE)

settings = Settings()


@dataclass
class UploaderConfig:
    """Client-side upload configuration with environment overrides."""
    api_base: str = settings.UPLOAD_API_BASE
    api_token: Optional[str] = settings.UPLOAD_API_TOKEN

    part_size: int = DEFAULT_PART_SIZE
    read_chunk_size: int = 64 * 1024  # 64KB

    # Concurrency
    max_concurrent_uploads: int = 3
    max_concurrent_parts: Optional[int] = None  # None = all parts of a file at once

    # Per-part retry
    max_retries: int = 3
    backoff_factor: float = 1.0
    backoff_jitter: float = 1.0
    max_backoff: float = 10.0

    # Transport timeouts, seconds
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    debug: bool = False

    def __post_init__(self):
        self.api_base = os.getenv("UPLOAD_API_BASE", self.api_base).rstrip("/")
        self.part_size = _env_int("UPLOAD_PART_SIZE", self.part_size)
        self.max_concurrent_uploads = _env_int("MAX_CONCURRENT_UPLOADS", self.max_concurrent_uploads)
        self.max_concurrent_parts = _env_int("MAX_CONCURRENT_PARTS", self.max_concurrent_parts)
        self.max_retries = _env_int("MAX_RETRIES", self.max_retries)
        if os.getenv("DEBUG"):
            self.debug = os.getenv("DEBUG", "false").lower() == "true"
        self.validate()

    def validate(self):
        if self.part_size <= 0:
            raise InvalidInputError("part_size must be positive")
        if self.read_chunk_size <= 0:
            raise InvalidInputError("read_chunk_size must be positive")
        if self.max_concurrent_uploads < 1:
            raise InvalidInputError("max_concurrent_uploads must be at least 1")
        if self.max_concurrent_parts is not None and self.max_concurrent_parts < 1:
            raise InvalidInputError("max_concurrent_parts must be at least 1")
        if self.max_retries < 0:
            raise InvalidInputError("max_retries cannot be negative")
        if self.backoff_factor < 0 or self.backoff_jitter < 0 or self.max_backoff < 0:
            raise InvalidInputError("backoff settings cannot be negative")
