"""Client-side multipart upload orchestration for S3-compatible storage."""

__version__ = "1.0.0"
