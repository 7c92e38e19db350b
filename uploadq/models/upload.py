import asyncio
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple, Union

DEFAULT_MIME_TYPE = "application/octet-stream"


class UploadStatus(Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.CANCELED, UploadStatus.ERROR)


@dataclass(frozen=True)
class PartTarget:
    part_number: int
    transfer_endpoint: str


@dataclass(frozen=True)
class UploadPlan:
    storage_key: str
    session_id: str
    parts: Tuple[PartTarget, ...]
    part_size: Optional[int] = None

    @property
    def total_parts(self) -> int:
        return len(self.parts)

    @property
    def part_numbers(self) -> Tuple[int, ...]:
        return tuple(p.part_number for p in self.parts)


@dataclass(frozen=True)
class PartRecord:
    part_number: int
    integrity_token: str

    def to_dict(self) -> dict:
        return {"partNumber": self.part_number, "etag": self.integrity_token}


@dataclass(frozen=True)
class UploadResult:
    file_url: str
    storage_key: str
    file_name: str
    file_size: int
    mime_type: str
    parts: Tuple[PartRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "file_url": self.file_url,
            "storage_key": self.storage_key,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "parts": [p.to_dict() for p in self.parts],
        }


@dataclass
class SourceFile:
    """A file to upload, backed by a path on disk or by bytes in memory."""
    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE
    path: Optional[Path] = None
    data: Optional[bytes] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "SourceFile":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return cls(
            name=path.name,
            size=path.stat().st_size,
            mime_type=mime_type or mimetypes.guess_type(str(path))[0] or DEFAULT_MIME_TYPE,
            path=path,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> "SourceFile":
        return cls(name=name, size=len(data), mime_type=mime_type, data=data)

    async def iter_range(self, offset: int, length: int, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """
        Stream a byte range in chunks to avoid loading a whole part into memory.

        Disk reads run in a worker thread so that many parts can stream from
        the same file without blocking the event loop.
        """
        if self.data is not None:
            view = memoryview(self.data)[offset:offset + length]
            for start in range(0, len(view), chunk_size):
                yield bytes(view[start:start + chunk_size])
            return

        if self.path is None:
            raise FileNotFoundError(f"No content for {self.name}")
        f = await asyncio.to_thread(open, self.path, "rb")
        try:
            await asyncio.to_thread(f.seek, offset)
            remaining = length
            while remaining > 0:
                chunk = await asyncio.to_thread(f.read, min(chunk_size, remaining))
                if not chunk:
                    break
                yield chunk
                remaining -= len(chunk)
        finally:
            f.close()
