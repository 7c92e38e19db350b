import asyncio
from typing import Dict, List, Optional, Set
from unittest.mock import AsyncMock, MagicMock

import pytest

from uploadq.core.config import MIB, UploaderConfig
from uploadq.models.upload import PartRecord, PartTarget, SourceFile, UploadPlan


def make_plan(total_parts: int, key: str = "uploads/video.mp4", session_id: str = "session-1",
              part_size: Optional[int] = None) -> UploadPlan:
    return UploadPlan(
        storage_key=key,
        session_id=session_id,
        parts=tuple(
            PartTarget(part_number=n, transfer_endpoint=f"https://bucket.test/{key}?partNumber={n}")
            for n in range(1, total_parts + 1)
        ),
        part_size=part_size,
    )


async def wait_until(predicate, attempts: int = 200):
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class FakeTransferUnit:
    """
    Stand-in for ``PartTransferUnit``. Parts listed in ``held`` block until
    ``release`` is set or their token is canceled; ``failures`` holds
    one-shot errors per part number.
    """

    def __init__(self):
        self.calls: List[int] = []
        self.etags: Dict[int, str] = {}
        self.failures: Dict[int, Exception] = {}
        self.held: Set[int] = set()
        self.hold_all = False
        self.ignore_cancel = False
        self.release = asyncio.Event()

    async def transfer(self, target, byte_range, source, content_type, token, on_progress=None):
        part_number = target.part_number
        self.calls.append(part_number)
        if on_progress:
            on_progress(0.0)

        if (self.hold_all or part_number in self.held) and not self.release.is_set():
            waiters = {asyncio.ensure_future(self.release.wait())}
            if not self.ignore_cancel:
                waiters.add(asyncio.ensure_future(token.wait()))
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in waiters:
                waiter.cancel()

        if not self.ignore_cancel:
            token.raise_if_cancelled(part_number)
        error = self.failures.pop(part_number, None)
        if error is not None:
            raise error
        if on_progress:
            on_progress(1.0)
        return PartRecord(part_number=part_number, integrity_token=self.etags.get(part_number, f"etag-{part_number}"))

    async def close(self):
        pass


@pytest.fixture
def config():
    return UploaderConfig(max_retries=0, backoff_factor=0, backoff_jitter=0, max_concurrent_uploads=2)


@pytest.fixture
def transfer_unit():
    return FakeTransferUnit()


@pytest.fixture
def mock_api():
    """Upload API double serving a three-part plan."""
    api = MagicMock()
    api.allocate_plan = AsyncMock(return_value=make_plan(3))
    api.finalize = AsyncMock(return_value="https://cdn.test/uploads/video.mp4")
    api.abort_session = AsyncMock(return_value=None)
    api.close = AsyncMock()
    return api


@pytest.fixture
def video_source():
    # 12 MiB splits into 5 + 5 + 2 MiB with the default part size
    return SourceFile.from_bytes("video.mp4", b"\x00" * (12 * MIB), mime_type="video/mp4")
