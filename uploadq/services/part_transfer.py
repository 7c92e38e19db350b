"""
Single-part transfer to a presigned endpoint.

A ``PartTransferUnit`` streams one byte range of a ``SourceFile`` with
``PUT``, reports per-part progress, and returns the ``PartRecord`` built
from the response entity tag. Each call takes its own
``CancellationToken`` so that one part can be aborted without touching
the others.
"""

import asyncio
import logging
import random
from typing import Callable, Optional

import httpx

from uploadq.core.config import UploaderConfig
from uploadq.models.upload import PartRecord, PartTarget, SourceFile
from uploadq.services.chunker import ByteRange
from uploadq.utils.exceptions import NetworkError, TransferCanceledError, TransferFailedError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

RETRYABLE_CLIENT_STATUS = (408, 429)


class CancellationToken:
    """Signal shared between a state machine and one in-flight transfer."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

    def raise_if_cancelled(self, part_number: Optional[int] = None):
        if self._event.is_set():
            raise TransferCanceledError(f"Part {part_number} canceled" if part_number else "Transfer canceled")


def extract_etag(headers: httpx.Headers) -> str:
    """Read the entity tag (header lookup is case-insensitive) without quotes."""
    return headers.get("etag", "").strip().strip('"').strip()


class PartTransferUnit:
    """Uploads individual parts with retry and exponential backoff."""

    def __init__(self, client: httpx.AsyncClient, config: Optional[UploaderConfig] = None):
        self.client = client
        self.config = config or UploaderConfig()

    @classmethod
    def from_config(cls, config: UploaderConfig) -> "PartTransferUnit":
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout),
            headers={"User-Agent": "uploadq/1.0"},
        )
        return cls(client, config)

    async def close(self):
        await self.client.aclose()

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, NetworkError):
            return True
        if isinstance(error, TransferFailedError) and error.status_code is not None:
            return error.status_code >= 500 or error.status_code in RETRYABLE_CLIENT_STATUS
        return False

    def _backoff(self, attempt: int) -> float:
        wait_time = self.config.backoff_factor * (2 ** attempt)
        if self.config.backoff_jitter:
            wait_time += random.uniform(0, self.config.backoff_jitter)
        return min(wait_time, self.config.max_backoff)

    async def _sleep(self, delay: float, token: CancellationToken):
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    async def transfer(self,
                       target: PartTarget,
                       byte_range: ByteRange,
                       source: SourceFile,
                       content_type: str,
                       token: CancellationToken,
                       on_progress: Optional[ProgressCallback] = None) -> PartRecord:
        part_number = target.part_number
        for attempt in range(self.config.max_retries + 1):
            token.raise_if_cancelled(part_number)
            try:
                return await self._transfer_once(target, byte_range, source, content_type, token, on_progress)
            except TransferCanceledError:
                raise
            except (NetworkError, TransferFailedError) as e:
                if attempt == self.config.max_retries or not self._is_retryable(e):
                    logger.error(f"Part {part_number} failed after {attempt + 1} attempt(s): {e}")
                    raise
                wait_time = self._backoff(attempt)
                logger.warning(f"Part {part_number} attempt {attempt + 1} failed: {e}. "
                               f"Retrying in {wait_time:.1f}s...")
                await self._sleep(wait_time, token)
        # max_retries >= 0 guarantees the loop returns or raises
        raise TransferFailedError(None, part_number, "retries exhausted")

    async def _transfer_once(self,
                             target: PartTarget,
                             byte_range: ByteRange,
                             source: SourceFile,
                             content_type: str,
                             token: CancellationToken,
                             on_progress: Optional[ProgressCallback]) -> PartRecord:
        part_number = target.part_number
        length = byte_range.length
        sent = 0

        def report(fraction: float):
            if on_progress is not None:
                on_progress(min(max(fraction, 0.0), 1.0))

        async def body():
            nonlocal sent
            async for chunk in source.iter_range(byte_range.offset, length, self.config.read_chunk_size):
                token.raise_if_cancelled(part_number)
                yield chunk
                sent += len(chunk)
                report(sent / length)

        report(0.0)
        headers = {"Content-Type": content_type, "Content-Length": str(length)}
        logger.debug(f"Uploading part {part_number}: offset={byte_range.offset:,}, size={length:,}")

        request_task = asyncio.ensure_future(
            self.client.put(target.transfer_endpoint, content=body(), headers=headers)
        )
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()

        if request_task not in done:
            await asyncio.gather(request_task, return_exceptions=True)
            raise TransferCanceledError(f"Part {part_number} canceled")

        try:
            response = request_task.result()
        except httpx.TransportError as e:
            raise NetworkError(f"Network error during upload of part {part_number}: {e}") from e

        # a response that lands after cancellation must not yield a record
        token.raise_if_cancelled(part_number)

        if not 200 <= response.status_code < 300:
            raise TransferFailedError(response.status_code, part_number)

        etag = extract_etag(response.headers)
        if not etag:
            raise TransferFailedError(response.status_code, part_number, "response carried no ETag header")

        logger.debug(f"Part {part_number} uploaded with ETag: {etag}")
        return PartRecord(part_number=part_number, integrity_token=etag)
