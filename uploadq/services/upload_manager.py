import asyncio
import logging
import uuid
from collections import deque
from types import MappingProxyType
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Set

from uploadq.core.config import UploaderConfig
from uploadq.models.upload import SourceFile, UploadResult, UploadStatus
from uploadq.services.file_uploader import FileUploader, UploadListener
from uploadq.services.part_transfer import PartTransferUnit
from uploadq.services.upload_api import UploadAPIClient
from uploadq.utils.exceptions import InvalidStateError

logger = logging.getLogger(__name__)


class UploadManager:
    """
    Runs many ``FileUploader`` instances behind a FIFO queue, with at most
    ``max_concurrent_uploads`` files admitted at a time.

    A file holds its slot from ``start()`` until it reaches a terminal
    state, so a paused file keeps its slot. Methods that admit work must be
    called from a running event loop.
    """

    def __init__(self,
                 api: UploadAPIClient,
                 transfer_unit: PartTransferUnit,
                 config: Optional[UploaderConfig] = None,
                 listener: Optional[UploadListener] = None,
                 max_concurrent_uploads: Optional[int] = None):
        self.api = api
        self.transfer_unit = transfer_unit
        self.config = config or UploaderConfig()
        self.listener = listener
        self.max_concurrent_uploads = max_concurrent_uploads or self.config.max_concurrent_uploads

        self._uploaders: Dict[str, FileUploader] = {}
        self._queue: Deque[str] = deque()
        self._active = 0
        self._running: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: UploaderConfig, listener: Optional[UploadListener] = None) -> "UploadManager":
        return cls(
            api=UploadAPIClient.from_config(config),
            transfer_unit=PartTransferUnit.from_config(config),
            config=config,
            listener=listener,
        )

    async def close(self):
        await self.api.close()
        await self.transfer_unit.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================
    # QUEUE
    # =========================
    def add_file(self, source: SourceFile) -> str:
        file_id = str(uuid.uuid4())
        self._uploaders[file_id] = FileUploader(
            source,
            api=self.api,
            transfer_unit=self.transfer_unit,
            file_id=file_id,
            listener=self.listener,
            config=self.config,
        )
        self._queue.append(file_id)
        logger.debug(f"Queued {source.name} as {file_id}")
        self._process_queue()
        return file_id

    def add_files(self, sources: Iterable[SourceFile]) -> List[str]:
        return [self.add_file(source) for source in sources]

    def retry_file(self, file_id: str):
        """
        Queue a failed file again; its uploaded parts are kept.

        Rejected until the failed attempt has released its slot, so a file
        never holds more than one slot.
        """
        uploader = self._uploaders[file_id]
        if uploader.get_status() != UploadStatus.ERROR:
            raise InvalidStateError(f"Cannot retry upload in status '{uploader.get_status().value}'")
        if file_id in self._running:
            raise InvalidStateError(f"Upload {file_id} is still settling its failed attempt")
        if file_id in self._queue:
            raise InvalidStateError(f"Upload {file_id} is already queued for retry")
        self._queue.append(file_id)
        self._process_queue()

    def _process_queue(self):
        while self._active < self.max_concurrent_uploads and self._queue:
            file_id = self._queue.popleft()
            uploader = self._uploaders.get(file_id)
            if uploader is None or uploader.get_status() not in (UploadStatus.PENDING, UploadStatus.ERROR):
                continue
            self._active += 1
            self._running.add(file_id)
            self._spawn(self._run(uploader))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, uploader: FileUploader):
        operation = uploader.retry if uploader.get_status() == UploadStatus.ERROR else uploader.start
        try:
            await self._attempt(operation)
            # a paused file keeps its slot until resumed to completion or canceled
            await uploader.wait_until_settled()
        finally:
            self._active -= 1
            self._running.discard(uploader.file_id)
            self._process_queue()

    async def _attempt(self, operation):
        try:
            await operation()
        except Exception as e:
            # the uploader already recorded the failure in its error state
            logger.debug(f"Upload attempt ended with {type(e).__name__}: {e}")

    # =========================
    # BULK OPERATIONS
    # =========================
    def get_uploader(self, file_id: str) -> Optional[FileUploader]:
        return self._uploaders.get(file_id)

    @property
    def uploaders(self) -> Mapping[str, FileUploader]:
        return MappingProxyType(self._uploaders)

    @property
    def active_uploads(self) -> int:
        return self._active

    def pause_all(self):
        for uploader in self._uploaders.values():
            if uploader.get_status() == UploadStatus.UPLOADING:
                try:
                    uploader.pause()
                except InvalidStateError as e:
                    logger.debug(f"Not pausing {uploader.file_id}: {e}")

    def resume_all(self):
        for uploader in self._uploaders.values():
            if uploader.get_status() == UploadStatus.PAUSED:
                self._spawn(self._attempt(uploader.resume))

    def cancel_all(self) -> List[asyncio.Task]:
        abort_tasks = []
        for uploader in self._uploaders.values():
            if not uploader.get_status().is_terminal:
                task = uploader.cancel()
                if task is not None:
                    abort_tasks.append(task)
        self._queue.clear()
        return abort_tasks

    def get_total_progress(self) -> int:
        if not self._uploaders:
            return 0
        total = sum(u.get_progress() for u in self._uploaders.values())
        return total // len(self._uploaders)

    async def wait_for_all(self) -> List[UploadResult]:
        """
        Wait until no file is queued or holding a slot; return the results
        of the completed files in the order they were added.
        """
        # finishing files admit queued ones, so the task set can grow while waiting
        while self._tasks:
            await asyncio.wait(set(self._tasks))
        return [
            uploader.result for uploader in self._uploaders.values()
            if uploader.get_status() == UploadStatus.COMPLETED
        ]
