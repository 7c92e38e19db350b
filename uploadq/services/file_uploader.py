"""
Upload state machine for a single file.

``FileUploader`` owns one file's multipart upload: it allocates a plan,
transfers the missing parts concurrently, and finalizes the object once
every part has a record. All state is mutated on the event loop between
suspension points (allocation, part transfers, finalize), so no locks
are needed.

Every entry into ``uploading`` starts a new attempt with its own
generation number. Transfers, allocations and finalize calls that
return after their attempt was paused, canceled or failed are ignored.
"""

import asyncio
import logging
import math
import uuid
from typing import Dict, List, Optional, Set, Tuple

from uploadq.core.config import UploaderConfig
from uploadq.models.upload import PartRecord, PartTarget, SourceFile, UploadPlan, UploadResult, UploadStatus
from uploadq.services.chunker import ByteRange, slice_file
from uploadq.services.part_transfer import CancellationToken, PartTransferUnit
from uploadq.services.upload_api import UploadAPIClient
from uploadq.utils.exceptions import (
    InvalidStateError,
    PlanAllocationFailedError,
    TransferCanceledError,
    UploadCanceledError,
    UploadError,
)

logger = logging.getLogger(__name__)


class UploadListener:
    """Observer for upload events. Override the hooks you need."""

    def on_status_change(self, file_id: str, status: UploadStatus):
        pass

    def on_progress(self, file_id: str, progress: int):
        pass

    def on_complete(self, file_id: str, result: UploadResult):
        pass

    def on_error(self, file_id: str, error: Exception):
        pass


class FileUploader:
    def __init__(self,
                 source: SourceFile,
                 api: UploadAPIClient,
                 transfer_unit: PartTransferUnit,
                 file_id: Optional[str] = None,
                 listener: Optional[UploadListener] = None,
                 config: Optional[UploaderConfig] = None):
        self.source = source
        self.file_id = file_id or str(uuid.uuid4())
        self.api = api
        self.transfer_unit = transfer_unit
        self.listener = listener or UploadListener()
        self.config = config or UploaderConfig()

        self._status = UploadStatus.PENDING
        self._progress = 0
        self._error: Optional[Exception] = None
        self._result: Optional[UploadResult] = None

        self._plan: Optional[UploadPlan] = None
        self._slices: List[ByteRange] = []
        self._allocation: Optional[asyncio.Future] = None
        self._records: Dict[int, PartRecord] = {}
        self._in_flight: Dict[int, CancellationToken] = {}
        self._part_progress: Dict[int, float] = {}

        self._generation = 0
        self._finalizing = False
        self._settled = asyncio.Event()
        self._background: Set[asyncio.Task] = set()

    def __repr__(self):
        return f"<FileUploader {self.file_id} {self.source.name} {self._status.value}>"

    # =========================
    # ACCESSORS
    # =========================
    def get_status(self) -> UploadStatus:
        return self._status

    def get_progress(self) -> int:
        return self._progress

    def get_error(self) -> Optional[Exception]:
        return self._error

    async def get_result(self) -> UploadResult:
        """Wait for a terminal state; return the result or raise its error."""
        await self._settled.wait()
        if self._status == UploadStatus.CANCELED:
            raise UploadCanceledError(f"Upload canceled: {self.source.name}")
        if self._status == UploadStatus.ERROR:
            raise self._error
        return self._result

    async def wait_until_settled(self) -> UploadStatus:
        await self._settled.wait()
        return self._status

    @property
    def result(self) -> Optional[UploadResult]:
        return self._result

    @property
    def plan(self) -> Optional[UploadPlan]:
        return self._plan

    @property
    def completed_parts(self) -> Tuple[PartRecord, ...]:
        return tuple(self._records[n] for n in sorted(self._records))

    @property
    def in_flight_parts(self) -> Tuple[int, ...]:
        return tuple(sorted(self._in_flight))

    # =========================
    # NOTIFICATIONS
    # =========================
    def _notify(self, hook: str, *args):
        try:
            getattr(self.listener, hook)(self.file_id, *args)
        except Exception as e:
            logger.warning(f"Listener {hook} failed for {self.file_id}: {e}")

    def _set_status(self, status: UploadStatus):
        if self._status != status:
            self._status = status
            self._notify("on_status_change", status)

    def _set_progress(self, progress: int):
        if self._progress != progress:
            self._progress = progress
            self._notify("on_progress", progress)

    def _update_progress(self):
        if self._plan is None or not self._plan.total_parts:
            return
        done = len(self._records) + sum(self._part_progress.values())
        self._set_progress(min(100, math.floor(done / self._plan.total_parts * 100)))

    # =========================
    # OPERATIONS
    # =========================
    async def start(self) -> Optional[UploadResult]:
        """
        Allocate a plan (first run only), transfer every missing part and finalize.

        Returns the result when this attempt completes, ``None`` when it was
        paused or canceled. Raises the failure when the upload moves to ``error``.
        """
        if self._status == UploadStatus.PAUSED:
            return await self.resume()
        if self._status != UploadStatus.PENDING:
            raise InvalidStateError(f"Cannot start upload in status '{self._status.value}'")
        return await self._run_attempt(self._begin_attempt())

    async def resume(self) -> Optional[UploadResult]:
        if self._status != UploadStatus.PAUSED:
            raise InvalidStateError(f"Cannot resume upload in status '{self._status.value}'")
        logger.info(f"Resuming {self.source.name}: {len(self._records)} part(s) already uploaded")
        return await self._run_attempt(self._begin_attempt())

    async def retry(self) -> Optional[UploadResult]:
        """Continue a failed upload, keeping every part already uploaded."""
        if self._status != UploadStatus.ERROR:
            raise InvalidStateError(f"Cannot retry upload in status '{self._status.value}'")
        # parts of the failed attempt may still be settling
        self._cancel_in_flight()
        self._error = None
        self._settled.clear()
        logger.info(f"Retrying {self.source.name}: {len(self._records)} part(s) already uploaded")
        return await self._run_attempt(self._begin_attempt())

    def pause(self):
        if self._status != UploadStatus.UPLOADING:
            raise InvalidStateError(f"Cannot pause upload in status '{self._status.value}'")
        if self._finalizing:
            raise InvalidStateError("Cannot pause upload while it is being finalized")
        self._set_status(UploadStatus.PAUSED)
        self._cancel_in_flight()
        self._update_progress()
        logger.info(f"Paused {self.source.name} with {len(self._records)} part(s) uploaded")

    def cancel(self) -> Optional[asyncio.Task]:
        """
        Cancel the upload. When a session was allocated, schedule a
        best-effort abort notification and return its task.
        """
        if self._status.is_terminal:
            raise InvalidStateError(f"Cannot cancel upload in status '{self._status.value}'")
        self._set_status(UploadStatus.CANCELED)
        self._cancel_in_flight()
        abort_task = self._schedule_abort(self._plan) if self._plan is not None else None
        self._settled.set()
        logger.info(f"Canceled {self.source.name}")
        return abort_task

    # =========================
    # ATTEMPT
    # =========================
    def _begin_attempt(self) -> int:
        self._generation += 1
        self._set_status(UploadStatus.UPLOADING)
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._status == UploadStatus.UPLOADING

    async def _run_attempt(self, generation: int) -> Optional[UploadResult]:
        try:
            plan = await self._ensure_plan()
        except Exception as e:
            if self._is_current(generation):
                self._fail(e)
                raise
            logger.debug(f"Ignoring allocation failure for {self.source.name}: {e}")
            return None

        if not self._is_current(generation):
            return None

        await self._dispatch(plan, generation)

        if generation == self._generation and self._status == UploadStatus.ERROR:
            raise self._error
        if not self._is_current(generation):
            return None
        return await self._finalize(plan, generation)

    async def _ensure_plan(self) -> UploadPlan:
        if self._plan is not None:
            return self._plan
        if self._allocation is None:
            self._allocation = asyncio.ensure_future(self._allocate())
        allocation = self._allocation
        try:
            return await asyncio.shield(allocation)
        except Exception:
            if self._allocation is allocation:
                self._allocation = None
            raise

    async def _allocate(self) -> UploadPlan:
        # reject unusable sizes before opening a session
        slice_file(self.source.size, self.config.part_size)

        plan = await self.api.allocate_plan(self.source.mime_type, self.source.size, self.source.name)
        try:
            slices = self._validate_plan(plan)
        except PlanAllocationFailedError:
            self._schedule_abort(plan)
            raise

        self._plan = plan
        self._slices = slices
        logger.info(f"Upload initialized: {self.source.name} -> {plan.storage_key} "
                    f"({plan.total_parts} parts)")
        if self._status == UploadStatus.CANCELED:
            self._schedule_abort(plan)
        return plan

    def _validate_plan(self, plan: UploadPlan) -> List[ByteRange]:
        part_size = plan.part_size or self.config.part_size
        slices = slice_file(self.source.size, part_size)
        expected = list(range(1, len(slices) + 1))
        if sorted(plan.part_numbers) != expected:
            raise PlanAllocationFailedError(
                f"Plan for {self.source.name} has parts {list(plan.part_numbers)[:10]}, "
                f"expected 1..{len(slices)} for {self.source.size:,} bytes in {part_size:,}-byte parts"
            )
        return slices

    async def _dispatch(self, plan: UploadPlan, generation: int):
        missing = [
            t for t in plan.parts
            if t.part_number not in self._records and t.part_number not in self._in_flight
        ]
        if not missing:
            return

        limit = self.config.max_concurrent_parts
        semaphore = asyncio.Semaphore(limit) if limit else None
        logger.debug(f"Dispatching {len(missing)} part(s) of {self.source.name} "
                     f"(limit={limit or 'none'})")

        transfers = []
        for target in missing:
            token = CancellationToken()
            self._in_flight[target.part_number] = token
            self._part_progress[target.part_number] = 0.0
            transfers.append(self._transfer_part(target, token, generation, semaphore))
        self._update_progress()
        await asyncio.gather(*transfers)

    async def _transfer_part(self,
                             target: PartTarget,
                             token: CancellationToken,
                             generation: int,
                             semaphore: Optional[asyncio.Semaphore]):
        part_number = target.part_number

        def on_progress(fraction: float):
            if self._in_flight.get(part_number) is token and self._status == UploadStatus.UPLOADING:
                self._part_progress[part_number] = fraction
                self._update_progress()

        async def run() -> PartRecord:
            token.raise_if_cancelled(part_number)
            return await self.transfer_unit.transfer(
                target,
                self._slices[part_number - 1],
                self.source,
                self.source.mime_type,
                token,
                on_progress,
            )

        try:
            if semaphore is not None:
                async with semaphore:
                    record = await run()
            else:
                record = await run()
        except TransferCanceledError:
            logger.debug(f"Part {part_number} of {self.source.name} canceled")
            return
        except Exception as e:
            if self._is_current(generation):
                self._fail(e)
            else:
                logger.debug(f"Ignoring part {part_number} failure from a stopped attempt: {e}")
            return
        finally:
            if self._in_flight.get(part_number) is token:
                del self._in_flight[part_number]
                self._part_progress.pop(part_number, None)

        if token.cancelled or not self._is_current(generation):
            return
        self._records[part_number] = record
        self._update_progress()

    async def _finalize(self, plan: UploadPlan, generation: int) -> Optional[UploadResult]:
        missing = [n for n in plan.part_numbers if n not in self._records]
        if missing:
            error = UploadError(f"Parts missing before finalize: {missing}")
            self._fail(error)
            raise error

        parts = self.completed_parts
        self._finalizing = True
        try:
            file_url = await self.api.finalize(
                plan,
                parts,
                file_name=self.source.name,
                file_size=self.source.size,
                mime_type=self.source.mime_type,
            )
        except Exception as e:
            if self._is_current(generation):
                self._fail(e)
                raise
            logger.debug(f"Ignoring finalize failure for {self.source.name}: {e}")
            return None
        finally:
            self._finalizing = False

        if not self._is_current(generation):
            logger.info(f"Discarding finalize result for {self.source.name}: upload {self._status.value}")
            return None

        result = UploadResult(
            file_url=file_url,
            storage_key=plan.storage_key,
            file_name=self.source.name,
            file_size=self.source.size,
            mime_type=self.source.mime_type,
            parts=parts,
        )
        self._result = result
        self._set_progress(100)
        self._set_status(UploadStatus.COMPLETED)
        self._notify("on_complete", result)
        self._settled.set()
        logger.info(f"Upload completed: {self.source.name} -> {file_url}")
        return result

    # =========================
    # HELPERS
    # =========================
    def _fail(self, error: Exception):
        self._error = error
        self._set_status(UploadStatus.ERROR)
        self._notify("on_error", error)
        self._settled.set()
        logger.error(f"Upload failed for {self.source.name}: {error}")

    def _cancel_in_flight(self):
        for token in self._in_flight.values():
            token.cancel()
        self._in_flight.clear()
        self._part_progress.clear()

    def _schedule_abort(self, plan: UploadPlan) -> asyncio.Task:
        task = asyncio.ensure_future(self._notify_abort(plan))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _notify_abort(self, plan: UploadPlan):
        try:
            await self.api.abort_session(plan.storage_key, plan.session_id)
            logger.info(f"Aborted upload session {plan.session_id} for {plan.storage_key}")
        except Exception as e:
            logger.warning(f"Failed to cancel multipart upload {plan.storage_key}: {e}")
