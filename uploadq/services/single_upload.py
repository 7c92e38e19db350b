"""
Whole-file upload with one presigned ``PUT``.

Suited to small files: there is no session to finalize or abort, so a
failed or canceled transfer leaves nothing behind on the storage side.
"""

import logging
from typing import Optional

from uploadq.models.upload import PartTarget, SourceFile, UploadResult
from uploadq.services.chunker import ByteRange
from uploadq.services.part_transfer import CancellationToken, PartTransferUnit, ProgressCallback
from uploadq.services.upload_api import UploadAPIClient

logger = logging.getLogger(__name__)


async def upload_single(source: SourceFile,
                        api: UploadAPIClient,
                        transfer_unit: PartTransferUnit,
                        token: Optional[CancellationToken] = None,
                        on_progress: Optional[ProgressCallback] = None) -> UploadResult:
    presigned = await api.presign_object(source.mime_type, source.size, source.name)
    logger.info(f"Uploading {source.name} ({source.size:,} bytes) in a single request")

    record = await transfer_unit.transfer(
        PartTarget(part_number=1, transfer_endpoint=presigned.presigned_url),
        ByteRange(0, source.size),
        source,
        source.mime_type,
        token or CancellationToken(),
        on_progress,
    )

    logger.info(f"Upload completed: {source.name} -> {presigned.file_url}")
    return UploadResult(
        file_url=presigned.file_url,
        storage_key=presigned.key or "",
        file_name=source.name,
        file_size=source.size,
        mime_type=source.mime_type,
        parts=(record,),
    )
