import mimetypes
import re
import unicodedata
import uuid
from functools import lru_cache
from typing import Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from uploadq.core.config import settings
from uploadq.models.schemas import (
    AbortMultipartRequest,
    CompleteMultipartRequest,
    FileInfo,
    PresignedUrlRequest,
)
from uploadq.services.chunker import choose_part_size, slice_file
from uploadq.utils.exceptions import InvalidInputError

router = APIRouter(prefix="/api", tags=["uploads"])
logger = structlog.get_logger()

# ---------------------------------------------------
# S3 client
# ---------------------------------------------------


@lru_cache(maxsize=1)
def get_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=settings.BUCKET_ENDPOINT,
        aws_access_key_id=settings.BUCKET_ACCESS_KEY_ID,
        aws_secret_access_key=settings.BUCKET_SECRET_ACCESS_KEY,
        region_name=settings.BUCKET_REGION,
        config=Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'}  # Important for MinIO
        )
    )


def respond(code: int, msg: str, data: Optional[dict] = None) -> JSONResponse:
    content = {"code": code, "msg": msg}
    if data is not None:
        content["data"] = data
    return JSONResponse(status_code=code, content=content)


def sanitize_file_name(file_name: str, max_length: int = 200) -> str:
    """
    Reduce a client file name to the ASCII ``stem.ext`` suffix of an object
    key. Runs of other characters collapse into one underscore and the
    extension is lowercased; the stem is cut first when over ``max_length``.
    """
    ascii_name = unicodedata.normalize("NFKD", file_name or "").encode("ascii", "ignore").decode()
    # clients may send a full path
    ascii_name = ascii_name.replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, ext = ascii_name.rpartition(".")
    if not dot:
        stem, ext = ext, ""

    stem = re.sub(r"[^A-Za-z0-9_-]+", "_", stem).strip("._-") or "file"
    ext = re.sub(r"[^A-Za-z0-9]", "", ext).lower()[:16]

    suffix = f".{ext}" if ext else ""
    return stem[:max(1, max_length - len(suffix))] + suffix


def build_object_key(file: FileInfo) -> str:
    """``<uuid>_<name>``, or ``<uuid><ext>`` from the MIME type when no name was sent."""
    file_id = uuid.uuid4().hex
    if file.file_name:
        return f"{file_id}_{sanitize_file_name(file.file_name)}"
    return f"{file_id}{mimetypes.guess_extension(file.mime_type or '') or ''}"


def public_url(key: str) -> str:
    return f"{settings.BUCKET_PUBLIC_URL.rstrip('/')}/{key}"

# ---------------------------------------------------
# Routes
# ---------------------------------------------------


@router.post("/presigned-url")
async def presigned_url(request: Request, s3_client=Depends(get_s3_client)):
    """One presigned ``PUT`` per file, for files sent in a single request."""
    try:
        req = PresignedUrlRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return respond(400, "Missing or invalid files array")
    if not req.files:
        return respond(400, "Missing or invalid files array")

    rows = []
    try:
        for file in req.files:
            key = build_object_key(file)
            url = s3_client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": settings.BUCKET_NAME,
                    "Key": key,
                    "ContentType": file.mime_type or "application/octet-stream",
                },
                ExpiresIn=settings.PRESIGNED_URL_EXPIRY,
                HttpMethod='PUT',
            )
            rows.append({"fileUrl": public_url(key), "presignedUrl": url, "key": key})
    except (ClientError, BotoCoreError) as e:
        logger.error("presign_failed", files=len(req.files), error=str(e))
        return respond(500, "Failed to generate presigned URLs")

    logger.info("presign", keys=[row["key"] for row in rows])
    return JSONResponse(status_code=200, content={
        "code": 200,
        "msg": "Presigned URLs generated successfully",
        "rows": rows,
    })


@router.post("/multi-parts-presigned-url")
async def multi_parts_presigned_url(request: Request, s3_client=Depends(get_s3_client)):
    try:
        req = PresignedUrlRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return respond(400, "Missing or invalid files array")
    if not req.files:
        return respond(400, "Missing or invalid files array")

    file = req.files[0]
    try:
        part_size = choose_part_size(file.file_size, min_size=settings.MIN_PART_SIZE)
        part_count = len(slice_file(file.file_size, part_size))
    except InvalidInputError as e:
        return respond(400, str(e))

    key = build_object_key(file)
    try:
        resp = s3_client.create_multipart_upload(
            Bucket=settings.BUCKET_NAME,
            Key=key,
            ContentType=file.mime_type or "application/octet-stream",
        )
        upload_id = resp["UploadId"]

        # partNumber starts at 1, S3 allows at most 10000
        presigned_url_list = []
        for part_number in range(1, part_count + 1):
            url = s3_client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": settings.BUCKET_NAME,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=settings.PRESIGNED_URL_EXPIRY,
                HttpMethod='PUT',
            )
            presigned_url_list.append({"partNumber": part_number, "presignedUrl": url})
    except (ClientError, BotoCoreError, KeyError) as e:
        logger.error("multipart_init_failed", key=key, error=str(e))
        return respond(500, "Failed to generate presigned URLs")

    logger.info("multipart_init", key=key, upload_id=upload_id, parts=part_count, part_size=part_size)
    return respond(200, "Presigned URLs generated successfully", {
        "key": key,
        "uploadId": upload_id,
        "partSize": part_size,
        "presignedUrlList": presigned_url_list,
    })


@router.post("/completed-multi-part-upload")
async def completed_multi_part_upload(request: Request, s3_client=Depends(get_s3_client)):
    try:
        req = CompleteMultipartRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return respond(400, "Missing required parameters")
    if not req.key or not req.upload_id or not req.parts:
        return respond(400, "Missing required parameters")

    parts = []
    for p in sorted(req.parts, key=lambda p: p.part_number):
        etag = p.etag.strip().strip('"').strip("'")
        if not etag:
            return respond(400, f"Missing ETag for part {p.part_number}")
        parts.append({
            "ETag": f'"{etag}"',  # S3 expects ETags to be quoted
            "PartNumber": p.part_number,
        })

    try:
        s3_client.complete_multipart_upload(
            Bucket=settings.BUCKET_NAME,
            Key=req.key,
            UploadId=req.upload_id,
            MultipartUpload={"Parts": parts},
        )
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code")
        error_message = e.response.get("Error", {}).get("Message")
        logger.error("multipart_complete_failed", key=req.key, upload_id=req.upload_id,
                     error_code=error_code, error=error_message)
        if error_code == "NoSuchUpload":
            return respond(404, f"Upload session not found: {req.upload_id}")
        return respond(500, f"Failed to complete multipart upload: {error_code} {error_message}")
    except BotoCoreError as e:
        logger.error("multipart_complete_failed", key=req.key, upload_id=req.upload_id, error=str(e))
        return respond(500, f"Failed to complete multipart upload: {e}")

    logger.info("multipart_complete", key=req.key, upload_id=req.upload_id, parts=len(parts))
    return respond(200, "Multipart upload completed successfully", {"fileUrl": public_url(req.key)})


@router.post("/cancel-multi-part-upload")
async def cancel_multi_part_upload(request: Request, s3_client=Depends(get_s3_client)):
    try:
        req = AbortMultipartRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return respond(400, "Missing required parameters")

    try:
        s3_client.abort_multipart_upload(Bucket=settings.BUCKET_NAME, Key=req.key, UploadId=req.upload_id)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code")
        if error_code != "NoSuchUpload":
            logger.error("multipart_abort_failed", key=req.key, upload_id=req.upload_id, error_code=error_code)
            return respond(500, f"Failed to cancel multipart upload: {error_code}")
        logger.info("multipart_abort_unknown_upload", key=req.key, upload_id=req.upload_id)
    except BotoCoreError as e:
        logger.error("multipart_abort_failed", key=req.key, upload_id=req.upload_id, error=str(e))
        return respond(500, f"Failed to cancel multipart upload: {e}")

    logger.info("multipart_abort", key=req.key, upload_id=req.upload_id)
    return respond(200, "Multipart upload canceled")
