import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from uploadq.core.config import UploaderConfig
from uploadq.models.schemas import (
    CompleteMultipartResponse,
    MultipartPlanResponse,
    PresignedObject,
    PresignedObjectResponse,
    ResponseData,
)
from uploadq.models.upload import PartRecord, PartTarget, UploadPlan
from uploadq.utils.exceptions import (
    AbortNotifyFailedError,
    FinalizeFailedError,
    PlanAllocationFailedError,
)

logger = logging.getLogger(__name__)

PRESIGNED_URL_PATH = "/api/presigned-url"
PRESIGN_PATH = "/api/multi-parts-presigned-url"
COMPLETE_PATH = "/api/completed-multi-part-upload"
ABORT_PATH = "/api/cancel-multi-part-upload"


class UploadAPIClient:
    """
    Client for the upload service. Presigns single uploads, allocates
    multipart plans, finalizes uploads and aborts sessions.

    The service answers with a ``{"code", "msg", "data"}`` envelope; the
    ``code`` field decides success, not the HTTP status.
    """

    def __init__(self,
                 base_url: Optional[str] = None,
                 api_token: Optional[str] = None,
                 timeout: float = 20.0,
                 debug: bool = False,
                 client: Optional[httpx.AsyncClient] = None):
        defaults = UploaderConfig()
        self.base_url = (base_url or defaults.api_base).rstrip("/")
        self.api_token = api_token if api_token is not None else defaults.api_token
        self.headers = {"Accept": "application/json"}
        if self.api_token:
            self.headers["Authorization"] = f"Bearer {self.api_token}"
        self.debug = debug
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=self.headers, timeout=timeout)

    @classmethod
    def from_config(cls, config: UploaderConfig, client: Optional[httpx.AsyncClient] = None) -> "UploadAPIClient":
        return cls(base_url=config.api_base, api_token=config.api_token, debug=config.debug, client=client)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        if self.debug:
            logger.debug(f"=== {method.upper()} {url} === {kwargs.get('json') or ''}")
        resp = await self._client.request(method, url, headers=self.headers, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            raise ValueError(f"Non-JSON response {resp.status_code}: {resp.text[:200]}")
        if self.debug:
            logger.debug(f"=== Response {resp.status_code} === {data}")
        return data

    # =========================
    # ALLOCATE
    # =========================
    async def allocate_plan(self, mime_type: str, file_size: int, file_name: Optional[str] = None) -> UploadPlan:
        file_info = {"mimeType": mime_type, "fileSize": file_size}
        if file_name:
            file_info["fileName"] = file_name
        try:
            body = await self._request("POST", PRESIGN_PATH, json={"files": [file_info]})
            parsed = MultipartPlanResponse.model_validate(body)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise PlanAllocationFailedError(f"Failed to get upload URL: {e}") from e

        if parsed.code != 200 or parsed.data is None:
            raise PlanAllocationFailedError(f"Failed to get upload URL: code={parsed.code} msg={parsed.msg}")

        data = parsed.data
        parts = tuple(
            PartTarget(part_number=p.part_number, transfer_endpoint=p.presigned_url)
            for p in sorted(data.presigned_url_list, key=lambda p: p.part_number)
        )
        plan = UploadPlan(storage_key=data.key, session_id=data.upload_id, parts=parts, part_size=data.part_size)
        logger.info(f"Plan allocated: key={plan.storage_key} parts={plan.total_parts}")
        return plan

    async def presign_object(self, mime_type: str, file_size: int, file_name: Optional[str] = None) -> PresignedObject:
        """Ask for one presigned ``PUT`` covering a whole file; no session is opened."""
        file_info = {"mimeType": mime_type, "fileSize": file_size}
        if file_name:
            file_info["fileName"] = file_name
        try:
            body = await self._request("POST", PRESIGNED_URL_PATH, json={"files": [file_info]})
            parsed = PresignedObjectResponse.model_validate(body)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise PlanAllocationFailedError(f"Failed to get upload URL: {e}") from e

        if parsed.code != 200 or not parsed.rows:
            raise PlanAllocationFailedError(f"Failed to get upload URL: code={parsed.code} msg={parsed.msg}")
        return parsed.rows[0]

    # =========================
    # FINALIZE
    # =========================
    async def finalize(self,
                       plan: UploadPlan,
                       parts: Iterable[PartRecord],
                       file_name: Optional[str] = None,
                       file_size: Optional[int] = None,
                       mime_type: Optional[str] = None) -> str:
        sorted_parts: List[PartRecord] = sorted(parts, key=lambda p: p.part_number)
        payload = {
            "key": plan.storage_key,
            "uploadId": plan.session_id,
            "parts": [p.to_dict() for p in sorted_parts],
            "fileName": file_name,
            "fileSize": file_size,
            "mimeType": mime_type,
        }
        try:
            body = await self._request("POST", COMPLETE_PATH, json=payload)
            parsed = CompleteMultipartResponse.model_validate(body)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise FinalizeFailedError(f"Upload failed during completion: {e}") from e

        file_url = parsed.resolved_file_url
        if parsed.code != 200 or not file_url:
            raise FinalizeFailedError(f"Upload failed during completion: code={parsed.code} msg={parsed.msg}")
        return file_url

    # =========================
    # ABORT
    # =========================
    async def abort_session(self, storage_key: str, session_id: str) -> None:
        try:
            body = await self._request("POST", ABORT_PATH, json={"key": storage_key, "uploadId": session_id})
            parsed = ResponseData.model_validate(body)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise AbortNotifyFailedError(f"Failed to cancel multipart upload: {e}") from e
        if parsed.code != 200:
            raise AbortNotifyFailedError(f"Failed to cancel multipart upload: code={parsed.code} msg={parsed.msg}")

    # =========================
    # CLEANUP
    # =========================
    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
