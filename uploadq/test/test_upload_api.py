import json

import httpx
import pytest

from uploadq.models.upload import PartRecord
from uploadq.services.upload_api import ABORT_PATH, COMPLETE_PATH, PRESIGN_PATH, PRESIGNED_URL_PATH, UploadAPIClient
from uploadq.test.conftest import make_plan
from uploadq.utils.exceptions import AbortNotifyFailedError, FinalizeFailedError, PlanAllocationFailedError

BASE_URL = "http://api.test"


def make_client(routes):
    """Build a client whose transport answers from ``routes`` (path -> handler)."""
    requests = []

    def handler(request):
        requests.append(request)
        return routes[request.url.path](request)

    client = UploadAPIClient(
        base_url=BASE_URL,
        api_token="secret-token",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return client, requests


PLAN_BODY = {
    "code": 200,
    "msg": "Presigned URLs generated successfully",
    "data": {
        "key": "f00d_report.pdf",
        "uploadId": "upload-42",
        "partSize": 5242880,
        "presignedUrlList": [
            {"partNumber": 2, "presignedUrl": "https://bucket.test/2"},
            {"partNumber": 1, "presignedUrl": "https://bucket.test/1"},
        ],
    },
}


class TestPresignObject:
    """POST /api/presigned-url"""

    @pytest.mark.asyncio
    async def test_returns_first_row(self):
        client, requests = make_client({
            PRESIGNED_URL_PATH: lambda r: httpx.Response(200, json={
                "code": 200,
                "msg": "Presigned URLs generated successfully",
                "rows": [{
                    "fileUrl": "https://cdn.test/f00d_cat.png",
                    "presignedUrl": "https://bucket.test/f00d_cat.png?X-Amz-Signature=abc",
                    "key": "f00d_cat.png",
                }],
            })
        })

        presigned = await client.presign_object("image/png", 10, "cat.png")

        assert presigned.file_url == "https://cdn.test/f00d_cat.png"
        assert presigned.presigned_url.startswith("https://bucket.test/f00d_cat.png")
        assert presigned.key == "f00d_cat.png"
        assert json.loads(requests[0].content) == {
            "files": [{"mimeType": "image/png", "fileSize": 10, "fileName": "cat.png"}]
        }

    @pytest.mark.asyncio
    async def test_empty_rows_raise(self):
        client, _ = make_client({
            PRESIGNED_URL_PATH: lambda r: httpx.Response(200, json={"code": 200, "msg": "ok", "rows": []})
        })

        with pytest.raises(PlanAllocationFailedError):
            await client.presign_object("image/png", 10)

    @pytest.mark.asyncio
    async def test_error_code_raises(self):
        client, _ = make_client({
            PRESIGNED_URL_PATH: lambda r: httpx.Response(400, json={"code": 400, "msg": "Missing or invalid files array"})
        })

        with pytest.raises(PlanAllocationFailedError):
            await client.presign_object("image/png", 10)


class TestAllocatePlan:
    """POST /api/multi-parts-presigned-url"""

    @pytest.mark.asyncio
    async def test_parses_plan(self):
        client, requests = make_client({PRESIGN_PATH: lambda r: httpx.Response(200, json=PLAN_BODY)})

        plan = await client.allocate_plan("application/pdf", 6 * 1024 * 1024, "report.pdf")

        assert plan.storage_key == "f00d_report.pdf"
        assert plan.session_id == "upload-42"
        assert plan.part_size == 5242880
        assert plan.part_numbers == (1, 2)
        assert plan.parts[0].transfer_endpoint == "https://bucket.test/1"

        sent = json.loads(requests[0].content)
        assert sent == {"files": [{"mimeType": "application/pdf", "fileSize": 6291456, "fileName": "report.pdf"}]}
        assert requests[0].headers["authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_error_code_raises(self):
        client, _ = make_client({
            PRESIGN_PATH: lambda r: httpx.Response(500, json={"code": 500, "msg": "Failed to generate presigned URLs"})
        })

        with pytest.raises(PlanAllocationFailedError):
            await client.allocate_plan("application/pdf", 100)

    @pytest.mark.asyncio
    async def test_non_json_response_raises(self):
        client, _ = make_client({PRESIGN_PATH: lambda r: httpx.Response(502, text="Bad Gateway")})

        with pytest.raises(PlanAllocationFailedError):
            await client.allocate_plan("application/pdf", 100)

    @pytest.mark.asyncio
    async def test_missing_data_raises(self):
        client, _ = make_client({PRESIGN_PATH: lambda r: httpx.Response(200, json={"code": 200, "msg": "ok"})})

        with pytest.raises(PlanAllocationFailedError):
            await client.allocate_plan("application/pdf", 100)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client({PRESIGN_PATH: handler})

        with pytest.raises(PlanAllocationFailedError):
            await client.allocate_plan("application/pdf", 100)


class TestFinalize:
    """POST /api/completed-multi-part-upload"""

    @pytest.mark.asyncio
    async def test_sends_sorted_parts_and_returns_url(self):
        client, requests = make_client({
            COMPLETE_PATH: lambda r: httpx.Response(200, json={
                "code": 200, "msg": "ok", "data": {"fileUrl": "https://cdn.test/f00d_report.pdf"},
            })
        })
        plan = make_plan(2, key="f00d_report.pdf", session_id="upload-42")
        parts = [PartRecord(2, "b"), PartRecord(1, "a")]

        file_url = await client.finalize(plan, parts, file_name="report.pdf", file_size=100,
                                         mime_type="application/pdf")

        assert file_url == "https://cdn.test/f00d_report.pdf"
        sent = json.loads(requests[0].content)
        assert sent["key"] == "f00d_report.pdf"
        assert sent["uploadId"] == "upload-42"
        assert sent["parts"] == [{"partNumber": 1, "etag": "a"}, {"partNumber": 2, "etag": "b"}]
        assert sent["fileName"] == "report.pdf"

    @pytest.mark.asyncio
    async def test_accepts_top_level_file_url(self):
        client, _ = make_client({
            COMPLETE_PATH: lambda r: httpx.Response(200, json={"code": 200, "fileUrl": "https://cdn.test/x"})
        })

        assert await client.finalize(make_plan(1), [PartRecord(1, "a")]) == "https://cdn.test/x"

    @pytest.mark.asyncio
    async def test_error_code_raises(self):
        client, _ = make_client({
            COMPLETE_PATH: lambda r: httpx.Response(404, json={"code": 404, "msg": "Upload session not found"})
        })

        with pytest.raises(FinalizeFailedError):
            await client.finalize(make_plan(1), [PartRecord(1, "a")])


class TestAbortSession:
    """POST /api/cancel-multi-part-upload"""

    @pytest.mark.asyncio
    async def test_sends_key_and_upload_id(self):
        client, requests = make_client({ABORT_PATH: lambda r: httpx.Response(200, json={"code": 200, "msg": "ok"})})

        await client.abort_session("f00d_report.pdf", "upload-42")

        assert json.loads(requests[0].content) == {"key": "f00d_report.pdf", "uploadId": "upload-42"}

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        client, _ = make_client({ABORT_PATH: lambda r: httpx.Response(500, json={"code": 500, "msg": "nope"})})

        with pytest.raises(AbortNotifyFailedError):
            await client.abort_session("f00d_report.pdf", "upload-42")
