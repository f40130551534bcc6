"""
Tests for the extraction API client over a mocked transport.
"""

import json

import httpx
import pytest

from customs_intel.client.api_client import ApiError, ExtractionApiClient
from customs_intel.models.enums import RunStatus
from customs_intel.schemas.extraction import AnalyzePdfRequest

BASE_URL = "http://api.test"

RUN = {
    "id": "run-1",
    "pdf_id": "tarif-2024",
    "status": "paused",
    "current_page": 5,
    "total_pages": 10,
    "processed_pages": 4,
    "batch_size": 4,
    "stats": {},
    "created_at": "2026-10-01T08:00:00Z",
}


def client_with(handler) -> ExtractionApiClient:
    transport = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExtractionApiClient(base_url=BASE_URL, timeout=5.0, client=transport)


class TestRequests:

    @pytest.mark.asyncio
    async def test_analyze_pdf_sends_camel_case(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "extraction_run_id": "run-1",
                "done": False,
                "next_page": 5,
                "processed_pages": 4,
                "total_pages": 10,
                "stats": {"tariff_lines_inserted": 12},
                "status": "processing",
                "pdfId": "tarif-2024",
            })

        api = client_with(handler)
        batch = await api.analyze_pdf(AnalyzePdfRequest(pdf_id="tarif-2024", start_page=1, max_pages=4))

        assert seen["url"] == f"{BASE_URL}/api/v1/analyze-pdf"
        assert seen["body"]["pdfId"] == "tarif-2024"
        assert "extraction_run_id" not in seen["body"]
        assert batch.next_page == 5
        assert batch.stats.tariff_lines_inserted == 12

    @pytest.mark.asyncio
    async def test_set_run_status(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=RUN)

        run = await client_with(handler).set_run_status("run-1", RunStatus.PAUSED)

        assert (seen["method"], seen["path"]) == ("PATCH", "/api/v1/extraction-runs/run-1/status")
        assert seen["body"] == {"status": "paused"}
        assert run.status == RunStatus.PAUSED

    @pytest.mark.asyncio
    async def test_cancel_run_uses_delete(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={**RUN, "status": "cancelled"})

        run = await client_with(handler).cancel_run("run-1")

        assert (seen["method"], seen["path"]) == ("DELETE", "/api/v1/extraction-runs/run-1")
        assert run.status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_list_runs(self):
        def handler(request):
            assert request.url.path == "/api/v1/pdfs/tarif-2024/extraction-runs"
            return httpx.Response(200, json={"runs": [RUN], "total": 1})

        runs = await client_with(handler).list_runs("tarif-2024")
        assert [r.id for r in runs] == ["run-1"]


class TestErrors:

    @pytest.mark.asyncio
    async def test_structured_detail(self):
        def handler(request):
            return httpx.Response(
                409,
                json={"detail": {"error_code": "ERR_RUN_CLOSED", "message": "Run run-1 is cancelled"}},
            )

        with pytest.raises(ApiError) as exc_info:
            await client_with(handler).get_run("run-1")
        error = exc_info.value
        assert error.status_code == 409
        assert error.error_code == "ERR_RUN_CLOSED"
        assert error.message == "Run run-1 is cancelled"
        assert not error.is_transient

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"retry-after": "12"}, json={"detail": "Too many requests"})

        with pytest.raises(ApiError) as exc_info:
            await client_with(handler).get_run("run-1")
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.message == "Too many requests"
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_timeout_has_no_status(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ApiError) as exc_info:
            await client_with(handler).get_run("run-1")
        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        with pytest.raises(ApiError) as exc_info:
            await client_with(lambda request: httpx.Response(200, text="<html>")).get_run("run-1")
        assert exc_info.value.message == "Response body is not JSON"

    @pytest.mark.asyncio
    async def test_plain_text_error(self):
        with pytest.raises(ApiError) as exc_info:
            await client_with(lambda request: httpx.Response(502, text="Bad gateway")).get_run("run-1")
        assert exc_info.value.message == "Bad gateway"
        assert exc_info.value.is_transient
