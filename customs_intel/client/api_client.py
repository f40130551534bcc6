"""
HTTP client for the extraction API, used by the batch orchestrator, the
legal ingestion runner and the RQ worker.

No retries happen here. Every failure surfaces as ApiError so the caller
can decide between recovery, retry and giving up.
"""

from typing import Any, Optional

import httpx
import structlog

from customs_intel.config import settings
from customs_intel.engines.retry import parse_retry_after_ms
from customs_intel.models.enums import RunStatus
from customs_intel.schemas.extraction import AnalyzePdfRequest, BatchResponse, RunListResponse, RunState
from customs_intel.schemas.ingestion import IngestLegalDocRequest, IngestLegalDocResponse, LegalSourceState

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"
# Upper bound on a server-supplied Retry-After, in milliseconds
MAX_RETRY_AFTER_MS = 120_000


class ApiError(Exception):
    """
    A failed API call. status_code is None for timeouts and transport
    errors, which never reached a response.
    """
    def __init__(
        self,
        status_code: Optional[int],
        message: str,
        retry_after: Optional[float] = None,
        error_code: Optional[str] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        self.error_code = error_code
        super().__init__(f"[{status_code}] {message}")

    @property
    def is_transient(self) -> bool:
        """Timeouts, transport errors, 429 and 5xx are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


def _error_from_response(response: httpx.Response) -> ApiError:
    message = response.text[:500]
    error_code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("detail", body)
        if isinstance(detail, dict):
            message = detail.get("message") or message
            error_code = detail.get("error_code")
        elif isinstance(detail, str):
            message = detail
    retry_ms = parse_retry_after_ms(response.headers.get("retry-after"), MAX_RETRY_AFTER_MS)
    return ApiError(
        response.status_code,
        message,
        retry_after=retry_ms / 1000.0 if retry_ms is not None else None,
        error_code=error_code,
    )


class ExtractionApiClient:
    """
    Thin async wrapper over the /api/v1 endpoints.

    Pass an httpx.AsyncClient to share a connection pool (or to inject a
    MockTransport in tests); otherwise one is created and owned here.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CLIENT_BATCH_TIMEOUT_SECONDS
        headers = {"X-API-Key": api_key} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ExtractionApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{API_PREFIX}{path}"
        try:
            response = await self._client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("api_call_timeout", method=method, path=path, timeout=self.timeout)
            raise ApiError(None, f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.warning("api_call_transport_error", method=method, path=path, error=str(e) or type(e).__name__)
            raise ApiError(None, f"Transport error: {e}") from e

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.warning(
                "api_call_failed",
                method=method,
                path=path,
                status_code=error.status_code,
                error_code=error.error_code,
            )
            raise error
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(response.status_code, "Response body is not JSON") from e

    # ── Tariff extraction ────────────────────────────────────

    async def analyze_pdf(self, request: AnalyzePdfRequest) -> BatchResponse:
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        data = await self._request("POST", "/analyze-pdf", json=payload)
        try:
            return BatchResponse.model_validate(data)
        except ValueError as e:
            raise ApiError(200, f"Invalid batch response: {e}") from e

    async def get_run(self, run_id: str) -> RunState:
        data = await self._request("GET", f"/extraction-runs/{run_id}")
        return RunState.model_validate(data)

    async def list_runs(self, pdf_id: str) -> list[RunState]:
        data = await self._request("GET", f"/pdfs/{pdf_id}/extraction-runs")
        return RunListResponse.model_validate(data).runs

    async def set_run_status(self, run_id: str, status: RunStatus) -> RunState:
        data = await self._request("PATCH", f"/extraction-runs/{run_id}/status", json={"status": status.value})
        return RunState.model_validate(data)

    async def cancel_run(self, run_id: str) -> RunState:
        """DELETE closes the run as cancelled; the record is kept."""
        data = await self._request("DELETE", f"/extraction-runs/{run_id}")
        return RunState.model_validate(data)

    # ── Legal ingestion ──────────────────────────────────────

    async def ingest_legal_doc(self, request: IngestLegalDocRequest) -> IngestLegalDocResponse:
        payload = request.model_dump(mode="json", exclude_none=True)
        data = await self._request("POST", "/ingest-legal-doc", json=payload)
        return IngestLegalDocResponse.model_validate(data)

    async def get_legal_source(self, source_id: int) -> LegalSourceState:
        data = await self._request("GET", f"/legal-sources/{source_id}")
        return LegalSourceState.model_validate(data)
