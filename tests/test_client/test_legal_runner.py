"""
Tests for the legal ingestion client loop.
"""

import pytest

from customs_intel.client.api_client import ApiError
from customs_intel.client.legal_runner import IngestionObserver, LegalIngestionRunner
from customs_intel.models.enums import ProgressStatus
from customs_intel.schemas.ingestion import IngestLegalDocRequest, IngestLegalDocResponse, LegalSourceState


def page_reply(page: int, total: int = 3, source_id: int = 7, chunks: int = 2) -> IngestLegalDocResponse:
    return IngestLegalDocResponse(
        source_id=source_id,
        pages_processed=1,
        chunks_created=chunks,
        detected_codes_count=1,
        evidence_created=1,
        total_pages=total,
        batch_start=page,
        batch_end=page,
    )


class FakeLegalApi:

    def __init__(self, replies=(), sources=None):
        self.replies = list(replies)
        self.sources = dict(sources or {})
        self.requests = []

    async def ingest_legal_doc(self, request):
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def get_legal_source(self, source_id):
        if source_id not in self.sources:
            raise ApiError(404, f"Legal source {source_id} not found")
        return self.sources[source_id]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def runner(api, observer=None, **overrides):
    sleep = SleepRecorder()
    options = {"delay_between_batches": 1.0, "attempts_per_batch": 3, "retry_step": 3.0, "sleep": sleep}
    options.update(overrides)
    return LegalIngestionRunner(api, observer=observer, **options), sleep


def pdf_request(**overrides) -> IngestLegalDocRequest:
    fields = {"source_type": "law", "source_ref": "LOI-2023-15", "pdf_path": "/data/legal/loi.pdf"}
    fields.update(overrides)
    return IngestLegalDocRequest(**fields)


class TestRawText:

    @pytest.mark.asyncio
    async def test_single_call(self):
        api = FakeLegalApi([page_reply(1, total=1, chunks=4)])
        legal, sleep = runner(api)

        request = IngestLegalDocRequest(
            source_type="circular", source_ref="5432/21", raw_text="Article 1 ...", batch_mode=True
        )
        progress = await legal.run(request)

        assert progress.status == ProgressStatus.DONE
        assert progress.chunks_created == 4
        assert len(api.requests) == 1
        assert api.requests[0].batch_mode is False
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_failure(self):
        api = FakeLegalApi([ApiError(422, "raw_text is empty")])
        legal, _ = runner(api)
        progress = await legal.run(IngestLegalDocRequest(source_type="note", source_ref="N-1", raw_text="x"))
        assert progress.status == ProgressStatus.ERROR
        assert progress.error == "raw_text is empty"


class TestBatchLoop:

    @pytest.mark.asyncio
    async def test_walks_every_page(self):
        api = FakeLegalApi([page_reply(1), page_reply(2), page_reply(3)])
        legal, sleep = runner(api)

        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.DONE
        assert progress.source_id == 7
        assert progress.total_pages == 3
        assert progress.pages_processed == 3
        assert progress.chunks_created == 6
        assert progress.evidence_created == 3
        assert [r.start_page for r in api.requests] == [1, 2, 3]
        assert [r.source_id for r in api.requests] == [None, 7, 7]
        assert all(r.batch_mode for r in api.requests)
        assert sleep.delays == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_stops_at_end_page(self):
        api = FakeLegalApi([page_reply(1), page_reply(2)])
        legal, _ = runner(api)

        progress = await legal.run(pdf_request(end_page=2))

        assert progress.status == ProgressStatus.DONE
        assert progress.pages_processed == 2
        assert len(api.requests) == 2

    @pytest.mark.asyncio
    async def test_already_complete_ends_the_loop(self):
        api = FakeLegalApi([IngestLegalDocResponse(source_id=7, total_pages=3, already_complete=True)])
        legal, _ = runner(api)

        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.DONE
        assert progress.pages_processed == 0

    @pytest.mark.asyncio
    async def test_resumes_after_last_ingested_page(self):
        source = LegalSourceState(
            id=7, country_code="MA", source_type="law", source_ref="LOI-2023-15",
            total_pages=3, pages_ingested=2, last_ingested_page=2,
        )
        api = FakeLegalApi([page_reply(3)], sources={7: source})
        legal, sleep = runner(api)

        progress = await legal.run(pdf_request(source_id=7))

        assert progress.status == ProgressStatus.DONE
        assert [r.start_page for r in api.requests] == [3]
        assert api.requests[0].source_id == 7
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unknown_source(self):
        legal, _ = runner(FakeLegalApi())
        progress = await legal.run(pdf_request(source_id=99))
        assert progress.status == ProgressStatus.ERROR
        assert progress.error.startswith("Cannot resume source 99")

    @pytest.mark.asyncio
    async def test_cancel(self):
        api = FakeLegalApi([page_reply(1), page_reply(2)])

        class CancelOnFirstPage(IngestionObserver):
            def on_progress(self, progress):
                legal.cancel()

        legal, _ = runner(api, CancelOnFirstPage())
        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.CANCELLED
        assert len(api.requests) == 1


class TestBatchRetries:

    @pytest.mark.asyncio
    async def test_transient_errors_back_off_linearly(self):
        api = FakeLegalApi([
            ApiError(503, "Unavailable"),
            ApiError(None, "Request timed out after 180.0s"),
            page_reply(1, total=1),
        ])
        legal, sleep = runner(api, delay_between_batches=0)

        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.DONE
        assert len(api.requests) == 3
        assert sleep.delays == [3.0, 6.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self):
        api = FakeLegalApi([ApiError(429, "Rate limited")] * 3)
        legal, sleep = runner(api)

        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.ERROR
        assert progress.error == "Page 1: Rate limited"
        assert len(api.requests) == 3
        assert sleep.delays == [3.0, 6.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        api = FakeLegalApi([ApiError(400, "Invalid base64 document")])
        legal, sleep = runner(api)

        progress = await legal.run(pdf_request())

        assert progress.status == ProgressStatus.ERROR
        assert len(api.requests) == 1
        assert sleep.delays == []
