"""
Tests for the client batch orchestrator, against an in-memory API.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import tariff_page_reply
from customs_intel.client.api_client import ApiError
from customs_intel.client.orchestrator import BatchExtractionOrchestrator, OrchestrationError, ProgressObserver
from customs_intel.engines.stub_engine import StubEngine
from customs_intel.models.enums import HSLevel, ProgressStatus, RunStatus
from customs_intel.schemas.extraction import BatchResponse, BatchStats, HSCodeEntry, RunState, TariffLine

PDF_ID = "tarif-2024"


def hs(code: str) -> HSCodeEntry:
    level = {4: HSLevel.HEADING, 6: HSLevel.SUBHEADING}[len(code)]
    return HSCodeEntry(code=code, code_clean=code, description=f"code {code}", level=level)


def line(national_code: str) -> TariffLine:
    return TariffLine(national_code=national_code, hs_code_6=national_code[:6], duty_rate=17.5)


def batch(
    processed: int,
    total: int = 10,
    run_id: str = "run-1",
    codes=(),
    lines=(),
    next_page="auto",
    replayed: bool = False,
):
    done = processed >= total
    if next_page == "auto":
        next_page = None if done else processed + 1
    return BatchResponse(
        extraction_run_id=run_id,
        done=done,
        next_page=next_page,
        processed_pages=processed,
        total_pages=total,
        stats=BatchStats(tariff_lines_inserted=len(lines)),
        status=RunStatus.DONE if done else RunStatus.PROCESSING,
        pdf_id=PDF_ID,
        tariff_lines=[line(c) for c in lines],
        hs_codes=[hs(c) for c in codes],
        replayed=replayed,
    )


def run_state(
    status: RunStatus = RunStatus.PROCESSING,
    current_page: int = 5,
    processed: int = 4,
    run_id: str = "run-1",
    created_at: datetime = None,
    error_message: str = None,
) -> RunState:
    return RunState(
        id=run_id,
        pdf_id=PDF_ID,
        status=status,
        current_page=current_page,
        total_pages=10,
        processed_pages=processed,
        batch_size=4,
        stats=BatchStats(),
        error_message=error_message,
        created_at=created_at or datetime.now(timezone.utc) + timedelta(minutes=1),
    )


class FakeApi:
    """Serves scripted batch replies; an ApiError entry is raised instead."""

    def __init__(self, replies=(), runs=None, listed=()):
        self.replies = list(replies)
        self.runs = dict(runs or {})
        self.listed = list(listed)
        self.requests = []
        self.status_updates = []
        self.cancelled = []

    async def analyze_pdf(self, request):
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def get_run(self, run_id):
        if run_id not in self.runs:
            raise ApiError(404, f"Run {run_id} not found")
        return self.runs[run_id]

    async def list_runs(self, pdf_id):
        return list(self.listed)

    async def set_run_status(self, run_id, status):
        self.status_updates.append((run_id, status))
        return self.runs.get(run_id)

    async def cancel_run(self, run_id):
        self.cancelled.append(run_id)
        return self.runs.get(run_id)


class RecordingObserver(ProgressObserver):

    def __init__(self, on_progress=None):
        self.progress = []
        self.completed = []
        self.errors = []
        self._hook = on_progress

    def on_progress(self, progress):
        self.progress.append(progress.model_copy(deep=True))
        if self._hook:
            self._hook(progress)

    def on_complete(self, outcome):
        self.completed.append(outcome)

    def on_error(self, message, progress):
        self.errors.append(message)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def orchestrator(api, observer=None, **overrides):
    sleep = SleepRecorder()
    options = {
        "batch_size": 4,
        "delay_between_batches": 0,
        "max_retries": 3,
        "retry_base_delay": 2.0,
        "retry_max_delay": 30.0,
        "sleep": sleep,
    }
    options.update(overrides)
    return BatchExtractionOrchestrator(api, observer=observer, **options), sleep


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_runs_to_completion(self):
        api = FakeApi([
            batch(4, codes=["8903", "890311"], lines=["8903111000"]),
            batch(8, codes=["890311", "890392"], lines=["8903920000"]),
            batch(10, codes=["8903"]),
        ])
        observer = RecordingObserver()
        orch, sleep = orchestrator(api, observer)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert outcome.run_id == "run-1"
        assert [r.start_page for r in api.requests] == [1, 5, 9]
        assert [r.extraction_run_id for r in api.requests] == [None, "run-1", "run-1"]
        assert all(r.max_pages == 4 for r in api.requests)
        assert [l.national_code for l in outcome.tariff_lines] == ["8903111000", "8903920000"]
        assert [h.code_clean for h in outcome.hs_codes] == ["8903", "890311", "890392"]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_observer_events(self):
        api = FakeApi([batch(4), batch(8), batch(10)])
        observer = RecordingObserver()
        orch, _ = orchestrator(api, observer)

        await orch.run(PDF_ID)

        assert [p.processed_pages for p in observer.progress] == [4, 8, 10, 10]
        assert observer.progress[-1].status == ProgressStatus.DONE
        assert observer.progress[-1].estimated_remaining_seconds == 0.0
        assert len(observer.completed) == 1
        assert observer.errors == []

    @pytest.mark.asyncio
    async def test_pause_between_batches(self):
        api = FakeApi([batch(4), batch(8)], runs={"run-1": run_state()})
        orch, _ = orchestrator(api)
        observer = RecordingObserver(on_progress=lambda progress: orch.pause())
        orch.observer = observer

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.PAUSED
        assert len(api.requests) == 1
        assert api.status_updates == [("run-1", RunStatus.PAUSED)]
        assert observer.completed == []

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self):
        api = FakeApi([batch(4), batch(8)], runs={"run-1": run_state()})
        orch, _ = orchestrator(api)
        orch.observer = RecordingObserver(on_progress=lambda progress: orch.cancel())

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.CANCELLED
        assert len(api.requests) == 1
        assert api.cancelled == ["run-1"]
        assert api.status_updates == []

    @pytest.mark.asyncio
    async def test_delay_between_batches(self):
        api = FakeApi([batch(4), batch(8), batch(10)])
        orch, sleep = orchestrator(api, delay_between_batches=1.5)
        await orch.run(PDF_ID)
        assert sleep.delays == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_remaining_time_estimate(self):
        ticks = iter(range(0, 1000, 40))
        api = FakeApi([batch(4), batch(10)])
        observer = RecordingObserver()
        orch, _ = orchestrator(api, observer, clock=lambda: next(ticks))

        await orch.run(PDF_ID)

        first = observer.progress[0]
        assert first.elapsed_seconds == 40
        assert first.estimated_remaining_seconds == 60.0

    @pytest.mark.asyncio
    async def test_missing_next_page_is_fatal(self):
        api = FakeApi([batch(4, next_page=None)])
        observer = RecordingObserver()
        orch, _ = orchestrator(api, observer)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.ERROR
        assert outcome.error == "Invalid batch response: next_page missing"
        assert observer.errors == [outcome.error]
        with pytest.raises(OrchestrationError):
            outcome.raise_for_status()


class TestExistingRun:

    @pytest.mark.asyncio
    async def test_resumes_from_server_position(self):
        api = FakeApi([batch(8), batch(10)], runs={"run-1": run_state(RunStatus.PAUSED)})
        orch, _ = orchestrator(api)

        outcome = await orch.run(PDF_ID, existing_run_id="run-1")

        assert outcome.status == ProgressStatus.DONE
        assert api.requests[0].start_page == 5
        assert api.requests[0].extraction_run_id == "run-1"

    @pytest.mark.asyncio
    async def test_done_run_makes_no_calls(self):
        api = FakeApi(runs={"run-1": run_state(RunStatus.DONE, current_page=10, processed=10)})
        observer = RecordingObserver()
        orch, _ = orchestrator(api, observer)

        outcome = await orch.run(PDF_ID, existing_run_id="run-1")

        assert outcome.status == ProgressStatus.DONE
        assert api.requests == []
        assert len(observer.completed) == 1

    @pytest.mark.parametrize("status", [RunStatus.ERROR, RunStatus.CANCELLED])
    @pytest.mark.asyncio
    async def test_closed_run_cannot_resume(self, status):
        api = FakeApi(runs={"run-1": run_state(status)})
        orch, _ = orchestrator(api)

        outcome = await orch.run(PDF_ID, existing_run_id="run-1")

        assert outcome.status == ProgressStatus.ERROR
        assert "cannot be resumed" in outcome.error
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_unknown_run(self):
        orch, _ = orchestrator(FakeApi())
        outcome = await orch.run(PDF_ID, existing_run_id="missing")
        assert outcome.status == ProgressStatus.ERROR
        assert outcome.error.startswith("Cannot resume run missing")


class TestRecovery:

    @pytest.mark.asyncio
    async def test_replays_lost_first_batch(self):
        api = FakeApi(
            [
                ApiError(None, "Request timed out after 180.0s"),
                batch(4, codes=["890311"], lines=["8903111000"], replayed=True),
                batch(10, codes=["890392"], lines=["8903920000"]),
            ],
            listed=[run_state(current_page=5, processed=4)],
        )
        observer = RecordingObserver()
        orch, sleep = orchestrator(api, observer)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert [r.start_page for r in api.requests] == [1, 1, 5]
        assert [r.extraction_run_id for r in api.requests] == [None, "run-1", "run-1"]
        assert [l.national_code for l in outcome.tariff_lines] == ["8903111000", "8903920000"]
        assert [h.code_clean for h in outcome.hs_codes] == ["890311", "890392"]
        assert observer.progress[0].processed_pages == 4
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_replays_lost_batch_of_known_run(self):
        api = FakeApi(
            [
                batch(4, lines=["8903111000"]),
                ApiError(502, "Bad gateway"),
                batch(8, lines=["8903920000"], replayed=True),
                batch(10, lines=["8903991000"]),
            ],
            runs={"run-1": run_state(current_page=9, processed=8)},
        )
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert [r.start_page for r in api.requests] == [1, 5, 5, 9]
        assert [l.national_code for l in outcome.tariff_lines] == ["8903111000", "8903920000", "8903991000"]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_finished_the_run(self):
        api = FakeApi(
            [batch(4), ApiError(None, "Transport error: reset"), batch(10, lines=["8903920000"], replayed=True)],
            runs={"run-1": run_state(RunStatus.DONE, current_page=10, processed=10)},
        )
        orch, _ = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert outcome.progress.processed_pages == 10
        assert [r.start_page for r in api.requests] == [1, 5, 5]
        assert [l.national_code for l in outcome.tariff_lines] == ["8903920000"]

    @pytest.mark.asyncio
    async def test_continues_when_server_cannot_replay(self):
        api = FakeApi(
            [batch(4), ApiError(502, "Bad gateway"), batch(10, lines=["8903991000"])],
            runs={"run-1": run_state(current_page=9, processed=8)},
        )
        orch, _ = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert [r.start_page for r in api.requests] == [1, 5, 5]
        assert [l.national_code for l in outcome.tariff_lines] == ["8903991000"]

    @pytest.mark.asyncio
    async def test_lost_batch_refetch_gives_up(self):
        api = FakeApi(
            [batch(4)] + [ApiError(502, "Bad gateway")] * 3,
            runs={"run-1": run_state(current_page=9, processed=8)},
        )
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.ERROR
        assert outcome.error == "Batch at page 5 could not be fetched back after 3 attempts: Bad gateway"
        assert len(api.requests) == 4
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_closed_the_run(self):
        api = FakeApi(
            [batch(4), ApiError(500, "Internal error")],
            runs={"run-1": run_state(RunStatus.ERROR, error_message="disk full")},
        )
        orch, _ = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.ERROR
        assert "Run closed by the server (error): disk full" == outcome.error

    @pytest.mark.asyncio
    async def test_older_runs_are_ignored(self):
        stale = run_state(created_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
        api = FakeApi([ApiError(503, "Unavailable"), batch(4, total=4)], listed=[stale])
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert [r.start_page for r in api.requests] == [1, 1]
        assert sleep.delays == [2.0]


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        api = FakeApi([ApiError(503, "Unavailable")] * 3)
        observer = RecordingObserver()
        orch, sleep = orchestrator(api, observer)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.ERROR
        assert outcome.error == "Batch at page 1 failed 3 times: Unavailable"
        assert len(api.requests) == 3
        assert sleep.delays == [2.0, 4.0]
        assert observer.errors == [outcome.error]
        assert observer.completed == []

    @pytest.mark.asyncio
    async def test_retry_after_respected(self):
        api = FakeApi([ApiError(429, "Slow down", retry_after=10.0), batch(10)])
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert sleep.delays == [10.0]

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self):
        api = FakeApi([
            ApiError(503, "Unavailable"), ApiError(503, "Unavailable"), batch(4),
            ApiError(503, "Unavailable"), ApiError(503, "Unavailable"), batch(10),
        ])
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.DONE
        assert sleep.delays == [2.0, 4.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        api = FakeApi([ApiError(400, "start_page beyond document", error_code="ERR_BAD_REQUEST")])
        orch, sleep = orchestrator(api)

        outcome = await orch.run(PDF_ID)

        assert outcome.status == ProgressStatus.ERROR
        assert outcome.error == "Batch at page 1 rejected: start_page beyond document"
        assert len(api.requests) == 1
        assert sleep.delays == []

    def test_retry_delay_doubles_up_to_cap(self):
        orch, _ = orchestrator(FakeApi())
        assert [orch.retry_delay(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 30.0]

    @pytest.mark.asyncio
    async def test_existing_runs_listed(self):
        orch, _ = orchestrator(FakeApi(listed=[run_state(run_id="run-2"), run_state()]))
        runs = await orch.get_existing_runs(PDF_ID)
        assert [r.id for r in runs] == ["run-2", "run-1"]


class ExtractorApi:
    """Serves batches from a real extractor in-process; one response is lost on the way back."""

    def __init__(self, extractor, store, lost_call: int):
        self.extractor = extractor
        self.store = store
        self.lost_call = lost_call
        self.requests = []

    async def analyze_pdf(self, request):
        self.requests.append(request)
        response = await self.extractor.run_batch(request)
        if len(self.requests) == self.lost_call:
            raise ApiError(None, "Request timed out after 180.0s")
        return response

    async def get_run(self, run_id):
        return (await self.store.get_run(run_id)).to_state()

    async def list_runs(self, pdf_id):
        return [run.to_state() for run in await self.store.list_runs(pdf_id)]


def tariff_row(position: str, col2: str, rate: float) -> dict:
    return {
        "position_6": position, "col2": col2, "col3": "00",
        "description": f"Bateaux {position}", "duty_rate": rate, "unit_norm": "U",
    }


class TestAgainstExtractor:

    @pytest.mark.asyncio
    async def test_rows_of_lost_batch_are_kept(self, make_extractor, extraction_store, page_count_cache, tariff_pdf):
        page_count_cache.set(tariff_pdf.id, 3)
        engine = StubEngine(page_replies={
            1: tariff_page_reply(1, [tariff_row("8903.11", "10", 17.5)]),
            2: tariff_page_reply(2, [tariff_row("8903.92", "00", 10)]),
            3: tariff_page_reply(3, [tariff_row("8903.99", "10", 2.5)]),
        })
        api = ExtractorApi(make_extractor(engine), extraction_store, lost_call=2)
        orch, _ = orchestrator(api, batch_size=1)

        outcome = await orch.run(tariff_pdf.id)

        assert outcome.status == ProgressStatus.DONE
        assert [l.national_code for l in outcome.tariff_lines] == ["8903111000", "8903920000", "8903991000"]
        assert [r.start_page for r in api.requests] == [1, 2, 2, 3]
        assert engine.calls.count(2) == 1
        run = extraction_store.runs[outcome.run_id]
        assert run.status == RunStatus.DONE
        assert run.processed_pages == 3
