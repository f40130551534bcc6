"""
Per-run cost instrumentation for LLM calls.
Costs come from the token usage the provider reports, not from page estimates.
"""

from typing import Optional

import structlog

from customs_intel.config import settings
from customs_intel.engines.base import LLMResponse
from customs_intel.observability.metrics import external_api_cost_usd, external_api_latency_seconds
from customs_intel.storage.stores import CostRecord, ExtractionStore

logger = structlog.get_logger(__name__)


def estimate_cost_usd(input_tokens: int, output_tokens: int) -> float:
    return round(
        input_tokens * settings.ANTHROPIC_INPUT_COST_PER_MTOK / 1_000_000
        + output_tokens * settings.ANTHROPIC_OUTPUT_COST_PER_MTOK / 1_000_000,
        6,
    )


class CostTracker:
    """Collect cost events for one batch and flush them to the store."""

    def __init__(self, run_id: Optional[str] = None, pdf_id: Optional[str] = None):
        self.run_id = run_id
        self.pdf_id = pdf_id
        self._events: list[CostRecord] = []

    def record(
        self,
        engine_name: str,
        operation: str,
        response: LLMResponse,
        page_count: int = 1,
    ) -> CostRecord:
        """Record one LLM call in memory and in Prometheus."""
        event = CostRecord(
            run_id=self.run_id,
            pdf_id=self.pdf_id,
            engine_name=engine_name,
            operation=operation,
            page_count=page_count,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=estimate_cost_usd(response.input_tokens, response.output_tokens),
            latency_ms=response.latency_ms,
        )
        self._events.append(event)

        external_api_cost_usd.labels(
            engine_name=engine_name,
            operation=operation,
        ).inc(event.cost_usd)

        external_api_latency_seconds.labels(
            engine_name=engine_name,
            operation=operation,
        ).observe(event.latency_ms / 1000.0)

        logger.debug(
            "cost_event_recorded",
            engine_name=engine_name,
            operation=operation,
            cost_usd=event.cost_usd,
            latency_ms=event.latency_ms,
        )
        return event

    async def flush(self, store: ExtractionStore) -> None:
        """Persist collected events; the buffer is cleared either way."""
        events, self._events = self._events, []
        await store.record_costs(events)

    @property
    def events(self) -> list[CostRecord]:
        return list(self._events)

    def summary(self) -> dict:
        """Totals over the events collected so far."""
        return {
            "total_cost_usd": round(sum(e.cost_usd for e in self._events), 6),
            "total_pages": sum(e.page_count for e in self._events),
            "input_tokens": sum(e.input_tokens for e in self._events),
            "output_tokens": sum(e.output_tokens for e in self._events),
            "event_count": len(self._events),
        }
