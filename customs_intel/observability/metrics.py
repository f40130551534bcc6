"""
Prometheus metrics for the customs extraction service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Batch Extraction ─────────────────────────────────────────
extraction_batches_total = Counter(
    "extraction_batches_total",
    "Total batch extraction calls served",
    ["outcome"],
)

extraction_batch_duration_seconds = Histogram(
    "extraction_batch_duration_seconds",
    "Time to serve one batch extraction call",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

pages_analyzed_total = Counter(
    "pages_analyzed_total",
    "Pages sent through LLM analysis",
    ["outcome"],
)

tariff_lines_extracted_total = Counter(
    "tariff_lines_extracted_total",
    "Validated tariff lines produced by reconciliation",
)

tariff_rows_skipped_total = Counter(
    "tariff_rows_skipped_total",
    "Raw tariff rows rejected by strict code validation",
)

rate_unit_swaps_total = Counter(
    "rate_unit_swaps_total",
    "Duty rate / unit transpositions corrected",
)

extraction_runs_active = Gauge(
    "extraction_runs_active",
    "Batch calls currently in progress",
)

# ── JSON Recovery ────────────────────────────────────────────
llm_json_parse_total = Counter(
    "llm_json_parse_total",
    "LLM response JSON parse outcomes",
    ["strategy"],
)

# ── External LLM APIs ────────────────────────────────────────
llm_requests_total = Counter(
    "llm_requests_total",
    "Outbound LLM/embedding requests by final HTTP status",
    ["engine_name", "status"],
)

http_retries_total = Counter(
    "http_retries_total",
    "Retries scheduled by the resilient HTTP caller",
    ["reason"],
)

external_api_cost_usd = Counter(
    "external_api_cost_usd_total",
    "Cumulative cost of external API calls in USD",
    ["engine_name", "operation"],
)

external_api_latency_seconds = Histogram(
    "external_api_latency_seconds",
    "Latency of external API calls",
    ["engine_name", "operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
)

# ── Client Orchestration ─────────────────────────────────────
orchestrator_recoveries_total = Counter(
    "orchestrator_recoveries_total",
    "Transient failures resolved by adopting server-side progress",
)

orchestrator_retries_total = Counter(
    "orchestrator_retries_total",
    "Batch calls retried by the client orchestrator",
)

# ── Legal Ingestion ──────────────────────────────────────────
legal_pages_ingested_total = Counter(
    "legal_pages_ingested_total",
    "Legal document pages ingested",
)

legal_chunks_created_total = Counter(
    "legal_chunks_created_total",
    "Legal text chunks stored",
    ["chunk_type"],
)

# ── Worker ───────────────────────────────────────────────────
worker_jobs_active = Gauge(
    "worker_jobs_active",
    "Number of currently active worker jobs",
)
