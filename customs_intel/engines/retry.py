"""
Resilient HTTP caller for external providers.

Bounded retry loop with exponential backoff and jitter. A Retry-After
header on a retryable response replaces the computed backoff (capped at
the configured maximum). The final response is returned to the caller
whatever its status; transport errors surface after the last attempt.
"""

import asyncio
import random
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from customs_intel.observability.metrics import http_retries_total

logger = structlog.get_logger(__name__)

DEFAULT_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES
    timeout_seconds: Optional[float] = None
    # Fraction of the base delay added as random jitter
    jitter_ratio: float = Field(default=0.3, ge=0.0, le=1.0)


RETRY_CONFIGS: dict[str, RetryConfig] = {
    "anthropic_pdf": RetryConfig(
        max_retries=2,
        initial_delay_ms=3000,
        max_delay_ms=20000,
        retryable_statuses=frozenset({429, 500, 502, 503, 504, 529}),
        timeout_seconds=180.0,
    ),
    "openai_embeddings": RetryConfig(
        max_retries=2,
        initial_delay_ms=500,
        max_delay_ms=5000,
        timeout_seconds=10.0,
    ),
}


def compute_backoff_ms(
    config: RetryConfig,
    attempt: int,
    rng: Callable[[], float] = random.random,
) -> int:
    """Delay before retry number attempt+1: exponential, jittered, capped."""
    base = config.initial_delay_ms * (2 ** attempt)
    jitter = base * config.jitter_ratio * rng()
    return int(min(base + jitter, config.max_delay_ms))


def parse_retry_after_ms(value: Optional[str], max_delay_ms: int) -> Optional[int]:
    """Retry-After as milliseconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if seconds < 0:
        return 0
    return int(min(seconds * 1000, max_delay_ms))


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    config: RetryConfig,
    label: str = "http",
    **request_kwargs,
) -> httpx.Response:
    """
    Perform an HTTP request, retrying retryable statuses and transport errors.

    Returns the first non-retryable response, or the last response once
    max_retries is spent. Re-raises the last httpx.TransportError (timeouts
    included) when every attempt failed at the transport level.
    """
    timeout = config.timeout_seconds if config.timeout_seconds is not None else httpx.USE_CLIENT_DEFAULT

    for attempt in range(config.max_retries + 1):
        is_last = attempt == config.max_retries
        try:
            response = await client.request(method, url, timeout=timeout, **request_kwargs)
        except httpx.TransportError as e:
            if is_last:
                logger.error(
                    "http_retries_exhausted",
                    label=label,
                    attempts=attempt + 1,
                    error=str(e) or type(e).__name__,
                )
                raise
            wait_ms = compute_backoff_ms(config, attempt)
            http_retries_total.labels(reason="transport").inc()
            logger.warning(
                "http_transport_error_retrying",
                label=label,
                attempt=attempt + 1,
                max_retries=config.max_retries,
                wait_ms=wait_ms,
                error=str(e) or type(e).__name__,
            )
            await asyncio.sleep(wait_ms / 1000.0)
            continue

        if response.status_code not in config.retryable_statuses:
            return response

        if is_last:
            logger.warning(
                "http_retries_exhausted",
                label=label,
                attempts=attempt + 1,
                status_code=response.status_code,
            )
            return response

        wait_ms = parse_retry_after_ms(response.headers.get("retry-after"), config.max_delay_ms)
        if wait_ms is None:
            wait_ms = compute_backoff_ms(config, attempt)

        http_retries_total.labels(reason=str(response.status_code)).inc()
        logger.warning(
            "http_status_retrying",
            label=label,
            attempt=attempt + 1,
            max_retries=config.max_retries,
            status_code=response.status_code,
            wait_ms=wait_ms,
        )
        await response.aclose()
        await asyncio.sleep(wait_ms / 1000.0)

    raise RuntimeError("retry loop exited without a response")
