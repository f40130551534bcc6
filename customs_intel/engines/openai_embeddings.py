"""
OpenAI embeddings engine for legal chunks.
"""

import time
from typing import Optional

import httpx
import structlog

from customs_intel.config import settings
from customs_intel.engines.base import EmbeddingEngine, EngineError
from customs_intel.engines.retry import RETRY_CONFIGS, RetryConfig, fetch_with_retry
from customs_intel.observability.metrics import external_api_latency_seconds, llm_requests_total

logger = structlog.get_logger(__name__)


class OpenAIEmbeddingEngine(EmbeddingEngine):

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.EMBEDDING_MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.retry_config = retry_config or RETRY_CONFIGS["openai_embeddings"]
        self._transport = transport

    @property
    def engine_name(self) -> str:
        return "openai"

    async def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise EngineError(self.engine_name, "ERR_NOT_CONFIGURED", "OPENAI_API_KEY is not set")

        started = time.monotonic()
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await fetch_with_retry(
                    client, "POST", f"{self.base_url}/embeddings", self.retry_config,
                    label="openai_embeddings",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "model": self.model,
                        "input": text[: settings.EMBEDDING_MAX_INPUT_CHARS],
                    },
                )
            except httpx.TransportError as e:
                raise EngineError(self.engine_name, "ERR_TRANSPORT", str(e) or type(e).__name__) from e

        external_api_latency_seconds.labels(
            engine_name=self.engine_name, operation="embed"
        ).observe(time.monotonic() - started)
        llm_requests_total.labels(engine_name=self.engine_name, status=str(response.status_code)).inc()

        if response.status_code >= 400:
            raise EngineError(self.engine_name, f"HTTP_{response.status_code}", response.text[:300])

        try:
            return list(response.json()["data"][0]["embedding"])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EngineError(self.engine_name, "ERR_BAD_RESPONSE", "missing embedding in response") from e
