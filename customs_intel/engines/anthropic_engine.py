"""
Anthropic Messages API engine.
Primary path for page-level tariff analysis: the whole PDF is attached as a
document block and the prompt restricts the model to one page.
"""

import time
from typing import Optional

import httpx
import structlog

from customs_intel.config import settings
from customs_intel.engines.base import EngineError, LLMEngine, LLMResponse, RateLimitedError
from customs_intel.engines.retry import RETRY_CONFIGS, RetryConfig, fetch_with_retry, parse_retry_after_ms
from customs_intel.observability.metrics import llm_requests_total

logger = structlog.get_logger(__name__)

RATE_LIMIT_STATUSES = (429, 529)


class AnthropicEngine(LLMEngine):
    """Calls the Messages API over httpx with the shared retry policy."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.api_url = api_url or settings.ANTHROPIC_API_URL
        self.retry_config = retry_config or RETRY_CONFIGS["anthropic_pdf"]
        self._transport = transport

    @property
    def engine_name(self) -> str:
        return "anthropic"

    @property
    def engine_version(self) -> str:
        return self.model

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": settings.ANTHROPIC_VERSION,
            "anthropic-beta": "pdfs-2024-09-25",
            "content-type": "application/json",
        }

    async def analyze_document(
        self,
        pdf_base64: str,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        page_number: Optional[int] = None,
    ) -> LLMResponse:
        content = [
            {
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": "application/pdf",
                    "data": pdf_base64,
                },
                # Same document on every page call; let the API cache it
                "cache_control": {"type": "ephemeral"},
            },
            {"type": "text", "text": prompt},
        ]
        return await self._send(content, system, max_tokens, timeout, page_number)

    async def complete_text(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        return await self._send([{"type": "text", "text": prompt}], system, max_tokens, None, None)

    async def _send(
        self,
        content: list[dict],
        system: Optional[str],
        max_tokens: Optional[int],
        timeout: Optional[float],
        page_number: Optional[int],
    ) -> LLMResponse:
        if not self.api_key:
            raise EngineError(self.engine_name, "ERR_NOT_CONFIGURED", "ANTHROPIC_API_KEY is not set")

        body: dict = {
            "model": self.model,
            "max_tokens": max_tokens or settings.ANTHROPIC_MAX_TOKENS,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            body["system"] = system

        config = self.retry_config
        if timeout is not None:
            config = config.model_copy(update={"timeout_seconds": timeout})

        started = time.monotonic()
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await fetch_with_retry(
                    client, "POST", self.api_url, config,
                    label=self.engine_name, headers=self._headers(), json=body,
                )
            except httpx.TimeoutException as e:
                llm_requests_total.labels(engine_name=self.engine_name, status="timeout").inc()
                raise EngineError(self.engine_name, "ERR_TIMEOUT", f"request timed out: {e}") from e
            except httpx.TransportError as e:
                llm_requests_total.labels(engine_name=self.engine_name, status="transport").inc()
                raise EngineError(self.engine_name, "ERR_TRANSPORT", str(e)) from e

        latency_ms = int((time.monotonic() - started) * 1000)
        llm_requests_total.labels(engine_name=self.engine_name, status=str(response.status_code)).inc()

        if response.status_code in RATE_LIMIT_STATUSES:
            retry_after_ms = parse_retry_after_ms(response.headers.get("retry-after"), 60_000)
            raise RateLimitedError(
                self.engine_name,
                response.status_code,
                retry_after_ms / 1000.0 if retry_after_ms is not None else None,
            )
        if response.status_code >= 400:
            raise EngineError(
                self.engine_name,
                f"HTTP_{response.status_code}",
                response.text[:500],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EngineError(self.engine_name, "ERR_BAD_RESPONSE", "response body is not JSON") from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}

        logger.debug(
            "anthropic_call_complete",
            page_number=page_number,
            latency_ms=latency_ms,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            stop_reason=data.get("stop_reason"),
        )

        return LLMResponse(
            text=text,
            model=data.get("model") or self.model,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            latency_ms=latency_ms,
            stop_reason=data.get("stop_reason"),
        )

    async def health_check(self) -> bool:
        """Configured means usable; no network call."""
        return bool(self.api_key)
