"""
Abstract base classes for the LLM and embedding providers.
Every engine returns an LLMResponse; failures surface as EngineError.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel


class LLMResponse(BaseModel):
    """Text completion plus the usage figures needed for cost events."""
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    stop_reason: Optional[str] = None


class LLMEngine(ABC):
    """
    Abstract base class for document-capable LLM providers.

    Every engine must:
    1. Analyse a base64 PDF together with an instruction prompt
    2. Complete plain text prompts
    3. Raise EngineError on failure, RateLimitedError when throttled
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'anthropic', 'stub'"""
        ...

    @property
    @abstractmethod
    def engine_version(self) -> str:
        """Model or API version string."""
        ...

    @abstractmethod
    async def analyze_document(
        self,
        pdf_base64: str,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        page_number: Optional[int] = None,
    ) -> LLMResponse:
        """
        Send a PDF document and an instruction; return the raw model text.

        page_number is informational (logging, scripted engines); the page
        restriction itself lives in the prompt.
        """
        ...

    @abstractmethod
    async def complete_text(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify engine is configured and reachable."""
        ...


class EmbeddingEngine(ABC):

    @property
    @abstractmethod
    def engine_name(self) -> str:
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for text. Raises EngineError."""
        ...


class EngineError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, engine_name: str, error_code: str, message: str):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{engine_name}] {error_code}: {message}")


class RateLimitedError(EngineError):
    """Provider still throttling (429/529) after the retry budget."""

    def __init__(self, engine_name: str, status_code: int, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(engine_name, "ERR_RATE_LIMITED", f"HTTP {status_code}")
