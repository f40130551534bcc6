"""
Scripted LLM engine for offline runs and tests.
Returns canned text per page (or a default empty page payload) without
touching the network.
"""

import json
from typing import Optional, Union

from customs_intel.engines.base import EngineError, LLMEngine, LLMResponse

ScriptedReply = Union[str, Exception]


class StubEngine(LLMEngine):
    """
    Fake provider.

    page_replies maps a page number to the raw text the model "returns"
    for that page, or to an exception to raise. Pages without a script get
    an empty non-tariff payload.
    """

    def __init__(
        self,
        page_replies: Optional[dict[int, ScriptedReply]] = None,
        text_reply: str = "",
    ):
        self.page_replies: dict[int, ScriptedReply] = dict(page_replies or {})
        self.text_reply = text_reply
        self.calls: list[Optional[int]] = []

    @property
    def engine_name(self) -> str:
        return "stub"

    @property
    def engine_version(self) -> str:
        return "0.1.0"

    async def analyze_document(
        self,
        pdf_base64: str,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        page_number: Optional[int] = None,
    ) -> LLMResponse:
        self.calls.append(page_number)
        reply = self.page_replies.get(page_number) if page_number is not None else None
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            reply = json.dumps({
                "page_number": page_number,
                "has_tariff_table": False,
                "raw_lines": [],
                "notes": [],
            })
        return LLMResponse(text=reply, model="stub")

    async def complete_text(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        self.calls.append(None)
        if not self.text_reply:
            raise EngineError(self.engine_name, "ERR_NO_SCRIPT", "no text reply scripted")
        return LLMResponse(text=self.text_reply, model="stub")

    async def health_check(self) -> bool:
        return True
