from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import SecretStr

from ..config import ReasoningServiceSettings
from ..domain.interfaces.reasoning_provider import (
    ReasoningCapability,
    ReasoningRequest,
    ReasoningResponse,
)
from ..domain.services.exceptions import CredentialError, MalformedResponseError
from .api_clients.base_client import AsyncHTTPClient

MAX_PROMPT_LENGTH = 100000


def validate_prompt(prompt: str) -> str:
    """Validate and sanitize LLM prompt"""
    if not prompt or not prompt.strip():
        raise ValueError("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError("Prompt exceeds maximum length")

    sanitized = re.sub(
        r"<script[^>]*>.*?</script>", "", prompt, flags=re.IGNORECASE | re.DOTALL
    )
    sanitized = re.sub(r"javascript:", "", sanitized, flags=re.IGNORECASE)

    return sanitized.strip()


class GeminiReasoningClient:
    """Reasoning provider backed by the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: SecretStr,
        config: Optional[ReasoningServiceSettings] = None,
        http_client: Optional[AsyncHTTPClient] = None,
    ) -> None:
        if api_key is None or not api_key.get_secret_value().strip():
            raise CredentialError("Reasoning service API key is not configured")
        self.config = config or ReasoningServiceSettings()
        self.http_client = http_client or AsyncHTTPClient(
            "reasoning service",
            base_url=self.config.base_url,
            default_headers={"x-goog-api-key": api_key.get_secret_value()},
            timeout=self.config.timeout_seconds,
        )
        logger.info(f"GeminiReasoningClient initialized for model: {self.config.model}")

    async def close(self) -> None:
        await self.http_client.close()

    async def __aenter__(self) -> "GeminiReasoningClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _build_payload(self, request: ReasoningRequest) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "maxOutputTokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.capability == ReasoningCapability.THINKING_STRUCTURED:
            generation_config["responseMimeType"] = "application/json"
            if request.output_schema:
                generation_config["responseSchema"] = request.output_schema
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": validate_prompt(request.prompt)}]}],
            "generationConfig": generation_config,
        }
        if request.capability == ReasoningCapability.THINKING_SEARCH:
            payload["tools"] = [{"google_search": {}}]
        elif request.capability == ReasoningCapability.THINKING_CODE:
            payload["tools"] = [{"code_execution": {}}]
        return payload

    def _parse_response(self, body: Dict[str, Any]) -> ReasoningResponse:
        candidates = body.get("candidates") or []
        if not candidates:
            raise MalformedResponseError("Reasoning response contained no candidates")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        finish_reason = str(candidate.get("finishReason") or "STOP")
        if not text and finish_reason.upper() != "MAX_TOKENS":
            raise MalformedResponseError("Reasoning response contained no text")
        usage = body.get("usageMetadata") or {}
        structured = None
        if text:
            try:
                structured = json.loads(text)
            except (json.JSONDecodeError, ValueError):
                structured = None
        return ReasoningResponse(
            text=text,
            finish_reason="length" if finish_reason.upper() == "MAX_TOKENS" else finish_reason.lower(),
            structured=structured,
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )

    async def generate(self, request: ReasoningRequest) -> ReasoningResponse:
        logger.debug(
            f"Reasoning call: capability={request.capability.value}, max_tokens={request.max_tokens}"
        )
        body = await self.http_client.post_json(
            f"/models/{self.config.model}:generateContent", self._build_payload(request)
        )
        return self._parse_response(body)
