"""
Google Gemini provider implementation.
"""

import json
import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

from ..core.exceptions import ProviderError
from ..core.models import CompletionOptions, ModelCost
from .base import BaseProvider, ProviderReply, StreamTally

logger = logging.getLogger(__name__)


class GoogleProvider(BaseProvider):
    """Google hosted Gemini models."""

    provider_type = "google"
    display_name = "Google AI"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model_name = "gemini-1.0-pro"
    model_costs = {
        "gemini-1.5-pro-latest": ModelCost(input=Decimal("0.0005"), output=Decimal("0.0015")),
        "gemini-1.5-flash-latest": ModelCost(input=Decimal("0.00025"), output=Decimal("0.0005")),
        "gemini-1.0-pro": ModelCost(input=Decimal("0.00025"), output=Decimal("0.0005")),
        "gemini-1.0-pro-vision": ModelCost(input=Decimal("0.0005"), output=Decimal("0.0015")),
    }
    fallback_cost = ModelCost(input=Decimal("0.0005"), output=Decimal("0.0015"))

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers["x-goog-api-key"] = self.api_key or ""
        return headers

    def _prepare_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> dict[str, Any]:
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        contents = [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
            if m["role"] != "system"
        ]

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {
                "parts": [{"text": text} for text in system_parts]
            }
        return payload

    def _extract_text(self, data: dict[str, Any], model: str | None) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise ProviderError(
                    f"Prompt blocked: {feedback['blockReason']}",
                    provider=self.provider_type,
                    model=model,
                )
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        response = await self._request(
            "POST",
            f"/models/{options.model}:generateContent",
            json=self._prepare_request(messages, options),
        )
        data = response.json()
        usage = data.get("usageMetadata") or {}
        return ProviderReply(
            text=self._extract_text(data, options.model),
            prompt_tokens=usage.get("promptTokenCount"),
            completion_tokens=usage.get("candidatesTokenCount"),
        )

    async def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        async with self._stream(
            "POST",
            f"/models/{options.model}:streamGenerateContent",
            params={"alt": "sse"},
            json=self._prepare_request(messages, options),
        ) as response:
            async for data in self._iter_sse_data(response):
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream event: {data[:80]}")
                    continue

                usage = event.get("usageMetadata") or {}
                if "promptTokenCount" in usage:
                    tally.prompt_tokens = usage["promptTokenCount"]
                if "candidatesTokenCount" in usage:
                    tally.completion_tokens = usage["candidatesTokenCount"]

                text = self._extract_text(event, options.model)
                if text:
                    yield text
