"""
OpenAI provider implementation.

Speaks the chat completions API. The payload builders and response parsers
are module-level so OpenAI-compatible local servers can reuse them.
"""

import json
import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

import httpx

from ..core.exceptions import ProviderError
from ..core.models import CompletionOptions, ModelCost
from .base import BaseProvider, ProviderReply, StreamTally

logger = logging.getLogger(__name__)


def build_chat_payload(
    messages: list[dict[str, str]], options: CompletionOptions, stream: bool = False
) -> dict[str, Any]:
    """Build a chat completions request body."""
    payload: dict[str, Any] = {
        "model": options.model,
        "messages": messages,
        "temperature": options.temperature,
        "max_tokens": options.max_tokens,
        "stream": stream,
    }
    return payload


def parse_chat_response(data: dict[str, Any], provider: str, model: str | None) -> ProviderReply:
    """
    Parse a chat completions response body.

    Raises:
        ProviderError: If no choices were returned
    """
    choices = data.get("choices") or []
    if not choices:
        raise ProviderError(
            "Invalid response format: no choices returned", provider=provider, model=model
        )

    content = choices[0].get("message", {}).get("content") or ""
    usage = data.get("usage") or {}
    return ProviderReply(
        text=content,
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
    )


async def iter_chat_stream(
    provider: BaseProvider, response: httpx.Response, tally: StreamTally
) -> AsyncIterator[str]:
    """Yield content deltas from a chat completions event stream."""
    async for data in provider._iter_sse_data(response):
        if data == "[DONE]":
            break
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream event: {data[:80]}")
            continue

        if event.get("error"):
            raise provider._stream_event_error(event["error"])

        usage = event.get("usage")
        if usage:
            tally.prompt_tokens = usage.get("prompt_tokens")
            tally.completion_tokens = usage.get("completion_tokens")

        for choice in event.get("choices") or []:
            text = (choice.get("delta") or {}).get("content")
            if text:
                yield text


class OpenAIProvider(BaseProvider):
    """OpenAI hosted models."""

    provider_type = "openai"
    display_name = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    default_model_name = "gpt-3.5-turbo"
    model_costs = {
        "gpt-4-0125-preview": ModelCost(input=Decimal("0.01"), output=Decimal("0.03")),
        "gpt-4-turbo-preview": ModelCost(input=Decimal("0.01"), output=Decimal("0.03")),
        "gpt-4-vision-preview": ModelCost(input=Decimal("0.01"), output=Decimal("0.03")),
        "gpt-4": ModelCost(input=Decimal("0.03"), output=Decimal("0.06")),
        "gpt-3.5-turbo": ModelCost(input=Decimal("0.0015"), output=Decimal("0.002")),
        "gpt-3.5-turbo-16k": ModelCost(input=Decimal("0.003"), output=Decimal("0.004")),
    }
    fallback_cost = ModelCost(input=Decimal("0.01"), output=Decimal("0.03"))

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        response = await self._request(
            "POST", "/chat/completions", json=build_chat_payload(messages, options)
        )
        return parse_chat_response(response.json(), self.provider_type, options.model)

    async def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        payload = build_chat_payload(messages, options, stream=True)
        payload["stream_options"] = {"include_usage": True}
        async with self._stream("POST", "/chat/completions", json=payload) as response:
            async for text in iter_chat_stream(self, response, tally):
                yield text
