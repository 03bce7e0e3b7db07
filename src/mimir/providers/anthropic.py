"""
Anthropic provider implementation.

Uses the Messages API. System messages are lifted out of the message list
into the top-level ``system`` field, which is how the API expects them.
"""

import json
import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

from ..core.models import CompletionOptions, ModelCost
from .base import BaseProvider, ProviderReply, StreamTally

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    """Anthropic hosted Claude models."""

    provider_type = "anthropic"
    display_name = "Anthropic"
    default_base_url = "https://api.anthropic.com/v1"
    default_model_name = "claude-3-haiku-20240307"
    model_costs = {
        "claude-3-opus-20240229": ModelCost(input=Decimal("0.015"), output=Decimal("0.075")),
        "claude-3-sonnet-20240229": ModelCost(input=Decimal("0.003"), output=Decimal("0.015")),
        "claude-3-haiku-20240307": ModelCost(input=Decimal("0.00025"), output=Decimal("0.00125")),
        "claude-2.1": ModelCost(input=Decimal("0.008"), output=Decimal("0.024")),
        "claude-2.0": ModelCost(input=Decimal("0.008"), output=Decimal("0.024")),
        "claude-instant-1.2": ModelCost(input=Decimal("0.0008"), output=Decimal("0.0024")),
    }
    fallback_cost = ModelCost(input=Decimal("0.003"), output=Decimal("0.015"))

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers["x-api-key"] = self.api_key or ""
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def _prepare_request(
        self, messages: list[dict[str, str]], options: CompletionOptions, stream: bool = False
    ) -> dict[str, Any]:
        """
        Prepare a Messages API request.

        Args:
            messages: Role/content messages, system messages included
            options: Resolved completion options
            stream: Whether to request a server-sent event stream

        Returns:
            Dictionary formatted for the Messages API
        """
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        conversation = [m for m in messages if m["role"] != "system"]

        payload: dict[str, Any] = {
            "model": options.model,
            "messages": conversation,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if stream:
            payload["stream"] = True
        return payload

    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        response = await self._request(
            "POST", "/messages", json=self._prepare_request(messages, options)
        )
        data = response.json()

        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return ProviderReply(
            text=text,
            prompt_tokens=usage.get("input_tokens"),
            completion_tokens=usage.get("output_tokens"),
        )

    async def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        payload = self._prepare_request(messages, options, stream=True)
        async with self._stream("POST", "/messages", json=payload) as response:
            async for data in self._iter_sse_data(response):
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream event: {data[:80]}")
                    continue

                event_type = event.get("type")
                if event_type == "error":
                    raise self._stream_event_error(event.get("error"), options.model)
                if event_type == "message_start":
                    usage = (event.get("message") or {}).get("usage") or {}
                    tally.prompt_tokens = usage.get("input_tokens")
                elif event_type == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        yield text
                elif event_type == "message_delta":
                    usage = event.get("usage") or {}
                    if "output_tokens" in usage:
                        tally.completion_tokens = usage["output_tokens"]
                elif event_type == "message_stop":
                    break
