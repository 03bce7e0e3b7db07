"""
LM Studio provider implementation.

This module provides local inference through LM Studio's OpenAI-compatible
API server. Local inference is always free.
"""

import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

from ..core.models import CompletionOptions, ModelCost
from .base import LocalProvider, ProviderReply, StreamTally
from .openai import build_chat_payload, iter_chat_stream, parse_chat_response

logger = logging.getLogger(__name__)

FREE = ModelCost(input=Decimal("0"), output=Decimal("0"))


class LMStudioProvider(LocalProvider):
    """
    LM Studio provider.

    Provides access to locally running models through LM Studio's
    OpenAI-compatible server. Whatever model is loaded answers requests
    addressed to ``default``.
    """

    provider_type = "lmstudio"
    display_name = "LM Studio"
    default_base_url = "http://localhost:1234/v1"
    default_model_name = "default"
    models_path = "/models"
    model_costs = {"default": FREE, "custom": FREE}
    fallback_cost = FREE

    def _parse_model_list(self, data: dict[str, Any]) -> list[str]:
        return [model["id"] for model in data.get("data") or [] if "id" in model]

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
        async with self._stream("POST", "/chat/completions", json=payload) as response:
            async for text in iter_chat_stream(self, response, tally):
                yield text
