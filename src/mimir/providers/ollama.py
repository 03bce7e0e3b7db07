"""
Ollama provider implementation.

This module provides local inference through an Ollama server. The server
streams newline-delimited JSON objects, the last of which has ``done`` set
and carries the evaluated token counts.
"""

import json
import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

from ..core.exceptions import ProviderError
from ..core.models import CompletionOptions, ModelCost
from .base import LocalProvider, ProviderReply, StreamTally

logger = logging.getLogger(__name__)

FREE = ModelCost(input=Decimal("0"), output=Decimal("0"))


class OllamaProvider(LocalProvider):
    """Models served by a local Ollama instance."""

    provider_type = "ollama"
    display_name = "Ollama"
    default_base_url = "http://localhost:11434"
    default_model_name = "llama3"
    models_path = "/api/tags"
    model_costs = {
        name: FREE
        for name in ("llama3", "llama3:8b", "llama3:70b", "codellama", "mistral", "phi3", "gemma")
    }
    fallback_cost = FREE

    def _parse_model_list(self, data: dict[str, Any]) -> list[str]:
        return [model["name"] for model in data.get("models") or [] if "name" in model]

    def _prepare_request(
        self, messages: list[dict[str, str]], options: CompletionOptions, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": options.model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
            },
        }

    def _check_error(self, data: dict[str, Any], model: str | None) -> None:
        if data.get("error"):
            raise ProviderError(
                f"Ollama error: {data['error']}", provider=self.provider_type, model=model
            )

    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        response = await self._request(
            "POST", "/api/chat", json=self._prepare_request(messages, options, stream=False)
        )
        data = response.json()
        self._check_error(data, options.model)

        return ProviderReply(
            text=(data.get("message") or {}).get("content", ""),
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )

    async def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        payload = self._prepare_request(messages, options, stream=True)
        async with self._stream("POST", "/api/chat", json=payload) as response:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream line: {line[:80]}")
                    continue

                self._check_error(data, options.model)
                text = (data.get("message") or {}).get("content")
                if text:
                    yield text
                if data.get("done"):
                    tally.prompt_tokens = data.get("prompt_eval_count")
                    tally.completion_tokens = data.get("eval_count")
                    break
