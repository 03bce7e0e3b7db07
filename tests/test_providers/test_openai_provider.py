"""
Tests for the OpenAI provider.
"""

import json

import httpx
import pytest

from mimir.core.models import CompletionOptions
from mimir.providers.openai import OpenAIProvider, build_chat_payload


class TestOpenAIProvider:
    """Test request formatting and response parsing."""

    def test_build_chat_payload(self):
        options = CompletionOptions(model="gpt-4", temperature=0.5, max_tokens=100)

        payload = build_chat_payload([{"role": "user", "content": "Hi"}], options, stream=True)

        assert payload == {
            "model": "gpt-4",
            "messages": [{"role": "user", "content": "Hi"}],
            "temperature": 0.5,
            "max_tokens": 100,
            "stream": True,
        }

    @pytest.mark.asyncio
    async def test_completion_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "Paris"}}],
                    "usage": {"prompt_tokens": 8, "completion_tokens": 1},
                },
            )

        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(handler))

        result = await provider.generate_completion(
            [
                {"role": "system", "content": "Be brief"},
                {"role": "user", "content": "Capital of France?"},
            ],
            {"model": "gpt-4", "max_tokens": 10},
        )

        assert result.success is True
        assert result.completion == "Paris"
        assert result.model == "gpt-4"
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief"}
        assert seen["body"]["max_tokens"] == 10
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    async def test_empty_choices_is_failure(self):
        provider = OpenAIProvider(
            api_key="sk-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []})),
        )

        result = await provider.generate_completion("Hi")

        assert result.success is False
        assert "no choices returned" in result.error

    @pytest.mark.asyncio
    async def test_stream_parses_deltas_and_usage(self, sse):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            body = sse(
                [
                    {"choices": [{"delta": {"role": "assistant"}}]},
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    "not json",
                    {"choices": [{"delta": {"content": "lo"}}]},
                    {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 2}},
                    "[DONE]",
                ]
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(handler))

        chunks = [chunk async for chunk in provider.stream_completion("Hi")]

        assert [c.text for c in chunks if not c.done] == ["Hel", "lo"]
        assert chunks[-1].usage.prompt_tokens == 7
        assert chunks[-1].usage.completion_tokens == 2
        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_stream_http_error_is_terminal_chunk(self):
        provider = OpenAIProvider(
            api_key="sk-test",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(400, json={"error": {"message": "bad request"}})
            ),
        )

        chunks = [chunk async for chunk in provider.stream_completion("Hi")]

        assert len(chunks) == 1
        assert chunks[0].done is True
        assert "bad request" in chunks[0].error

    @pytest.mark.asyncio
    async def test_error_event_mid_stream_is_failure(self, sse):
        def handler(request):
            body = sse(
                [
                    {"choices": [{"delta": {"content": "partial"}}]},
                    {"error": {"message": "The server had an error", "type": "server_error"}},
                    "[DONE]",
                ]
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(handler))
        received = []

        result = await provider.generate_completion_stream("Hi", None, received.append)

        assert result.success is False
        assert result.completion == ""
        assert "Stream interrupted after 1 chunks" in result.error
        assert "The server had an error" in result.error
        assert received[-1].done is True
        assert received[-1].error == result.error
