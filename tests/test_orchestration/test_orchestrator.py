"""
Tests for the Orchestrator.
"""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest

from mimir.conversations.manager import ConversationManager
from mimir.core.exceptions import (
    ConversationNotFoundError,
    NoProviderAvailableError,
    ProviderNotInitializedError,
)
from mimir.orchestration import Orchestrator
from mimir.processing.file_actions import LocalFileActionExecutor
from mimir.processing.response_processor import ResponseProcessor
from mimir.prompts.manager import PromptManager
from mimir.providers.registry import ProviderRegistry


@pytest.fixture
def workspace(tmp_path):
    directory = tmp_path / "workspace"
    directory.mkdir()
    return directory


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def orchestrator(registry, workspace, tmp_path):
    return Orchestrator(
        registry=registry,
        prompt_manager=PromptManager(),
        response_processor=ResponseProcessor(executor=LocalFileActionExecutor(workspace)),
        conversation_manager=ConversationManager(tmp_path / "conversations"),
    )


class TestProviderResolution:
    """Test which provider a request goes to."""

    def test_no_default_provider(self, orchestrator):
        with pytest.raises(NoProviderAvailableError, match="No AI provider available"):
            orchestrator.resolve_provider()

    def test_named_provider_not_initialized(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)

        assert orchestrator.resolve_provider() is fake_provider
        with pytest.raises(ProviderNotInitializedError):
            orchestrator.resolve_provider("openai")

    @pytest.mark.asyncio
    async def test_chat_without_provider(self, orchestrator):
        with pytest.raises(NoProviderAvailableError):
            await orchestrator.chat("Hi")


class TestCompletions:
    """Test plain and streamed completions."""

    @pytest.mark.asyncio
    async def test_generate_completion(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)

        result = await orchestrator.generate_completion("Say hello")

        assert result.success is True
        assert result.completion == "Hello world"
        assert result.model == "fake-model"

    @pytest.mark.asyncio
    async def test_stream_delivers_chunks_then_final(self, orchestrator, registry, fake_provider_class):
        registry.register(
            fake_provider_class(chunks=['<mimir-chat-summary>greeted</mimir-chat-summary>', "Hi"])
        )
        received = []

        result = await orchestrator.generate_completion_stream(
            "Hello", on_chunk=received.append, stream_id="s1"
        )

        assert [c.text for c in received if not c.done] == [
            "<mimir-chat-summary>greeted</mimir-chat-summary>",
            "Hi",
        ]
        assert received[-1].done is True
        assert all(c.stream_id == "s1" for c in received)
        assert result.success is True
        assert result.completion == "[Chat summary created]Hi"
        assert result.actions.chat_summary[0].summary == "greeted"
        assert result.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_stream_failure(self, orchestrator, registry, fake_provider_class):
        registry.register(fake_provider_class(chunks=["Hel", RuntimeError("boom")]))
        received = []

        result = await orchestrator.generate_completion_stream("Hi", on_chunk=received.append)

        assert result.success is False
        assert "Stream interrupted after 1 chunks: boom" in result.error
        assert received[0].text == "Hel"
        assert received[-1].error == result.error

    @pytest.mark.asyncio
    async def test_cancel_stops_delivery(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(chunks=["one", "two", "three"])
        provider.gate = asyncio.Event()
        registry.register(provider)
        received = []
        first_chunk = asyncio.Event()

        def on_chunk(chunk):
            received.append(chunk)
            first_chunk.set()

        stream_id = orchestrator.start_completion_stream("Count", on_chunk=on_chunk)
        await first_chunk.wait()

        assert orchestrator.is_streaming(stream_id) is True
        assert orchestrator.cancel_stream(stream_id) is True
        provider.gate.set()
        result = await orchestrator.wait_for_stream(stream_id)

        assert result.cancelled is True
        assert result.success is False
        assert [c.text for c in received] == ["one"]
        assert orchestrator.is_streaming(stream_id) is False
        assert orchestrator.response_processor.get_full_response(stream_id) is None

    @pytest.mark.asyncio
    async def test_background_stream_completes(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)

        stream_id = orchestrator.start_completion_stream("Hi")
        result = await orchestrator.wait_for_stream(stream_id)

        assert result.stream_id == stream_id
        assert result.completion == "Hello world"
        assert await orchestrator.wait_for_stream("unknown") is None

    def test_cancel_unknown_stream(self, orchestrator):
        assert orchestrator.cancel_stream("unknown") is False

    @pytest.mark.asyncio
    async def test_cancel_after_stream_finished_is_forgotten(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)
        release = asyncio.Event()

        async def finished_stream(*args, **kwargs):
            await release.wait()
            return None

        with patch.object(orchestrator, "generate_completion_stream", side_effect=finished_stream):
            stream_id = orchestrator.start_completion_stream("Hi")
            assert orchestrator.cancel_stream(stream_id) is True
            release.set()
            await orchestrator.wait_for_stream(stream_id)

        assert stream_id not in orchestrator._tasks
        assert stream_id not in orchestrator._cancelled

    @pytest.mark.asyncio
    async def test_close_cancels_background_streams(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(chunks=["a", "b"])
        provider.gate = asyncio.Event()
        registry.register(provider)

        orchestrator.start_completion_stream("Hi")
        await orchestrator.close()

        assert orchestrator._tasks == {}


class TestGenerateCode:
    @pytest.mark.asyncio
    async def test_extracts_first_code_block(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(reply="Here:\n```python\nprint('hi')\n```\nDone")
        registry.register(provider)

        result = await orchestrator.generate_code("Print a greeting", language="python")

        assert result["success"] is True
        assert result["code"] == "print('hi')"
        assert result["language"] == "python"
        prompt = provider.requests[-1][0]["content"]
        assert "Print a greeting" in prompt
        assert "{projectContext}" not in prompt

    @pytest.mark.asyncio
    async def test_whole_completion_without_block(self, orchestrator, registry, fake_provider_class):
        registry.register(fake_provider_class(reply="const x = 1;"))

        result = await orchestrator.generate_code("Declare x")

        assert result["code"] == "const x = 1;"
        assert result["language"] == "javascript"

    @pytest.mark.asyncio
    async def test_failure_has_no_code(self, orchestrator, registry, fake_provider_class):
        registry.register(fake_provider_class(error=ValueError("invalid request")))

        result = await orchestrator.generate_code("Anything")

        assert result["success"] is False
        assert "code" not in result


class TestChat:
    """Test chat turns and what they store."""

    @pytest.mark.asyncio
    async def test_turn_is_stored_with_usage(self, orchestrator, registry, fake_provider_class, workspace):
        registry.register(
            fake_provider_class(
                chunks=['<mimir-write path="src/a.js">console.log(1)</mimir-write>', "Done."]
            )
        )
        received = []

        result = await orchestrator.chat("Write a.js", on_chunk=received.append)

        assert result.success is True
        assert result.completion == "[Writing to src/a.js]Done."
        assert result.file_results["write"] == [{"path": "src/a.js", "success": True}]
        assert (workspace / "src" / "a.js").read_text() == "console.log(1)"
        assert received[-1].done is True
        assert received[-1].full_response == result.completion

        conversation = orchestrator.conversation_manager.get_conversation(result.conversation_id)
        assert [m.role for m in conversation.messages] == ["user", "assistant"]
        assert conversation.messages[0].id == result.user_message_id
        assert conversation.messages[1].content == "[Writing to src/a.js]Done."
        assert conversation.messages[1].actions.write[0].path == "src/a.js"
        assert conversation.usage.total_tokens == 15
        assert conversation.usage.cost == Decimal("0.00002")
        assert conversation.title == "Write a.js"

    @pytest.mark.asyncio
    async def test_actions_not_applied_when_disabled(self, orchestrator, registry, fake_provider_class, workspace):
        registry.register(
            fake_provider_class(chunks=['<mimir-write path="b.txt">x</mimir-write>'])
        )

        result = await orchestrator.chat("Go", apply_actions=False)

        assert result.success is True
        assert result.file_results is None
        assert not (workspace / "b.txt").exists()

    @pytest.mark.asyncio
    async def test_history_included_in_next_turn(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(chunks=["Answer"])
        registry.register(provider)

        first = await orchestrator.chat("First question")
        await orchestrator.chat("Second question", conversation_id=first.conversation_id)

        messages = provider.requests[-1]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "user", "content": "First question"}
        assert messages[2] == {"role": "assistant", "content": "Answer"}
        assert messages[-1]["content"].endswith("Second question")

    @pytest.mark.asyncio
    async def test_failed_turn_stores_nothing(self, orchestrator, registry, fake_provider_class):
        registry.register(fake_provider_class(chunks=["Partial", RuntimeError("boom")]))
        conversation_id = await orchestrator.conversation_manager.create_conversation()
        received = []

        result = await orchestrator.chat(
            "Hi", conversation_id=conversation_id, on_chunk=received.append
        )

        assert result.success is False
        assert "boom" in result.error
        assert received[0].text == "Partial"
        assert received[-1].error == result.error
        conversation = orchestrator.conversation_manager.get_conversation(conversation_id)
        assert conversation.messages == []
        assert conversation.usage.total_tokens == 0

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)

        with pytest.raises(ConversationNotFoundError):
            await orchestrator.chat("Hi", conversation_id="missing")

    @pytest.mark.asyncio
    async def test_attachments_and_context(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(chunks=["ok"])
        registry.register(provider)

        result = await orchestrator.chat(
            "Explain",
            code_context=[{"file_name": "a.py", "language": "python", "code": "x = 1"}],
            project_context="Demo project",
            attachments=[{"name": "a.py", "size": 5}],
        )

        content = provider.requests[-1][-1]["content"]
        assert "Demo project" in content
        assert "```python\nx = 1\n```" in content
        conversation = orchestrator.conversation_manager.get_conversation(result.conversation_id)
        assert conversation.messages[0].attachments[0].name == "a.py"

    @pytest.mark.asyncio
    async def test_chat_result_to_dict(self, orchestrator, registry, fake_provider):
        registry.register(fake_provider)

        payload = (await orchestrator.chat("Hi")).to_dict()

        assert payload["success"] is True
        assert payload["completion"] == "Hello world"
        assert payload["usage"]["total_tokens"] == 15
        assert payload["actions"]["write"] == []

    @pytest.mark.asyncio
    async def test_concurrent_turns_stay_paired(self, orchestrator, registry, fake_provider_class):
        provider = fake_provider_class(chunks=["reply"])
        registry.register(provider)
        conversation_id = await orchestrator.conversation_manager.create_conversation()

        first, second = await asyncio.gather(
            orchestrator.chat("first", conversation_id=conversation_id),
            orchestrator.chat("second", conversation_id=conversation_id),
        )

        assert first.success is True
        assert second.success is True
        conversation = orchestrator.conversation_manager.get_conversation(conversation_id)
        assert [(m.role, m.content) for m in conversation.messages] == [
            ("user", "first"),
            ("assistant", "reply"),
            ("user", "second"),
            ("assistant", "reply"),
        ]
        assert conversation.usage.total_tokens == 30
        assert {"role": "user", "content": "first"} in provider.requests[-1]
