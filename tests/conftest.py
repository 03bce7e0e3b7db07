"""
Shared test fixtures and configuration for Mimir tests.

This file provides global state management, environment isolation and a
scripted in-process provider so that no test touches the network.
"""

import asyncio
import json
import logging
import os
import warnings
from collections.abc import AsyncIterator
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from mimir.config.settings import AppSettings, config_manager
from mimir.core.models import CompletionOptions, ModelCost
from mimir.providers.base import BaseProvider, ProviderReply, StreamTally

# Suppress specific warnings that can slow down tests
warnings.filterwarnings("ignore", category=DeprecationWarning)

# Configure logging for tests
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("mimir").setLevel(logging.WARNING)


@pytest.fixture(autouse=True, scope="function")
def isolated_environment(tmp_path):
    """
    Isolate environment variables for each test to prevent test pollution.

    Every ``MIMIR_*`` variable is removed and the working directory moves
    to a temp path so that no ``.env`` file is picked up.
    """
    original_env = {
        key: value for key, value in os.environ.items() if key.upper().startswith("MIMIR_")
    }
    for key in original_env:
        del os.environ[key]

    original_cwd = os.getcwd()
    os.chdir(tmp_path)

    yield

    os.chdir(original_cwd)
    for key in [k for k in os.environ if k.upper().startswith("MIMIR_")]:
        del os.environ[key]
    os.environ.update(original_env)


@pytest.fixture(autouse=True, scope="function")
def reset_global_state():
    """Reset the configuration manager before and after each test."""
    config_manager.reset()
    yield
    config_manager.reset()


@pytest.fixture(autouse=True, scope="function")
def mock_asyncio_sleep():
    """
    Mock asyncio.sleep to prevent actual delays during testing.

    The requested delays are recorded on ``mock_sleep.delays`` so retry tests
    can assert the backoff schedule.
    """
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        mock_sleep.delays = []

        async def instant_sleep(delay, *args, **kwargs):
            mock_sleep.delays.append(delay)

        mock_sleep.side_effect = instant_sleep
        yield mock_sleep


@pytest.fixture(scope="function")
def test_settings(tmp_path):
    """Settings with storage under the test's temp directory."""
    return AppSettings(
        storage={"data_dir": str(tmp_path / "data")},
        log_level="ERROR",
        master_key="test-master-key",
    )


def sse_body(events: list) -> bytes:
    """Encode events as a server-sent event stream."""
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


@pytest.fixture
def sse():
    return sse_body


class FakeProvider(BaseProvider):
    """
    Scripted provider for orchestration tests.

    ``chunks`` are streamed in order; an Exception among them is raised at
    that point. ``gate`` (an asyncio.Event) pauses the stream after the
    first chunk until it is set.
    """

    provider_type = "fake"
    display_name = "Fake"
    default_model_name = "fake-model"
    requires_api_key = False
    model_costs = {"fake-model": ModelCost(input=Decimal("0.001"), output=Decimal("0.002"))}

    def __init__(self, chunks=None, reply: str = "", error: Exception | None = None, **kwargs):
        super().__init__(**kwargs)
        self.chunks = list(chunks or [])
        self.reply = reply
        self.error = error
        self.gate: asyncio.Event | None = None
        self.requests: list[list[dict[str, str]]] = []

    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        self.requests.append(messages)
        if self.error is not None:
            raise self.error
        return ProviderReply(self.reply, prompt_tokens=10, completion_tokens=5)

    async def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        self.requests.append(messages)
        for i, chunk in enumerate(self.chunks):
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk
            if i == 0 and self.gate is not None:
                await self.gate.wait()
        tally.prompt_tokens = 10
        tally.completion_tokens = 5


@pytest.fixture
def fake_provider_class():
    return FakeProvider


@pytest.fixture
def fake_provider():
    return FakeProvider(chunks=["Hello", " world"], reply="Hello world")
