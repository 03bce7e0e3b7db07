"""
Tests for the Mimir CLI.
"""

import json
import logging
from unittest.mock import patch

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from mimir.app import MimirApplication
from mimir.cli.main import CLIError, app, ensure_success
from mimir.config.settings import AppSettings
from mimir.processing.file_actions import LocalFileActionExecutor


def ollama_handler(request):
    if request.url.path == "/api/tags":
        return httpx.Response(200, json={"models": [{"name": "llama3"}]})
    body = json.loads(request.content)
    if body["stream"]:
        lines = [
            {"message": {"content": "Streamed "}},
            {"message": {"content": '<mimir-write path="notes.txt">saved</mimir-write>'}},
            {"done": True, "prompt_eval_count": 9, "eval_count": 6},
        ]
        content = "\n".join(json.dumps(line) for line in lines) + "\n"
        return httpx.Response(200, content=content.encode("utf-8"))
    return httpx.Response(
        200,
        json={
            "message": {"content": "Plain reply\n```python\nprint('hi')\n```"},
            "prompt_eval_count": 4,
            "eval_count": 2,
        },
    )


@pytest.fixture
def cli_runner():
    """CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures root logging; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def wide_console():
    """Render tables wide enough that cells are not wrapped."""
    with patch("mimir.cli.main.console", Console(width=200)):
        yield


@pytest.fixture
def workspace(tmp_path):
    directory = tmp_path / "workspace"
    directory.mkdir()
    return directory


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        storage={"data_dir": str(tmp_path / "data")},
        providers={"ollama": {"enabled": True}},
    )


@pytest.fixture
def mock_application(settings, workspace):
    """Patch the CLI to build applications backed by a mock Ollama server."""

    def factory():
        return MimirApplication(
            settings,
            executor=LocalFileActionExecutor(workspace),
            transport=httpx.MockTransport(ollama_handler),
        )

    with patch("mimir.cli.main.create_application", side_effect=factory) as mock_factory:
        yield mock_factory


class TestHelpers:
    def test_ensure_success(self):
        assert ensure_success({"success": True, "value": 1}) == {"success": True, "value": 1}
        with pytest.raises(CLIError, match="boom"):
            ensure_success({"success": False, "error": "boom"})


class TestCompletionCommands:
    """Test complete, code and chat."""

    def test_no_args_shows_help(self, cli_runner):
        result = cli_runner.invoke(app, [])

        assert "complete" in result.output
        assert "conversations" in result.output

    def test_complete_streaming(self, cli_runner, mock_application):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "complete", "Hello"])

        assert result.exit_code == 0, result.output
        assert "Streamed" in result.output
        assert "Usage" in result.output
        assert "9 in / 6 out" in result.output

    def test_complete_without_streaming(self, cli_runner, mock_application):
        result = cli_runner.invoke(
            app, ["--log-level", "ERROR", "complete", "Hello", "--no-stream", "-m", "llama3"]
        )

        assert result.exit_code == 0, result.output
        assert "Plain reply" in result.output
        assert "llama3" in result.output

    def test_code(self, cli_runner, mock_application):
        result = cli_runner.invoke(
            app, ["--log-level", "ERROR", "code", "Print a greeting", "-l", "python"]
        )

        assert result.exit_code == 0, result.output
        assert "print('hi')" in result.output
        assert "Generated python" in result.output

    def test_chat_applies_actions(self, cli_runner, mock_application, workspace):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "chat", "Take notes"])

        assert result.exit_code == 0, result.output
        assert "Actions" in result.output
        assert "notes.txt" in result.output
        assert "Conversation:" in result.output
        assert (workspace / "notes.txt").read_text() == "saved"

    def test_chat_without_applying(self, cli_runner, mock_application, workspace):
        result = cli_runner.invoke(
            app, ["--log-level", "ERROR", "chat", "Take notes", "--no-apply"]
        )

        assert result.exit_code == 0, result.output
        assert not (workspace / "notes.txt").exists()

    def test_no_provider_available(self, cli_runner, tmp_path):
        settings = AppSettings(storage={"data_dir": str(tmp_path / "empty")})
        with patch(
            "mimir.cli.main.create_application",
            side_effect=lambda: MimirApplication(settings),
        ):
            result = cli_runner.invoke(app, ["--log-level", "ERROR", "complete", "Hi"])

        assert result.exit_code == 1
        assert "No AI provider available" in result.output


class TestConversationCommands:
    """Test the conversations sub-commands."""

    def test_list_empty(self, cli_runner, mock_application):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "conversations", "list"])

        assert result.exit_code == 0, result.output
        assert "No conversations found" in result.output

    def test_chat_then_list_show_delete(self, cli_runner, mock_application, settings):
        cli_runner.invoke(app, ["--log-level", "ERROR", "chat", "Remember the milk"])
        conversation_id = next(settings.storage.get_conversations_path().glob("*.json")).stem

        listed = cli_runner.invoke(app, ["--log-level", "ERROR", "conversations", "list"])
        shown = cli_runner.invoke(
            app, ["--log-level", "ERROR", "conversations", "show", conversation_id]
        )
        deleted = cli_runner.invoke(
            app, ["--log-level", "ERROR", "conversations", "delete", conversation_id]
        )

        assert listed.exit_code == 0, listed.output
        assert "Remember the milk" in listed.output
        assert "# Conversation: Remember the milk" in shown.output
        assert deleted.exit_code == 0, deleted.output
        assert f"Deleted conversation {conversation_id}" in deleted.output

    def test_show_unknown(self, cli_runner, mock_application):
        result = cli_runner.invoke(
            app, ["--log-level", "ERROR", "conversations", "show", "missing"]
        )

        assert result.exit_code == 1
        assert "Conversation not found: missing" in result.output


class TestProviderCommands:
    """Test providers, usage and set-key."""

    def test_providers_table(self, cli_runner, mock_application):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "providers", "--check"])

        assert result.exit_code == 0, result.output
        assert "Ollama (default)" in result.output
        assert "connected" in result.output
        assert "ok" in result.output

    def test_usage_table(self, cli_runner, mock_application):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "usage"])

        assert result.exit_code == 0, result.output
        assert "ollama" in result.output

    def test_set_key_requires_master_key(self, cli_runner, mock_application):
        result = cli_runner.invoke(app, ["--log-level", "ERROR", "set-key", "openai", "sk-test"])

        assert result.exit_code == 1
        assert "master key is required" in result.output


class TestConfigOption:
    def test_invalid_config_file(self, cli_runner, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("log_level: [unclosed")

        result = cli_runner.invoke(app, ["--config", str(config_file), "usage"])

        assert result.exit_code == 1
        assert "Invalid YAML configuration" in result.output
