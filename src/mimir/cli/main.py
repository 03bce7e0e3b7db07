"""
Mimir CLI interface.

Command-line access to completions, code generation, chat, stored
conversations, usage and provider credentials.
"""

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..app import MimirApplication
from ..config.settings import config_manager, get_settings, load_config
from ..core.exceptions import ConfigurationError

app = typer.Typer(
    name="mimir",
    help="AI orchestration for code generation and chat",
    no_args_is_help=True,
)
conversations_app = typer.Typer(help="Manage stored conversations", no_args_is_help=True)
app.add_typer(conversations_app, name="conversations")

console = Console()


class CLIError(Exception):
    """CLI-specific error with user-friendly messages."""

    def __init__(self, message: str, exit_code: int = 1):
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


def setup_logging(level: str = "WARNING") -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def run_async(coro):
    """Run async coroutine in sync context."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Already inside an event loop, run on a separate thread
    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as executor:
        future = executor.submit(asyncio.run, coro)
        return future.result()


def handle_cli_error(func):
    """Decorator to handle CLI errors gracefully."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CLIError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(e.exit_code) from None
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            raise typer.Exit(130) from None
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {str(e)}")
            console.print("[dim]Use --help for usage information[/dim]")
            raise typer.Exit(1) from e

    return wrapper


def create_application() -> MimirApplication:
    return MimirApplication(get_settings())


async def with_application(action, initialize: bool = True) -> dict[str, Any]:
    """Run ``action(application)`` between initialize and shutdown."""
    application = create_application()
    try:
        if initialize:
            init = await application.initialize()
            if not init["success"]:
                return init
        return await action(application)
    finally:
        await application.shutdown()


def ensure_success(result: dict[str, Any]) -> dict[str, Any]:
    if not result.get("success"):
        raise CLIError(result.get("error") or "Request failed")
    return result


def _completion_options(model: str | None, temperature: float | None, max_tokens: int | None):
    options = {"model": model, "temperature": temperature, "max_tokens": max_tokens}
    return {key: value for key, value in options.items() if value is not None}


def _print_chunk(chunk) -> None:
    if chunk.text:
        console.print(chunk.text, end="", markup=False, highlight=False)


def _print_usage(usage: dict[str, Any] | None, model: str | None = None) -> None:
    if not usage:
        return
    console.print(
        Panel.fit(
            f"[bold]Model:[/bold] {model or 'default'}\n"
            f"[bold]Tokens:[/bold] {usage['prompt_tokens']} in / "
            f"{usage['completion_tokens']} out\n"
            f"[bold]Cost:[/bold] ${float(usage['cost']):.4f}",
            title="Usage",
            border_style="green",
        )
    )


def _print_actions(actions: dict[str, Any], file_results: dict[str, Any] | None) -> None:
    rows = []
    for write in actions.get("write", []):
        rows.append(("write", write["path"]))
    for rename in actions.get("rename", []):
        rows.append(("rename", f"{rename['from']} -> {rename['to']}"))
    for delete in actions.get("delete", []):
        rows.append(("delete", delete["path"]))
    for dependency in actions.get("add_dependency", []):
        rows.append(("dependency", f"{dependency['name']} {dependency['version']}"))
    if not rows:
        return

    table = Table(title="Actions", show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="cyan", no_wrap=True)
    table.add_column("Target", style="white")
    for kind, target in rows:
        table.add_row(kind, target)
    console.print(table)

    if file_results:
        failed = [
            item for items in file_results.values() for item in items if not item["success"]
        ]
        for item in failed:
            console.print(f"[red]Failed:[/red] {item.get('error')}")


@app.callback()
def main(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a YAML configuration file"
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Logging level (defaults to the configured level)"
    ),
):
    """Mimir command-line interface."""
    config_manager.reset()
    try:
        settings = load_config(config)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None
    setup_logging(log_level or settings.log_level)


@app.command("complete")
@handle_cli_error
def complete_command(
    prompt: str = typer.Argument(..., help="Prompt to complete"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider to use"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model to use"),
    temperature: float | None = typer.Option(None, "--temperature", help="Sampling temperature"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", help="Maximum tokens to generate"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream the response"),
):
    """Generate a completion for a prompt."""
    options = _completion_options(model, temperature, max_tokens)

    async def action(application: MimirApplication):
        if stream:
            return await application.generate_completion_stream(
                prompt, options, on_chunk=_print_chunk, provider_type=provider
            )
        return await application.generate_completion(prompt, options, provider)

    result = ensure_success(run_async(with_application(action)))
    if stream:
        console.print()
    else:
        console.print(result["completion"], markup=False, highlight=False)
    _print_usage(result.get("usage"), result.get("model"))


@app.command("code")
@handle_cli_error
def code_command(
    requirements: str = typer.Argument(..., help="What the code should do"),
    language: str | None = typer.Option(None, "--language", "-l", help="Target language"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider to use"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model to use"),
):
    """Generate code from requirements."""
    options = _completion_options(model, None, None)

    async def action(application: MimirApplication):
        return await application.generate_code(
            requirements, language=language, options=options, provider_type=provider
        )

    with console.status("[bold blue]Generating code..."):
        result = ensure_success(run_async(with_application(action)))

    console.print(
        Panel(
            escape(result["code"]),
            title=f"Generated {result['language']}",
            border_style="blue",
        )
    )
    _print_usage(result.get("usage"), result.get("model"))


@app.command("chat")
@handle_cli_error
def chat_command(
    message: str = typer.Argument(..., help="Message to send"),
    conversation: str | None = typer.Option(
        None, "--conversation", "-c", help="Continue an existing conversation"
    ),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider to use"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model to use"),
    apply_actions: bool = typer.Option(
        True, "--apply/--no-apply", help="Apply file actions from the response"
    ),
):
    """Send a chat message, streaming the reply."""
    options = _completion_options(model, None, None)

    async def action(application: MimirApplication):
        return await application.chat(
            message,
            conversation_id=conversation,
            options=options,
            provider_type=provider,
            on_chunk=_print_chunk,
            apply_actions=apply_actions,
        )

    result = ensure_success(run_async(with_application(action)))
    console.print()
    _print_actions(result["actions"], result.get("file_results"))
    console.print(f"[dim]Conversation: {result['conversation_id']}[/dim]")
    _print_usage(result.get("usage"), result.get("model"))


@conversations_app.command("list")
@handle_cli_error
def conversations_list_command(
    project: str | None = typer.Option(None, "--project", help="Filter by project id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum conversations to show"),
):
    """List stored conversations, most recent first."""

    async def action(application: MimirApplication):
        await application.conversation_manager.load_conversations()
        return await application.get_all_conversations(project_id=project, limit=limit)

    result = ensure_success(run_async(with_application(action, initialize=False)))
    conversations = result["conversations"]
    if not conversations:
        console.print("[yellow]No conversations found[/yellow]")
        return

    table = Table(title="Conversations", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Messages", style="green", justify="right")
    table.add_column("Updated", style="dim")
    for item in conversations:
        table.add_row(
            item["id"],
            item["title"] or "New Conversation",
            str(item["message_count"]),
            item["updated_at"][:19].replace("T", " "),
        )
    console.print(table)


@conversations_app.command("show")
@handle_cli_error
def conversations_show_command(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
):
    """Show a conversation summary."""

    async def action(application: MimirApplication):
        await application.conversation_manager.load_conversations()
        return await application.get_conversation(conversation_id)

    result = ensure_success(run_async(with_application(action, initialize=False)))
    console.print(result["summary"], markup=False, highlight=False)


@conversations_app.command("delete")
@handle_cli_error
def conversations_delete_command(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
):
    """Delete a stored conversation."""

    async def action(application: MimirApplication):
        await application.conversation_manager.load_conversations()
        return await application.delete_conversation(conversation_id)

    ensure_success(run_async(with_application(action, initialize=False)))
    console.print(f"[green]Deleted conversation {conversation_id}[/green]")


@app.command("usage")
@handle_cli_error
def usage_command():
    """Show token usage of this session's providers."""

    async def action(application: MimirApplication):
        return await application.get_usage_stats()

    result = ensure_success(run_async(with_application(action)))

    table = Table(title="Usage", show_header=True, header_style="bold magenta")
    table.add_column("Provider", style="cyan", no_wrap=True)
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Cost", style="green", justify="right")
    for name, usage in result["providers"].items():
        table.add_row(
            name,
            str(usage["prompt_tokens"]),
            str(usage["completion_tokens"]),
            str(usage["total_tokens"]),
            f"${float(usage['cost']):.4f}",
        )
    console.print(table)


@app.command("set-key")
@handle_cli_error
def set_key_command(
    provider: str = typer.Argument(..., help="Provider type, e.g. openai"),
    api_key: str = typer.Argument(..., help="API key to store"),
):
    """Store an encrypted API key and connect the provider with it."""

    async def action(application: MimirApplication):
        return await application.set_api_key(provider, api_key)

    ensure_success(run_async(with_application(action, initialize=False)))
    console.print(f"[green]Stored API key for {provider}[/green]")


@app.command("providers")
@handle_cli_error
def providers_command(
    check: bool = typer.Option(False, "--check", help="Run a health check on each provider"),
):
    """List provider backends and their status."""

    async def action(application: MimirApplication):
        result = await application.get_providers()
        if check and result["success"]:
            for item in result["providers"]:
                if item["initialized"]:
                    health = await application.check_provider_health(item["type"])
                    item["healthy"] = health.get("healthy", False)
        return result

    result = ensure_success(run_async(with_application(action)))

    table = Table(title="Providers", show_header=True, header_style="bold magenta")
    table.add_column("Provider", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Default model", style="dim")
    if check:
        table.add_column("Health", justify="center")
    for item in result["providers"]:
        name = item["display_name"]
        if item["is_default"]:
            name += " (default)"
        status = "[green]connected[/green]" if item["initialized"] else "[dim]not configured[/dim]"
        default_model = item["info"]["default_model"] if item["info"] else "-"
        row = [name, status, default_model]
        if check:
            healthy = item.get("healthy")
            row.append("-" if healthy is None else ("[green]ok[/green]" if healthy else "[red]down[/red]"))
        table.add_row(*row)
    console.print(table)


# Entry point is handled by pyproject.toml script configuration
