"""
Conduit - Main Entry Point

Developer CLI for the backend execution layer: run a prompt against the
first eligible backend, inspect backend eligibility, and check how a
failure message would be classified.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.config.settings import (
    RuntimeSettings,
    build_runner,
    build_runtime_context,
    load_settings,
    resolve_api_key,
)
from core.exceptions import (
    BackendError,
    ClassifiedError,
    ConfigurationError,
    NoEligibleBackendError,
)
from core.observability.logging_config import configure_logging
from core.runtime.classifier import classify as classify_error
from core.runtime.types import RunCallbacks, RunOptions, StreamDelta

root_env = Path(__file__).parent / ".env"
if root_env.exists():
    load_dotenv(root_env, override=True)
else:
    load_dotenv()

app = typer.Typer(
    name="conduit",
    help="Conduit - backend execution layer for AI prompts",
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING)


def _get_settings(config: Optional[Path]) -> RuntimeSettings:
    """Load settings, with a friendly error on failure."""
    try:
        return load_settings(config)
    except ConfigurationError as e:
        console.print(Panel(
            f"[red]{e}[/]"
            + (f"\n\nSetting: [bold]{e.setting}[/]" if e.setting else ""),
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


def _error_panel(error: ClassifiedError) -> Panel:
    retry = "yes" if error.retryable else "no"
    return Panel(
        f"[red]{error.code.value}[/] (retryable: {retry})\n\n"
        f"{error.original_message}",
        title="Run Failed",
        border_style="red",
    )


# =========================================================================
# Commands
# =========================================================================


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Prompt to execute"),
    model: Optional[str] = typer.Option(None, help="Override the configured model"),
    workspace: Optional[Path] = typer.Option(None, help="Working directory for the backend"),
    http: bool = typer.Option(False, "--http", help="Skip the SDK and use the HTTP API"),
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
):
    """Run a prompt and stream the response."""
    settings = _get_settings(config)
    if http:
        settings = settings.model_copy(update={"force_http_api": True})

    try:
        context = build_runtime_context(
            settings,
            model=model,
            workspace_path=str(workspace) if workspace else None,
        )
    except ConfigurationError as e:
        console.print(Panel(
            f"[red]Missing API key:[/] {e}\n\n"
            f"Set one in your .env file:\n"
            f"  [dim]ANTHROPIC_API_KEY=your_key_here[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)

    def on_delta(delta: StreamDelta) -> None:
        console.print(delta.text, end="", markup=False, highlight=False)

    def on_retry(attempt: int, error: BaseException) -> None:
        code = getattr(getattr(error, "code", None), "value", "unknown")
        console.print(f"\n[yellow]Attempt {attempt} failed ({code}); retrying...[/]")

    async def _run():
        runner = build_runner(settings)
        return await runner.execute(
            prompt,
            RunOptions(model=model),
            context,
            RunCallbacks(on_delta=on_delta, on_retry=on_retry),
        )

    try:
        result = asyncio.run(_run())
    except NoEligibleBackendError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=1)
    except ClassifiedError as e:
        console.print()
        console.print(_error_panel(e))
        raise typer.Exit(code=1)

    console.print()
    console.print(Panel(
        f"Backend:  [cyan]{result.backend}[/]\n"
        f"Chunks:   {result.chunk_count}\n"
        f"Attempts: {result.attempts}\n"
        f"Latency:  {result.latency_ms:.0f} ms",
        title="Summary",
        border_style="green",
    ))


@app.command()
def backends(
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
):
    """Show which backends are eligible in this environment."""
    settings = _get_settings(config)
    context = build_runtime_context(settings, require_api_key=False)
    diagnostics = build_runner(settings).diagnostics(context)

    table = Table(title="Conduit - Backends (priority order)")
    table.add_column("Backend", style="cyan")
    table.add_column("Adapter", style="white")
    table.add_column("Eligible")

    for info in diagnostics["adapters"]:
        eligible = "[green]yes[/]" if info["eligible"] else "[red]no[/]"
        table.add_row(info["name"], info["class"], eligible)
    console.print(table)

    policy = diagnostics["retry_policy"]
    console.print(
        f"Selected: [bold]{diagnostics['selected'] or 'none'}[/]  "
        f"Model: {context.model}  "
        f"API key: {'set' if resolve_api_key() else '[red]missing[/]'}  "
        f"Root: {context.running_as_root}"
    )
    console.print(
        f"Retry: {policy['max_attempts']} attempts, "
        f"backoff {policy['base_delay']}s..{policy['max_delay']}s"
    )


@app.command()
def classify(
    message: str = typer.Argument(..., help="Failure message to classify"),
    status: Optional[int] = typer.Option(None, help="HTTP status code hint"),
    stderr: str = typer.Option("", help="Captured stderr tail hint"),
):
    """Show how a failure message would be classified."""
    result = classify_error(
        BackendError(message, status_code=status, stderr_tail=stderr)
    )

    table = Table(title="Classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("code", result.code.value)
    table.add_row("retryable", str(result.retryable).lower())
    table.add_row("matched", str((result.detail or {}).get("matched", "")))
    table.add_row("message", result.original_message)
    console.print(table)


if __name__ == "__main__":
    app()
