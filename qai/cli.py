"""
qai.cli — Command-line interface for QAI.

Usage:
    qai                         Start the interactive agent (same as ``qai chat``)
    qai run "task"              Run a single task and exit with its status
    qai chat                    Interactive REPL
    qai info                    Show the prompt path, whether it exists, and the version
    qai show                    Print the system prompt
    qai copy DEST [--force]     Copy the system prompt to DEST
    qai validate                Check the prompt for its required sections
    qai tools                   List the built-in tools
    qai models                  List models installed in a local Ollama
    qai config show|use|token|model|endpoint
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from qai import __version__
from qai.agent.providers import PROVIDERS, get_provider
from qai.agent.system_prompt import (
    DEFAULT_PROMPT_PATH,
    load_prompt_or_default,
    missing_sections,
    read_prompt,
)
from qai.agent.tools import tools_by_category
from qai.core.errors import QaiError
from qai.core.models import GlobalConfig

console = Console()


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _read_prompt_or_fail(path: Path) -> str:
    try:
        return read_prompt(path)
    except QaiError as e:
        raise click.ClickException(str(e)) from e


def _mask(token: str) -> str:
    if not token:
        return "—"
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}…{token[-4:]}"


@click.group(invoke_without_command=True)
@click.option(
    "--prompt",
    "prompt_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_PROMPT_PATH,
    show_default=True,
    help="Path to the agent system prompt.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.version_option(__version__, prog_name="qai")
@click.pass_context
def main(ctx: click.Context, prompt_path: Path, verbose: bool) -> None:
    """QAI — a ReAct coding and testing assistant for your terminal."""
    _setup_logging(verbose)
    ctx.obj = {"prompt": prompt_path}
    if ctx.invoked_subcommand is None:
        ctx.invoke(chat)


# ---------------------------------------------------------------------------
# Prompt file commands
# ---------------------------------------------------------------------------

@main.command()
@click.pass_obj
def info(obj: dict) -> None:
    """Show the prompt path, whether it exists, and the version."""
    prompt: Path = obj["prompt"]
    click.echo("QAI CLI")
    click.echo(f"Prompt path: {prompt}")
    click.echo(f"Prompt exists: {str(prompt.exists()).lower()}")
    click.echo(f"Version: {__version__}")


@main.command()
@click.pass_obj
def show(obj: dict) -> None:
    """Print the system prompt."""
    click.echo(_read_prompt_or_fail(obj["prompt"]), nl=False)


@main.command()
@click.argument("dest", type=click.Path(path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite DEST if it exists.")
@click.pass_obj
def copy(obj: dict, dest: Path, force: bool) -> None:
    """Copy the system prompt to DEST."""
    if dest.exists() and not force:
        raise click.ClickException(f"Destination already exists. Use --force to overwrite: {dest}")
    content = _read_prompt_or_fail(obj["prompt"])
    try:
        dest.write_text(content, encoding="utf-8")
    except OSError as e:
        raise click.ClickException(f"Failed to write to {dest}: {e}") from e
    click.echo(f"Copied prompt to {dest}")


@main.command()
@click.pass_obj
def validate(obj: dict) -> None:
    """Check that the prompt contains its required sections."""
    content = _read_prompt_or_fail(obj["prompt"])
    missing = missing_sections(content)
    if missing:
        raise click.ClickException(f"Prompt validation failed. Missing sections: {', '.join(missing)}")
    click.echo("Prompt validation passed.")


@main.command()
def tools() -> None:
    """List the built-in tools by category."""
    click.echo("Built-in tools:")
    for category, specs in tools_by_category().items():
        click.echo(f"\n{category}")
        for spec in specs:
            click.echo(f"  {spec.name:<12} {spec.input_format}")
            click.echo(f"  {'':<12} {spec.description}")


# ---------------------------------------------------------------------------
# Agent commands
# ---------------------------------------------------------------------------

_agent_options = [
    click.option("--provider", default=None, help="Provider id (openai, anthropic, xai, ollama, zen, custom)."),
    click.option("--model", default=None, help="Model override (uses provider default if empty)."),
    click.option("--max-steps", type=click.IntRange(min=1), default=None, help="Step budget per task."),
    click.option(
        "--workspace",
        type=click.Path(file_okay=False, path_type=Path),
        default=Path("."),
        help="Project directory the tools operate in.",
    ),
]


def agent_options(fn):
    for option in reversed(_agent_options):
        fn = option(fn)
    return fn


def _settings(provider: str | None, model: str | None, max_steps: int | None):
    from qai.agent.chat import resolve_settings

    try:
        return resolve_settings(GlobalConfig.load(), provider, model, max_steps)
    except QaiError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.argument("task")
@agent_options
@click.pass_obj
def run(obj: dict, task: str, provider: str | None, model: str | None,
        max_steps: int | None, workspace: Path) -> None:
    """Run a single TASK and exit with its status (0 answered, 1 failed, 2 step cap, 130 cancelled)."""
    from qai.agent.chat import run_once

    settings = _settings(provider, model, max_steps)
    try:
        system_prompt = load_prompt_or_default(obj["prompt"])
    except QaiError as e:
        raise click.ClickException(str(e)) from e
    outcome = run_once(task, settings, workspace, system_prompt)
    sys.exit(outcome.exit_code)


@main.command()
@agent_options
@click.pass_obj
def chat(obj: dict, provider: str | None = None, model: str | None = None,
         max_steps: int | None = None, workspace: Path = Path(".")) -> None:
    """Start the interactive agent REPL."""
    from qai.agent.chat import run_chat

    settings = _settings(provider, model, max_steps)
    try:
        system_prompt = load_prompt_or_default(obj["prompt"])
    except QaiError as e:
        raise click.ClickException(str(e)) from e
    run_chat(settings, workspace, system_prompt)


@main.command()
@click.option("--endpoint", default=None, help="Ollama chat endpoint (defaults to the configured one).")
def models(endpoint: str | None) -> None:
    """List models installed in the local Ollama server."""
    from qai.agent.transport import fetch_ollama_models

    gc = GlobalConfig.load()
    endpoint = endpoint or gc.endpoints.get("ollama") or PROVIDERS["ollama"].chat_endpoint_url
    try:
        names = asyncio.run(fetch_ollama_models(endpoint))
    except QaiError as e:
        raise click.ClickException(str(e)) from e

    if not names:
        click.echo("No models installed. Pull one with: ollama pull <model>")
        return
    for name in names:
        click.echo(name)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

def _provider_arg(provider_id: str) -> str:
    try:
        return get_provider(provider_id).id
    except QaiError as e:
        raise click.BadParameter(str(e)) from e


@main.group()
def config() -> None:
    """Show or change the saved configuration."""


@config.command("show")
def config_show() -> None:
    """Show the saved configuration (tokens masked)."""
    gc = GlobalConfig.load()
    table = Table(title=f"QAI Config — {GlobalConfig.path()}")
    table.add_column("Provider", style="cyan")
    table.add_column("Model")
    table.add_column("Endpoint", style="dim")
    table.add_column("Token")
    for pid, p in PROVIDERS.items():
        marker = " ●" if pid == gc.provider else ""
        table.add_row(
            f"{pid}{marker}",
            gc.models.get(pid, p.default_model),
            gc.endpoints.get(pid, p.chat_endpoint_url) or "—",
            _mask(gc.api_tokens.get(pid, "")),
        )
    console.print(table)
    console.print(
        f"max_steps={gc.max_steps}  connect_timeout={gc.connect_timeout:g}s  "
        f"read_timeout={gc.read_timeout:g}s  shell_timeout={gc.shell_timeout:g}s",
        style="dim",
    )


@config.command("use")
@click.argument("provider")
def config_use(provider: str) -> None:
    """Select the active PROVIDER."""
    gc = GlobalConfig.load()
    gc.provider = _provider_arg(provider)
    gc.save()
    console.print(f"[green]✓[/green] Active provider: [bold]{gc.provider}[/bold]")


@config.command("token")
@click.argument("provider")
@click.argument("token", required=False)
def config_token(provider: str, token: str | None) -> None:
    """Save the API TOKEN for PROVIDER (prompted if omitted)."""
    pid = _provider_arg(provider)
    if token is None:
        token = click.prompt(f"API token for {pid}", hide_input=True)
    path = GlobalConfig.load().set_api_token(pid, token)
    console.print(f"[green]✓[/green] Saved token for [bold]{pid}[/bold] to {path}")


@config.command("model")
@click.argument("provider")
@click.argument("model")
def config_model(provider: str, model: str) -> None:
    """Set the default MODEL for PROVIDER."""
    pid = _provider_arg(provider)
    gc = GlobalConfig.load()
    gc.models[pid] = model.strip()
    gc.save()
    console.print(f"[green]✓[/green] Default model for [bold]{pid}[/bold]: {model.strip()}")


@config.command("endpoint")
@click.argument("provider")
@click.argument("url")
def config_endpoint(provider: str, url: str) -> None:
    """Override the chat endpoint URL for PROVIDER."""
    pid = _provider_arg(provider)
    gc = GlobalConfig.load()
    gc.endpoints[pid] = url.strip()
    gc.save()
    console.print(f"[green]✓[/green] Endpoint for [bold]{pid}[/bold]: {url.strip()}")


if __name__ == "__main__":
    main()
