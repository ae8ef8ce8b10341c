"""Command-line interface for docpilot."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docpilot import __version__
from docpilot.config import DocpilotConfig, load_config
from docpilot.llm.errors import ApiError, display_name
from docpilot.llm.router import CompletionRouter
from docpilot.types import CompletionOptions, CompletionResult

console = Console()
err_console = Console(stderr=True)


def _fail(error: ApiError) -> None:
    err_console.print(f"[red]{error.friendly_message}[/red]")
    err_console.print(f"[dim]{error}[/dim]")
    sys.exit(1)


def _show_result(result: CompletionResult, streamed: bool) -> None:
    if not streamed:
        console.print(result.content, markup=False, highlight=False)
    else:
        console.print()
    if result.error is not None:
        err_console.print(
            f"[yellow]Stream stopped early: {result.error.friendly_message}[/yellow]"
        )
    console.print(
        f"[dim]{result.provider}/{result.model}  "
        f"tokens={result.total_tokens}  {result.latency_ms:.0f}ms[/dim]"
    )


async def _run_with_router(config: DocpilotConfig, coro_factory):
    router = CompletionRouter(config)
    try:
        return await coro_factory(router)
    finally:
        await router.aclose()


def _run(config: DocpilotConfig, coro_factory):
    try:
        return asyncio.run(_run_with_router(config, coro_factory))
    except ApiError as exc:
        _fail(exc)


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to docpilot.yaml (auto-detected from CWD or ~/.docpilot/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="docpilot")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """docpilot - resilient multi-provider completion client."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config, config_file = load_config(config_path)
    if verbose:
        if config_file:
            err_console.print(f"[dim]Config: {config_file}[/dim]")
        else:
            err_console.print("[dim]Config: defaults (no docpilot.yaml found)[/dim]")
    ctx.obj = config


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id, optionally prefixed with provider/")
@click.option("--stream/--no-stream", default=False, help="Print tokens as they arrive")
@click.option("--temperature", type=float, default=None)
@click.option("--max-tokens", type=int, default=None)
@click.option("--system", "system_prompt", default=None, help="System prompt")
@click.pass_obj
def complete(config: DocpilotConfig, prompt: str, model: str | None, stream: bool,
             temperature: float | None, max_tokens: int | None, system_prompt: str | None):
    """Generate a completion for PROMPT."""

    def on_chunk(delta: str) -> None:
        console.print(delta, end="", markup=False, highlight=False)

    options = CompletionOptions(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        system_prompt=system_prompt,
        stream=stream,
        on_chunk=on_chunk if stream else None,
    )

    async def go(router: CompletionRouter) -> CompletionResult:
        return await router.complete(prompt, options)

    result = _run(config, go)
    _show_result(result, streamed=stream)


@main.command("analyze-image")
@click.argument("image_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("prompt", default="Describe this image in detail.")
@click.option("--model", "-m", default=None, help="Vision model id")
@click.pass_obj
def analyze_image(config: DocpilotConfig, image_path: Path, prompt: str, model: str | None):
    """Ask a vision model about IMAGE_PATH."""
    image = image_path.read_bytes()

    async def go(router: CompletionRouter) -> CompletionResult:
        return await router.analyze_image(image, prompt, CompletionOptions(model=model))

    result = _run(config, go)
    console.print(Panel(result.content, title=image_path.name, border_style="blue"))
    console.print(f"[dim]{result.provider}/{result.model}  tokens={result.total_tokens}[/dim]")


@main.command()
@click.argument("provider")
@click.pass_obj
def models(config: DocpilotConfig, provider: str):
    """List the models PROVIDER offers."""

    async def go(router: CompletionRouter) -> list[str]:
        return await router.list_models(provider)

    names = _run(config, go)
    table = Table(title=f"{display_name(provider)} models")
    table.add_column("Model", style="cyan")
    for name in sorted(names):
        table.add_row(name)
    console.print(table)


@main.command("check-access")
@click.option("--provider", default="deepseek", show_default=True)
@click.pass_obj
def check_access(config: DocpilotConfig, provider: str):
    """Check whether the configured key has commercial access."""

    async def go(router: CompletionRouter):
        return await router.check_access(provider)

    status = _run(config, go)
    colour = "green" if status.valid else "red"
    console.print(f"[{colour}]{status.message}[/{colour}]")
    console.print(f"[dim]valid={status.valid} commercial={status.commercial}[/dim]")
    if not status.valid:
        sys.exit(1)


if __name__ == "__main__":
    main()
