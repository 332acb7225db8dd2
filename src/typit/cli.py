"""Typit command line."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from loguru import logger

from typit.app import build_compiler, run_bot
from typit.config import load_settings
from typit.errors import ConfigurationError, RenderError, RenderTimeout, SessionStoreError
from typit.logging_utils import configure_logging
from typit.render import TIMEOUT_REPLY, render_source

app = typer.Typer(name="typit", help="Render Typst snippets posted in Matrix rooms.", add_completion=False)


@app.command()
def run(
    env_file: Path | None = typer.Option(None, "--env-file", help="Dotenv file with TYPIT_* settings"),  # noqa: B008
) -> None:
    """Log in (or restore the session) and serve ,typ commands until stopped."""
    settings = load_settings(env_file)
    configure_logging(settings.log_level)
    try:
        asyncio.run(run_bot(settings))
    except ConfigurationError as exc:
        logger.error("typit.config.error error={}", exc)
        typer.echo(f"Error checking the configuration: {exc}", err=True)
        raise typer.Exit(1) from exc
    except SessionStoreError as exc:
        logger.critical("typit.session.error error={}", exc)
        raise typer.Exit(2) from exc
    except KeyboardInterrupt:
        logger.info("typit.stopped")


@app.command()
def render(
    code: str = typer.Argument(..., help="Typst code, as it would follow ,typ"),
    output: Path = typer.Option(Path("typst.png"), "--output", "-o", help="PNG output path"),  # noqa: B008
    env_file: Path | None = typer.Option(None, "--env-file", help="Dotenv file with TYPIT_* settings"),  # noqa: B008
) -> None:
    """Compile one snippet locally with the bot's preamble."""
    settings = load_settings(env_file)
    configure_logging(settings.log_level)
    compiler = build_compiler(settings)
    try:
        result = asyncio.run(compiler.compile(render_source(code)))
    except RenderTimeout as exc:
        typer.echo(TIMEOUT_REPLY, err=True)
        raise typer.Exit(1) from exc
    except RenderError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc

    if not result.success:
        typer.echo(result.output.decode("utf-8", errors="replace"), err=True)
        raise typer.Exit(1)
    output.write_bytes(result.stdout)
    typer.echo(str(output))
