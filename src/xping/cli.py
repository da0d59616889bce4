"""
Command Line Interface for xping.

Measures round-trip latency through a VLESS proxy by running xray
locally and sending HTTP HEAD requests through it.

Built with Typer.
"""

import asyncio
import signal
from typing import Optional, Annotated

import typer

from . import __version__
from .core.config import get_settings
from .core.logging import setup_logging
from .runner import RunContext, RunOptions
from .ui import console

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

EPILOG = """
Examples:

  xping "vless://uuid@server:443?security=tls&type=ws&path=/..."

  xping config.json --fragment --count 10

  xping "vless://..." --delay 500 --timeout 10000 --count 5

Environment variables:

  XPING_XRAY_PATH          Path to xray binary (default: xray)

  XPING_TARGET_URL         Target URL for testing (default: https://www.google.com/generate_204)

  XPING_FRAGMENT_PACKETS   Fragment packets type (default: tlshello)

  XPING_FRAGMENT_LENGTH    Fragment length range (default: 5-9)

  XPING_FRAGMENT_INTERVAL  Fragment interval range (default: 1-2)

A config file is processed in memory with a free port; the file itself is never changed.
"""

app = typer.Typer(
    name="xping",
    help="VLESS connection ping tool using Xray with fragment support",
    add_completion=False,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def version_callback(value: bool):
    if value:
        console.print(f"xping version {__version__}")
        raise typer.Exit()


def log_level_callback(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if value.upper() not in LOG_LEVELS:
        raise typer.BadParameter(f"must be one of {', '.join(LOG_LEVELS)}")
    return value.upper()


@app.command(epilog=EPILOG)
def ping(
    input: Annotated[str, typer.Argument(help="VLESS URL or xray config file path to test")],
    fragment: Annotated[bool, typer.Option("--fragment", "-f", help="Enable fragment mode")] = False,
    delay: Annotated[int, typer.Option("--delay", "-d", min=0, help="Delay between pings in milliseconds")] = 1000,
    timeout: Annotated[int, typer.Option("--timeout", "-t", min=1, help="Connection timeout in milliseconds")] = 10000,
    count: Annotated[Optional[int], typer.Option("--count", "-c", min=1, help="Number of pings to send (default: infinite)")] = None,
    log_level: Annotated[Optional[str], typer.Option("--log-level", callback=log_level_callback, help="Diagnostic log level (DEBUG, INFO, WARNING, ...)")] = None,
    version: Annotated[bool, typer.Option("--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit.")] = False,
):
    """Ping a VLESS endpoint through a local xray instance."""
    settings = get_settings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    setup_logging(settings.log_level, settings.log_format)

    options = RunOptions(
        input=input,
        fragment=fragment,
        delay_ms=delay,
        timeout_ms=timeout,
        count=count,
    )
    console.print()
    code = asyncio.run(_ping(options, settings))
    raise typer.Exit(code)


async def _ping(options: RunOptions, settings) -> int:
    """Async implementation of the ping command."""
    context = RunContext(options, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, context.interrupt)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(context.interrupt))

    return await context.run()


# Entry point for the CLI
def cli():
    """Main entry point."""
    app()


if __name__ == "__main__":
    cli()
