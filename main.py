"""
Main entry point for the Downlink engine.

Runs the download engine headless: URLs given on the command line (or piped on
stdin) are queued, playlists are expanded, and the process exits once every
job has finished, failed, or been stopped.
"""

import sys
import asyncio
import logging
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type

import typer

from downlink import __version__
from downlink.config import ConfigManager
from downlink.constants import CONFIG_FILE, LOG_DIR
from downlink.controller import EngineController
from downlink.events import TERMINAL_EVENTS, EngineEvent, JobProgress, describe
from downlink.logging_config import setup_logging
from downlink.presets import BUILTIN_PRESETS
from downlink.storage import MemoryJobStore

app = typer.Typer(
    name="downlink",
    help="Download media with yt-dlp: bounded concurrency, playlist fan-out, and actionable errors.",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
log = logging.getLogger("downlink")


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def _init_logging(log_level: str, log_dir: Path = LOG_DIR) -> Path:
    """File logging only; the console gets engine events, not log records."""
    log_path = setup_logging(None, log_level, log_dir)
    sys.excepthook = handle_exception
    return log_path


def _read_urls_from_stdin() -> List[str]:
    if sys.stdin is None or sys.stdin.isatty():
        return []
    return [line.strip() for line in sys.stdin if line.strip()]


@app.command(name="download")
def download_command(
    urls: Optional[List[str]] = typer.Argument(None, help="URLs to download. Reads stdin when omitted."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Folder for finished files."),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Format preset id (see 'presets')."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, max=20,
                                              help="Maximum simultaneous downloads."),
    restore: bool = typer.Option(False, "--restore/--no-restore",
                                 help="Also resume unfinished jobs from the previous run."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print progress lines."),
):
    """Download one or more URLs and exit when all of them are done."""
    text = "\n".join(urls or _read_urls_from_stdin())
    if not text.strip() and not restore:
        typer.echo("No URLs given.", err=True)
        raise typer.Exit(code=2)
    if preset and preset not in BUILTIN_PRESETS:
        typer.echo(f"Unknown preset '{preset}'. Available: {', '.join(BUILTIN_PRESETS)}", err=True)
        raise typer.Exit(code=2)

    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()
    if concurrency:
        config.max_concurrent_downloads = concurrency

    # 2. Use the configured log level for file logging
    _init_logging(config.log_level)

    async def _download_async() -> int:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(handle_async_exception)

        controller = EngineController(config_manager, config, store=None if restore else MemoryJobStore())
        idle = asyncio.Event()

        def on_event(event: EngineEvent):
            if isinstance(event, JobProgress) and not verbose:
                return
            typer.echo(describe(event))
            if isinstance(event, TERMINAL_EVENTS) and not controller.scheduler.has_pending_work():
                idle.set()

        controller.subscribe(on_event)
        await controller.startup(restore=restore)
        records = await controller.submit_urls(text, preset, str(output_dir) if output_dir else None)
        if not records and not controller.scheduler.has_pending_work():
            typer.echo("Nothing to download.")
            await controller.shutdown()
            return 0

        try:
            while controller.scheduler.has_pending_work():
                idle.clear()
                try:
                    await asyncio.wait_for(idle.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            await controller.shutdown()

        summary = controller.summary()
        typer.echo(f"Completed {summary['completed']}/{summary['total']}, failed {summary['failed']}.")
        return 1 if summary['failed'] else 0

    try:
        exit_code = asyncio.run(_download_async())
    except KeyboardInterrupt:
        log.info("Interrupted by user.")
        exit_code = 130
    raise typer.Exit(code=exit_code)


@app.command(name="presets")
def presets_command():
    """List the built-in format presets."""
    for preset in BUILTIN_PRESETS.values():
        typer.echo(f"{preset.preset_id:<16} {preset.label}")


@app.command(name="version")
def version_command():
    """Show version and exit."""
    typer.echo(f"downlink {__version__}")


if __name__ == "__main__":
    app()
