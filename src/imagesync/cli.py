"""
Command-line interface for the image sync engine.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.table import Table

from imagesync.config import SyncConfiguration
from imagesync.errors import ConfigValidationError
from imagesync.logging_setup import configure_logging
from imagesync.storage import (
    LAST_SYNC_KEY,
    MetadataStore,
    RestMetadataStore,
    SQLiteMetadataStore,
    SQLiteSettingsStore,
)

DEFAULT_DATA_DIR = Path("~/.imagesync")

app = typer.Typer(
    name="imagesync",
    help="Device image sync - periodically pull new images from a remote source",
)
console = Console()

EnvFileOption = typer.Option(None, "--env-file", "-e", help="Load settings from this .env file")
DataDirOption = typer.Option(DEFAULT_DATA_DIR, "--data-dir", "-d", help="Directory for settings and metadata databases")


def _load_config(env_file: Path | None, endpoint: str | None = None) -> SyncConfiguration:
    overrides = {"source_endpoint": endpoint} if endpoint else None
    try:
        return SyncConfiguration.from_env(env_file=env_file, overrides=overrides)
    except ConfigValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e


def _metadata_store(data_dir: Path, metadata_url: str | None, metadata_key: str | None) -> MetadataStore:
    if metadata_url:
        if not metadata_key:
            console.print("[red]--metadata-key is required with --metadata-url[/red]")
            raise typer.Exit(code=1)
        return RestMetadataStore(metadata_url, metadata_key)
    return SQLiteMetadataStore(data_dir.expanduser() / "metadata.db")


async def _run_engine(
    config: SyncConfiguration,
    data_dir: Path,
    metadata_url: str | None,
    metadata_key: str | None,
    keep_running: bool,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    from imagesync.control import EngineRegistry

    settings = SQLiteSettingsStore(data_dir.expanduser() / "settings.db")
    metadata = _metadata_store(data_dir, metadata_url, metadata_key)
    registry = EngineRegistry(settings_store=settings, metadata_store=metadata, transport=transport)
    engine = registry.get(config=config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown_handler(signum, frame):
        console.print("\n[yellow]Received shutdown signal[/yellow]")
        loop.call_soon_threadsafe(stop_event.set)

    # Installed before the first cycle so Ctrl-C during it shuts down cleanly
    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    start_task = asyncio.create_task(engine.start())
    stop_wait = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({start_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

        if keep_running and not stop_event.is_set():
            console.print(
                f"[bold]Syncing from {config.source_endpoint} every "
                f"{config.polling_interval:.0f}s[/bold] (Ctrl-C to stop)"
            )
            await stop_wait
    finally:
        stop_wait.cancel()
        await registry.reset()
        await start_task
        # start() may not have begun when the registry was reset
        if engine.is_running:
            await engine.stop()
        await metadata.close()
        await settings.close()

    report = engine.last_report

    if report is not None:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric")
        table.add_column("Value")
        for key, value in report.to_dict().items():
            table.add_row(key.replace("_", " ").title(), "-" if value is None else str(value))
        console.print(table)


@app.command()
def run(
    env_file: Path = EnvFileOption,
    endpoint: str = typer.Option(None, "--endpoint", help="Source endpoint (overrides IMAGESYNC_SOURCE_ENDPOINT)"),
    data_dir: Path = DataDirOption,
    metadata_url: str = typer.Option(None, "--metadata-url", help="Base URL of a hosted metadata store"),
    metadata_key: str = typer.Option(None, "--metadata-key", help="API key for the hosted metadata store"),
    log_file: Path = typer.Option(None, "--log-file", help="Also write logs to this file"),
):
    """Run the sync engine until interrupted."""
    config = _load_config(env_file, endpoint)
    configure_logging(config.log_level, log_file, console=console)
    asyncio.run(_run_engine(config, data_dir, metadata_url, metadata_key, keep_running=True))


@app.command()
def once(
    env_file: Path = EnvFileOption,
    endpoint: str = typer.Option(None, "--endpoint", help="Source endpoint (overrides IMAGESYNC_SOURCE_ENDPOINT)"),
    data_dir: Path = DataDirOption,
    metadata_url: str = typer.Option(None, "--metadata-url", help="Base URL of a hosted metadata store"),
    metadata_key: str = typer.Option(None, "--metadata-key", help="API key for the hosted metadata store"),
    log_file: Path = typer.Option(None, "--log-file", help="Also write logs to this file"),
):
    """Run a single sync cycle and exit."""
    config = _load_config(env_file, endpoint)
    configure_logging(config.log_level, log_file, console=console)
    asyncio.run(_run_engine(config, data_dir, metadata_url, metadata_key, keep_running=False))


@app.command()
def status(data_dir: Path = DataDirOption):
    """Show the last successful sync."""

    async def _status():
        settings = SQLiteSettingsStore(data_dir.expanduser() / "settings.db")
        metadata = SQLiteMetadataStore(data_dir.expanduser() / "metadata.db")
        try:
            last_sync = await settings.get(LAST_SYNC_KEY)
            recorded = await metadata.count()
        finally:
            await metadata.close()
            await settings.close()

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Setting")
        table.add_column("Value")
        table.add_row("Last sync", last_sync or "[yellow]never[/yellow]")
        table.add_row("Images recorded locally", str(recorded))
        table.add_row("Data directory", str(data_dir.expanduser()))
        console.print(table)

    asyncio.run(_status())


@app.command()
def config(
    env_file: Path = EnvFileOption,
    endpoint: str = typer.Option(None, "--endpoint", help="Source endpoint (overrides IMAGESYNC_SOURCE_ENDPOINT)"),
):
    """Validate and show the effective configuration."""
    settings = _load_config(env_file, endpoint)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Field")
    table.add_column("Value")
    for key, value in settings.public_dict().items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


if __name__ == "__main__":
    app()
