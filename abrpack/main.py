import mimetypes
import signal
import threading
from pathlib import Path
from typing import NamedTuple, Optional

import typer
from rich.console import Console
from rich.table import Table

from abrpack.config.loader import load_config
from abrpack.config.models import AppConfig
from abrpack.domain.errors import AbrPackError
from abrpack.domain.events import JobCompleted, JobFailed, JobStarted, RenditionCompleted, RenditionFailed
from abrpack.domain.models import JobStatus, VideoJob
from abrpack.infrastructure.event_bus import EventBus
from abrpack.infrastructure.ffmpeg import FFmpegAdapter
from abrpack.infrastructure.ffprobe import FFprobeAdapter
from abrpack.infrastructure.housekeeping import HousekeepingService
from abrpack.infrastructure.logging import setup_logging
from abrpack.infrastructure.storage import create_storage
from abrpack.infrastructure.web_server import AbrPackWebServer
from abrpack.pipeline.ingest import IngestService
from abrpack.pipeline.packager import Packager
from abrpack.pipeline.registry import JobRegistry
from abrpack.pipeline.scheduler import Scheduler

app = typer.Typer(help="abrpack - adaptive bitrate (HLS) packaging service")
console = Console()

DEFAULT_CONFIG = Path("conf/abrpack.yaml")


class Runtime(NamedTuple):
    bus: EventBus
    registry: JobRegistry
    ingest: IngestService
    scheduler: Scheduler


def build_runtime(config: AppConfig, bus: Optional[EventBus] = None) -> Runtime:
    bus = bus or EventBus()
    storage = create_storage(config.storage)
    registry = JobRegistry()
    packager = Packager(
        config=config,
        storage=storage,
        ffprobe_adapter=FFprobeAdapter(config.encoder.ffprobe_path),
        ffmpeg_adapter=FFmpegAdapter(config.encoder),
        event_bus=bus,
    )
    scheduler = Scheduler(config=config, registry=registry, storage=storage, packager=packager, event_bus=bus)
    ingest = IngestService(config=config, registry=registry, storage=storage, event_bus=bus)
    return Runtime(bus=bus, registry=registry, ingest=ingest, scheduler=scheduler)


def _prepare(config_path: Path, debug: bool) -> AppConfig:
    config = load_config(config_path)
    if debug:
        config.general.debug = True
    log_path = Path(config.general.log_path) if config.general.log_path else None
    # never inside scratch: housekeeping below empties it
    log_dir = log_path.parent if log_path else config.general.scratch_dir.parent
    logger = setup_logging(log_dir, debug=config.general.debug, log_path=log_path)
    logger.info(
        f"Config: storage={config.storage.backend}, renditions={[r.name for r in config.renditions]}, "
        f"poll={config.general.poll_interval_s}s, scratch={config.general.scratch_dir}"
    )

    HousekeepingService().cleanup_scratch(config.general.scratch_dir)
    config.general.scratch_dir.mkdir(parents=True, exist_ok=True)
    return config


def _subscribe_console(bus: EventBus):
    @bus.subscribe(JobStarted)
    def _on_started(event: JobStarted):
        console.print(f"[cyan]▶[/cyan] {event.job.id} {event.job.title}")

    @bus.subscribe(RenditionCompleted)
    def _on_rendition(event: RenditionCompleted):
        console.print(f"  [green]✓[/green] {event.rendition.name} ({event.elapsed_s:.1f}s)")

    @bus.subscribe(RenditionFailed)
    def _on_rendition_failed(event: RenditionFailed):
        mark = "[yellow]–[/yellow]" if event.cancelled else "[red]✗[/red]"
        console.print(f"  {mark} {event.rendition.name}: {event.error_message}")

    @bus.subscribe(JobCompleted)
    def _on_completed(event: JobCompleted):
        console.print(f"[green]✓[/green] {event.job.id} ready: {event.job.result_url}")

    @bus.subscribe(JobFailed)
    def _on_failed(event: JobFailed):
        console.print(f"[red]✗[/red] {event.job.id} failed: {event.error_message}")


def job_table(job: VideoJob) -> Table:
    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    style = {JobStatus.READY: "green", JobStatus.ERROR: "red"}.get(job.status, "yellow")
    table.add_row("status", f"[{style}]{job.status.value}[/{style}]")
    table.add_row("title", job.title)
    if job.status == JobStatus.READY:
        table.add_row("url", job.result_url)
        table.add_row("thumbnail", job.thumbnail_url)
        table.add_row("duration", f"{job.duration:.2f}s")
        table.add_row("size", f"{job.width}x{job.height}")
    if job.error_message:
        table.add_row("error", job.error_message)
    return table


@app.command()
def serve(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    host: Optional[str] = typer.Option(None, "--host", help="Override API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Override API port"),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", help="Seconds between scheduler firings"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Run the ingestion API and the background packaging worker."""
    try:
        config = _prepare(config_path, debug)
    except (FileNotFoundError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if poll_interval is not None:
        config.general.poll_interval_s = poll_interval

    runtime = build_runtime(config)
    _subscribe_console(runtime.bus)
    server = AbrPackWebServer(runtime.ingest, port=config.server.port, host=config.server.host)

    stop_requested = threading.Event()

    def _request_stop(signum, _frame):
        console.print(f"\n[yellow]Signal {signum} received, shutting down...[/yellow]")
        stop_requested.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        server.start()
    except OSError as exc:
        typer.secho(f"Error: cannot bind {config.server.host}:{config.server.port}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    runtime.scheduler.start()
    console.print(f"[bold]abrpack[/bold] listening on {config.server.host}:{server.port}")
    try:
        while not stop_requested.wait(0.5):
            pass
    finally:
        runtime.scheduler.stop()
        server.stop()


@app.command()
def process(
    video: Path = typer.Argument(..., help="Local video file to package"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    title: Optional[str] = typer.Option(None, "--title", help="Video title"),
    description: Optional[str] = typer.Option(None, "--description", help="Video description"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Upload one local file, package it once and print the final job record."""
    if not video.is_file():
        typer.secho(f"Error: {video} does not exist", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    try:
        config = _prepare(config_path, debug)
    except (FileNotFoundError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    runtime = build_runtime(config)
    _subscribe_console(runtime.bus)

    content_type = mimetypes.guess_type(video.name)[0] or "video/mp4"
    try:
        job = runtime.ingest.upload(
            video.read_bytes(), content_type, title=title, description=description, filename=video.name
        )
    except AbrPackError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    runtime.scheduler.run_once()
    final = runtime.ingest.get_status(job.id)
    console.print(job_table(final))
    if final.status != JobStatus.READY:
        raise typer.Exit(code=1)


@app.command()
def probe(
    video: Path = typer.Argument(..., help="Video file to inspect"),
    ffprobe_path: str = typer.Option("ffprobe", "--ffprobe", help="ffprobe executable"),
):
    """Print duration and frame size as the pipeline sees them."""
    try:
        metadata = FFprobeAdapter(ffprobe_path).probe(video)
    except AbrPackError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    console.print(f"duration={metadata.duration:.2f}s width={metadata.width} height={metadata.height}")


if __name__ == "__main__":
    app()
