import typer
from pathlib import Path
from typing import Callable, Optional
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from vtc.config.loader import load_config
from vtc.config.models import AppConfig
from vtc.infrastructure.logging import setup_logging
from vtc.boundary.service import TranscodeService, build_service
from vtc.domain.errors import EngineRuntimeError, InvocationError, ProbeError
from vtc.domain.models import AudioFormat, CompressPreset, ContainerFormat, JobStatus
from vtc.pipeline.orchestrator import JobTicket

DEFAULT_CONFIG_PATH = Path("conf/vtc.yaml")
EXIT_CANCELLED = 130

app = typer.Typer(help="VTC (Video Transcode Core) - compress, convert and extract audio with ffmpeg")
console = Console()


def _fail(message: str, code: int = 1):
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help=f"Path to YAML config (default: {DEFAULT_CONFIG_PATH} if present)"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Load config, set up logging and build the transcode service."""
    try:
        if config_path is not None:
            config = load_config(config_path)
        elif DEFAULT_CONFIG_PATH.exists():
            config = load_config(DEFAULT_CONFIG_PATH)
        else:
            config = AppConfig()
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))

    # Apply CLI overrides
    if debug: config.general.debug = True
    if log_path is not None: config.general.log_path = str(log_path)

    setup_logging(Path(config.general.log_path or "vtc.log"), debug=config.general.debug)
    ctx.obj = build_service(config)


def _run_job(service: TranscodeService, start: Callable[[], JobTicket], label: str):
    try:
        ticket = start()
    except (InvocationError, EngineRuntimeError) as exc:
        _fail(str(exc))

    progress = Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[timemark]}"),
        TextColumn("{task.fields[size]}"),
        TimeElapsedColumn(),
        console=console,
    )
    with progress:
        task = progress.add_task(label, total=100, timemark="", size="")
        try:
            for event in ticket.events():
                size = f"{event.target_size_kb} kB" if event.target_size_kb is not None else ""
                progress.update(task, completed=event.percent, timemark=event.timemark, size=size)
        except KeyboardInterrupt:
            service.cancel(ticket.job_id)

    outcome = ticket.result()
    if outcome.status == JobStatus.SUCCEEDED:
        console.print(f"[green]Done:[/green] {outcome.output_path}")
        return
    if outcome.status == JobStatus.CANCELLED:
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=EXIT_CANCELLED)
    _fail(outcome.error or "transcode failed")


@app.command()
def probe(ctx: typer.Context, path: Path = typer.Argument(..., help="Media file to inspect")):
    """Show container and stream information."""
    service: TranscodeService = ctx.obj
    try:
        metadata = service.probe_metadata(path)
    except ProbeError as exc:
        _fail(str(exc))

    console.print(f"[bold]{metadata.path}[/bold]")
    console.print(
        f"format={metadata.format_name} duration={metadata.duration:.2f}s "
        f"size={metadata.size_bytes} bitrate={metadata.bit_rate or '-'}"
    )
    table = Table(show_header=True, header_style="bold")
    for column in ("#", "type", "codec", "resolution", "fps", "audio", "bitrate"):
        table.add_column(column)
    for stream in metadata.streams:
        resolution = f"{stream.width}x{stream.height}" if stream.width and stream.height else "-"
        audio = f"{stream.sample_rate} Hz/{stream.channels}ch" if stream.sample_rate else "-"
        table.add_row(
            str(stream.index),
            stream.codec_type,
            stream.codec_name,
            resolution,
            str(stream.fps or "-"),
            audio,
            str(stream.bit_rate or "-"),
        )
    console.print(table)


@app.command()
def compress(
    ctx: typer.Context,
    input_path: Path = typer.Argument(..., help="Input video"),
    output_path: Path = typer.Argument(..., help="Output .mp4 file"),
    quality: Optional[int] = typer.Option(None, "--quality", "-q", help="CRF 0-51, lower is better quality (default 23)"),
    preset: Optional[CompressPreset] = typer.Option(None, "--preset", "-p", help="Encoder speed preset"),
    resolution: Optional[str] = typer.Option(None, "--resolution", "-r", help="Scale to WIDTHxHEIGHT, e.g. 1280x720"),
):
    """Re-encode to H.264/AAC MP4 at the given quality."""
    service: TranscodeService = ctx.obj
    _run_job(
        service,
        lambda: service.start_compress(input_path, output_path, quality=quality, preset=preset, resolution=resolution),
        f"Compressing {input_path.name}",
    )


@app.command()
def convert(
    ctx: typer.Context,
    input_path: Path = typer.Argument(..., help="Input video"),
    output_path: Path = typer.Argument(..., help="Output file"),
    format: Optional[ContainerFormat] = typer.Option(None, "--format", "-f", help="Target container"),
    video_codec: Optional[str] = typer.Option(None, "--video-codec", help="Override the container's default video codec"),
    audio_codec: Optional[str] = typer.Option(None, "--audio-codec", help="Override the container's default audio codec"),
):
    """Convert to another container format."""
    service: TranscodeService = ctx.obj
    _run_job(
        service,
        lambda: service.start_convert(input_path, output_path, format=format, video_codec=video_codec, audio_codec=audio_codec),
        f"Converting {input_path.name}",
    )


@app.command("extract-audio")
def extract_audio(
    ctx: typer.Context,
    input_path: Path = typer.Argument(..., help="Input video"),
    output_path: Path = typer.Argument(..., help="Output audio file"),
    format: Optional[AudioFormat] = typer.Option(None, "--format", "-f", help="Target audio format"),
    bitrate: Optional[str] = typer.Option(None, "--bitrate", "-b", help="Audio bitrate, e.g. 192k"),
):
    """Drop the video stream and encode the first audio stream."""
    service: TranscodeService = ctx.obj
    _run_job(
        service,
        lambda: service.start_extract_audio(input_path, output_path, format=format, bitrate=bitrate),
        f"Extracting audio from {input_path.name}",
    )


@app.command()
def formats(ctx: typer.Context, muxers_only: bool = typer.Option(False, "--muxers", help="Only formats ffmpeg can write")):
    """List container formats supported by the engine."""
    service: TranscodeService = ctx.obj
    try:
        items = service.available_formats()
    except EngineRuntimeError as exc:
        _fail(str(exc))

    table = Table("name", "demux", "mux", "description")
    for item in items:
        if muxers_only and not item.can_mux:
            continue
        table.add_row(item.name, "D" if item.can_demux else "", "E" if item.can_mux else "", item.description)
    console.print(table)


@app.command()
def codecs(ctx: typer.Context, codec_type: Optional[str] = typer.Option(None, "--type", "-t", help="video, audio, subtitle, data")):
    """List codecs supported by the engine."""
    service: TranscodeService = ctx.obj
    try:
        items = service.available_codecs()
    except EngineRuntimeError as exc:
        _fail(str(exc))

    table = Table("name", "type", "decode", "encode", "description")
    for item in items:
        if codec_type and item.codec_type != codec_type:
            continue
        table.add_row(
            item.name,
            item.codec_type,
            "D" if item.can_decode else "",
            "E" if item.can_encode else "",
            item.description,
        )
    console.print(table)


if __name__ == "__main__":
    app()
