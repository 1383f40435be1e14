from __future__ import annotations

import json
import logging
import random
import signal
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from src.catalog.pexels import search_clips
from src.config import Settings, load_settings
from src.errors import OperationCancelled
from src.ingest.probe import probe_media
from src.logging_config import configure_logging
from src.models import RESOLUTION_PRESETS, SelectionTarget
from src.pipeline import run_pipeline
from src.render.encoder import SOFTWARE_PROFILE, encoder_available, probe_hardware_encoder
from src.runtime import CancellationToken

app = typer.Typer(help="Assemble one video from stock clips matching a search term.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_EXIT_CODE = 130
CONFIG_OPTION_HELP = "Path to YAML configuration file."


class TyperProgressSink:
    """Echo pipeline progress notices to stderr."""

    def report(self, message: str, percent: float | None = None) -> None:
        suffix = f" ({percent:.0f}%)" if percent is not None else ""
        typer.echo(f"    {message}{suffix}", err=True)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    log_file = configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    if log_file is not None:
        logger.info("Writing log to %s", log_file)
    return settings


def _config_option() -> Any:
    return typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="STOCKREEL_CONFIG",
        help=CONFIG_OPTION_HELP,
    )


def _build_target(
    settings: Settings,
    duration_seconds: int | None,
    resolution: str | None,
    vertical: bool | None,
) -> SelectionTarget:
    return SelectionTarget.from_preset(
        duration_seconds or settings.pipeline.duration_seconds,
        resolution or settings.pipeline.resolution,
        vertical=settings.pipeline.vertical if vertical is None else vertical,
        fps=settings.encoder.output_fps,
    )


@config_app.command("show")
def show_config(config_path: Path = _config_option()) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    payload = settings.model_dump(mode="json")
    if payload["catalog"]["api_key"]:
        payload["catalog"]["api_key"] = "***"
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def search(
    term: str,
    config_path: Path = _config_option(),
    api_key: str | None = typer.Option(None, envvar="PEXELS_API_KEY", help="Catalog API key."),
    duration_seconds: int | None = typer.Option(None, help="Target duration used to bound clip length."),
    resolution: str | None = typer.Option(None, help=f"Resolution preset: {', '.join(RESOLUTION_PRESETS)}."),
    vertical: bool | None = typer.Option(None, "--vertical/--horizontal", help="Output orientation."),
) -> None:
    """Search the catalog and print acceptable candidates as JSON."""

    settings = _bootstrap(config_path)
    if api_key:
        settings.catalog.api_key = api_key
    try:
        target = _build_target(settings, duration_seconds, resolution, vertical)
        candidates = search_clips(term, target, settings=settings.catalog)
    except (RuntimeError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps([asdict(candidate) for candidate in candidates], indent=2))


@app.command()
def probe(media_path: str, config_path: Path = _config_option()) -> None:
    """Print normalized ffprobe metadata for a media file."""

    settings = _bootstrap(config_path)
    try:
        result = probe_media(media_path, ffprobe=settings.encoder.ffprobe)
    except (RuntimeError, FileNotFoundError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logger.info("Probe completed for %s", media_path)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def encoders(config_path: Path = _config_option()) -> None:
    """Report whether ffmpeg runs and which encoder the final render would use."""

    settings = _bootstrap(config_path)
    available = encoder_available(settings.encoder.ffmpeg, timeout_seconds=settings.encoder.probe_timeout_seconds)
    hardware = None
    if available and settings.encoder.use_hardware:
        hardware = probe_hardware_encoder(
            settings.encoder.ffmpeg,
            settings.encoder.hardware_encoders,
            timeout_seconds=settings.encoder.probe_timeout_seconds,
        )
    typer.echo(
        json.dumps(
            {
                "ffmpeg": settings.encoder.ffmpeg,
                "ffmpeg_available": available,
                "hardware_encoder": hardware.codec if hardware else None,
                "selected_encoder": (hardware or SOFTWARE_PROFILE).codec,
            },
            indent=2,
        )
    )
    if not available:
        raise typer.Exit(code=1)


@app.command("run")
def run_command(
    term: str,
    config_path: Path = _config_option(),
    api_key: str | None = typer.Option(None, envvar="PEXELS_API_KEY", help="Catalog API key."),
    duration_seconds: int | None = typer.Option(None, help="Target output duration in seconds."),
    resolution: str | None = typer.Option(None, help=f"Resolution preset: {', '.join(RESOLUTION_PRESETS)}."),
    vertical: bool | None = typer.Option(None, "--vertical/--horizontal", help="Output orientation."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for the rendered video."),
    output: Path | None = typer.Option(None, help="Explicit output file path (overrides --output-dir)."),
    seed: int | None = typer.Option(None, help="Seed for reproducible clip selection."),
) -> None:
    """Run the complete search-to-video pipeline."""

    settings = _bootstrap(config_path)
    if api_key:
        settings.catalog.api_key = api_key
    if output_dir is not None:
        settings.pipeline.output_dir = output_dir
    if not settings.catalog.api_key:
        typer.echo("Error: a catalog API key is required (--api-key or PEXELS_API_KEY).", err=True)
        raise typer.Exit(code=1)

    cancel = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel.cancel())
    try:
        target = _build_target(settings, duration_seconds, resolution, vertical)
        summary = run_pipeline(
            term=term,
            target=target,
            settings=settings,
            output_path=output,
            sink=TyperProgressSink(),
            cancel=cancel,
            rng=random.Random(seed) if seed is not None else None,
            step=_run_with_progress,
        )
    except OperationCancelled as exc:
        logger.warning("Pipeline cancelled: %s", exc)
        typer.echo("Cancelled.", err=True)
        raise typer.Exit(code=CANCELLED_EXIT_CODE) from exc
    except (RuntimeError, ValueError) as exc:
        logger.error("Pipeline failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    typer.echo(json.dumps({"status": "ok", **summary.to_dict()}, indent=2))


if __name__ == "__main__":
    app()
