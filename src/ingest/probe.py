from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any

DEFAULT_PROBE_TIMEOUT_SECONDS = 30


@dataclass(frozen=True, slots=True)
class VideoProbe:
    """Measured properties of the first video stream of a file."""

    path: Path
    width: int
    height: int
    duration_seconds: float
    fps: float | None


def probe_media(media_path: str | Path, ffprobe: str = "ffprobe") -> dict[str, Any]:
    """Probe media metadata via ffprobe and return a normalized summary."""

    source_path = Path(media_path).expanduser().resolve()
    if not source_path.exists():
        raise FileNotFoundError(f"Media file not found: {source_path}")

    ffprobe_payload = _run_ffprobe(source_path, ffprobe=ffprobe)
    return _normalize_probe_payload(source_path, ffprobe_payload)


def probe_video(media_path: str | Path, ffprobe: str = "ffprobe") -> VideoProbe:
    """Return dimensions, duration and frame rate of the first video stream."""

    metadata = probe_media(media_path, ffprobe=ffprobe)
    video_streams = [stream for stream in metadata["streams"] if stream["codec_type"] == "video"]
    if not video_streams:
        raise RuntimeError(f"No video stream found in {metadata['path']}.")

    stream = video_streams[0]
    width = stream["width"] or 0
    height = stream["height"] or 0
    duration = stream["duration_seconds"] or metadata["format"]["duration_seconds"] or 0.0
    return VideoProbe(
        path=Path(metadata["path"]),
        width=width,
        height=height,
        duration_seconds=float(duration),
        fps=_parse_frame_rate(stream["avg_frame_rate"]),
    )


def _run_ffprobe(media_path: Path, ffprobe: str = "ffprobe") -> dict[str, Any]:
    command = [
        ffprobe,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(media_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=DEFAULT_PROBE_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"ffprobe timed out while probing media file: {media_path}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if "error while loading shared libraries" in stderr:
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise RuntimeError(
            f"ffprobe failed while probing media file: {media_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise RuntimeError("ffprobe returned invalid JSON output.") from exc


def _normalize_probe_payload(media_path: Path, payload: dict[str, Any]) -> dict[str, Any]:
    stream_entries = payload.get("streams", [])
    format_entry = payload.get("format", {})

    streams = [_normalize_stream(stream) for stream in stream_entries]

    return {
        "status": "ok",
        "path": str(media_path),
        "format": {
            "format_name": format_entry.get("format_name"),
            "duration_seconds": _to_float(format_entry.get("duration")),
            "size_bytes": _to_int(format_entry.get("size")),
            "bit_rate": _to_int(format_entry.get("bit_rate")),
        },
        "streams": streams,
        "video_stream_count": sum(1 for stream in streams if stream["codec_type"] == "video"),
        "audio_stream_count": sum(1 for stream in streams if stream["codec_type"] == "audio"),
    }


def _normalize_stream(stream: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": stream.get("index"),
        "codec_type": stream.get("codec_type"),
        "codec_name": stream.get("codec_name"),
        "width": _to_int(stream.get("width")),
        "height": _to_int(stream.get("height")),
        "avg_frame_rate": stream.get("avg_frame_rate"),
        "duration_seconds": _to_float(stream.get("duration")),
        "bit_rate": _to_int(stream.get("bit_rate")),
    }


def _parse_frame_rate(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", "", "0/0"):
        return None
    try:
        rate = Fraction(str(raw_value))
    except (ValueError, ZeroDivisionError):
        return None
    return round(float(rate), 3) if rate > 0 else None


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
