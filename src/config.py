from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "STOCKREEL_"


class CatalogSettings(BaseModel):
    endpoint: str = "https://api.pexels.com/videos/search"
    api_key: str = ""
    page_size: int = 40
    max_pages: int = 3
    min_candidates: int = 10
    timeout_seconds: int = 30
    max_file_size_bytes: int = 1024**3


class DownloadSettings(BaseModel):
    max_concurrent: int = 3
    max_attempts: int = 3
    timeout_seconds: int = 60
    chunk_size_bytes: int = 64 * 1024
    sharing_violation_backoff_seconds: float = 0.5
    network_backoff_seconds: float = 1.0
    timeout_backoff_seconds: float = 2.0


class EncoderSettings(BaseModel):
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    hardware_encoders: list[str] = Field(default_factory=lambda: ["h264_nvenc", "h264_qsv", "h264_amf"])
    use_hardware: bool = True
    probe_timeout_seconds: int = 10
    output_fps: int = 30
    progress_interval_seconds: float = 5.0
    normalize_workers: int = 0


class PipelineSettings(BaseModel):
    work_dir: Path = Path("data/work")
    output_dir: Path = Path("data/outputs")
    duration_seconds: int = 60
    resolution: str = "1080p"
    vertical: bool = False


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Path | None = None


class Settings(BaseModel):
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
