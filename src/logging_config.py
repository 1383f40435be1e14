from __future__ import annotations

import logging
from pathlib import Path

from src.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> Path | None:
    """Configure process-wide logging once at startup.

    Records are also appended to ``settings.file`` when set; that path is returned.
    """

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file: Path | None = None
    if settings.file is not None:
        log_file = Path(settings.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return log_file
