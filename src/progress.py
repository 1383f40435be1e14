from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Consumer of pipeline progress. Implementations serialize their own updates."""

    def report(self, message: str, percent: float | None = None) -> None: ...


class NullProgressSink:
    def report(self, message: str, percent: float | None = None) -> None:
        return None


class LoggingProgressSink:
    """Forward progress notices to the module logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def report(self, message: str, percent: float | None = None) -> None:
        if percent is None:
            logger.log(self.level, "%s", message)
        else:
            logger.log(self.level, "%s (%.0f%%)", message, percent)


def format_clock(seconds: float) -> str:
    whole = max(int(seconds), 0)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
