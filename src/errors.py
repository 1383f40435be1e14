from __future__ import annotations

from pathlib import Path


class OperationCancelled(Exception):
    """Raised when the run's cancellation token fires. Never a failure."""


class PipelineError(RuntimeError):
    """Base class for failures surfaced by pipeline stages."""


class SearchError(PipelineError):
    """One catalog page could not be fetched or parsed."""


class NoSuitableClips(PipelineError):
    """Selection produced an empty set."""


class DownloadFailed(PipelineError):
    def __init__(self, destination: Path, attempts: int, reason: str) -> None:
        super().__init__(f"Download to {destination} failed after {attempts} attempt(s): {reason}")
        self.destination = destination
        self.attempts = attempts
        self.reason = reason


class NoValidInputs(PipelineError):
    """No concatenation input exists with a positive probed duration."""


class ConcatenationFailed(PipelineError):
    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics
