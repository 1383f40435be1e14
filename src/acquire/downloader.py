from __future__ import annotations

import errno
import http.client
import logging
import os
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError
from uuid import uuid4

from src.config import DownloadSettings
from src.errors import DownloadFailed, OperationCancelled
from src.models import ClipCandidate, LocalClip
from src.runtime import PipelineRun, acquire_slot

logger = logging.getLogger(__name__)

USER_AGENT = "stockreel/0.1"
MAX_NAME_ATTEMPTS = 100
MAX_FETCH_WORKERS = 32
SHARING_VIOLATION_ERRNOS = {errno.EBUSY, errno.ETXTBSY, errno.EAGAIN}
# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
SHARING_VIOLATION_WINERRORS = {32, 33}
RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}


class IncompleteDownload(Exception):
    """The transfer ended with no data or fewer bytes than announced."""


class ErrorClass(Enum):
    SHARING_VIOLATION = "sharing_violation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FATAL = "fatal"


RETRYABLE_CLASSES = {ErrorClass.SHARING_VIOLATION, ErrorClass.NETWORK, ErrorClass.TIMEOUT}


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """Tagged result of a single transfer attempt."""

    clip: LocalClip | None = None
    error_class: ErrorClass | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.clip is not None


def classify_error(exc: BaseException) -> ErrorClass:
    """Map a transfer exception onto the retry decision table."""

    if isinstance(exc, OperationCancelled):
        return ErrorClass.CANCELLED
    if isinstance(exc, HTTPError):
        if exc.code == 408:
            return ErrorClass.TIMEOUT
        return ErrorClass.NETWORK if exc.code in RETRYABLE_HTTP_STATUS else ErrorClass.FATAL
    if isinstance(exc, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, URLError):
        return ErrorClass.TIMEOUT if isinstance(exc.reason, TimeoutError) else ErrorClass.NETWORK
    if isinstance(exc, (ConnectionError, http.client.HTTPException, IncompleteDownload)):
        return ErrorClass.NETWORK
    if _is_sharing_violation(exc):
        return ErrorClass.SHARING_VIOLATION
    return ErrorClass.FATAL


def unique_destination(path: Path, *, now: datetime | None = None) -> Path:
    """Return ``path`` or the first free ``<stem>_<n><suffix>`` sibling."""

    if not path.exists():
        return path
    for attempt in range(1, MAX_NAME_ATTEMPTS + 1):
        candidate = path.with_name(f"{path.stem}_{attempt}{path.suffix}")
        if not candidate.exists():
            return candidate
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S%f")
    return path.with_name(f"{path.stem}_{stamp}{path.suffix}")


class DownloadManager:
    """Fetch clips concurrently with retry, atomic writes and per-path exclusivity."""

    def __init__(
        self,
        run: PipelineRun,
        settings: DownloadSettings | None = None,
        *,
        opener: Callable[..., Any] | None = None,
    ) -> None:
        self.run = run
        self.settings = settings or DownloadSettings()
        self._opener = opener or request.urlopen

    def backoff_seconds(self, error_class: ErrorClass, attempt: int) -> float:
        base = {
            ErrorClass.SHARING_VIOLATION: self.settings.sharing_violation_backoff_seconds,
            ErrorClass.NETWORK: self.settings.network_backoff_seconds,
            ErrorClass.TIMEOUT: self.settings.timeout_backoff_seconds,
        }.get(error_class, 0.0)
        return base * attempt

    def fetch(self, candidate: ClipCandidate, destination: Path) -> LocalClip:
        cancel = self.run.cancel
        cancel.raise_if_cancelled()
        with self.run.resources.path_lock(destination, cancel):
            return self._fetch_with_retries(candidate, Path(destination))

    def fetch_all(
        self,
        candidates: Sequence[ClipCandidate],
        directory: Path,
    ) -> dict[int, LocalClip | DownloadFailed]:
        """Download every candidate; failures are recorded per index, not raised."""

        directory.mkdir(parents=True, exist_ok=True)
        results: dict[int, LocalClip | DownloadFailed] = {}
        total = len(candidates)
        if total == 0:
            return results

        finished = 0
        with ThreadPoolExecutor(max_workers=min(total, MAX_FETCH_WORKERS), thread_name_prefix="download") as pool:
            futures = {
                pool.submit(self.fetch, candidate, directory / f"clip_{index}.mp4"): index
                for index, candidate in enumerate(candidates)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    clip = future.result()
                except DownloadFailed as exc:
                    logger.warning("Clip %s download failed: %s", index, exc)
                    results[index] = exc
                else:
                    self.run.add_download(clip.size_bytes)
                    results[index] = clip
                finished += 1
                self.run.sink.report(f"Downloaded {finished} of {total} clips", finished / total * 100)

        return dict(sorted(results.items()))

    def _fetch_with_retries(self, candidate: ClipCandidate, destination: Path) -> LocalClip:
        cancel = self.run.cancel
        max_attempts = max(self.settings.max_attempts, 1)
        last: AttemptOutcome | None = None

        for attempt in range(1, max_attempts + 1):
            cancel.raise_if_cancelled()
            outcome = self._attempt(candidate, destination)
            if outcome.clip is not None:
                return outcome.clip

            last = outcome
            if outcome.error_class is ErrorClass.CANCELLED:
                raise OperationCancelled(f"Download to {destination} cancelled.")
            if outcome.error_class not in RETRYABLE_CLASSES:
                raise DownloadFailed(destination, attempt, _describe(outcome))
            if attempt == max_attempts:
                break

            delay = self.backoff_seconds(outcome.error_class, attempt)
            logger.warning(
                "Attempt %s/%s for %s failed (%s: %s); retrying in %.1fs",
                attempt,
                max_attempts,
                destination.name,
                outcome.error_class.value,
                outcome.error,
                delay,
            )
            if cancel.wait(delay):
                raise OperationCancelled(f"Download to {destination} cancelled.")

        raise DownloadFailed(destination, max_attempts, _describe(last))

    def _attempt(self, candidate: ClipCandidate, destination: Path) -> AttemptOutcome:
        try:
            return AttemptOutcome(clip=self._transfer(candidate, destination))
        except Exception as exc:
            return AttemptOutcome(error_class=classify_error(exc), error=exc)

    @contextmanager
    def _claim_final_path(self, destination: Path) -> Iterator[Path]:
        """Pick a free name for ``destination`` and hold its path lock while writing.

        The caller already holds the lock on ``destination``. A renamed target
        is locked too and re-checked once the lock is held. Renamed names are
        always longer than the name they derive from.
        """

        while True:
            final_path = unique_destination(destination)
            if final_path == destination:
                yield final_path
                return
            with self.run.resources.path_lock(final_path, self.run.cancel):
                if not final_path.exists():
                    yield final_path
                    return
            logger.debug("%s was taken while waiting; choosing another name", final_path.name)

    def _transfer(self, candidate: ClipCandidate, destination: Path) -> LocalClip:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._claim_final_path(destination) as final_path:
            # Slots are only held around the transfer itself, never while waiting on a path lock.
            with acquire_slot(self.run.resources.download_slots, self.run.cancel):
                return self._write(candidate, final_path)

    def _write(self, candidate: ClipCandidate, final_path: Path) -> LocalClip:
        cancel = self.run.cancel
        temp_path = final_path.with_name(f".{final_path.name}.{uuid4().hex[:8]}.part")

        req = request.Request(candidate.url, headers={"User-Agent": USER_AGENT})
        written = 0
        try:
            with self._opener(req, timeout=self.settings.timeout_seconds) as response, temp_path.open("wb") as handle:
                expected = _content_length(response)
                while True:
                    cancel.raise_if_cancelled()
                    chunk = response.read(self.settings.chunk_size_bytes)
                    if not chunk:
                        break
                    handle.write(chunk)
                    written += len(chunk)

            if written == 0:
                raise IncompleteDownload(f"empty response from {candidate.url}")
            if expected is not None and written != expected:
                raise IncompleteDownload(f"received {written} of {expected} bytes from {candidate.url}")
            os.replace(temp_path, final_path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug("Downloaded %s (%s bytes) to %s", candidate.url, written, final_path)
        return LocalClip(candidate=candidate, path=final_path, size_bytes=written)


def _content_length(response: Any) -> int | None:
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    raw_value = headers.get("Content-Length")
    try:
        return int(raw_value) if raw_value is not None else None
    except (TypeError, ValueError):
        return None


def _is_sharing_violation(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    if not isinstance(exc, OSError):
        return False
    if getattr(exc, "winerror", None) in SHARING_VIOLATION_WINERRORS:
        return True
    return exc.errno in SHARING_VIOLATION_ERRNOS


def _describe(outcome: AttemptOutcome | None) -> str:
    if outcome is None or outcome.error is None:
        return "unknown error"
    return f"{type(outcome.error).__name__}: {outcome.error}"
