from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from src.errors import OperationCancelled
from src.progress import NullProgressSink, ProgressSink

logger = logging.getLogger(__name__)

SLOT_POLL_SECONDS = 0.2


class CancellationToken:
    """Cooperative cancellation signal shared by every stage of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled.")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancellation fired meanwhile."""

        return self._event.wait(max(seconds, 0.0))


class _PathLockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class ResourcePool:
    """Semaphores and the per-destination lock table owned by one run."""

    def __init__(self, download_slots: int = 3, encode_slots: int | None = None) -> None:
        self.download_slot_count = max(download_slots, 1)
        self.encode_slot_count = max(encode_slots or os.cpu_count() or 1, 1)
        self.download_slots = threading.BoundedSemaphore(self.download_slot_count)
        self.encode_slots = threading.BoundedSemaphore(self.encode_slot_count)
        self._path_locks: dict[str, _PathLockEntry] = {}
        self._path_guard = threading.Lock()

    @contextmanager
    def path_lock(self, path: Path, cancel: CancellationToken | None = None) -> Iterator[None]:
        key = os.path.normcase(os.path.abspath(path))
        with self._path_guard:
            entry = self._path_locks.get(key)
            if entry is None:
                entry = self._path_locks[key] = _PathLockEntry()
            entry.users += 1

        try:
            _acquire(entry.lock, cancel)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._path_guard:
                entry.users -= 1
                if entry.users == 0:
                    self._path_locks.pop(key, None)

    def active_path_locks(self) -> int:
        with self._path_guard:
            return len(self._path_locks)


@contextmanager
def acquire_slot(semaphore: threading.Semaphore, cancel: CancellationToken | None = None) -> Iterator[None]:
    """Hold one semaphore slot, giving up if the run is cancelled while waiting."""

    _acquire(semaphore, cancel)
    try:
        yield
    finally:
        semaphore.release()


def _acquire(primitive: threading.Lock | threading.Semaphore, cancel: CancellationToken | None) -> None:
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if primitive.acquire(timeout=SLOT_POLL_SECONDS):
            return


@dataclass
class PipelineRun:
    """Umbrella context for one pipeline execution."""

    work_dir: Path
    resources: ResourcePool
    cancel: CancellationToken = field(default_factory=CancellationToken)
    sink: ProgressSink = field(default_factory=NullProgressSink)
    bytes_downloaded: int = 0
    clips_processed: int = 0
    _totals_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    @contextmanager
    def open(
        cls,
        base_dir: Path,
        *,
        resources: ResourcePool,
        cancel: CancellationToken | None = None,
        sink: ProgressSink | None = None,
    ) -> Iterator[PipelineRun]:
        """Create a run with its own working directory, removed on exit."""

        base_dir = Path(base_dir).expanduser()
        base_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="run_", dir=base_dir))
        run = cls(
            work_dir=work_dir,
            resources=resources,
            cancel=cancel or CancellationToken(),
            sink=sink or NullProgressSink(),
        )
        logger.debug("Opened pipeline run in %s", work_dir)
        try:
            yield run
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.debug("Removed pipeline work directory %s", work_dir)

    def add_download(self, size_bytes: int) -> None:
        with self._totals_lock:
            self.bytes_downloaded += size_bytes

    def add_processed(self, count: int = 1) -> int:
        with self._totals_lock:
            self.clips_processed += count
            return self.clips_processed
