from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from src.acquire.downloader import DownloadManager
from src.catalog.pexels import search_clips
from src.config import Settings
from src.errors import ConcatenationFailed, NoSuitableClips, PipelineError
from src.models import LocalClip, SelectionTarget
from src.progress import LoggingProgressSink, ProgressSink
from src.render.concat import ConcatenationStage
from src.render.normalize import NormalizationEngine
from src.runtime import CancellationToken, PipelineRun, ResourcePool
from src.selection.selector import select_clips, total_duration

logger = logging.getLogger(__name__)

T = TypeVar("T")
StepRunner = Callable[[int, int, str, Callable[[], T]], T]

TOTAL_STEPS = 5


@dataclass(slots=True)
class PipelineSummary:
    """What a finished run produced."""

    search_term: str
    output_path: str
    candidate_count: int
    selected_count: int
    selected_duration_seconds: int
    downloaded_count: int
    normalized_count: int
    reencoded_count: int
    bytes_downloaded: int
    encoder: str
    measured_duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def output_filename(term: str, now: datetime | None = None) -> str:
    safe_term = re.sub(r"[^\w\-]+", "_", term.strip()).strip("_") or "stockreel"
    return f"{safe_term}_{(now or datetime.now()):%Y%m%d%H%M%S}.mp4"


def run_pipeline(
    *,
    term: str,
    target: SelectionTarget,
    settings: Settings,
    output_path: Path | None = None,
    sink: ProgressSink | None = None,
    cancel: CancellationToken | None = None,
    rng: random.Random | None = None,
    step: StepRunner | None = None,
) -> PipelineSummary:
    """Search, select, download, normalize and concatenate into one video."""

    step = step or _log_step
    sink = sink or LoggingProgressSink()
    cancel = cancel or CancellationToken()
    output_path = Path(output_path or Path(settings.pipeline.output_dir) / output_filename(term))

    candidates = step(
        1,
        TOTAL_STEPS,
        "Search catalog",
        lambda: search_clips(term, target, settings=settings.catalog, cancel=cancel),
    )
    if not candidates:
        raise NoSuitableClips(f"No catalog results for {term!r} match {target.size_label} @ {target.fps:g}fps.")

    selected = step(2, TOTAL_STEPS, "Select clips", lambda: select_clips(candidates, target, rng=rng))
    if not selected:
        raise NoSuitableClips(f"None of the {len(candidates)} candidates for {term!r} fit a {target.duration_seconds}s target.")

    resources = ResourcePool(
        download_slots=settings.download.max_concurrent,
        encode_slots=settings.encoder.normalize_workers or None,
    )
    with PipelineRun.open(settings.pipeline.work_dir, resources=resources, cancel=cancel, sink=sink) as run:
        downloads = step(
            3,
            TOTAL_STEPS,
            "Download clips",
            lambda: DownloadManager(run, settings.download).fetch_all(selected, run.work_dir),
        )
        local_clips = [clip for clip in downloads.values() if isinstance(clip, LocalClip)]
        if not local_clips:
            raise PipelineError(f"All {len(selected)} clip downloads failed.")
        if len(local_clips) < len(selected):
            logger.warning("Continuing with %s of %s clips after download failures", len(local_clips), len(selected))

        normalized = step(
            4,
            TOTAL_STEPS,
            "Normalize clips",
            lambda: NormalizationEngine(run, settings.encoder).normalize([clip.path for clip in local_clips], target),
        )
        ready_clips = [
            replace(
                local_clips[index],
                path=result.path,
                width=result.width,
                height=result.height,
                duration_seconds=result.duration_seconds,
            )
            for index, result in normalized.items()
            if result.ok and result.path is not None
        ]
        ready = [clip.path for clip in ready_clips]
        if not ready:
            raise PipelineError("No clip could be normalized to the target format.")
        if len(ready) < len(local_clips):
            logger.warning("Continuing with %s of %s clips after normalization failures", len(ready), len(local_clips))

        stage = ConcatenationStage(settings.encoder, cancel=cancel, sink=sink)
        result = step(5, TOTAL_STEPS, "Render final video", lambda: stage.concatenate(ready, output_path, target))
        if not result.success:
            reason = "timed out" if result.timed_out else f"exited with code {result.returncode}"
            raise ConcatenationFailed(f"Final render {reason}.", diagnostics=result.diagnostics)

        return PipelineSummary(
            search_term=term,
            output_path=str(result.output_path),
            candidate_count=len(candidates),
            selected_count=len(selected),
            selected_duration_seconds=total_duration(selected),
            downloaded_count=len(local_clips),
            normalized_count=len(ready),
            reencoded_count=sum(1 for item in normalized.values() if item.reencoded),
            bytes_downloaded=run.bytes_downloaded,
            encoder=result.encoder,
            measured_duration_seconds=round(sum(clip.duration_seconds or 0.0 for clip in ready_clips), 3),
        )


def _log_step(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    logger.info("[%s/%s] %s", step_index, total_steps, label)
    return work()
