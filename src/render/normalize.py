from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from src.config import EncoderSettings
from src.errors import OperationCancelled
from src.ingest.probe import probe_video
from src.models import NormalizationResult, SelectionTarget
from src.progress import format_clock
from src.render.encoder import EncoderProfile, resolve_encoder_strategies, run_encoder
from src.runtime import PipelineRun, acquire_slot

logger = logging.getLogger(__name__)


def needs_normalization(width: int, height: int, target: SelectionTarget) -> bool:
    """True unless the clip's aspect ratio equals the target's exactly."""

    if width <= 0 or height <= 0:
        return True
    return width * target.height != height * target.width


def build_normalize_command(
    ffmpeg: str,
    source: Path,
    output: Path,
    target: SelectionTarget,
    profile: EncoderProfile,
    fps: int = 30,
) -> list[str]:
    width, height = target.width, target.height
    video_filter = (
        f"scale=w={width}:h={height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,"
        f"setsar=1,fps={fps}"
    )
    return [
        ffmpeg,
        "-hide_banner",
        "-y",
        "-i",
        str(source),
        "-vf",
        video_filter,
        *profile.args(),
        "-an",
        str(output),
    ]


class NormalizationEngine:
    """Bring downloaded clips to the target frame size in parallel."""

    def __init__(
        self,
        run: PipelineRun,
        settings: EncoderSettings | None = None,
        *,
        strategies: Sequence[EncoderProfile] | None = None,
    ) -> None:
        self.run = run
        self.settings = settings or EncoderSettings()
        self._strategies = list(strategies) if strategies is not None else None

    def normalize(
        self,
        paths: Sequence[Path],
        target: SelectionTarget,
        parallelism: int | None = None,
    ) -> dict[int, NormalizationResult]:
        """Normalize every path; the mapping is keyed by input index.

        A failing clip is reported in its own slot and never stops its
        siblings. Cancellation skips clips not yet started, kills running
        encoders and raises ``OperationCancelled`` once the batch has drained.
        """

        cancel = self.run.cancel
        cancel.raise_if_cancelled()
        if not paths:
            return {}

        strategies = self._resolve_strategies()
        workers = parallelism or self.settings.normalize_workers or self.run.resources.encode_slot_count
        total = len(paths)
        results: dict[int, NormalizationResult] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=max(min(workers, total), 1), thread_name_prefix="normalize") as pool:
            futures = {
                pool.submit(self._normalize_one, index, Path(path), target, strategies): index
                for index, path in enumerate(paths)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    result = future.result()
                except OperationCancelled:
                    cancelled = True
                    continue
                except (RuntimeError, OSError) as exc:
                    logger.warning("Clip %s failed: %s", index, exc)
                    result = NormalizationResult(index=index, source=Path(paths[index]), error=str(exc))
                results[index] = result
                processed = self.run.add_processed()
                self.run.sink.report(f"Normalized {len(results)} of {total} clips", len(results) / total * 100)
                logger.debug("Clip %s done (%s processed in run)", index, processed)

        if cancelled or cancel.cancelled:
            raise OperationCancelled("Normalization cancelled.")
        return dict(sorted(results.items()))

    def _resolve_strategies(self) -> list[EncoderProfile]:
        if self._strategies is None:
            self._strategies = resolve_encoder_strategies(
                self.settings.ffmpeg,
                self.settings.hardware_encoders,
                use_hardware=self.settings.use_hardware,
                timeout_seconds=self.settings.probe_timeout_seconds,
            )
        return self._strategies

    def _normalize_one(
        self,
        index: int,
        source: Path,
        target: SelectionTarget,
        strategies: Sequence[EncoderProfile],
    ) -> NormalizationResult:
        cancel = self.run.cancel
        cancel.raise_if_cancelled()

        with acquire_slot(self.run.resources.encode_slots, cancel):
            cancel.raise_if_cancelled()
            try:
                probe = probe_video(source, ffprobe=self.settings.ffprobe)
            except (RuntimeError, FileNotFoundError) as exc:
                logger.warning("Clip %s could not be probed: %s", index, exc)
                return NormalizationResult(index=index, source=source, error=str(exc))

            if not needs_normalization(probe.width, probe.height, target):
                logger.info("Clip %s is %sx%s; no re-encode needed", index, probe.width, probe.height)
                return NormalizationResult(
                    index=index,
                    source=source,
                    path=source,
                    width=probe.width,
                    height=probe.height,
                    duration_seconds=probe.duration_seconds,
                )

            output = source.with_name(f"{source.stem}_norm.mp4")
            failures: list[str] = []
            for profile in strategies:
                command = build_normalize_command(
                    self.settings.ffmpeg,
                    source,
                    output,
                    target,
                    profile,
                    fps=self.settings.output_fps,
                )

                def _report(position: float, clip_number: int = index + 1) -> None:
                    self.run.sink.report(f"Normalizing clip {clip_number}: {format_clock(position)} processed")

                try:
                    encoded = run_encoder(command, cancel=cancel, on_time=_report)
                    written = encoded.succeeded and output.exists() and output.stat().st_size > 0
                    if written:
                        source.unlink(missing_ok=True)
                except OperationCancelled:
                    output.unlink(missing_ok=True)
                    raise
                except (RuntimeError, OSError) as exc:
                    output.unlink(missing_ok=True)
                    logger.warning("Clip %s: %s could not run: %s", index, profile.codec, exc)
                    failures.append(f"{profile.codec}: {exc}")
                    continue

                if written:
                    logger.info("Clip %s re-encoded with %s", index, profile.codec)
                    return NormalizationResult(
                        index=index,
                        source=source,
                        path=output,
                        reencoded=True,
                        encoder=profile.codec,
                        width=target.width,
                        height=target.height,
                        duration_seconds=probe.duration_seconds,
                    )

                output.unlink(missing_ok=True)
                logger.warning(
                    "Clip %s: %s exited with %s%s",
                    index,
                    profile.codec,
                    encoded.returncode,
                    f"\n{encoded.diagnostics}" if encoded.diagnostics else "",
                )
                failures.append(f"{profile.codec} exited with {encoded.returncode}")

        return NormalizationResult(index=index, source=source, error="; ".join(failures) or "no encoder available")
