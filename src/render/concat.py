from __future__ import annotations

import logging
import math
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from src.config import EncoderSettings
from src.errors import NoValidInputs, OperationCancelled
from src.ingest.probe import probe_video
from src.models import SelectionTarget
from src.progress import NullProgressSink, ProgressSink, format_clock
from src.render.encoder import SOFTWARE_PROFILE, EncoderProfile, probe_hardware_encoder, run_encoder
from src.runtime import CancellationToken

logger = logging.getLogger(__name__)

MIN_TIMEOUT_MINUTES = 5
TIMEOUT_MINUTES_PER_MINUTE = 2


@dataclass(slots=True)
class ConcatResult:
    """Outcome of one concatenation; ``success`` is the stage's flag."""

    success: bool
    output_path: Path
    encoder: str
    inputs: list[Path] = field(default_factory=list)
    total_duration_seconds: float = 0.0
    returncode: int | None = None
    timed_out: bool = False
    diagnostics: str = ""


def concat_timeout_seconds(total_duration_seconds: float) -> float:
    minutes = max(MIN_TIMEOUT_MINUTES, math.ceil(total_duration_seconds / 60 * TIMEOUT_MINUTES_PER_MINUTE))
    return float(minutes * 60)


def escape_manifest_path(path: Path | str) -> str:
    return str(path).replace("'", "'\\''")


def write_manifest(paths: Sequence[Path], manifest_path: Path) -> Path:
    lines = [f"file '{escape_manifest_path(Path(path).resolve())}'" for path in paths]
    manifest_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest_path


def build_concat_command(
    ffmpeg: str,
    manifest_path: Path,
    output_path: Path,
    target: SelectionTarget,
    profile: EncoderProfile,
) -> list[str]:
    return [
        ffmpeg,
        "-hide_banner",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(manifest_path),
        "-vf",
        f"scale={target.width}:{target.height},setsar=1",
        *profile.args(),
        "-an",
        "-movflags",
        "+faststart",
        str(output_path),
    ]


class ConcatenationStage:
    """Join normalized clips into the final output with one supervised ffmpeg run."""

    def __init__(
        self,
        settings: EncoderSettings | None = None,
        *,
        cancel: CancellationToken | None = None,
        sink: ProgressSink | None = None,
        encoder: EncoderProfile | None = None,
    ) -> None:
        self.settings = settings or EncoderSettings()
        self.cancel = cancel or CancellationToken()
        self.sink = sink or NullProgressSink()
        self._encoder = encoder

    def select_encoder(self) -> EncoderProfile:
        if self._encoder is not None:
            return self._encoder
        if self.settings.use_hardware:
            found = probe_hardware_encoder(
                self.settings.ffmpeg,
                self.settings.hardware_encoders,
                timeout_seconds=self.settings.probe_timeout_seconds,
            )
            if found is not None:
                return found
        return SOFTWARE_PROFILE

    def concatenate(self, paths: Sequence[Path], output_path: Path, target: SelectionTarget) -> ConcatResult:
        self.cancel.raise_if_cancelled()
        inputs, total_duration = self._valid_inputs(paths)
        if not inputs:
            raise NoValidInputs(f"None of the {len(paths)} input clip(s) can be concatenated.")

        profile = self.select_encoder()
        self.cancel.raise_if_cancelled()

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        timeout_seconds = concat_timeout_seconds(total_duration)
        position = {"seconds": 0.0}

        def _on_time(seconds: float) -> None:
            position["seconds"] = seconds

        def _on_heartbeat(elapsed: float) -> None:
            done = position["seconds"]
            percent = min(done / total_duration * 100, 100.0) if total_duration > 0 else None
            self.sink.report(
                f"Rendering final video: {format_clock(done)} of {format_clock(total_duration)} "
                f"encoded ({format_clock(elapsed)} elapsed)",
                percent,
            )

        logger.info(
            "Concatenating %s clip(s), %.1fs total, with %s (timeout %.0fs)",
            len(inputs),
            total_duration,
            profile.codec,
            timeout_seconds,
        )
        manifest_dir = Path(tempfile.mkdtemp(prefix="stockreel_concat_"))
        try:
            manifest = write_manifest(inputs, manifest_dir / "inputs.txt")
            command = build_concat_command(self.settings.ffmpeg, manifest, output_path, target, profile)
            encoded = run_encoder(
                command,
                cancel=self.cancel,
                timeout_seconds=timeout_seconds,
                on_time=_on_time,
                on_heartbeat=_on_heartbeat,
                heartbeat_seconds=self.settings.progress_interval_seconds,
            )
        except OperationCancelled:
            output_path.unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(manifest_dir, ignore_errors=True)

        success = encoded.succeeded and output_path.exists()
        if not success:
            output_path.unlink(missing_ok=True)
            reason = "timed out" if encoded.timed_out else f"exited with {encoded.returncode}"
            logger.error("Concatenation %s%s", reason, f"\n{encoded.diagnostics}" if encoded.diagnostics else "")

        return ConcatResult(
            success=success,
            output_path=output_path,
            encoder=profile.codec,
            inputs=inputs,
            total_duration_seconds=total_duration,
            returncode=encoded.returncode,
            timed_out=encoded.timed_out,
            diagnostics=encoded.diagnostics,
        )

    def _valid_inputs(self, paths: Sequence[Path]) -> tuple[list[Path], float]:
        inputs: list[Path] = []
        total = 0.0
        for raw_path in paths:
            self.cancel.raise_if_cancelled()
            path = Path(raw_path)
            if not path.exists():
                logger.warning("Skipping missing concat input %s", path)
                continue
            try:
                duration = probe_video(path, ffprobe=self.settings.ffprobe).duration_seconds
            except (RuntimeError, FileNotFoundError) as exc:
                logger.warning("Skipping unreadable concat input %s: %s", path, exc)
                continue
            if duration <= 0:
                logger.warning("Skipping zero-length concat input %s", path)
                continue
            inputs.append(path)
            total += duration
        return inputs, total
