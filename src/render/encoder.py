from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import IO

from src.errors import OperationCancelled
from src.runtime import CancellationToken

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
DEFAULT_POLL_SECONDS = 0.25
DEFAULT_TAIL_LINES = 40
KILL_WAIT_SECONDS = 5


@dataclass(frozen=True, slots=True)
class EncoderProfile:
    """Codec arguments for one encoding backend."""

    name: str
    codec: str
    options: tuple[str, ...] = ()
    hardware: bool = False

    def args(self) -> list[str]:
        return ["-c:v", self.codec, *self.options]


SOFTWARE_PROFILE = EncoderProfile(
    name="libx264",
    codec="libx264",
    options=("-preset", "fast", "-crf", "23", "-pix_fmt", "yuv420p"),
)

HARDWARE_PROFILES: dict[str, EncoderProfile] = {
    "h264_nvenc": EncoderProfile(
        name="NVENC",
        codec="h264_nvenc",
        options=("-preset", "p4", "-rc", "vbr", "-cq", "23", "-b:v", "0", "-pix_fmt", "yuv420p"),
        hardware=True,
    ),
    "h264_qsv": EncoderProfile(
        name="QSV",
        codec="h264_qsv",
        options=("-global_quality", "23", "-pix_fmt", "nv12"),
        hardware=True,
    ),
    "h264_amf": EncoderProfile(
        name="AMF",
        codec="h264_amf",
        options=("-quality", "balanced", "-rc", "cqp", "-qp_i", "23", "-qp_p", "23"),
        hardware=True,
    ),
    "h264_videotoolbox": EncoderProfile(
        name="VideoToolbox",
        codec="h264_videotoolbox",
        options=("-b:v", "8M"),
        hardware=True,
    ),
}


def hardware_profile(codec: str) -> EncoderProfile:
    return HARDWARE_PROFILES.get(codec) or EncoderProfile(name=codec, codec=codec, hardware=True)


@dataclass(slots=True)
class EncoderRun:
    """Outcome of one supervised ffmpeg invocation."""

    command: list[str]
    returncode: int | None
    output_tail: list[str] = field(default_factory=list)
    timed_out: bool = False
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def diagnostics(self) -> str:
        return "\n".join(self.output_tail)


def parse_progress_time(line: str) -> float | None:
    """Extract the ``time=HH:MM:SS.ff`` position from an ffmpeg status line."""

    match = TIME_PATTERN.search(line)
    if match is None:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def run_encoder(
    command: Sequence[str],
    *,
    cancel: CancellationToken | None = None,
    timeout_seconds: float | None = None,
    on_time: Callable[[float], None] | None = None,
    on_heartbeat: Callable[[float], None] | None = None,
    heartbeat_seconds: float = 5.0,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
) -> EncoderRun:
    """Run ffmpeg under supervision.

    The process is polled so that cancellation and the optional timeout can
    kill it. stderr is drained on a reader thread; its last lines are kept as
    diagnostics and every ``time=`` marker is forwarded to ``on_time``.
    ``on_heartbeat`` receives the elapsed wall time at ``heartbeat_seconds``
    intervals while the process is alive.
    """

    argv = [str(part) for part in command]
    logger.debug("Running encoder: %s", " ".join(argv))
    started_at = time.monotonic()
    try:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            f"{argv[0]} executable was not found. Install FFmpeg so it is available on PATH."
        ) from exc

    tail: deque[str] = deque(maxlen=DEFAULT_TAIL_LINES)
    reader = threading.Thread(target=_pump_stderr, args=(process.stderr, tail, on_time), daemon=True)
    reader.start()

    timed_out = False
    next_heartbeat = started_at + heartbeat_seconds
    try:
        while True:
            try:
                process.wait(timeout=poll_seconds)
                break
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if cancel is not None and cancel.cancelled:
                _kill(process)
                raise OperationCancelled(f"Cancelled while running {argv[0]}.")
            if timeout_seconds is not None and now - started_at >= timeout_seconds:
                logger.warning("Encoder exceeded %.0fs timeout; killing pid %s", timeout_seconds, process.pid)
                _kill(process)
                timed_out = True
                break
            if on_heartbeat is not None and now >= next_heartbeat:
                on_heartbeat(now - started_at)
                next_heartbeat = now + heartbeat_seconds
    finally:
        if process.poll() is None:
            _kill(process)
        reader.join(timeout=KILL_WAIT_SECONDS)
        if process.stderr is not None:
            process.stderr.close()

    return EncoderRun(
        command=argv,
        returncode=process.returncode,
        output_tail=list(tail),
        timed_out=timed_out,
        elapsed_seconds=time.monotonic() - started_at,
    )


def encoder_available(ffmpeg: str = "ffmpeg", timeout_seconds: int = 10) -> bool:
    """Capability probe: does ``ffmpeg -version`` start and exit cleanly."""

    try:
        completed = subprocess.run(
            [ffmpeg, "-version"],
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return completed.returncode == 0


def check_hardware_encoder(ffmpeg: str, codec: str, timeout_seconds: int = 10) -> bool:
    """Encode one second of synthetic video with ``codec`` and discard it."""

    command = [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "lavfi",
        "-i",
        "color=c=black:s=256x256:d=1",
        "-t",
        "1",
        *hardware_profile(codec).args(),
        "-f",
        "null",
        "-",
    ]
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout_seconds)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Hardware encoder %s probe failed: %s", codec, exc)
        return False
    if completed.returncode != 0:
        logger.debug("Hardware encoder %s unavailable: %s", codec, (completed.stderr or "").strip())
    return completed.returncode == 0


def probe_hardware_encoder(
    ffmpeg: str,
    candidates: Iterable[str],
    timeout_seconds: int = 10,
) -> EncoderProfile | None:
    """Return the first candidate codec that encodes successfully, in priority order."""

    for codec in candidates:
        if check_hardware_encoder(ffmpeg, codec, timeout_seconds=timeout_seconds):
            logger.info("Using hardware encoder %s", codec)
            return hardware_profile(codec)
    logger.info("No hardware encoder available; using %s", SOFTWARE_PROFILE.name)
    return None


def resolve_encoder_strategies(
    ffmpeg: str,
    hardware_candidates: Sequence[str],
    *,
    use_hardware: bool = True,
    timeout_seconds: int = 10,
) -> list[EncoderProfile]:
    """Ordered encoder profiles to try: probed hardware first, software last."""

    strategies: list[EncoderProfile] = []
    if use_hardware and hardware_candidates:
        found = probe_hardware_encoder(ffmpeg, hardware_candidates, timeout_seconds=timeout_seconds)
        if found is not None:
            strategies.append(found)
    strategies.append(SOFTWARE_PROFILE)
    return strategies


def _pump_stderr(
    stream: IO[str] | None,
    tail: deque[str],
    on_time: Callable[[float], None] | None,
) -> None:
    if stream is None:
        return
    for raw_line in stream:
        line = raw_line.strip()
        if not line:
            continue
        tail.append(line)
        if on_time is None:
            continue
        position = parse_progress_time(line)
        if position is not None:
            on_time(position)


def _kill(process: subprocess.Popen[str]) -> None:
    process.kill()
    try:
        process.wait(timeout=KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.error("Encoder pid %s did not exit after kill", process.pid)
