from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from src.config import EncoderSettings
from src.errors import OperationCancelled
from src.ingest.probe import VideoProbe
from src.models import SelectionTarget
from src.render import normalize
from src.render.encoder import SOFTWARE_PROFILE, EncoderRun, hardware_profile
from src.render.normalize import NormalizationEngine, build_normalize_command, needs_normalization
from src.runtime import PipelineRun, ResourcePool

TARGET = SelectionTarget(duration_seconds=60, width=1920, height=1080)
NVENC = hardware_profile("h264_nvenc")


def _write_clip(directory: Path, name: str) -> Path:
    path = directory / name
    path.write_bytes(b"source")
    return path


def _fake_probe(sizes: dict[str, tuple[int, int]]) -> Any:
    def _probe(path: Path, ffprobe: str = "ffprobe") -> VideoProbe:
        width, height = sizes[Path(path).name]
        return VideoProbe(path=Path(path), width=width, height=height, duration_seconds=8.0, fps=30.0)

    return _probe


def _fake_encoder(failing_codecs: set[str], calls: list[list[str]]) -> Any:
    def _run(command: list[str], **kwargs: Any) -> EncoderRun:
        calls.append(list(command))
        codec = command[command.index("-c:v") + 1]
        if codec in failing_codecs:
            return EncoderRun(command=list(command), returncode=1, output_tail=[f"{codec} init failed"])
        Path(command[-1]).write_bytes(b"encoded")
        return EncoderRun(command=list(command), returncode=0)

    return _run


def _engine(tmp_path: Path, strategies: list[Any] | None = None) -> NormalizationEngine:
    run = PipelineRun(work_dir=tmp_path, resources=ResourcePool(encode_slots=2))
    return NormalizationEngine(run, EncoderSettings(), strategies=strategies or [SOFTWARE_PROFILE])


def test_needs_normalization_compares_aspect_ratio_exactly() -> None:
    assert not needs_normalization(1920, 1080, TARGET)
    assert not needs_normalization(1280, 720, TARGET)
    assert needs_normalization(1440, 1080, TARGET)
    assert needs_normalization(2048, 1080, TARGET)
    assert needs_normalization(0, 1080, TARGET)


def test_normalize_command_letterboxes_to_target() -> None:
    command = build_normalize_command("ffmpeg", Path("in.mp4"), Path("out.mp4"), TARGET, SOFTWARE_PROFILE, fps=30)

    video_filter = command[command.index("-vf") + 1]
    assert "scale=w=1920:h=1080:force_original_aspect_ratio=decrease" in video_filter
    assert "pad=1920:1080:(ow-iw)/2:(oh-ih)/2" in video_filter
    assert video_filter.endswith("setsar=1,fps=30")
    assert command[-2:] == ["-an", "out.mp4"]
    assert "libx264" in command


def test_matching_aspect_ratio_passes_through(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _write_clip(tmp_path, "clip_0.mp4")
    calls: list[list[str]] = []
    monkeypatch.setattr(normalize, "probe_video", _fake_probe({"clip_0.mp4": (1280, 720)}))
    monkeypatch.setattr(normalize, "run_encoder", _fake_encoder(set(), calls))

    results = _engine(tmp_path).normalize([source], TARGET)

    assert results[0].ok
    assert results[0].path == source
    assert not results[0].reencoded
    assert calls == []
    assert source.exists()


def test_hardware_failure_falls_back_to_software(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _write_clip(tmp_path, "clip_0.mp4")
    calls: list[list[str]] = []
    monkeypatch.setattr(normalize, "probe_video", _fake_probe({"clip_0.mp4": (1440, 1080)}))
    monkeypatch.setattr(normalize, "run_encoder", _fake_encoder({"h264_nvenc"}, calls))

    results = _engine(tmp_path, strategies=[NVENC, SOFTWARE_PROFILE]).normalize([source], TARGET)

    result = results[0]
    assert result.ok
    assert result.reencoded
    assert result.encoder == "libx264"
    assert result.path == tmp_path / "clip_0_norm.mp4"
    assert result.path.read_bytes() == b"encoded"
    assert not source.exists()
    assert [command[command.index("-c:v") + 1] for command in calls] == ["h264_nvenc", "libx264"]


def test_failed_clip_does_not_stop_siblings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    paths = [_write_clip(tmp_path, f"clip_{i}.mp4") for i in range(3)]

    def _probe(path: Path, ffprobe: str = "ffprobe") -> VideoProbe:
        if Path(path).name == "clip_1.mp4":
            raise RuntimeError("ffprobe failed while probing media file")
        return VideoProbe(path=Path(path), width=1440, height=1080, duration_seconds=8.0, fps=25.0)

    calls: list[list[str]] = []
    monkeypatch.setattr(normalize, "probe_video", _probe)
    monkeypatch.setattr(normalize, "run_encoder", _fake_encoder(set(), calls))

    results = _engine(tmp_path).normalize(paths, TARGET)

    assert list(results) == [0, 1, 2]
    assert results[0].ok and results[2].ok
    assert not results[1].ok
    assert "ffprobe failed" in (results[1].error or "")
    assert paths[1].exists()


def test_every_encoder_failing_reports_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _write_clip(tmp_path, "clip_0.mp4")
    calls: list[list[str]] = []
    monkeypatch.setattr(normalize, "probe_video", _fake_probe({"clip_0.mp4": (1080, 1080)}))
    monkeypatch.setattr(normalize, "run_encoder", _fake_encoder({"h264_nvenc", "libx264"}, calls))

    results = _engine(tmp_path, strategies=[NVENC, SOFTWARE_PROFILE]).normalize([source], TARGET)

    assert not results[0].ok
    assert results[0].error == "h264_nvenc exited with 1; libx264 exited with 1"
    assert source.exists()
    assert not (tmp_path / "clip_0_norm.mp4").exists()


def test_cancelled_run_does_not_start(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _write_clip(tmp_path, "clip_0.mp4")
    engine = _engine(tmp_path)
    engine.run.cancel.cancel()
    monkeypatch.setattr(normalize, "probe_video", lambda *args, **kwargs: pytest.fail("probe should not run"))

    with pytest.raises(OperationCancelled):
        engine.normalize([source], TARGET)


def test_cancellation_mid_encode_removes_partial_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _write_clip(tmp_path, "clip_0.mp4")
    engine = _engine(tmp_path)

    def _cancelling_encoder(command: list[str], **kwargs: Any) -> EncoderRun:
        Path(command[-1]).write_bytes(b"partial")
        engine.run.cancel.cancel()
        raise OperationCancelled("Cancelled while running ffmpeg.")

    monkeypatch.setattr(normalize, "probe_video", _fake_probe({"clip_0.mp4": (1440, 1080)}))
    monkeypatch.setattr(normalize, "run_encoder", _cancelling_encoder)

    with pytest.raises(OperationCancelled):
        engine.normalize([source], TARGET)

    assert not (tmp_path / "clip_0_norm.mp4").exists()
    assert source.exists()


def test_strategies_are_probed_once_per_engine(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    probes: list[str] = []

    def _resolve(ffmpeg: str, candidates: list[str], **kwargs: Any) -> list[Any]:
        probes.append(ffmpeg)
        return [SOFTWARE_PROFILE]

    paths = [_write_clip(tmp_path, f"clip_{i}.mp4") for i in range(2)]
    monkeypatch.setattr(normalize, "resolve_encoder_strategies", _resolve)
    monkeypatch.setattr(
        normalize,
        "probe_video",
        _fake_probe({"clip_0.mp4": (1920, 1080), "clip_1.mp4": (1920, 1080)}),
    )
    run = PipelineRun(work_dir=tmp_path, resources=ResourcePool())
    engine = NormalizationEngine(run, EncoderSettings())

    engine.normalize(paths[:1], TARGET)
    engine.normalize(paths[1:], TARGET)

    assert probes == ["ffmpeg"]
    assert run.clips_processed == 2


def test_missing_encoder_binary_is_recorded_per_clip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    paths = [_write_clip(tmp_path, f"clip_{i}.mp4") for i in range(3)]
    sizes = {"clip_0.mp4": (640, 480), "clip_1.mp4": (1920, 1080), "clip_2.mp4": (1280, 720)}

    def _missing_binary(command: list[str], **kwargs: Any) -> EncoderRun:
        Path(command[-1]).write_bytes(b"partial")
        raise RuntimeError(f"{command[0]} executable was not found")

    monkeypatch.setattr(normalize, "probe_video", _fake_probe(sizes))
    monkeypatch.setattr(normalize, "run_encoder", _missing_binary)
    run = PipelineRun(work_dir=tmp_path, resources=ResourcePool(encode_slots=2))
    engine = NormalizationEngine(run, EncoderSettings(ffmpeg="/nonexistent/ffmpeg"), strategies=[SOFTWARE_PROFILE])

    results = engine.normalize(paths, TARGET)

    assert list(results) == [0, 1, 2]
    assert not results[0].ok
    assert results[0].error == "libx264: /nonexistent/ffmpeg executable was not found"
    assert results[1].ok and results[2].ok
    assert paths[0].exists()
    assert not (tmp_path / "clip_0_norm.mp4").exists()


def test_results_carry_measured_format(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    paths = [_write_clip(tmp_path, f"clip_{i}.mp4") for i in range(2)]
    calls: list[list[str]] = []
    monkeypatch.setattr(normalize, "probe_video", _fake_probe({"clip_0.mp4": (1280, 720), "clip_1.mp4": (1440, 1080)}))
    monkeypatch.setattr(normalize, "run_encoder", _fake_encoder(set(), calls))

    results = _engine(tmp_path).normalize(paths, TARGET)

    assert (results[0].width, results[0].height, results[0].duration_seconds) == (1280, 720, 8.0)
    assert (results[1].width, results[1].height, results[1].duration_seconds) == (1920, 1080, 8.0)
    assert results[1].reencoded
