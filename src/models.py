from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

RESOLUTION_PRESETS: dict[str, tuple[int, int]] = {
    "1080p": (1920, 1080),
    "720p": (1280, 720),
    "480p": (854, 480),
}


@dataclass(frozen=True, slots=True)
class ClipCandidate:
    """One downloadable stock clip, identified by its file URL."""

    url: str
    duration_seconds: int
    width: int
    height: int
    fps: float
    file_size_bytes: int = 0
    source_id: int | None = None

    @property
    def is_vertical(self) -> bool:
        return self.height > self.width


@dataclass(frozen=True, slots=True)
class SelectionTarget:
    """Desired output duration and format."""

    duration_seconds: int
    width: int
    height: int
    fps: float = 30
    vertical: bool = False

    def __post_init__(self) -> None:
        if self.duration_seconds <= 0:
            raise ValueError("Target duration must be positive.")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Target width and height must be positive.")
        if self.vertical != (self.height > self.width):
            raise ValueError(
                f"Target {self.width}x{self.height} does not match orientation "
                f"{'vertical' if self.vertical else 'horizontal'}."
            )

    @classmethod
    def from_preset(
        cls,
        duration_seconds: int,
        resolution: str = "1080p",
        *,
        vertical: bool = False,
        fps: float = 30,
    ) -> SelectionTarget:
        try:
            width, height = RESOLUTION_PRESETS[resolution]
        except KeyError as exc:
            raise ValueError(
                f"Unknown resolution preset {resolution!r}; expected one of {sorted(RESOLUTION_PRESETS)}."
            ) from exc
        if vertical:
            width, height = height, width
        return cls(duration_seconds=duration_seconds, width=width, height=height, fps=fps, vertical=vertical)

    @property
    def size_label(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class LocalClip:
    """A candidate after download; measured fields are filled once normalized."""

    candidate: ClipCandidate
    path: Path
    size_bytes: int
    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True, slots=True)
class NormalizationResult:
    """Tagged per-index outcome of the normalization batch."""

    index: int
    source: Path
    path: Path | None = None
    reencoded: bool = False
    encoder: str | None = None
    error: str | None = None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.path is not None and self.error is None
