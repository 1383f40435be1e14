from __future__ import annotations

import http.client
import json
import logging
from typing import Any
from urllib import parse, request
from urllib.error import HTTPError, URLError

from src.config import CatalogSettings
from src.errors import SearchError
from src.models import ClipCandidate, SelectionTarget
from src.runtime import CancellationToken

logger = logging.getLogger(__name__)

USER_AGENT = "stockreel/0.1"
MIN_CLIP_SECONDS = 3
MAX_CLIP_FLOOR_SECONDS = 60
RESOLUTION_TOLERANCE = 0.10

# Landscape form; swapped for vertical targets.
ACCEPTED_RESOLUTIONS: dict[tuple[int, int], set[tuple[int, int]]] = {
    (3840, 2160): {(3840, 2160), (4096, 2160)},
    (1920, 1080): {(1920, 1080), (2048, 1080)},
    (1280, 720): {(1280, 720), (1366, 720)},
    (854, 480): {(854, 480), (960, 540), (640, 480)},
}

ACCEPTED_FRAME_RATES: dict[float, set[float]] = {
    24: {23.976, 24, 25},
    25: {24, 25},
    30: {24, 25, 29.97, 30},
    50: {50},
    60: {50, 59.94, 60},
}


def search_clips(
    term: str,
    target: SelectionTarget,
    *,
    settings: CatalogSettings | None = None,
    cancel: CancellationToken | None = None,
) -> list[ClipCandidate]:
    """Query the catalog page by page and return acceptable candidates.

    Stops early once ``min_candidates`` have been collected. A page that
    fails is logged and skipped; ``SearchError`` is raised only when no page
    could be fetched at all. Cancellation aborts the whole search.
    """

    settings = settings or CatalogSettings()
    if not term.strip():
        raise ValueError("Search term must not be empty.")

    candidates: list[ClipCandidate] = []
    seen_urls: set[str] = set()
    pages_fetched = 0
    last_error: SearchError | None = None

    for page in range(1, max(settings.max_pages, 1) + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()

        try:
            payload = _request_page(
                endpoint=settings.endpoint,
                api_key=settings.api_key,
                term=term,
                page=page,
                page_size=settings.page_size,
                timeout_seconds=settings.timeout_seconds,
            )
        except SearchError as exc:
            logger.warning("Catalog page %s for %r skipped: %s", page, term, exc)
            last_error = exc
            continue

        pages_fetched += 1
        entries = payload.get("videos") or []
        for entry in entries:
            if cancel is not None:
                cancel.raise_if_cancelled()
            candidate = candidate_from_entry(entry, target, max_file_size_bytes=settings.max_file_size_bytes)
            if candidate is None or candidate.url in seen_urls:
                continue
            seen_urls.add(candidate.url)
            candidates.append(candidate)

        logger.info("Catalog page %s for %r: %s entries, %s accepted so far", page, term, len(entries), len(candidates))

        if len(candidates) >= settings.min_candidates:
            break
        if not payload.get("next_page") or len(entries) < settings.page_size:
            break

    if pages_fetched == 0 and last_error is not None:
        raise SearchError(f"No catalog page for {term!r} could be fetched: {last_error}") from last_error
    return candidates


def candidate_from_entry(
    entry: dict[str, Any],
    target: SelectionTarget,
    *,
    max_file_size_bytes: int = 1024**3,
) -> ClipCandidate | None:
    try:
        duration = int(entry.get("duration") or 0)
    except (TypeError, ValueError):
        return None

    max_duration = max(MAX_CLIP_FLOOR_SECONDS, target.duration_seconds / 2)
    if duration < MIN_CLIP_SECONDS or duration > max_duration:
        return None

    best = pick_best_file(entry.get("video_files") or [], target, max_file_size_bytes=max_file_size_bytes)
    if best is None:
        return None

    width = int(best["width"])
    height = int(best["height"])
    if (height > width) != target.vertical:
        return None

    return ClipCandidate(
        url=str(best["link"]),
        duration_seconds=duration,
        width=width,
        height=height,
        fps=float(best.get("fps") or 0.0),
        file_size_bytes=_file_size(best),
        source_id=entry.get("id"),
    )


def pick_best_file(
    files: list[dict[str, Any]],
    target: SelectionTarget,
    *,
    max_file_size_bytes: int = 1024**3,
) -> dict[str, Any] | None:
    """Highest-width variant passing resolution, frame-rate and size checks; smaller file wins ties."""

    best: dict[str, Any] | None = None
    for video_file in files:
        try:
            width = int(video_file.get("width") or 0)
            height = int(video_file.get("height") or 0)
        except (TypeError, ValueError):
            continue
        if not video_file.get("link") or width <= 0 or height <= 0:
            continue
        if not resolution_matches(width, height, target):
            continue
        if not frame_rate_matches(video_file.get("fps"), target.fps):
            continue
        size = _file_size(video_file)
        if size >= max_file_size_bytes:
            continue

        if best is None:
            best = video_file
            continue
        best_width = int(best["width"])
        if width > best_width or (width == best_width and size < _file_size(best)):
            best = video_file

    return best


def resolution_matches(width: int, height: int, target: SelectionTarget) -> bool:
    if (width, height) in accepted_resolutions(target):
        return True
    return (
        abs(width - target.width) <= RESOLUTION_TOLERANCE * target.width
        and abs(height - target.height) <= RESOLUTION_TOLERANCE * target.height
    )


def accepted_resolutions(target: SelectionTarget) -> set[tuple[int, int]]:
    landscape = (max(target.width, target.height), min(target.width, target.height))
    accepted = set(ACCEPTED_RESOLUTIONS.get(landscape, set())) | {landscape}
    if target.vertical:
        return {(height, width) for width, height in accepted}
    return accepted


def frame_rate_matches(fps: Any, target_fps: float) -> bool:
    try:
        value = round(float(fps), 3)
    except (TypeError, ValueError):
        return False
    if value <= 0:
        return False
    if value == round(float(target_fps), 3):
        return True
    near_matches = ACCEPTED_FRAME_RATES.get(float(target_fps), set())
    return any(abs(value - rate) < 0.01 for rate in near_matches)


def _file_size(video_file: dict[str, Any]) -> int:
    try:
        return int(video_file.get("file_size") or video_file.get("size") or 0)
    except (TypeError, ValueError):
        return 0


def _request_page(
    *,
    endpoint: str,
    api_key: str,
    term: str,
    page: int,
    page_size: int,
    timeout_seconds: int,
) -> dict[str, Any]:
    query = parse.urlencode({"query": term, "per_page": page_size, "page": page})
    req = request.Request(
        f"{endpoint}?{query}",
        method="GET",
        headers={"Authorization": api_key, "User-Agent": USER_AGENT},
    )
    logger.debug("GET %s", req.full_url)

    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except HTTPError as exc:
        raise SearchError(f"catalog returned HTTP {exc.code} for page {page}") from exc
    except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
        raise SearchError(f"catalog request for page {page} failed: {exc}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SearchError(f"catalog page {page} returned invalid JSON") from exc

    if not isinstance(payload, dict):
        raise SearchError(f"catalog page {page} returned unexpected payload")
    return payload
