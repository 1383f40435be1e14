from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Sequence

from src.models import ClipCandidate, SelectionTarget

logger = logging.getLogger(__name__)

EXACT_FORMAT_FPS = 30
EXACT_POOL_MIN_SIZE = 3

# Primary pass.
PRIMARY_CLIP_CAP_SECONDS = 60
PRIMARY_CLIP_DIVISOR = 3
PRIMARY_CEILING_RATIO = 1.10
MIN_CLIP_COUNT_CAP = 10
CLIP_COUNT_DIVISOR = 15

# Top-up pass.
TOPUP_MIN_CLIPS = 2
TOPUP_TRIGGER_RATIO = 0.8
TOPUP_CLIP_CAP_SECONDS = 30
TOPUP_CLIP_DIVISOR = 4
TOPUP_CEILING_RATIO = 1.15
TOPUP_STOP_RATIO = 0.9


def select_clips(
    candidates: Iterable[ClipCandidate],
    target: SelectionTarget,
    *,
    rng: random.Random | None = None,
) -> list[ClipCandidate]:
    """Pick an ordered, duplicate-free subset whose durations approach the target.

    The pool is shuffled first. A greedy primary pass
    prefers the exact-format pool when it holds at least three clips; a looser
    top-up pass over the whole pool runs when the primary pass came up short.
    An empty result means no suitable clips.
    """

    rng = rng or random.Random()
    pool = list(candidates)
    rng.shuffle(pool)

    goal = target.duration_seconds
    exact_pool = [
        candidate
        for candidate in pool
        if candidate.width == target.width
        and candidate.height == target.height
        and candidate.fps == EXACT_FORMAT_FPS
    ]
    primary_pool = exact_pool if len(exact_pool) >= EXACT_POOL_MIN_SIZE else pool

    selected: list[ClipCandidate] = []
    seen_urls: set[str] = set()
    total = 0

    clip_cap = min(PRIMARY_CLIP_CAP_SECONDS, goal / PRIMARY_CLIP_DIVISOR)
    ceiling = PRIMARY_CEILING_RATIO * goal
    max_count = max(MIN_CLIP_COUNT_CAP, goal / CLIP_COUNT_DIVISOR)

    for candidate in primary_pool:
        if total >= goal or len(selected) >= max_count:
            break
        if not _acceptable(candidate, target, seen_urls, total, clip_cap, ceiling):
            continue
        selected.append(candidate)
        seen_urls.add(candidate.url)
        total += candidate.duration_seconds

    if len(selected) < TOPUP_MIN_CLIPS or total < TOPUP_TRIGGER_RATIO * goal:
        topup_cap = min(TOPUP_CLIP_CAP_SECONDS, goal / TOPUP_CLIP_DIVISOR)
        topup_ceiling = TOPUP_CEILING_RATIO * goal
        stop_at = TOPUP_STOP_RATIO * goal
        before = len(selected)
        for candidate in pool:
            if total >= stop_at:
                break
            if not _acceptable(candidate, target, seen_urls, total, topup_cap, topup_ceiling):
                continue
            selected.append(candidate)
            seen_urls.add(candidate.url)
            total += candidate.duration_seconds
        logger.debug("Top-up pass added %s clip(s)", len(selected) - before)

    logger.info(
        "Selected %s of %s candidates totalling %ss for a %ss target",
        len(selected),
        len(pool),
        total,
        goal,
    )
    return selected


def total_duration(clips: Sequence[ClipCandidate]) -> int:
    return sum(clip.duration_seconds for clip in clips)


def _acceptable(
    candidate: ClipCandidate,
    target: SelectionTarget,
    seen_urls: set[str],
    total: int,
    clip_cap: float,
    ceiling: float,
) -> bool:
    if candidate.url in seen_urls:
        return False
    if candidate.duration_seconds > clip_cap:
        return False
    if candidate.is_vertical != target.vertical:
        return False
    return total + candidate.duration_seconds <= ceiling
