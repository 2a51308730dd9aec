"""Global duplicate detection over the whole catalog.

Tracks are bucketed by a normalized key (title, album, year, duration rounded
to the second). In every bucket with two or more members the best-quality
track becomes the primary and the rest point at it. Grouping and primary
selection depend only on current track data, so the pass is idempotent.
"""
from __future__ import annotations

import hashlib
import math
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .db import LibraryDB
from .formats import is_lossless, is_lossy
from .models import CLEARED, DuplicateFlags, DuplicateResult, Track


KEY_DELIMITER = "|"

TIER_LOSSLESS = 4
TIER_HIGH = 3  # >= 256 kbps
TIER_MID = 2  # 192..255 kbps
TIER_LOW = 1  # < 192 kbps
TIER_UNKNOWN = 0

HIGH_BITRATE_KBPS = 256
MID_BITRATE_KBPS = 192

# TIER_WEIGHT > MAX_BITRATE_TERM + MAX_SIZE_TERM, so the tier always dominates
TIER_WEIGHT = 100_000
MAX_BITRATE_TERM = 50_000
MAX_SIZE_BYTES = 10 ** 12
SIZE_SCALE = 10 ** 9


def round_half_up(seconds: float) -> int:
    """Round to the nearest whole second, halves upward (210.5 -> 211)."""
    return int(math.floor(seconds + 0.5))


def duplicate_key(track: Track) -> Optional[str]:
    """Normalized grouping key, or None when the track cannot be matched.

    Tracks without a title or with no measurable duration are never grouped;
    files indexed with placeholder metadata would otherwise collide.
    """
    title = (track.title or "").lower().strip()
    seconds = round_half_up(track.duration or 0.0)
    if not title or seconds <= 0:
        return None
    album = (track.album or "").lower().strip()
    year = (track.year or "").strip()
    return KEY_DELIMITER.join((title, album, year, str(seconds)))


def group_id_for(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def quality_tier(fmt: str, bitrate: int) -> int:
    if is_lossless(fmt):
        return TIER_LOSSLESS
    if not is_lossy(fmt):
        return TIER_UNKNOWN
    if bitrate >= HIGH_BITRATE_KBPS:
        return TIER_HIGH
    if bitrate >= MID_BITRATE_KBPS:
        return TIER_MID
    return TIER_LOW


def quality_score(track: Track) -> float:
    bitrate = max(0, track.bitrate or 0)
    size = max(0, track.file_size or 0)
    return (
        quality_tier(track.format, bitrate) * TIER_WEIGHT
        + min(bitrate, MAX_BITRATE_TERM)
        + min(size, MAX_SIZE_BYTES) / SIZE_SCALE
    )


def pick_primary(members: List[Track]) -> Track:
    # Exact score ties go to the lowest id
    return max(members, key=lambda t: (quality_score(t), -(t.id or 0)))


def plan_duplicates(tracks: Iterable[Track]) -> Dict[int, DuplicateFlags]:
    """Desired duplicate flags for every track (cleared flags for non-members)."""
    tracks = [t for t in tracks if t.id is not None]
    groups: Dict[str, List[Track]] = {}
    for t in tracks:
        key = duplicate_key(t)
        if key is not None:
            groups.setdefault(key, []).append(t)

    plan: Dict[int, DuplicateFlags] = {t.id: CLEARED for t in tracks}
    for key, members in groups.items():
        if len(members) < 2:
            continue
        gid = group_id_for(key)
        primary = pick_primary(members)
        plan[primary.id] = DuplicateFlags(False, None, gid)
        for t in members:
            if t.id != primary.id:
                plan[t.id] = DuplicateFlags(True, primary.id, gid)
    return plan


def _current_flags(track: Track) -> DuplicateFlags:
    return DuplicateFlags(bool(track.is_duplicate), track.primary_track_id, track.duplicate_group_id)


class DuplicateDetector:
    def __init__(self, db: LibraryDB) -> None:
        self.db = db

    def run(self) -> DuplicateResult:
        """Recompute duplicate flags for the whole catalog.

        Only changed rows are written, in a single transaction; a
        PersistenceFailure rolls everything back and propagates.
        """
        tracks = self.db.list_all_tracks()
        plan = plan_duplicates(tracks)

        changes = {t.id: plan[t.id] for t in tracks if t.id in plan and _current_flags(t) != plan[t.id]}
        self.db.apply_duplicate_flags(changes)

        groups: Dict[str, List[int]] = {}
        for track_id, flags in sorted(plan.items()):
            if flags.duplicate_group_id is None:
                continue
            members = groups.setdefault(flags.duplicate_group_id, [])
            if flags.is_duplicate:
                members.append(track_id)
            else:
                members.insert(0, track_id)

        result = DuplicateResult(
            groups_found=len(groups),
            tracks_marked_duplicate=sum(1 for f in plan.values() if f.is_duplicate),
            tracks_updated=len(changes),
            groups=groups,
        )
        logger.info(
            f"Duplicate detection: {result.groups_found} groups, "
            f"{result.tracks_marked_duplicate} duplicates, {result.tracks_updated} tracks updated"
        )
        return result
