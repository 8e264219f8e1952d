"""Scoring of LOST/FOUND listing pairs."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import List, Optional, Set

from ..models import Listing, ListingType, MatchCandidate

EARTH_RADIUS_KM = 6371.0

_TOKEN_SPLIT = re.compile(r"[^a-zа-яё0-9]+")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def _tokens(text: Optional[str]) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split((text or "").lower()) if token]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def score(lost: Listing, found: Listing) -> int:
    """Scores a pair in ``[0, 100]``.

    Same category gives 25, time proximity up to 20 (one point lost per six
    hours apart), distance up to 30 (300 m, 1 km, 3 km tiers) and shared title
    words 5 each up to 25.
    """

    total = 0
    if lost.category == found.category:
        total += 25

    lost_time = _parse_time(lost.occurred_at or lost.created_at)
    found_time = _parse_time(found.occurred_at or found.created_at)
    if lost_time and found_time:
        hours = abs((lost_time - found_time).total_seconds()) / 3600
        total += max(0, 20 - min(20, math.floor(hours / 6)))

    if None not in (lost.lat, lost.lng, found.lat, found.lng):
        distance = haversine_km(lost.lat, lost.lng, found.lat, found.lng)
        if distance <= 0.3:
            total += 30
        elif distance <= 1:
            total += 20
        elif distance <= 3:
            total += 10

    lost_tokens: Set[str] = set(_tokens(lost.title))
    shared = [token for token in _tokens(found.title) if token in lost_tokens]
    total += min(25, len(shared) * 5)

    return min(100, total)


def rank_candidates(
    listing: Listing,
    candidates: List[Listing],
    *,
    min_score: int = 50,
    limit: int = 3,
) -> List[MatchCandidate]:
    """Scores ``listing`` against opposite-type candidates, best first."""

    scored: List[MatchCandidate] = []
    for candidate in candidates:
        if listing.type == ListingType.LOST:
            value = score(listing, candidate)
        else:
            value = score(candidate, listing)
        if value >= min_score:
            scored.append(MatchCandidate(id=candidate.id, title=candidate.title, score=value))
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored[:limit]
