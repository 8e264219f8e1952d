"""Text rendering of stored listings."""

from __future__ import annotations

from typing import List

from ..models import Listing, ListingStatus, ListingType
from . import catalog, draft


def listing_card(listing: Listing) -> str:
    kind = "🆘 Lost" if listing.type == ListingType.LOST else "📦 Found"
    status = "active" if listing.status == ListingStatus.ACTIVE else "closed"
    lines: List[str] = [
        listing.title,
        f"{kind} · {catalog.category_title(listing.category)} · {status}",
        f"When: {draft.format_when(listing.occurred_at)}",
    ]
    if listing.distance_km is not None:
        lines.append(f"Distance: {listing.distance_km:.1f} km")
    if listing.photos:
        lines.append(f"Photos: {len(listing.photos)}")
    if listing.description:
        lines.extend(["", listing.description])
    return "\n".join(lines)


def listing_line(position: int, listing: Listing) -> str:
    line = f"{position}. {listing.title}"
    if listing.status != ListingStatus.ACTIVE:
        line += " (closed)"
    if listing.distance_km is not None:
        line += f" · {listing.distance_km:.1f} km"
    return line
