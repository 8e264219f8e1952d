"""Publishes a finished draft and fans out the resulting notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from ..models import Listing, MatchCandidate, NewListing, NotificationStatus, NotificationType
from . import matching
from .bot_services import BotServices

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    listing: Listing
    matches: List[MatchCandidate]


class ListingPublisher:
    def __init__(self, services: BotServices) -> None:
        self._services = services

    def publish(self, author_id: str, draft: NewListing) -> PublishResult:
        listing = self._services.listings.create(author_id, draft)
        self._services.notifier.create(
            author_id,
            NotificationType.LISTING_PUBLISHED,
            listing_id=listing.id,
            title="Listing published",
            body=f"“{listing.title}” is now visible to other users.",
            payload={"listingId": listing.id, "listingTitle": listing.title, "listingType": listing.type},
        )
        matches = self.suggest_matches(listing)
        LOGGER.info("Listing id=%s has %d match suggestions", listing.id, len(matches))
        for match in matches:
            self._services.notifier.create(
                author_id,
                NotificationType.MATCH_FOUND,
                listing_id=match.id,
                title="Possible match",
                body=f"“{match.title}” looks similar to your listing (score {match.score}).",
                payload={
                    "originId": listing.id,
                    "originType": listing.type,
                    "targetId": match.id,
                    "targetTitle": match.title,
                    "score": match.score,
                },
                status=NotificationStatus.ACTION,
            )
        return PublishResult(listing=listing, matches=matches)

    def suggest_matches(self, listing: Listing) -> List[MatchCandidate]:
        if listing.lat is None or listing.lng is None:
            return []
        settings = self._services.settings
        candidates = self._services.listings.match_candidates(listing, settings.match_radius_km)
        return matching.rank_candidates(
            listing,
            candidates,
            min_score=settings.match_min_score,
            limit=settings.match_suggestions,
        )
