import pytest

from lostfound_bot.errors import AuthorizationError, NotFoundError
from lostfound_bot.models import ListingStatus, ListingType, NewListing
from lostfound_bot.repositories.user_repository import normalize_phone


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+7 900 111-22-33", "+79001112233"),
        ("8 (900) 111-22-33", "+79001112233"),
        ("9001112233", "+79001112233"),
        ("+44 20 7946 0958", "+442079460958"),
        ("12345", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_ensure_keeps_known_phone(services):
    first = services.users.ensure("bob", "+7 900 111-22-33")

    again = services.users.ensure("bob")
    garbage = services.users.update_phone("bob", "call me")

    assert again.id == first.id
    assert again.phone == "+79001112233"
    assert garbage is None


def test_create_and_get_keep_photo_order(services):
    listing = services.listings.create(
        "author",
        NewListing(
            type=ListingType.LOST,
            category="keys",
            title="Lost: keys",
            description="",
            lat=None,
            lng=None,
            occurred_at=None,
            photos=["https://cdn.test/1.jpg", "https://cdn.test/2.jpg", "https://cdn.test/3.jpg", "extra"],
        ),
    )

    stored = services.listings.get(listing.id)

    assert stored.photos == ("https://cdn.test/1.jpg", "https://cdn.test/2.jpg", "https://cdn.test/3.jpg")
    assert stored.status == ListingStatus.ACTIVE


def test_update_fields_requires_author(services, make_listing):
    listing = make_listing("author", ListingType.LOST, "Lost: keys")

    with pytest.raises(AuthorizationError):
        services.listings.update_fields(listing.id, "stranger", title="Stolen title")
    with pytest.raises(NotFoundError):
        services.listings.update_fields("missing", "author", title="Whatever")

    updated = services.listings.update_fields(listing.id, "author", title="Lost: car keys", status="CLOSED")

    assert updated.title == "Lost: car keys"
    assert services.listings.get(listing.id).status == ListingStatus.ACTIVE


def test_match_candidates_filter_type_category_and_box(services, make_listing):
    lost = make_listing("a", ListingType.LOST, "Lost: keys")
    near = make_listing("b", ListingType.FOUND, "Found: keys")
    make_listing("b", ListingType.FOUND, "Found: keys far away", lat=56.5)
    make_listing("b", ListingType.FOUND, "Found: phone", category="electronics")
    make_listing("b", ListingType.LOST, "Lost: other keys")
    closed = make_listing("b", ListingType.FOUND, "Found: closed keys")
    services.listings.toggle_status(closed.id, "b")

    candidates = services.listings.match_candidates(lost, radius_km=5.0)

    assert [item.id for item in candidates] == [near.id]


def test_volunteer_candidates_without_location_are_newest_first(services, make_listing):
    older = make_listing("a", ListingType.LOST, "Lost: cat", category="pet")
    newer = make_listing("a", ListingType.LOST, "Lost: dog", category="pet")

    listed = services.listings.volunteer_candidates("pet")

    assert {item.id for item in listed} == {older.id, newer.id}
    assert all(item.distance_km is None for item in listed)


def test_assignment_is_unique(services, make_listing):
    listing = make_listing("a", ListingType.LOST, "Lost: cat", category="pet")

    assert services.listings.create_assignment(listing.id, "volunteer")
    assert not services.listings.create_assignment(listing.id, "volunteer")
    assert services.listings.find_assignment(listing.id, "volunteer")["volunteer_id"] == "volunteer"
