from __future__ import annotations

import pytest
from conftest import make_user

from nex_registry.domain.errors import PackageNotFoundError, ReviewNotFoundError
from nex_registry.domain.models import PackageRecord, ReviewRequest
from nex_registry.services.ratings import RatingAggregator
from nex_registry.services.reviews import ReviewService


@pytest.fixture
def service(db) -> ReviewService:
    db.insert("packages", PackageRecord(id="acme.hello", name="Hello", version="1.0.0").to_document())
    return ReviewService(db, RatingAggregator(db))


def _package(db) -> PackageRecord:
    return PackageRecord.model_validate(db.find_one("packages", {"id": "acme.hello"}))


def test_submit_creates_then_updates(service, db) -> None:
    alice = make_user("alice")

    review, updated = service.submit_review("acme.hello", alice, ReviewRequest(rating=5, title="Great"))
    assert updated is False
    assert review.username == "alice"

    again, updated = service.submit_review("acme.hello", alice, ReviewRequest(rating=3, comment="Changed my mind"))
    assert updated is True
    assert again.id == review.id
    assert again.title is None
    assert db.count("reviews") == 1

    pkg = _package(db)
    assert pkg.total_ratings == 1
    assert pkg.average_rating == 3.0


def test_second_user_does_not_disturb_first(service, db) -> None:
    service.submit_review("acme.hello", make_user("alice"), ReviewRequest(rating=5))
    service.submit_review("acme.hello", make_user("bob"), ReviewRequest(rating=1))

    alice_review = service.get_user_review("acme.hello", "id-alice")
    assert alice_review.rating == 5
    assert (_package(db).total_ratings, _package(db).average_rating) == (2, 3.0)


def test_submit_for_missing_package(service) -> None:
    with pytest.raises(PackageNotFoundError):
        service.submit_review("acme.ghost", make_user("alice"), ReviewRequest(rating=4))


def test_delete_review_updates_aggregate(service, db) -> None:
    alice = make_user("alice")
    service.submit_review("acme.hello", alice, ReviewRequest(rating=4))

    service.delete_review("acme.hello", alice)

    assert db.count("reviews") == 0
    assert (_package(db).total_ratings, _package(db).average_rating) == (0, 0)
    with pytest.raises(ReviewNotFoundError):
        service.delete_review("acme.hello", alice)


def test_list_reviews_sorting(service) -> None:
    for name, rating in (("alice", 2), ("bob", 5), ("carol", 4)):
        service.submit_review("acme.hello", make_user(name), ReviewRequest(rating=rating))

    high = service.list_reviews("acme.hello", sort="rating-high")
    low = service.list_reviews("acme.hello", sort="rating-low", limit=2)

    assert [r.rating for r in high] == [5, 4, 2]
    assert [r.rating for r in low] == [2, 4]


def test_vote_helpful(service) -> None:
    review, _ = service.submit_review("acme.hello", make_user("alice"), ReviewRequest(rating=4))

    service.vote_helpful("acme.hello", review.id, True)
    voted = service.vote_helpful("acme.hello", review.id, False)

    assert (voted.helpful, voted.not_helpful) == (1, 1)
    assert service.list_reviews("acme.hello", sort="helpful")[0].helpful == 1
    with pytest.raises(ReviewNotFoundError):
        service.vote_helpful("acme.other", review.id, True)


def test_review_request_validates_rating() -> None:
    with pytest.raises(ValueError):
        ReviewRequest(rating=6)
    with pytest.raises(ValueError):
        ReviewRequest(rating=0)
