from __future__ import annotations

import threading

import pytest

from nex_registry.domain.models import PackageRecord
from nex_registry.services.ratings import (
    RatingAggregator,
    adjust_distribution,
    average_rating,
    distribution_from_ratings,
)


def _stored(db, package_id: str = "acme.hello") -> PackageRecord:
    return PackageRecord.model_validate(db.find_one("packages", {"id": package_id}))


@pytest.fixture
def aggregator(db) -> RatingAggregator:
    db.insert("packages", PackageRecord(id="acme.hello", name="Hello", version="1.0.0").to_document())
    return RatingAggregator(db)


def test_average_rating_rounds_half_up() -> None:
    # 2 * 5 + 1 * 4 + 1 * 2 = 16 / 4 = 4.0; 3 + 4 = 7 / 2 = 3.5; 1 + 1 + 2 = 4 / 3 = 1.33
    assert average_rating({5: 2, 4: 1, 2: 1}, 4) == 4.0
    assert average_rating({3: 1, 4: 1}, 2) == 3.5
    assert average_rating({1: 2, 2: 1}, 3) == 1.3
    assert average_rating({1: 1, 5: 1, 4: 1, 3: 1, 2: 0}, 4) == 3.3
    # 17 + 6 = 23 / 20 = 1.15, an exact tie in decimal
    assert average_rating({1: 17, 2: 3}, 20) == 1.2
    assert average_rating({}, 0) == 0


def test_adjust_distribution_cases() -> None:
    empty = {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}

    inserted, total = adjust_distribution(empty, 0, 4, None)
    assert inserted[4] == 1 and total == 1

    updated, total = adjust_distribution(inserted, 1, 2, 4)
    assert updated[4] == 0 and updated[2] == 1 and total == 1

    deleted, total = adjust_distribution(updated, 1, None, 2)
    assert deleted == empty and total == 0


def test_adjust_distribution_floors_at_zero_and_fills_missing_keys() -> None:
    distribution, total = adjust_distribution({}, 0, None, 3)

    assert distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}
    assert total == 0


def test_adjust_distribution_rejects_invalid_calls() -> None:
    with pytest.raises(ValueError):
        adjust_distribution({}, 0, None, None)
    with pytest.raises(ValueError):
        adjust_distribution({}, 0, 6, None)


def test_distribution_from_ratings_ignores_out_of_range() -> None:
    assert distribution_from_ratings([5, 5, 1, 0, 9]) == {1: 1, 2: 0, 3: 0, 4: 0, 5: 2}


def test_new_package_has_no_ratings(aggregator, db) -> None:
    pkg = _stored(db)
    assert pkg.total_ratings == 0
    assert pkg.average_rating == 0
    assert pkg.rating_distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}


def test_review_lifecycle_scenario(aggregator, db) -> None:
    aggregator.apply_rating_change("acme.hello", new_rating=5)
    assert (_stored(db).total_ratings, _stored(db).average_rating) == (1, 5.0)

    aggregator.apply_rating_change("acme.hello", new_rating=1)
    assert (_stored(db).total_ratings, _stored(db).average_rating) == (2, 3.0)

    aggregator.apply_rating_change("acme.hello", new_rating=3, old_rating=5)
    assert (_stored(db).total_ratings, _stored(db).average_rating) == (2, 2.0)

    aggregator.apply_rating_change("acme.hello", old_rating=1)
    pkg = _stored(db)
    assert (pkg.total_ratings, pkg.average_rating) == (1, 3.0)
    assert pkg.rating_distribution == {1: 0, 2: 0, 3: 1, 4: 0, 5: 0}


def test_distribution_persists_with_string_keys(aggregator, db) -> None:
    aggregator.apply_rating_change("acme.hello", new_rating=4)

    raw = db.find_one("packages", {"id": "acme.hello"})
    assert raw["ratingDistribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 0}
    assert raw["totalRatings"] == 1
    assert raw["averageRating"] == 4.0


def test_sparse_stored_distribution_is_tolerated(aggregator, db) -> None:
    doc = db.find_one("packages", {"id": "acme.hello"})
    doc["ratingDistribution"] = {"5": 1}
    doc["totalRatings"] = 1
    db.replace_one("packages", {"id": "acme.hello"}, doc)

    aggregator.apply_rating_change("acme.hello", new_rating=2)

    pkg = _stored(db)
    assert pkg.rating_distribution == {1: 0, 2: 1, 3: 0, 4: 0, 5: 1}
    assert pkg.average_rating == 3.5


def test_missing_package_is_a_silent_no_op(aggregator, db) -> None:
    aggregator.apply_rating_change("acme.ghost", new_rating=5)

    assert db.find_one("packages", {"id": "acme.ghost"}) is None
    assert db.count("packages") == 1


def test_missing_packages_leave_no_lock_entries(aggregator, db) -> None:
    for i in range(100):
        aggregator.apply_rating_change(f"acme.ghost{i}", new_rating=5)

    assert db._record_locks == {}


def test_rebuild_from_reviews_repairs_drift(aggregator, db) -> None:
    for user, rating in (("u1", 5), ("u2", 4)):
        db.insert("reviews", {"id": user, "packageId": "acme.hello", "userId": user, "rating": rating})
    aggregator.apply_rating_change("acme.hello", new_rating=1)

    pkg = aggregator.rebuild_from_reviews("acme.hello")

    assert pkg.total_ratings == 2
    assert pkg.average_rating == 4.5
    assert _stored(db).rating_distribution == {1: 0, 2: 0, 3: 0, 4: 1, 5: 1}
    assert aggregator.rebuild_from_reviews("acme.ghost") is None


def test_concurrent_rating_changes_are_not_lost(aggregator, db) -> None:
    ratings = [1, 2, 3, 4, 5] * 8
    errors = []

    def rate(value: int) -> None:
        try:
            aggregator.apply_rating_change("acme.hello", new_rating=value)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=rate, args=(value,)) for value in ratings]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    pkg = _stored(db)
    assert pkg.total_ratings == len(ratings)
    assert pkg.rating_distribution == {1: 8, 2: 8, 3: 8, 4: 8, 5: 8}
    assert pkg.average_rating == 3.0
