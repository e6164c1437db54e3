"""
Rating aggregation: maintains each package's 1..5 star histogram together
with the derived review count and average.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional, Tuple

from nex_registry.domain.models import STAR_VALUES, PackageRecord, empty_rating_distribution
from nex_registry.storage.db_manager import DatabaseManager

logger = logging.getLogger(__name__)

PACKAGES = "packages"
REVIEWS = "reviews"


def average_rating(distribution: Dict[int, int], total: int) -> float:
    """
    Mean star value rounded half-up to one decimal place, or 0 with no ratings.
    """
    if total <= 0:
        return 0
    stars = sum(star * distribution.get(star, 0) for star in STAR_VALUES)
    mean = (Decimal(stars) / Decimal(total)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return float(mean)


def adjust_distribution(
    distribution: Dict[int, int],
    total: int,
    new_rating: Optional[int],
    old_rating: Optional[int],
) -> Tuple[Dict[int, int], int]:
    """
    Apply one review insert, update or delete to a histogram.

    ``(None, old)`` is a delete, ``(new, None)`` an insert and ``(new, old)``
    an update. Counts never drop below zero.
    """
    if new_rating is None and old_rating is None:
        raise ValueError("A rating change needs a new rating, an old rating, or both")
    for rating in (new_rating, old_rating):
        if rating is not None and rating not in STAR_VALUES:
            raise ValueError(f"Rating must be between 1 and 5, got {rating}")

    result = empty_rating_distribution()
    for star in STAR_VALUES:
        result[star] = distribution.get(star, 0) or 0

    if old_rating is not None:
        result[old_rating] = max(0, result[old_rating] - 1)
        if new_rating is None:
            total = max(0, total - 1)

    if new_rating is not None:
        result[new_rating] += 1
        if old_rating is None:
            total += 1

    return result, total


def distribution_from_ratings(ratings: Iterable[int]) -> Dict[int, int]:
    distribution = empty_rating_distribution()
    for rating in ratings:
        if rating in distribution:
            distribution[rating] += 1
    return distribution


class RatingAggregator:
    """
    Keeps package rating aggregates in step with the review collection.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def apply_rating_change(
        self,
        package_id: str,
        new_rating: Optional[int] = None,
        old_rating: Optional[int] = None,
    ) -> None:
        """
        Adjust the package's distribution, total and average for one review
        change. Silently does nothing if the package no longer exists.
        """
        with self.db.record_lock(PACKAGES, package_id):
            doc = self.db.find_one(PACKAGES, {"id": package_id})
            if doc is None:
                logger.debug("Rating change for missing package %s ignored", package_id)
                return
            package = PackageRecord.model_validate(doc)

            package.rating_distribution, package.total_ratings = adjust_distribution(
                package.rating_distribution, package.total_ratings, new_rating, old_rating
            )
            package.average_rating = average_rating(package.rating_distribution, package.total_ratings)

            self.db.replace_one(PACKAGES, {"id": package_id}, package.to_document())

        logger.debug(
            "Ratings for %s: total=%d average=%.1f",
            package_id,
            package.total_ratings,
            package.average_rating,
        )

    def rebuild_from_reviews(self, package_id: str) -> Optional[PackageRecord]:
        """
        Recompute the aggregate from the stored reviews. Repairs drift left by
        a failure between a review write and its aggregate write.
        """
        with self.db.record_lock(PACKAGES, package_id):
            doc = self.db.find_one(PACKAGES, {"id": package_id})
            if doc is None:
                return None
            package = PackageRecord.model_validate(doc)

            reviews = self.db.find(REVIEWS, {"packageId": package_id}, projection={"rating": 1})
            distribution = distribution_from_ratings(int(r["rating"]) for r in reviews)
            total = sum(distribution.values())
            average = average_rating(distribution, total)

            if (distribution, total, average) != (
                package.rating_distribution,
                package.total_ratings,
                package.average_rating,
            ):
                logger.info(
                    "Reconciled ratings for %s: total %d -> %d",
                    package_id,
                    package.total_ratings,
                    total,
                )
                package.rating_distribution = distribution
                package.total_ratings = total
                package.average_rating = average
                self.db.replace_one(PACKAGES, {"id": package_id}, package.to_document())
        return package
