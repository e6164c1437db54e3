"""
Review lifecycle: one review per (package, user), kept in step with the
package's rating aggregate.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from nex_registry.domain.errors import PackageNotFoundError, ReviewNotFoundError
from nex_registry.domain.models import AuthUser, ReviewRecord, ReviewRequest
from nex_registry.services.ratings import PACKAGES, REVIEWS, RatingAggregator
from nex_registry.storage.db_manager import DatabaseManager, DuplicateKeyError

logger = logging.getLogger(__name__)

REVIEW_SORTS = {
    "recent": [("createdAt", -1)],
    "helpful": [("helpful", -1), ("createdAt", -1)],
    "rating-high": [("rating", -1), ("createdAt", -1)],
    "rating-low": [("rating", 1), ("createdAt", -1)],
}


class ReviewService:
    def __init__(self, db: DatabaseManager, aggregator: RatingAggregator):
        self.db = db
        self.aggregator = aggregator
        self.db.ensure_unique_index(REVIEWS, ["packageId", "userId"])

    def list_reviews(self, package_id: str, sort: str = "recent", limit: int = 20) -> List[ReviewRecord]:
        docs = self.db.find(
            REVIEWS,
            {"packageId": package_id},
            sort=REVIEW_SORTS.get(sort, REVIEW_SORTS["recent"]),
            limit=limit,
        )
        return [ReviewRecord.model_validate(d) for d in docs]

    def get_user_review(self, package_id: str, user_id: str) -> Optional[ReviewRecord]:
        doc = self.db.find_one(REVIEWS, {"packageId": package_id, "userId": user_id})
        return ReviewRecord.model_validate(doc) if doc else None

    def submit_review(self, package_id: str, user: AuthUser, request: ReviewRequest) -> Tuple[ReviewRecord, bool]:
        """
        Create the user's review of a package, or update it in place if one
        already exists. Returns ``(review, updated)``.

        The review write and the aggregate update happen under the package
        lock, so no other writer sees one without the other.
        """
        with self.db.record_lock(PACKAGES, package_id):
            if self.db.find_one(PACKAGES, {"id": package_id}) is None:
                raise PackageNotFoundError(package_id)

            existing = self.get_user_review(package_id, user.user_id)
            if existing is None:
                review = ReviewRecord(
                    id=uuid.uuid4().hex,
                    package_id=package_id,
                    user_id=user.user_id,
                    username=user.username,
                    rating=request.rating,
                    title=request.title,
                    comment=request.comment,
                )
                try:
                    self.db.insert(REVIEWS, review.to_document())
                except DuplicateKeyError:
                    # Another request inserted first; treat this one as an update.
                    existing = self.get_user_review(package_id, user.user_id)
                    if existing is None:
                        raise
                else:
                    self.aggregator.apply_rating_change(package_id, request.rating, None)
                    logger.info(f"Review added for {package_id} by {user.username}")
                    return review, False

            old_rating = existing.rating
            existing.rating = request.rating
            existing.title = request.title
            existing.comment = request.comment
            existing.updated_at = datetime.utcnow()
            self.db.replace_one(REVIEWS, {"id": existing.id}, existing.to_document())
            self.aggregator.apply_rating_change(package_id, request.rating, old_rating)
            logger.info(f"Review updated for {package_id} by {user.username}")
            return existing, True

    def delete_review(self, package_id: str, user: AuthUser) -> None:
        with self.db.record_lock(PACKAGES, package_id):
            existing = self.get_user_review(package_id, user.user_id)
            if existing is None:
                raise ReviewNotFoundError(package_id)

            self.db.delete_one(REVIEWS, {"id": existing.id})
            self.aggregator.apply_rating_change(package_id, None, existing.rating)
        logger.info(f"Review deleted for {package_id} by {user.username}")

    def vote_helpful(self, package_id: str, review_id: str, helpful: bool) -> ReviewRecord:
        with self.db.record_lock(REVIEWS, review_id):
            doc = self.db.find_one(REVIEWS, {"id": review_id, "packageId": package_id})
            if doc is None:
                raise ReviewNotFoundError(package_id)
            review = ReviewRecord.model_validate(doc)
            if helpful:
                review.helpful += 1
            else:
                review.not_helpful += 1
            self.db.replace_one(REVIEWS, {"id": review_id}, review.to_document())
        return review

    def delete_for_package(self, package_id: str) -> int:
        return self.db.delete_many(REVIEWS, {"packageId": package_id})
