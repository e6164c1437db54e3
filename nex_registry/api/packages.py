"""
Package REST API.

This module provides the JSON endpoints used by the nex CLI and the browsing
frontend:
- Listing, searching and rollups (categories, tags, admin stats)
- Manifest retrieval with download tracking
- Publishing, versions, deprecation and deletion
- Reviews and ratings
- Dependency lookups
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from nex_registry.core.dependencies import (
    get_db_manager,
    get_download_tracker,
    get_rating_aggregator,
    get_registry,
    get_review_service,
    require_admin,
    require_user,
)
from nex_registry.domain.entities import Registry
from nex_registry.domain.errors import PackageNotFoundError
from nex_registry.domain.models import (
    AuthUser,
    DeprecateRequest,
    HelpfulVoteRequest,
    PackageManifest,
    ReviewRequest,
)
from nex_registry.services.analytics import DownloadTracker, counts_as_download
from nex_registry.services.authentication import count_users
from nex_registry.services.ratings import RatingAggregator
from nex_registry.services.reviews import ReviewService
from nex_registry.storage.db_manager import DatabaseManager

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Listing and rollups
# ---------------------------------------------------------------------------


@router.get("")
async def list_packages(
    category: Optional[str] = None,
    tag: Optional[str] = None,
    deprecated: Optional[bool] = None,
    search: Optional[str] = None,
    sort: str = Query(default="newest", description="newest, downloads, rating, updated or name."),
    limit: Optional[int] = Query(default=None, ge=1),
    registry: Registry = Depends(get_registry),
) -> dict:
    """
    List packages, newest first by default. Manifests and download
    histories are left out of list results.
    """
    packages = registry.list_packages(
        category=category,
        tag=tag,
        deprecated=deprecated,
        search=search,
        sort=sort,
        limit=limit,
    )
    return {
        "timestamp": _utc_timestamp(),
        "count": len(packages),
        "packages": packages,
    }


@router.get("/categories")
async def list_categories(registry: Registry = Depends(get_registry)) -> list:
    return registry.categories()


@router.get("/tags")
async def list_tags(registry: Registry = Depends(get_registry)) -> list:
    return registry.tags()


@router.get("/stats")
async def get_stats(
    registry: Registry = Depends(get_registry),
    db: DatabaseManager = Depends(get_db_manager),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    return registry.stats(total_users=count_users(db))


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


@router.post("")
async def publish_package(
    manifest: PackageManifest,
    registry: Registry = Depends(get_registry),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    """
    Publish a package, or a new version of an existing package.

    Returns 409 if the version was already published.
    """
    return registry.publish(manifest, admin)


# ---------------------------------------------------------------------------
# Single package
# ---------------------------------------------------------------------------


@router.get("/{package_id}")
async def get_package_manifest(
    package_id: str,
    request: Request,
    download: bool = False,
    registry: Registry = Depends(get_registry),
    tracker: DownloadTracker = Depends(get_download_tracker),
) -> dict:
    """
    Return the manifest of the latest version.

    Fetches by the CLI (User-Agent marker) or with ``download=true`` count as
    a download.
    """
    pkg = registry.get_package(package_id)

    marker = tracker.config.cli_user_agent_marker
    if counts_as_download(request.headers.get("User-Agent"), download, marker):
        pkg = tracker.record_download(pkg)

    return pkg.manifest or pkg.to_document()


@router.get("/{package_id}/info")
async def get_package_info(package_id: str, registry: Registry = Depends(get_registry)) -> dict:
    return registry.get_info(package_id)


@router.get("/{package_id}/downloads")
async def get_package_downloads(
    package_id: str,
    registry: Registry = Depends(get_registry),
    tracker: DownloadTracker = Depends(get_download_tracker),
) -> dict:
    return tracker.download_summary(registry.get_package(package_id))


@router.post("/{package_id}/download")
async def track_download(
    package_id: str,
    registry: Registry = Depends(get_registry),
    tracker: DownloadTracker = Depends(get_download_tracker),
) -> dict:
    pkg = tracker.record_download(registry.get_package(package_id))
    return {"msg": "Download tracked", "downloads": pkg.downloads}


@router.delete("/{package_id}")
async def delete_package(
    package_id: str,
    registry: Registry = Depends(get_registry),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    registry.delete_package(package_id)
    return {"msg": "Package and all versions removed"}


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


@router.get("/{package_id}/versions")
async def list_versions(package_id: str, registry: Registry = Depends(get_registry)) -> list:
    return registry.list_versions(package_id)


@router.get("/{package_id}/versions/{version}")
async def get_version_manifest(
    package_id: str,
    version: str,
    registry: Registry = Depends(get_registry),
) -> dict:
    return registry.get_version(package_id, version).manifest


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


@router.get("/{package_id}/reviews")
async def list_reviews(
    package_id: str,
    sort: str = Query(default="recent", description="recent, helpful, rating-high or rating-low."),
    limit: int = Query(default=20, ge=1, le=100),
    reviews: ReviewService = Depends(get_review_service),
) -> list:
    return [r.to_document() for r in reviews.list_reviews(package_id, sort=sort, limit=limit)]


@router.post("/{package_id}/reviews")
async def submit_review(
    package_id: str,
    body: ReviewRequest,
    reviews: ReviewService = Depends(get_review_service),
    user: AuthUser = Depends(require_user),
) -> dict:
    review, updated = reviews.submit_review(package_id, user, body)
    return {
        "msg": "Review updated" if updated else "Review added",
        "review": review.to_document(),
    }


@router.delete("/{package_id}/reviews")
async def delete_review(
    package_id: str,
    reviews: ReviewService = Depends(get_review_service),
    user: AuthUser = Depends(require_user),
) -> dict:
    reviews.delete_review(package_id, user)
    return {"msg": "Review deleted"}


@router.post("/{package_id}/reviews/{review_id}/vote")
async def vote_review(
    package_id: str,
    review_id: str,
    body: HelpfulVoteRequest,
    reviews: ReviewService = Depends(get_review_service),
    user: AuthUser = Depends(require_user),
) -> dict:
    review = reviews.vote_helpful(package_id, review_id, body.helpful)
    return {"helpful": review.helpful, "notHelpful": review.not_helpful}


@router.post("/{package_id}/ratings/reconcile")
async def reconcile_ratings(
    package_id: str,
    aggregator: RatingAggregator = Depends(get_rating_aggregator),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    pkg = aggregator.rebuild_from_reviews(package_id)
    if pkg is None:
        raise PackageNotFoundError(package_id)
    return {
        "id": package_id,
        "totalRatings": pkg.total_ratings,
        "averageRating": pkg.average_rating,
        "ratingDistribution": {str(k): v for k, v in pkg.rating_distribution.items()},
    }


# ---------------------------------------------------------------------------
# Deprecation
# ---------------------------------------------------------------------------


@router.post("/{package_id}/deprecate")
async def deprecate_package(
    package_id: str,
    body: Optional[DeprecateRequest] = None,
    registry: Registry = Depends(get_registry),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    body = body or DeprecateRequest()
    pkg = registry.deprecate(package_id, body.message, body.replacement_package)
    return {"msg": "Package deprecated", "package": pkg.id}


@router.post("/{package_id}/undeprecate")
async def undeprecate_package(
    package_id: str,
    registry: Registry = Depends(get_registry),
    admin: AuthUser = Depends(require_admin),
) -> dict:
    pkg = registry.undeprecate(package_id)
    return {"msg": "Deprecation removed", "package": pkg.id}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@router.get("/{package_id}/dependencies")
async def get_dependencies(package_id: str, registry: Registry = Depends(get_registry)) -> list:
    return registry.dependencies(package_id)


@router.get("/{package_id}/dependents")
async def get_dependents(package_id: str, registry: Registry = Depends(get_registry)) -> list:
    return registry.dependents(package_id)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()
