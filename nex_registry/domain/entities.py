from typing import Any, Dict, List, Optional
import logging
from datetime import datetime, timedelta

from nex_registry.domain.errors import (
    PackageNotFoundError,
    VersionExistsError,
    VersionNotFoundError,
)
from nex_registry.domain.models import (
    AuthUser,
    PackageManifest,
    PackageRecord,
    PackageVersionRecord,
)
from nex_registry.domain.text_utils import match_any, strip_nulls
from nex_registry.services.reviews import ReviewService
from nex_registry.storage.db_manager import DatabaseManager, DuplicateKeyError

logger = logging.getLogger(__name__)

PACKAGES = "packages"
VERSIONS = "versions"

# Fields too heavy for list views.
LIST_PROJECTION = {"manifest": 0, "downloadHistory": 0}

PACKAGE_SORTS = {
    "newest": [("createdAt", -1)],
    "downloads": [("downloads", -1), ("createdAt", -1)],
    "rating": [("averageRating", -1), ("totalRatings", -1)],
    "updated": [("updatedAt", -1)],
    "name": [("name", 1)],
}

# Manifest fields copied onto the package record on every publish.
_MANIFEST_FIELDS = (
    "name",
    "version",
    "description",
    "author",
    "license",
    "repository",
    "homepage",
    "runtime",
    "entrypoint",
    "commands",
    "keywords",
)


class Registry:
    """
    Facade over the document store for everything package-shaped:
    listing, publishing, versions, deprecation, dependencies and rollups.
    """

    def __init__(self, db: DatabaseManager, reviews: ReviewService):
        self.db = db
        self.reviews = reviews
        self.db.ensure_unique_index(PACKAGES, ["id"])
        self.db.ensure_unique_index(VERSIONS, ["packageId", "version"])

    # ------------------------------------------------------------------
    # Lookup and listing
    # ------------------------------------------------------------------

    def find_package(self, package_id: str) -> Optional[PackageRecord]:
        doc = self.db.find_one(PACKAGES, {"id": package_id})
        return PackageRecord.model_validate(doc) if doc else None

    def get_package(self, package_id: str) -> PackageRecord:
        pkg = self.find_package(package_id)
        if pkg is None:
            raise PackageNotFoundError(package_id)
        return pkg

    def all_package_ids(self) -> List[str]:
        return [d["id"] for d in self.db.find(PACKAGES, projection={"id": 1})]

    def list_packages(
        self,
        category: Optional[str] = None,
        tag: Optional[str] = None,
        deprecated: Optional[bool] = None,
        search: Optional[str] = None,
        sort: str = "newest",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        config = self.db.get_repository_config()
        limit = limit or config.default_page_size
        limit = max(1, min(limit, config.max_page_size))

        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        if tag:
            query["tags"] = tag
        if deprecated is True:
            query["deprecated"] = True
        elif deprecated is False:
            query["deprecated"] = {"$ne": True}

        docs = self.db.find(
            PACKAGES,
            query,
            projection=LIST_PROJECTION,
            sort=PACKAGE_SORTS.get(sort, PACKAGE_SORTS["newest"]),
        )

        if search:
            docs = [
                d
                for d in docs
                if match_any(
                    [d.get("id"), d.get("name"), d.get("description"), *(d.get("keywords") or []), *(d.get("tags") or [])],
                    search,
                )
            ]

        return docs[:limit]

    def get_info(self, package_id: str) -> Dict[str, Any]:
        """
        Package without its download history, plus the most recent reviews.
        """
        doc = self.db.find_one(PACKAGES, {"id": package_id})
        if doc is None:
            raise PackageNotFoundError(package_id)
        doc.pop("downloadHistory", None)

        limit = self.db.get_repository_config().recent_reviews_limit
        reviews = self.reviews.list_reviews(package_id, sort="recent", limit=limit)
        return {
            "package": strip_nulls(doc),
            "reviews": [r.to_document() for r in reviews],
        }

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, manifest: PackageManifest, user: AuthUser) -> Dict[str, Any]:
        """
        Publish a new package or a new version of an existing one.

        The version record is written before the package record so the
        version collection's unique index rejects a version published twice
        without touching the package.
        """
        raw_manifest = manifest.model_dump(mode="json", by_alias=True, exclude_none=True)
        now = datetime.utcnow()

        with self.db.record_lock(PACKAGES, manifest.id):
            existing = self.find_package(manifest.id)
            is_update = existing is not None

            if existing is not None:
                if manifest.version in existing.versions:
                    raise VersionExistsError(manifest.id, manifest.version)
                pkg = existing
                for field in _MANIFEST_FIELDS:
                    setattr(pkg, field, getattr(manifest, field))
                pkg.category = manifest.category or pkg.category
                pkg.tags = manifest.tags if manifest.tags is not None else pkg.tags
                pkg.dependencies = (
                    manifest.dependencies if manifest.dependencies is not None else pkg.dependencies
                )
                pkg.versions.append(manifest.version)
                pkg.updated_at = now
            else:
                pkg = PackageRecord(
                    id=manifest.id,
                    category=manifest.category or "other",
                    tags=manifest.tags or [],
                    dependencies=manifest.dependencies or [],
                    owner_id=user.user_id,
                    versions=[manifest.version],
                    created_at=now,
                    updated_at=now,
                    **{field: getattr(manifest, field) for field in _MANIFEST_FIELDS},
                )

            pkg.manifest = raw_manifest
            pkg.latest_version = manifest.version
            pkg.last_published_at = now

            version = PackageVersionRecord(
                package_id=manifest.id,
                version=manifest.version,
                changelog=manifest.changelog or "",
                manifest=raw_manifest,
                published_at=now,
                published_by=user.user_id,
            )

            try:
                self.db.insert(VERSIONS, version.to_document())
            except DuplicateKeyError:
                raise VersionExistsError(manifest.id, manifest.version)

            if is_update:
                self.db.replace_one(PACKAGES, {"id": pkg.id}, pkg.to_document())
            else:
                self.db.insert(PACKAGES, pkg.to_document())

        logger.info(
            f"{'Updated' if is_update else 'Published'} package {manifest.id} "
            f"version {manifest.version} by {user.username}"
        )
        return {
            "msg": "Package updated" if is_update else "Package published",
            "id": manifest.id,
            "version": manifest.version,
        }

    def delete_package(self, package_id: str) -> None:
        with self.db.record_lock(PACKAGES, package_id):
            if self.find_package(package_id) is None:
                raise PackageNotFoundError(package_id)
            versions = self.db.delete_many(VERSIONS, {"packageId": package_id})
            reviews = self.reviews.delete_for_package(package_id)
            self.db.delete_one(PACKAGES, {"id": package_id})
        logger.info(f"Deleted package {package_id} ({versions} versions, {reviews} reviews)")

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def list_versions(self, package_id: str) -> List[Dict[str, Any]]:
        return self.db.find(
            VERSIONS,
            {"packageId": package_id},
            projection={
                "version": 1,
                "changelog": 1,
                "publishedAt": 1,
                "downloads": 1,
                "deprecated": 1,
            },
            sort=[("publishedAt", -1)],
        )

    def get_version(self, package_id: str, version: str) -> PackageVersionRecord:
        doc = self.db.find_one(VERSIONS, {"packageId": package_id, "version": version})
        if doc is None:
            raise VersionNotFoundError(package_id, version)
        return PackageVersionRecord.model_validate(doc)

    # ------------------------------------------------------------------
    # Deprecation
    # ------------------------------------------------------------------

    def deprecate(self, package_id: str, message: Optional[str], replacement: Optional[str]) -> PackageRecord:
        with self.db.record_lock(PACKAGES, package_id):
            pkg = self.get_package(package_id)
            pkg.deprecated = True
            pkg.deprecation_message = message or "This package has been deprecated"
            pkg.deprecated_at = datetime.utcnow()
            if replacement:
                pkg.replacement_package = replacement
            self.db.replace_one(PACKAGES, {"id": package_id}, pkg.to_document())
        logger.info(f"Deprecated package {package_id}")
        return pkg

    def undeprecate(self, package_id: str) -> PackageRecord:
        with self.db.record_lock(PACKAGES, package_id):
            pkg = self.get_package(package_id)
            pkg.deprecated = False
            pkg.deprecation_message = None
            pkg.deprecated_at = None
            pkg.replacement_package = None
            self.db.replace_one(PACKAGES, {"id": package_id}, pkg.to_document())
        logger.info(f"Removed deprecation from package {package_id}")
        return pkg

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def dependencies(self, package_id: str) -> List[Dict[str, Any]]:
        pkg = self.get_package(package_id)
        resolved: List[Dict[str, Any]] = []
        for dep in pkg.dependencies:
            target = self.db.find_one(PACKAGES, {"id": dep.package_id})
            summary = None
            if target is not None:
                summary = {k: target.get(k) for k in ("id", "name", "version", "description")}
            resolved.append({**dep.to_document(), "package": summary})
        return resolved

    def dependents(self, package_id: str) -> List[Dict[str, Any]]:
        limit = self.db.get_repository_config().dependents_limit
        return self.db.find(
            PACKAGES,
            {"dependencies.packageId": package_id},
            projection={"id": 1, "name": 1, "version": 1, "description": 1},
            sort=[("id", 1)],
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Rollups
    # ------------------------------------------------------------------

    def categories(self) -> List[Dict[str, Any]]:
        return self.db.aggregate(
            PACKAGES,
            [
                {"$match": {"deprecated": {"$ne": True}}},
                {"$group": {"_id": "$category", "count": {"$sum": 1}}},
                {"$sort": {"count": -1, "_id": 1}},
            ],
        )

    def tags(self) -> List[Dict[str, Any]]:
        return self.db.aggregate(
            PACKAGES,
            [
                {"$unwind": "$tags"},
                {"$group": {"_id": "$tags", "count": {"$sum": 1}}},
                {"$sort": {"count": -1, "_id": 1}},
                {"$limit": 50},
            ],
        )

    def stats(self, total_users: int, today: Optional[datetime] = None) -> Dict[str, Any]:
        today = today or datetime.now()
        since = (today - timedelta(days=30)).date().isoformat()

        totals = self.db.aggregate(
            PACKAGES, [{"$group": {"_id": None, "total": {"$sum": "$downloads"}}}]
        )

        return {
            "totalPackages": self.db.count(PACKAGES),
            "totalUsers": total_users,
            "totalDownloads": totals[0]["total"] if totals else 0,
            "deprecatedCount": self.db.count(PACKAGES, {"deprecated": True}),
            "topPackages": self.db.find(
                PACKAGES,
                projection={
                    "id": 1,
                    "name": 1,
                    "version": 1,
                    "downloads": 1,
                    "weeklyDownloads": 1,
                    "author": 1,
                    "averageRating": 1,
                },
                sort=[("downloads", -1)],
                limit=10,
            ),
            "recentPackages": self.db.find(
                PACKAGES,
                projection={"id": 1, "name": 1, "version": 1, "createdAt": 1, "author": 1},
                sort=[("createdAt", -1)],
                limit=5,
            ),
            "downloadsByRuntime": self.db.aggregate(
                PACKAGES,
                [
                    {"$group": {"_id": "$runtime.type", "count": {"$sum": 1}, "downloads": {"$sum": "$downloads"}}},
                    {"$sort": {"downloads": -1}},
                ],
            ),
            "downloadsByCategory": self.db.aggregate(
                PACKAGES,
                [
                    {"$group": {"_id": "$category", "count": {"$sum": 1}, "downloads": {"$sum": "$downloads"}}},
                    {"$sort": {"downloads": -1}},
                ],
            ),
            "dailyDownloads": self.db.aggregate(
                PACKAGES,
                [
                    {"$unwind": "$downloadHistory"},
                    {"$match": {"downloadHistory.date": {"$gte": since}}},
                    {"$group": {"_id": "$downloadHistory.date", "count": {"$sum": "$downloadHistory.count"}}},
                    {"$sort": {"_id": 1}},
                ],
            ),
        }
