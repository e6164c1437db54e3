"""
Browsing pages rendered with Jinja2.

The pages read the same registry facade the REST API uses; nothing here
writes to the store, so viewing a package never counts as a download.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from nex_registry.core.dependencies import (
    get_download_tracker,
    get_optional_user,
    get_registry,
    get_review_service,
)
from nex_registry.domain.entities import Registry
from nex_registry.domain.models import STAR_VALUES, AuthUser
from nex_registry.services.analytics import DownloadTracker
from nex_registry.services.authentication import has_any_user
from nex_registry.services.reviews import ReviewService


TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter()


@router.get("/", response_class=HTMLResponse)
@router.get("/packages", response_class=HTMLResponse)
async def package_list_page(
    request: Request,
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort: str = "newest",
    registry: Registry = Depends(get_registry),
    user: Optional[AuthUser] = Depends(get_optional_user),
) -> HTMLResponse:
    """
    Landing page: searchable package list with category filter.
    """
    config = registry.db.get_repository_config()
    packages = registry.list_packages(category=category, search=search, sort=sort)

    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "title": config.display_name,
            "description": config.description,
            "packages": packages,
            "categories": registry.categories(),
            "search": search or "",
            "category": category or "",
            "sort": sort,
            "user": user,
            "needs_admin": not has_any_user(registry.db),
        },
    )


@router.get("/packages/{package_id}", response_class=HTMLResponse)
async def package_detail_page(
    package_id: str,
    request: Request,
    registry: Registry = Depends(get_registry),
    tracker: DownloadTracker = Depends(get_download_tracker),
    reviews: ReviewService = Depends(get_review_service),
    user: Optional[AuthUser] = Depends(get_optional_user),
) -> HTMLResponse:
    pkg = registry.find_package(package_id)
    if pkg is None:
        return templates.TemplateResponse(
            request,
            "not_found.html",
            {"title": "Package not found", "package_id": package_id, "user": user},
            status_code=status.HTTP_404_NOT_FOUND,
        )

    distribution = [(stars, pkg.rating_distribution.get(stars, 0)) for stars in reversed(STAR_VALUES)]
    return templates.TemplateResponse(
        request,
        "package.html",
        {
            "title": pkg.name,
            "package": pkg,
            "versions": registry.list_versions(package_id),
            "dependencies": registry.dependencies(package_id),
            "downloads": tracker.download_summary(pkg),
            "distribution": distribution,
            "reviews": reviews.list_reviews(package_id, sort="helpful", limit=20),
            "user": user,
        },
    )


@router.get("/registry/index.json")
async def registry_index() -> RedirectResponse:
    """
    Older CLI releases fetch the whole index from this path.
    """
    return RedirectResponse(url="/api/packages", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
