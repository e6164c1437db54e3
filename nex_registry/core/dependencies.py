from pathlib import Path
from typing import Optional
import os

from fastapi import Depends, HTTPException, Request, status

from nex_registry.domain.entities import Registry
from nex_registry.domain.models import AuthUser
from nex_registry.services.analytics import DownloadTracker
from nex_registry.services.authentication import (
    SESSION_COOKIE_NAME,
    TOKEN_HEADER_NAME,
    get_user_for_session,
)
from nex_registry.services.ratings import RatingAggregator
from nex_registry.services.reviews import ReviewService
from nex_registry.storage.db_manager import DatabaseManager
from nex_registry.storage.json_db_manager import JsonDatabaseManager

DATA_ROOT_ENV_VAR = "NEX_REGISTRY_DATA_DIR"
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"

_db_manager: Optional[DatabaseManager] = None
_registry: Optional[Registry] = None
_download_tracker: Optional[DownloadTracker] = None
_rating_aggregator: Optional[RatingAggregator] = None
_review_service: Optional[ReviewService] = None


def get_data_dir() -> Path:
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    if env_path:
        d = Path(env_path).expanduser()
    else:
        d = _DEFAULT_DATA_DIR
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_db_manager() -> DatabaseManager:
    global _db_manager
    if _db_manager is None:
        _db_manager = JsonDatabaseManager(get_data_dir())
        _db_manager.initialize()
    return _db_manager


def get_rating_aggregator() -> RatingAggregator:
    global _rating_aggregator
    if _rating_aggregator is None:
        _rating_aggregator = RatingAggregator(get_db_manager())
    return _rating_aggregator


def get_review_service() -> ReviewService:
    global _review_service
    if _review_service is None:
        _review_service = ReviewService(get_db_manager(), get_rating_aggregator())
    return _review_service


def get_registry() -> Registry:
    global _registry
    if _registry is None:
        _registry = Registry(get_db_manager(), get_review_service())
    return _registry


def get_download_tracker() -> DownloadTracker:
    global _download_tracker
    if _download_tracker is None:
        _download_tracker = DownloadTracker(get_db_manager())
    return _download_tracker


def reset_dependencies() -> None:
    """
    Drop every cached singleton so the next request rebuilds them
    (used when the data directory changes, e.g. between test runs).
    """
    global _db_manager, _registry, _download_tracker, _rating_aggregator, _review_service
    _db_manager = None
    _registry = None
    _download_tracker = None
    _rating_aggregator = None
    _review_service = None


# ---------------------------------------------------------------------------
# Capability checks
# ---------------------------------------------------------------------------


def request_token(request: Request) -> Optional[str]:
    """
    Token from the x-auth-token header, an Authorization bearer header,
    or the session cookie, in that order.
    """
    token = request.headers.get(TOKEN_HEADER_NAME)
    if token:
        return token.strip()
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_optional_user(
    request: Request,
    db: DatabaseManager = Depends(get_db_manager),
) -> Optional[AuthUser]:
    return get_user_for_session(db, request_token(request))


async def require_user(
    request: Request,
    db: DatabaseManager = Depends(get_db_manager),
) -> AuthUser:
    """
    Dependency requiring an authenticated caller.

    Raises:
        HTTPException: 401 if no token was sent or the token is unknown.
    """
    token = request_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token, authorization denied",
        )
    user = get_user_for_session(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is not valid",
        )
    return user


async def require_admin(user: AuthUser = Depends(require_user)) -> AuthUser:
    """
    Dependency requiring an authenticated administrator.

    Raises:
        HTTPException: 403 if the caller is authenticated but not an admin.
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
