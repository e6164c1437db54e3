"""
Pydantic models for the package registry.

This module defines all data models used throughout the application, including:
- Repository configuration and settings
- Package, version and review records
- Authentication and session management
- API request models

Records are persisted with camelCase keys (the same keys the HTTP API returns),
while Python code works with snake_case attributes.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


STAR_VALUES = (1, 2, 3, 4, 5)

# Lowercase slug with optional interior dots and dashes, e.g. "author.my-tool".
PACKAGE_ID_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9.-]*[a-z0-9])?$")


def empty_rating_distribution() -> Dict[int, int]:
    return {star: 0 for star in STAR_VALUES}


class RegistryModel(BaseModel):
    """
    Base for every persisted/serialised model: camelCase on the wire,
    snake_case in Python, either accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Repository Configuration Models
# ---------------------------------------------------------------------------


class RepositoryConfig(BaseModel):
    """
    Top-level configuration for the registry.

    Persisted at: <DATA_DIR>/repository.json
    """

    display_name: str = Field(
        default="nex package registry",
        description="Human-friendly name shown in the browsing pages.",
    )
    description: str = Field(
        default="Package registry for the nex command-line runner.",
        description="Longer description shown on the landing page.",
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        description="Timestamp when this repository configuration was first created.",
    )

    # Download analytics
    download_history_days: int = Field(
        default=90,
        ge=1,
        description="Maximum number of daily entries kept in a package's download history.",
    )
    weekly_window_days: int = Field(
        default=7,
        ge=1,
        description="Trailing window (in days) summed into weeklyDownloads.",
    )
    monthly_window_days: int = Field(
        default=30,
        ge=1,
        description="Trailing window (in days) summed into monthlyDownloads.",
    )
    cli_user_agent_marker: str = Field(
        default="nex/",
        description="User-Agent substring identifying the CLI; manifest fetches by the CLI count as downloads.",
    )

    # Listing limits
    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=200, ge=1)
    recent_reviews_limit: int = Field(default=5, ge=0)
    dependents_limit: int = Field(default=50, ge=1)

    # Sessions and HTTP
    session_max_age_days: int = Field(
        default=7,
        ge=1,
        description="Lifetime of the session cookie set on login.",
    )
    cors_allow_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Origins allowed to call the API from a browser.",
    )

    # Maintenance job (local wall-clock time)
    maintenance_hour: int = Field(default=3, ge=0, le=23)
    maintenance_minute: int = Field(default=0, ge=0, le=59)

    @model_validator(mode="after")
    def _retention_covers_windows(self) -> "RepositoryConfig":
        longest = max(self.weekly_window_days, self.monthly_window_days)
        if self.download_history_days < longest:
            raise ValueError(
                "download_history_days must be at least as long as the longest reporting window"
            )
        return self


# ---------------------------------------------------------------------------
# Package Models
# ---------------------------------------------------------------------------


class Author(RegistryModel):
    name: Optional[str] = None
    github: Optional[str] = None


class Runtime(RegistryModel):
    type: Optional[str] = None
    version: Optional[str] = None


class PackageDependency(RegistryModel):
    package_id: str
    version: str = "*"


def _coerce_author(value: Any) -> Any:
    if isinstance(value, str):
        return {"name": value}
    return value


class PackageManifest(RegistryModel):
    """
    Manifest submitted by a publisher.

    Unknown keys are kept so the full document can be served back unchanged.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    description: Optional[str] = None
    author: Optional[Author] = None
    license: Optional[str] = None
    repository: Optional[str] = None
    homepage: Optional[str] = None
    runtime: Optional[Runtime] = None
    entrypoint: Optional[str] = None
    commands: Dict[str, str] = Field(default_factory=dict)
    keywords: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    dependencies: Optional[List[PackageDependency]] = None
    changelog: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        if not PACKAGE_ID_PATTERN.match(value):
            raise ValueError("Invalid package ID format")
        return value

    @field_validator("author", mode="before")
    @classmethod
    def _author_from_string(cls, value: Any) -> Any:
        return _coerce_author(value)


class DownloadHistoryEntry(RegistryModel):
    """
    Downloads counted on one calendar day.
    """

    day: date = Field(alias="date")
    count: int = Field(default=0, ge=0)


class PackageRecord(RegistryModel):
    """
    A package as stored in the ``packages`` collection.
    """

    id: str
    name: str
    version: str
    latest_version: Optional[str] = None
    versions: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    author: Optional[Author] = None
    license: Optional[str] = None
    repository: Optional[str] = None
    homepage: Optional[str] = None
    runtime: Optional[Runtime] = None
    entrypoint: Optional[str] = None
    commands: Dict[str, str] = Field(default_factory=dict)
    keywords: List[str] = Field(default_factory=list)
    category: str = "other"
    tags: List[str] = Field(default_factory=list)
    dependencies: List[PackageDependency] = Field(default_factory=list)
    manifest: Dict[str, Any] = Field(default_factory=dict)
    owner_id: Optional[str] = None

    deprecated: bool = False
    deprecation_message: Optional[str] = None
    deprecated_at: Optional[datetime] = None
    replacement_package: Optional[str] = None

    # Analytics
    downloads: int = Field(default=0, ge=0)
    weekly_downloads: int = Field(default=0, ge=0)
    monthly_downloads: int = Field(default=0, ge=0)
    download_history: List[DownloadHistoryEntry] = Field(default_factory=list)
    last_downloaded_at: Optional[datetime] = None

    # Ratings
    rating_distribution: Dict[int, int] = Field(default_factory=empty_rating_distribution)
    total_ratings: int = Field(default=0, ge=0)
    average_rating: float = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_published_at: Optional[datetime] = None

    @field_validator("author", mode="before")
    @classmethod
    def _author_from_string(cls, value: Any) -> Any:
        return _coerce_author(value)

    @field_validator("rating_distribution", mode="before")
    @classmethod
    def _normalize_distribution(cls, value: Any) -> Dict[int, int]:
        # Always exactly the five star keys; unknown keys dropped, missing ones zero.
        distribution = empty_rating_distribution()
        for key, count in (value or {}).items():
            try:
                star = int(key)
            except (TypeError, ValueError):
                continue
            if star in distribution:
                distribution[star] = max(0, int(count or 0))
        return distribution


class PackageVersionRecord(RegistryModel):
    """
    One published version, stored in the ``versions`` collection.
    """

    package_id: str
    version: str
    changelog: str = ""
    manifest: Dict[str, Any] = Field(default_factory=dict)
    downloads: int = 0
    published_at: datetime = Field(default_factory=datetime.utcnow)
    published_by: Optional[str] = None
    deprecated: bool = False
    deprecation_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Review Models
# ---------------------------------------------------------------------------


class ReviewRecord(RegistryModel):
    """
    One user's review of one package (unique per package/user pair).
    """

    id: str
    package_id: str
    user_id: str
    username: str
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, max_length=1000)
    helpful: int = Field(default=0, ge=0)
    not_helpful: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ReviewRequest(RegistryModel):
    rating: int = Field(ge=1, le=5, description="Star rating between 1 and 5.")
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, max_length=1000)


class HelpfulVoteRequest(RegistryModel):
    helpful: bool = True


class DeprecateRequest(RegistryModel):
    message: Optional[str] = None
    replacement_package: Optional[str] = None


# ---------------------------------------------------------------------------
# Authentication models (authentication.json)
# ---------------------------------------------------------------------------


UserRole = Literal["user", "admin"]


class AuthCredential(BaseModel):
    """
    A single credential entry for user authentication.

    Supports two credential types:
    - "cleartext": Password stored as plain text (normalized to SHA256 on startup)
    - "sha256": Password field contains the SHA256 hash, with per-user salt
    """

    type: str = Field(
        description='Credential type: "cleartext" or "sha256".',
    )
    password: str = Field(
        description="Password value: plain text if type is 'cleartext', SHA256 hash if type is 'sha256'.",
    )
    salt: Optional[str] = Field(
        default=None,
        description="Per-user salt used for SHA256 hashing (only used when type == 'sha256').",
    )


class AuthUser(BaseModel):
    """
    User account entry in the authentication store.
    """

    user_id: str = Field(
        description="Stable identifier referenced by reviews and published packages.",
    )
    username: str = Field(
        description="Unique username for this user account.",
    )
    role: UserRole = Field(
        default="user",
        description="'admin' may publish, deprecate and delete packages.",
    )
    authentications: List[AuthCredential] = Field(
        default_factory=list,
        description="List of credential entries for this user.",
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthSession(BaseModel):
    """
    Active session entry for authenticated users.

    The session id doubles as the API token. The field name uses a hyphen in
    JSON ("last-login").
    """

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(
        description="Unique session identifier, presented by clients as their token.",
    )
    last_login: datetime = Field(
        alias="last-login",
        serialization_alias="last-login",
        description="Timestamp of the last successful use of this session.",
    )
    username: str = Field(
        description="Username associated with this session.",
    )


class AuthenticationStore(BaseModel):
    """
    Root object for the authentication system.

    Persisted at: <DATA_DIR>/authentication.json
    """

    users: List[AuthUser] = Field(default_factory=list)
    sessions: List[AuthSession] = Field(default_factory=list)


class CredentialsRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)
