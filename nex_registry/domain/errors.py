"""
Domain errors raised by the registry and its services.

Route handlers never catch these; ``main.py`` registers exception handlers
that translate them into HTTP responses.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class PackageNotFoundError(RegistryError):
    status_code = 404

    def __init__(self, package_id: str):
        super().__init__("Package not found")
        self.package_id = package_id


class VersionNotFoundError(RegistryError):
    status_code = 404

    def __init__(self, package_id: str, version: str):
        super().__init__("Version not found")
        self.package_id = package_id
        self.version = version


class ReviewNotFoundError(RegistryError):
    status_code = 404

    def __init__(self, package_id: str):
        super().__init__("Review not found")
        self.package_id = package_id


class ConflictError(RegistryError):
    status_code = 409


class VersionExistsError(ConflictError):
    def __init__(self, package_id: str, version: str):
        super().__init__(f"Version {version} already exists")
        self.package_id = package_id
        self.version = version
