from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from nex_registry.core import dependencies
from nex_registry.domain.models import AuthUser
from nex_registry.storage.json_db_manager import JsonDatabaseManager


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.setenv(dependencies.DATA_ROOT_ENV_VAR, str(tmp_path))
    dependencies.reset_dependencies()
    yield tmp_path
    dependencies.reset_dependencies()


@pytest.fixture
def db(data_dir: Path) -> JsonDatabaseManager:
    manager = JsonDatabaseManager(data_dir)
    manager.initialize()
    return manager


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    from nex_registry.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


def register(client: TestClient, username: str, password: str = "secret") -> str:
    response = client.post("/api/auth/register", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    # Callers authenticate with explicit headers; drop the session cookie.
    client.cookies.clear()
    return response.json()["token"]


@pytest.fixture
def admin_headers(client: TestClient) -> Dict[str, str]:
    # First account on a fresh registry is the administrator.
    return {"x-auth-token": register(client, "admin")}


@pytest.fixture
def user_headers(client: TestClient, admin_headers: Dict[str, str]) -> Dict[str, str]:
    return {"x-auth-token": register(client, "alice")}


def make_manifest(package_id: str = "acme.hello", version: str = "1.0.0", **extra: Any) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {
        "id": package_id,
        "name": package_id.split(".")[-1].title(),
        "version": version,
        "description": f"The {package_id} package",
        "author": "Acme",
        "license": "MIT",
        "runtime": {"type": "python", "version": ">=3.9"},
        "entrypoint": "main.py",
        "commands": {"greet": "Print a greeting"},
        "keywords": ["hello", "demo"],
        "category": "utilities",
        "tags": ["demo"],
    }
    manifest.update(extra)
    return manifest


def make_user(name: str, role: str = "user") -> AuthUser:
    return AuthUser(user_id=f"id-{name}", username=name, role=role)
