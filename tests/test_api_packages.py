from __future__ import annotations

from conftest import make_manifest, register


CLI_AGENT = {"User-Agent": "nex/1.2.0 (linux x64)"}


def _publish(client, headers, **kwargs):
    response = client.post("/api/packages", json=make_manifest(**kwargs), headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_publish_and_fetch_manifest(client, admin_headers) -> None:
    body = _publish(client, admin_headers, extraField="kept")
    assert body == {"msg": "Package published", "id": "acme.hello", "version": "1.0.0"}

    manifest = client.get("/api/packages/acme.hello").json()
    assert manifest["version"] == "1.0.0"
    assert manifest["author"] == {"name": "Acme"}
    assert manifest["extraField"] == "kept"


def test_publish_requires_admin(client, user_headers) -> None:
    assert client.post("/api/packages", json=make_manifest()).status_code == 401
    assert client.post("/api/packages", json=make_manifest(), headers={"x-auth-token": "bogus"}).status_code == 401
    assert client.post("/api/packages", json=make_manifest(), headers=user_headers).status_code == 403


def test_publish_rejects_bad_id(client, admin_headers) -> None:
    response = client.post("/api/packages", json=make_manifest(package_id="Bad ID"), headers=admin_headers)
    assert response.status_code == 422


def test_publish_new_version_and_duplicate(client, admin_headers) -> None:
    _publish(client, admin_headers)

    body = _publish(client, admin_headers, version="1.1.0")
    assert body["msg"] == "Package updated"

    duplicate = client.post("/api/packages", json=make_manifest(version="1.1.0"), headers=admin_headers)
    assert duplicate.status_code == 409
    assert duplicate.json() == {"detail": "Version 1.1.0 already exists"}

    info = client.get("/api/packages/acme.hello/info").json()["package"]
    assert info["version"] == "1.1.0"
    assert info["latestVersion"] == "1.1.0"
    assert info["versions"] == ["1.0.0", "1.1.0"]

    versions = client.get("/api/packages/acme.hello/versions").json()
    assert sorted(v["version"] for v in versions) == ["1.0.0", "1.1.0"]
    assert client.get("/api/packages/acme.hello/versions/1.0.0").json()["version"] == "1.0.0"
    assert client.get("/api/packages/acme.hello/versions/9.9.9").status_code == 404


def test_manifest_fetch_download_tracking(client, admin_headers) -> None:
    _publish(client, admin_headers)

    client.get("/api/packages/acme.hello")
    client.get("/api/packages/acme.hello", headers=CLI_AGENT)
    client.get("/api/packages/acme.hello", params={"download": "true"})
    tracked = client.post("/api/packages/acme.hello/download")

    assert tracked.json() == {"msg": "Download tracked", "downloads": 3}
    summary = client.get("/api/packages/acme.hello/downloads").json()
    assert summary["downloads"] == 3
    assert summary["weeklyDownloads"] == 3
    assert summary["monthlyDownloads"] == 3
    assert sum(entry["count"] for entry in summary["history"]) == 3


def test_unknown_package_is_404(client) -> None:
    assert client.get("/api/packages/acme.missing").json() == {"detail": "Package not found"}
    assert client.get("/api/packages/acme.missing", headers=CLI_AGENT).status_code == 404
    assert client.post("/api/packages/acme.missing/download").status_code == 404
    assert client.get("/api/packages/acme.missing/info").status_code == 404


def test_list_search_and_rollups(client, admin_headers) -> None:
    _publish(client, admin_headers, package_id="acme.hello")
    _publish(client, admin_headers, package_id="acme.server", category="web", tags=["http", "demo"], keywords=["api"])
    client.post("/api/packages/acme.server/download")

    listing = client.get("/api/packages").json()
    assert listing["count"] == 2
    assert [p["id"] for p in listing["packages"]] == ["acme.server", "acme.hello"]
    assert "manifest" not in listing["packages"][0]
    assert "downloadHistory" not in listing["packages"][0]

    assert [p["id"] for p in client.get("/api/packages", params={"category": "web"}).json()["packages"]] == ["acme.server"]
    assert [p["id"] for p in client.get("/api/packages", params={"tag": "http"}).json()["packages"]] == ["acme.server"]
    assert [p["id"] for p in client.get("/api/packages", params={"search": "API"}).json()["packages"]] == ["acme.server"]
    assert [p["id"] for p in client.get("/api/packages", params={"search": "ME.SERV"}).json()["packages"]] == ["acme.server"]
    assert [p["id"] for p in client.get("/api/packages", params={"sort": "name"}).json()["packages"]] == ["acme.hello", "acme.server"]
    assert client.get("/api/packages", params={"limit": 1}).json()["count"] == 1

    categories = client.get("/api/packages/categories").json()
    assert {c["_id"]: c["count"] for c in categories} == {"utilities": 1, "web": 1}
    tags = client.get("/api/packages/tags").json()
    assert tags[0] == {"_id": "demo", "count": 2}


def test_stats_for_admin(client, admin_headers, user_headers) -> None:
    _publish(client, admin_headers)
    client.post("/api/packages/acme.hello/download")

    assert client.get("/api/packages/stats", headers=user_headers).status_code == 403
    stats = client.get("/api/packages/stats", headers=admin_headers).json()
    assert stats["totalPackages"] == 1
    assert stats["totalUsers"] == 2
    assert stats["totalDownloads"] == 1
    assert stats["topPackages"][0]["id"] == "acme.hello"
    assert sum(day["count"] for day in stats["dailyDownloads"]) == 1


def test_review_flow_updates_rating(client, admin_headers, user_headers) -> None:
    _publish(client, admin_headers)

    assert client.post("/api/packages/acme.hello/reviews", json={"rating": 5}).status_code == 401
    assert client.post("/api/packages/acme.hello/reviews", json={"rating": 7}, headers=user_headers).status_code == 422

    created = client.post("/api/packages/acme.hello/reviews", json={"rating": 5, "title": "Nice"}, headers=user_headers)
    assert created.json()["msg"] == "Review added"
    client.post("/api/packages/acme.hello/reviews", json={"rating": 1}, headers=admin_headers)
    updated = client.post("/api/packages/acme.hello/reviews", json={"rating": 3}, headers=user_headers)
    assert updated.json()["msg"] == "Review updated"

    pkg = client.get("/api/packages/acme.hello/info").json()["package"]
    assert (pkg["totalRatings"], pkg["averageRating"]) == (2, 2.0)

    assert client.delete("/api/packages/acme.hello/reviews", headers=admin_headers).status_code == 200
    pkg = client.get("/api/packages/acme.hello/info").json()["package"]
    assert (pkg["totalRatings"], pkg["averageRating"]) == (1, 3.0)
    assert pkg["ratingDistribution"] == {"1": 0, "2": 0, "3": 1, "4": 0, "5": 0}

    reviews = client.get("/api/packages/acme.hello/reviews").json()
    assert [r["username"] for r in reviews] == ["alice"]
    vote = client.post(
        f"/api/packages/acme.hello/reviews/{reviews[0]['id']}/vote",
        json={"helpful": True},
        headers=admin_headers,
    )
    assert vote.json() == {"helpful": 1, "notHelpful": 0}

    assert client.delete("/api/packages/acme.hello/reviews", headers=admin_headers).status_code == 404


def test_reconcile_ratings(client, admin_headers) -> None:
    _publish(client, admin_headers)
    client.post("/api/packages/acme.hello/reviews", json={"rating": 4}, headers=admin_headers)

    body = client.post("/api/packages/acme.hello/ratings/reconcile", headers=admin_headers).json()

    assert body["totalRatings"] == 1
    assert body["averageRating"] == 4.0
    assert client.post("/api/packages/acme.ghost/ratings/reconcile", headers=admin_headers).status_code == 404


def test_deprecate_and_undeprecate(client, admin_headers) -> None:
    _publish(client, admin_headers, package_id="acme.old")
    _publish(client, admin_headers, package_id="acme.new")

    response = client.post(
        "/api/packages/acme.old/deprecate",
        json={"message": "Use acme.new", "replacementPackage": "acme.new"},
        headers=admin_headers,
    )
    assert response.json() == {"msg": "Package deprecated", "package": "acme.old"}

    info = client.get("/api/packages/acme.old/info").json()["package"]
    assert info["deprecated"] is True
    assert info["replacementPackage"] == "acme.new"
    assert [p["id"] for p in client.get("/api/packages", params={"deprecated": "false"}).json()["packages"]] == ["acme.new"]

    client.post("/api/packages/acme.old/undeprecate", headers=admin_headers)
    info = client.get("/api/packages/acme.old/info").json()["package"]
    assert info["deprecated"] is False
    assert "replacementPackage" not in info


def test_dependencies_and_dependents(client, admin_headers) -> None:
    _publish(client, admin_headers, package_id="acme.lib")
    _publish(
        client,
        admin_headers,
        package_id="acme.app",
        dependencies=[{"packageId": "acme.lib", "version": "^1.0.0"}, {"packageId": "acme.gone"}],
    )

    deps = client.get("/api/packages/acme.app/dependencies").json()
    assert deps[0]["packageId"] == "acme.lib"
    assert deps[0]["package"]["id"] == "acme.lib"
    assert deps[1] == {"packageId": "acme.gone", "version": "*", "package": None}

    dependents = client.get("/api/packages/acme.lib/dependents").json()
    assert [d["id"] for d in dependents] == ["acme.app"]


def test_delete_package_cascades(client, admin_headers, user_headers) -> None:
    _publish(client, admin_headers)
    _publish(client, admin_headers, version="2.0.0")
    client.post("/api/packages/acme.hello/reviews", json={"rating": 4}, headers=user_headers)

    assert client.delete("/api/packages/acme.hello", headers=user_headers).status_code == 403
    assert client.delete("/api/packages/acme.hello", headers=admin_headers).status_code == 200

    assert client.get("/api/packages/acme.hello").status_code == 404
    assert client.get("/api/packages/acme.hello/versions").json() == []
    assert client.get("/api/packages/acme.hello/reviews").json() == []

    # The id can be published again from scratch.
    assert _publish(client, admin_headers)["msg"] == "Package published"


def test_registry_index_redirects(client) -> None:
    response = client.get("/registry/index.json", follow_redirects=False)
    assert response.status_code == 307
    assert response.headers["location"] == "/api/packages"


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_bearer_token_is_accepted(client) -> None:
    token = register(client, "admin")
    response = client.post("/api/packages", json=make_manifest(), headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
