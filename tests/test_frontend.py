from __future__ import annotations

from conftest import make_manifest


def test_index_lists_packages(client, admin_headers) -> None:
    client.post("/api/packages", json=make_manifest(), headers=admin_headers)

    for path in ("/", "/packages"):
        response = client.get(path)
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "/packages/acme.hello" in response.text


def test_index_search_without_results(client) -> None:
    response = client.get("/packages", params={"search": "nothing-here"})
    assert response.status_code == 200
    assert "No packages found." in response.text


def test_package_page(client, admin_headers, user_headers) -> None:
    client.post("/api/packages", json=make_manifest(), headers=admin_headers)
    client.post("/api/packages/acme.hello/reviews", json={"rating": 4, "comment": "Solid"}, headers=user_headers)

    response = client.get("/packages/acme.hello")

    assert response.status_code == 200
    assert "nex run acme.hello" in response.text
    assert "Print a greeting" in response.text
    assert "Solid" in response.text


def test_package_page_does_not_count_downloads(client, admin_headers) -> None:
    client.post("/api/packages", json=make_manifest(), headers=admin_headers)

    client.get("/packages/acme.hello", headers={"User-Agent": "nex/1.0"})

    assert client.get("/api/packages/acme.hello/downloads").json()["downloads"] == 0


def test_missing_package_page(client) -> None:
    response = client.get("/packages/acme.missing")
    assert response.status_code == 404
    assert "acme.missing" in response.text


def test_static_stylesheet(client) -> None:
    assert client.get("/static/style.css").status_code == 200


def test_landing_page_prompts_for_first_account(client) -> None:
    assert "becomes the registry administrator" in client.get("/").text

    client.post("/api/auth/register", json={"username": "root", "password": "pw"})

    assert "becomes the registry administrator" not in client.get("/").text
