from fastapi.testclient import TestClient

from main import create_app
from row_store import SQLRowStore
from session import issue_session_token, read_session_token


def _client() -> TestClient:
    return TestClient(create_app(SQLRowStore("sqlite:///:memory:")))


def _login(client: TestClient, name: str, pin: str = "1234") -> dict:
    response = client.post("/api/session", json={"name": name, "pin": pin})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _signup(client: TestClient, name: str) -> dict:
    response = client.post("/api/users", json={"name": name, "pin": "1234"})
    assert response.status_code == 201, response.text
    return _login(client, name)


def test_session_token_round_trip() -> None:
    token = issue_session_token({"id": 7, "name": "alice"})

    user = read_session_token(token)

    assert user.id == 7
    assert user.name == "alice"
    assert read_session_token(token + "x") is None
    assert read_session_token("garbage") is None


def test_requests_without_session_are_rejected() -> None:
    with _client() as client:
        assert client.get("/api/stats").status_code == 401
        assert client.get("/api/stats", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_signup_validates_pin() -> None:
    with _client() as client:
        response = client.post("/api/users", json={"name": "alice", "pin": "12"})

        assert response.status_code == 422


def test_wrong_pin_is_rejected() -> None:
    with _client() as client:
        _signup(client, "alice")

        response = client.post("/api/session", json={"name": "alice", "pin": "9999"})

        assert response.status_code == 401


def test_dashboard_flow() -> None:
    with _client() as client:
        alice = _signup(client, "alice")

        empty = client.get("/api/stats", headers=alice).json()
        assert empty["transaction_count"] == 0
        assert empty["project_count"] == 0
        assert empty["expenses_by_month"] == []

        project = client.post(
            "/api/projects", json={"name": "House", "currency": "EUR"}, headers=alice
        ).json()
        materials = client.post(
            f"/api/projects/{project['id']}/categories",
            json={"name": "Materials"},
            headers=alice,
        ).json()
        tiles = client.post(
            f"/api/projects/{project['id']}/categories",
            json={"name": "Tiles", "parent_id": materials["id"]},
            headers=alice,
        ).json()
        response = client.post(
            "/api/transactions",
            json={
                "project_id": project["id"],
                "category_id": tiles["id"],
                "type": "expense",
                "amount": "50",
                "title": "Tiles",
                "created_at": "2024-03-15T10:00:00",
            },
            headers=alice,
        )
        assert response.status_code == 201, response.text

        client.put(
            "/api/preferences", json={"currency": "USD", "eur_to_usd": "1.08"}, headers=alice
        )
        stats = client.get("/api/stats", headers=alice).json()
        assert stats["currency"] == "USD"
        assert float(stats["total_expenses"]) == 54.0
        assert [m["month"] for m in stats["expenses_by_month"]] == ["2024-03"]

        hierarchy = client.get(
            f"/api/projects/{project['id']}/hierarchy", headers=alice
        ).json()
        assert hierarchy[0]["name"] == "Materials"
        assert hierarchy[0]["children"][0]["name"] == "Tiles"

        project_stats = client.get(
            f"/api/projects/{project['id']}/stats", headers=alice
        ).json()
        assert project_stats["expenses_by_category"][0]["name"] == "Materials/Tiles"

        trend = client.get("/api/stats/trend?months=1", headers=alice).json()
        assert [m["month"] for m in trend["expenses_by_month"]] == ["2024-03"]


def test_outsider_gets_forbidden() -> None:
    with _client() as client:
        alice = _signup(client, "alice")
        mallory = _signup(client, "mallory")
        project = client.post("/api/projects", json={"name": "House"}, headers=alice).json()

        for path in ("", "/stats", "/hierarchy", "/categories", "/transactions"):
            response = client.get(f"/api/projects/{project['id']}{path}", headers=mallory)
            assert response.status_code == 403, path

        response = client.post(
            "/api/transactions",
            json={"project_id": project["id"], "type": "expense", "amount": "5", "title": "x"},
            headers=mallory,
        )
        assert response.status_code == 403


def test_unknown_currency_is_bad_request() -> None:
    with _client() as client:
        alice = _signup(client, "alice")

        assert client.get("/api/stats?currency=GBP", headers=alice).status_code == 400
        assert client.get("/api/stats?currency=xof", headers=alice).json()["currency"] == "CFA"


def test_admin_deletes_user_but_not_itself() -> None:
    with _client() as client:
        admin = _login(client, "admin")
        bob = _signup(client, "bob")
        project = client.post("/api/projects", json={"name": "House"}, headers=bob).json()
        bob_id = client.get("/api/session", headers=bob).json()["id"]
        admin_id = client.get("/api/session", headers=admin).json()["id"]

        assert client.delete(f"/api/users/{admin_id}", headers=admin).status_code == 400
        assert client.delete(f"/api/users/{admin_id}", headers=bob).status_code == 403

        summary = client.delete(f"/api/users/{bob_id}", headers=admin).json()

        assert summary["projects_reassigned"] == 1
        assert client.get("/api/session", headers=bob).status_code == 401
        assert client.get(f"/api/projects/{project['id']}", headers=admin).json()["created_by"] == admin_id
        assert client.delete("/api/users/4242", headers=admin).status_code == 404
