from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import create_api_key, session_headers, sign_in
from edge_og.main import app


def test_magic_link_flow_sets_session_cookie(client: TestClient) -> None:
    response = client.post("/auth/request-link", json={"email": "Ada@Example.com"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    email, link = app.state.gateway.mailer.sent[-1]
    assert email == "ada@example.com"
    assert link.startswith("http://localhost:8000/auth/callback?token=")

    token = app.state.gateway.mailer.last_token()
    callback = client.get("/auth/callback", params={"token": token}, follow_redirects=False)
    assert callback.status_code == 302
    assert callback.headers["location"] == "/dashboard"

    cookie = callback.headers["set-cookie"]
    assert cookie.startswith("edge_og_session=")
    assert "HttpOnly" in cookie
    assert "Secure" in cookie
    assert "Max-Age=86400" in cookie
    assert "samesite=lax" in cookie.lower()


def test_same_email_reuses_account(client: TestClient) -> None:
    first = client.get("/auth/session", headers=session_headers(sign_in(client))).json()
    second = client.get("/auth/session", headers=session_headers(sign_in(client))).json()
    other = client.get(
        "/auth/session", headers=session_headers(sign_in(client, "grace@example.com"))
    ).json()

    assert first["account_id"] == second["account_id"]
    assert other["account_id"] != first["account_id"]
    assert first["plan"] == "free"
    assert second["last_login"] is not None


def test_session_cookie_is_accepted(client: TestClient) -> None:
    session = sign_in(client)
    response = client.get("/auth/session", headers={"Cookie": f"edge_og_session={session}"})
    assert response.status_code == 200


def test_callback_rejects_bad_and_wrong_kind_tokens(client: TestClient) -> None:
    assert client.get("/auth/callback", params={"token": "garbage"}, follow_redirects=False).status_code == 401

    session = sign_in(client)
    response = client.get("/auth/callback", params={"token": session}, follow_redirects=False)
    assert response.status_code == 401


def test_magic_link_token_is_not_a_session(client: TestClient) -> None:
    client.post("/auth/request-link", json={"email": "ada@example.com"})
    magic = app.state.gateway.mailer.last_token()
    assert client.get("/auth/session", headers=session_headers(magic)).status_code == 401


def test_session_endpoints_require_a_session(client: TestClient) -> None:
    assert client.get("/auth/session").status_code == 401
    assert client.get("/dashboard/api-keys").status_code == 401
    assert client.get("/dashboard/usage").status_code == 401

    key = create_api_key(client, sign_in(client))["key"]
    assert client.get("/auth/session", headers=session_headers(key)).status_code == 401


def test_request_link_validation(client: TestClient) -> None:
    invalid = client.post("/auth/request-link", json={"email": "not-an-email"})
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "VALIDATION_ERROR"

    wrong_type = client.post(
        "/auth/request-link", content="email=ada@example.com", headers={"Content-Type": "text/plain"}
    )
    assert wrong_type.status_code == 415


def test_sixth_magic_link_request_is_throttled(client: TestClient) -> None:
    for _ in range(5):
        assert client.post("/auth/request-link", json={"email": "ada@example.com"}).status_code == 200

    response = client.post("/auth/request-link", json={"email": "ada@example.com"})
    assert response.status_code == 429
    assert response.headers["retry-after"] == "300"
    assert response.json()["code"] == "RATE_LIMITED"


def test_forwarded_ips_are_throttled_separately(client: TestClient) -> None:
    for _ in range(5):
        client.post("/auth/request-link", json={"email": "ada@example.com"}, headers={"CF-Connecting-IP": "203.0.113.1"})

    blocked = client.post(
        "/auth/request-link", json={"email": "ada@example.com"}, headers={"CF-Connecting-IP": "203.0.113.1"}
    )
    allowed = client.post(
        "/auth/request-link", json={"email": "ada@example.com"}, headers={"CF-Connecting-IP": "203.0.113.2"}
    )
    assert blocked.status_code == 429
    assert allowed.status_code == 200


def test_weak_secrets_refuse_auth_routes(client: TestClient, gateway) -> None:
    gateway.settings = gateway.settings.model_copy(update={"jwt_secret": "too-short"})
    response = client.post("/auth/request-link", json={"email": "ada@example.com"})
    assert response.status_code == 500
    assert response.json()["code"] == "AUTH_NOT_CONFIGURED"


def test_api_key_lifecycle(client: TestClient) -> None:
    session = sign_in(client)
    headers = session_headers(session)

    created = create_api_key(client, session, name="Marketing site")
    assert created["name"] == "Marketing site"
    assert created["prefix"] == f"eog_{created['id']}"
    assert created["key"].startswith(created["prefix"] + "_")
    assert "warning" in created

    listed = client.get("/dashboard/api-keys", headers=headers).json()["keys"]
    assert [item["id"] for item in listed] == [created["id"]]
    assert "key" not in listed[0]
    assert listed[0]["revoked"] is False

    revoked = client.delete(f"/dashboard/api-keys/{created['id']}", headers=headers)
    assert revoked.status_code == 200
    assert revoked.json() == {"id": created["id"], "revoked": True}

    assert client.get("/dashboard/api-keys", params={"active": "true"}, headers=headers).json()["keys"] == []
    assert client.get("/dashboard/api-keys", headers=headers).json()["keys"][0]["revoked"] is True
    assert client.get("/og", headers={"Authorization": f"Bearer {created['key']}"}).status_code == 401


def test_revoking_unknown_or_foreign_key_returns_404(client: TestClient) -> None:
    owner = create_api_key(client, sign_in(client))
    stranger = session_headers(sign_in(client, "mallory@example.com"))

    assert client.delete("/dashboard/api-keys/missing", headers=stranger).status_code == 404
    assert client.delete(f"/dashboard/api-keys/{owner['id']}", headers=stranger).status_code == 404


def test_key_name_is_validated(client: TestClient) -> None:
    headers = session_headers(sign_in(client))
    for name in ("", "x" * 101):
        response = client.post("/dashboard/api-keys", json={"name": name}, headers=headers)
        assert response.status_code == 400


def test_dashboard_usage_sums_account_keys(client: TestClient) -> None:
    session = sign_in(client)
    first = create_api_key(client, session, name="First")["key"]
    second = create_api_key(client, session, name="Second")["key"]
    for key in (first, second):
        response = client.get("/og", params={"title": "Hi"}, headers={"Authorization": f"Bearer {key}"})
        assert response.status_code == 200

    usage = client.get("/dashboard/usage", headers=session_headers(session)).json()
    assert usage["used"] == 2
    assert usage["limit"] == 1
    assert usage["plan"] == "free"
    assert usage["reset_at"].endswith("+00:00")
