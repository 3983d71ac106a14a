from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Iterator
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ["EDGE_OG_ENVIRONMENT"] = "test"
os.environ["EDGE_OG_JWT_SECRET"] = "test-jwt-secret-with-at-least-32-characters"
os.environ["EDGE_OG_EMAIL_PEPPER"] = "test-email-pepper-16+"
os.environ["EDGE_OG_ADMIN_SECRET"] = "test-admin-secret"
os.environ["EDGE_OG_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EDGE_OG_STORE_BACKEND"] = "memory"
os.environ["EDGE_OG_REQUIRE_AUTH"] = "true"
os.environ.pop("EDGE_OG_CACHE_VERSION", None)
os.environ.pop("EDGE_OG_PLAN_LIMITS", None)

from edge_og.config import get_settings  # noqa: E402
from edge_og.main import app  # noqa: E402
from edge_og.services.billing import sign_payload  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Secret": "test-admin-secret"}
WEBHOOK_SECRET = "whsec_test_secret"
FAKE_PNG = b"\x89PNG\r\n\x1a\nfake-image"


class CapturingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_magic_link(self, email: str, link: str) -> None:
        self.sent.append((email, link))

    def last_token(self) -> str:
        _, link = self.sent[-1]
        return parse_qs(urlparse(link).query)["token"][0]


@pytest.fixture
def client(monkeypatch) -> Iterator[TestClient]:
    get_settings.cache_clear()
    with TestClient(app) as test_client:
        gateway = app.state.gateway

        async def fake_rasterize(svg: str) -> bytes:
            assert "<svg" in svg
            return FAKE_PNG

        monkeypatch.setattr(gateway.renderer, "rasterize", fake_rasterize)
        gateway.mailer = CapturingMailer()
        yield test_client
    get_settings.cache_clear()


@pytest.fixture
def gateway(client: TestClient):
    return app.state.gateway


def sign_in(client: TestClient, email: str = "ada@example.com") -> str:
    response = client.post("/auth/request-link", json={"email": email})
    assert response.status_code == 200
    token = app.state.gateway.mailer.last_token()

    callback = client.get("/auth/callback", params={"token": token}, follow_redirects=False)
    assert callback.status_code == 302
    cookie = callback.headers["set-cookie"]
    return cookie.split(";", 1)[0].split("=", 1)[1]


def session_headers(session: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {session}"}


def create_api_key(client: TestClient, session: str, name: str = "Production") -> dict:
    response = client.post(
        "/dashboard/api-keys", json={"name": name}, headers=session_headers(session)
    )
    assert response.status_code == 201
    return response.json()


def signed_webhook_headers(body: str, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    return {
        "Content-Type": "application/json",
        "Stripe-Signature": f"t={timestamp},v1={sign_payload(secret, timestamp, body)}",
    }
