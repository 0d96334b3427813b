from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from propyield import store
from propyield.config import settings
from propyield.ingest.apify import ApifyClient
from propyield.ingest.pipeline import IngestionPipeline
from propyield.main import app

APIFY_SECRET = "apify-test-secret"
BILLING_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh SQLite file and event log per test."""
    monkeypatch.setattr(store, "DB_PATH", tmp_path / "propyield.db")
    monkeypatch.setattr(settings, "event_log_path", str(tmp_path / "events.log"))
    monkeypatch.setattr(settings, "environment", "dev")
    monkeypatch.setattr(settings, "apify_webhook_secret", APIFY_SECRET)
    monkeypatch.setattr(settings, "apify_webhook_url", "")
    monkeypatch.setattr(settings, "billing_webhook_secret", BILLING_SECRET)
    monkeypatch.setattr(settings, "ingest_rate_limit_max", 10)
    monkeypatch.setattr(settings, "billing_product_tiers", {"prod_investor": "investor", "prod_pro": "pro"})
    store.init_db()
    return tmp_path


class FakeApify:
    """Scripted Apify REST API served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.items: list[dict[str, Any]] = []
        self.run_statuses: list[str] = ["SUCCEEDED"]
        self.start_responses: list[tuple[int, Any]] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/runs"):
            if self.start_responses:
                status, body = self.start_responses.pop(0)
                return httpx.Response(status, json=body)
            return httpx.Response(
                201, json={"data": {"id": "run-1", "status": "READY", "defaultDatasetId": "ds-1"}}
            )
        if "/actor-runs/" in path:
            status = self.run_statuses.pop(0) if len(self.run_statuses) > 1 else self.run_statuses[0]
            return httpx.Response(
                200, json={"data": {"id": "run-1", "status": status, "defaultDatasetId": "ds-1"}}
            )
        if "/datasets/" in path:
            return httpx.Response(200, json=self.items)
        return httpx.Response(404, json={"error": "not found"})

    def calls(self, fragment: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if fragment in r.url.path and (method is None or r.method == method)
        ]

    def client(self) -> ApifyClient:
        return ApifyClient(
            token="test-token",
            base_url="https://api.apify.test/v2",
            transport=httpx.MockTransport(self.handler),
            sleep=lambda _: None,
        )


@pytest.fixture
def fake_apify() -> FakeApify:
    return FakeApify()


@pytest.fixture
def pipeline(fake_apify: FakeApify) -> IngestionPipeline:
    return IngestionPipeline(
        client=fake_apify.client(),
        poll_interval=0,
        max_polls=3,
        sleep=lambda _: None,
    )


@pytest.fixture
def rightmove_items() -> list[dict[str, Any]]:
    return [
        {
            "id": "rm-1",
            "displayAddress": "12 Oak Street, Manchester, M1 4AB",
            "price": "£200,000",
            "bedrooms": 3,
            "propertySubType": "Terraced",
            "propertyUrl": "https://www.rightmove.co.uk/properties/1",
            "propertyImages": [{"url": "https://media.rightmove.test/1.jpg"}],
            "location": {"latitude": 53.48, "longitude": -2.24},
        },
        {
            "id": "rm-2",
            "address": {"displayAddress": "4 Elm Road, Leeds", "postcode": "LS1 2AB", "town": "Leeds"},
            "price": {"amount": 150000},
            "bedrooms": "2 bedrooms",
        },
        {
            "id": "rm-3",
            "displayAddress": "Address on request",
            "price": 180000,
        },
    ]


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    resp = client.post(
        "/api/v1/auth/signup",
        json={"username": "investor", "email": "investor@example.com", "password": "Str0ngPass"},
    )
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def stripe_signature() -> Callable[..., str]:
    """Build a ``Stripe-Signature`` header the way Stripe signs webhook deliveries."""

    def _sign(payload: bytes, secret: str = BILLING_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign
