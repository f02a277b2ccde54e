"""
Tests for the webhook service: gateway callbacks and the application API.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import redis
from fastapi.testclient import TestClient

from wacore.clock import utcnow
from wacore.db import get_db

from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.streams.groups import INBOUND_STREAM

from whatsapp_webhook.deps import get_gateway, get_redis
from whatsapp_webhook.main import app

ALLOWED = {"X-Forwarded-For": "127.0.0.1"}


@pytest.fixture
def client(db, redis_client, gateway):
    """TestClient with database, Redis and gateway overridden (no startup hooks)."""

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_redis] = lambda: redis_client
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers(sample_tenant_id):
    return {"X-Tenant-ID": str(sample_tenant_id)}


def connection_update(instance: str = "acme_1", **extra) -> dict:
    return {"event": "connection.update", "instance": instance, "data": {"state": "open"}, **extra}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestReceiveWebhook:
    """Tests for POST /webhook/{account_key}."""

    def test_accepted_with_account_secret(self, client, redis_client, make_account):
        make_account("acme_1")

        response = client.post("/webhook/acme_1", json=connection_update(apikey="account-secret"), headers=ALLOWED)

        assert response.status_code == 200
        assert response.json() == {"status": "accepted", "event": "connection.update"}
        assert redis_client.xlen(INBOUND_STREAM) == 1

    def test_accepted_with_shared_secret_header(self, client, redis_client):
        headers = {**ALLOWED, "X-Webhook-Secret": "deployment-secret"}

        response = client.post("/webhook/acme_1", json={**connection_update(), "event": "CONNECTION_UPDATE"}, headers=headers)

        assert response.json() == {"status": "accepted", "event": "connection.update"}
        assert redis_client.xlen(INBOUND_STREAM) == 1

    def test_foreign_origin_rejected(self, client, redis_client, make_account):
        make_account("acme_1")

        response = client.post(
            "/webhook/acme_1",
            json=connection_update(apikey="account-secret"),
            headers={"X-Forwarded-For": "203.0.113.5"},
        )

        assert response.status_code == 403
        assert redis_client.exists(INBOUND_STREAM) == 0

    def test_missing_credential_rejected(self, client, redis_client):
        response = client.post("/webhook/acme_1", json=connection_update(apikey="guess"), headers=ALLOWED)

        assert response.status_code == 403
        assert redis_client.exists(INBOUND_STREAM) == 0

    def test_unparseable_forwarding_header_rejected(self, client):
        headers = {"X-Forwarded-For": "not-an-address", "X-Webhook-Secret": "deployment-secret"}
        response = client.post("/webhook/acme_1", json=connection_update(), headers=headers)
        assert response.status_code == 403

    def test_auth_runs_before_body_parsing(self, client):
        response = client.post("/webhook/acme_1", content=b"{not json", headers=ALLOWED)
        assert response.status_code == 403

    def test_invalid_json(self, client):
        headers = {**ALLOWED, "X-Webhook-Secret": "deployment-secret", "Content-Type": "application/json"}
        response = client.post("/webhook/acme_1", content=b"{not json", headers=headers)
        assert response.status_code == 400

    def test_other_account_ignored(self, client, redis_client):
        headers = {**ALLOWED, "X-Webhook-Secret": "deployment-secret"}

        response = client.post("/webhook/acme_1", json=connection_update(instance="acme_2"), headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "reason": "account_mismatch"}
        assert redis_client.exists(INBOUND_STREAM) == 0

    def test_unhandled_event_ignored(self, client, redis_client):
        headers = {**ALLOWED, "X-Webhook-Secret": "deployment-secret"}
        payload = {"event": "presence.update", "instance": "acme_1", "data": {}}

        response = client.post("/webhook/acme_1", json=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "event": "presence.update"}
        assert redis_client.exists(INBOUND_STREAM) == 0


class TestAccountsAPI:
    """Tests for the tenant-scoped account endpoints."""

    def test_tenant_header_required(self, client):
        assert client.get("/api/v1/accounts").status_code == 400
        assert client.get("/api/v1/accounts", headers={"X-Tenant-ID": "acme"}).status_code == 400

    def test_create_and_list(self, client, gateway, tenant_headers):
        response = client.post("/api/v1/accounts", json={"display_name": "Ferretería Lima"}, headers=tenant_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "disconnected"
        assert "secret_encrypted" not in data
        assert data["account_key"] in gateway.accounts

        listed = client.get("/api/v1/accounts", headers=tenant_headers).json()
        assert [account["id"] for account in listed] == [data["id"]]

    def test_foreign_account_not_found(self, client, make_account, other_tenant_id):
        account = make_account("acme_1")
        response = client.get(f"/api/v1/accounts/{account.id}", headers={"X-Tenant-ID": str(other_tenant_id)})
        assert response.status_code == 404

    def test_connect_returns_pairing_payload(self, client, make_account, tenant_headers):
        account = make_account("acme_1")

        response = client.post(f"/api/v1/accounts/{account.id}/connect", headers=tenant_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "connecting"
        assert data["already_connected"] is False
        assert data["pairing_payload"].startswith("stub-qr-acme_1")

    def test_connect_missing_on_gateway(self, client, make_account, tenant_headers):
        account = make_account("acme_1", gateway_state=None)
        response = client.post(f"/api/v1/accounts/{account.id}/connect", headers=tenant_headers)
        assert response.status_code == 502

    def test_connect_failed_without_credential(self, client, make_account, tenant_headers):
        account = make_account("acme_1", status="failed", secret=None)

        response = client.post(f"/api/v1/accounts/{account.id}/connect", headers=tenant_headers)

        assert response.status_code == 409
        assert response.json()["code"] == "MISSING_CREDENTIAL"

    def test_disconnect_failed_account_conflict(self, client, make_account, tenant_headers):
        account = make_account("acme_1", status="failed")
        response = client.post(f"/api/v1/accounts/{account.id}/disconnect", headers=tenant_headers)
        assert response.status_code == 409

    def test_status(self, client, make_account, tenant_headers):
        account = make_account("acme_1", status="connected", phone="5511999999999")

        response = client.get(f"/api/v1/accounts/{account.id}/status", headers=tenant_headers)

        assert response.json()["state"] == "connected"
        assert response.json()["phone_identity"] == "5511999999999"

    def test_delete(self, client, make_account, tenant_headers):
        account = make_account("acme_1")

        response = client.delete(f"/api/v1/accounts/{account.id}", headers=tenant_headers)

        assert response.json()["status"] == "deleted"
        assert client.get(f"/api/v1/accounts/{account.id}", headers=tenant_headers).status_code == 404


class TestMessagingAPI:
    """Tests for send endpoints and dispatch administration."""

    @pytest.fixture
    def account(self, make_account):
        return make_account("acme_1", status="connected", phone="5511999999999", gateway_state="open")

    def test_send_single(self, client, account, tenant_headers):
        response = client.post(
            f"/api/v1/accounts/{account.id}/messages",
            json={"to": "+55 11 88888-8888", "text": "Hola"},
            headers=tenant_headers,
        )

        assert response.status_code == 202
        assert response.json()["message_id"] is not None

        stats = client.get("/api/v1/dispatch/stats", headers=tenant_headers).json()
        assert stats["waiting"] == 1

    def test_send_when_queue_unavailable(self, client, account, tenant_headers, monkeypatch):
        def refuse(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")

        monkeypatch.setattr(DispatchQueue, "enqueue_single", refuse)

        response = client.post(
            f"/api/v1/accounts/{account.id}/messages",
            json={"to": "5511888888888", "text": "Hola"},
            headers=tenant_headers,
        )

        assert response.status_code == 503
        assert response.json()["code"] == "ENQUEUE_FAILED"

    def test_send_bulk(self, client, account, tenant_headers):
        response = client.post(
            f"/api/v1/accounts/{account.id}/messages/bulk",
            json={"recipients": ["5511000000001", "5511000000002"], "text": "Promo", "delay_ms": 1500},
            headers=tenant_headers,
        )

        assert response.status_code == 202
        assert response.json()["total_queued"] == 2
        assert response.json()["estimated_seconds"] == 3.0

    def test_bulk_delay_must_be_positive(self, client, account, tenant_headers):
        response = client.post(
            f"/api/v1/accounts/{account.id}/messages/bulk",
            json={"recipients": ["5511000000001"], "text": "Promo", "delay_ms": 0},
            headers=tenant_headers,
        )
        assert response.status_code == 422

    def test_scheduled_in_past_rejected(self, client, account, tenant_headers):
        response = client.post(
            f"/api/v1/accounts/{account.id}/messages/scheduled",
            json={"to": "5511888888888", "text": "Tarde", "send_at": (utcnow() - timedelta(minutes=5)).isoformat()},
            headers=tenant_headers,
        )
        assert response.status_code == 422

    def test_cancel_scheduled(self, client, account, tenant_headers):
        response = client.post(
            f"/api/v1/accounts/{account.id}/messages/scheduled",
            json={"to": "5511888888888", "text": "Luego", "send_at": (utcnow() + timedelta(hours=1)).isoformat()},
            headers=tenant_headers,
        )
        job_id = response.json()["job_id"]

        cancelled = client.delete(f"/api/v1/dispatch/jobs/{job_id}", headers=tenant_headers)

        assert cancelled.json() == {"status": "cancelled", "job_id": job_id}

    def test_cancel_unknown_job(self, client, tenant_headers):
        response = client.delete(f"/api/v1/dispatch/jobs/{uuid4()}", headers=tenant_headers)
        assert response.status_code == 404

    def test_rate_limit_usage(self, client, tenant_headers):
        data = client.get("/api/v1/dispatch/rate-limit", headers=tenant_headers).json()
        assert data["plan"] == "basic"
        assert data["usage"]["minute"] == 0


class TestPolicyAPI:
    """Tests for the auto-response policy endpoints."""

    def test_defaults(self, client, tenant_headers):
        data = client.get("/api/v1/policy", headers=tenant_headers).json()

        assert data["enabled"] is False
        assert data["response_mode"] == "always"
        assert data["personality"] == "professional"

    def test_update_and_toggle(self, client, tenant_headers):
        updated = client.put(
            "/api/v1/policy",
            json={"response_mode": "keywords", "keywords": ["precio", "stock"]},
            headers=tenant_headers,
        ).json()
        assert updated["response_mode"] == "keywords"
        assert updated["keywords"] == ["precio", "stock"]

        toggled = client.post("/api/v1/policy/toggle", json={"enabled": True}, headers=tenant_headers).json()
        assert toggled["enabled"] is True
        assert toggled["keywords"] == ["precio", "stock"]

    def test_invalid_update_rejected(self, client, tenant_headers):
        response = client.put("/api/v1/policy", json={"response_mode": "sometimes"}, headers=tenant_headers)
        assert response.status_code == 422

    def test_usage(self, client, tenant_headers):
        data = client.get("/api/v1/policy/usage", headers=tenant_headers).json()
        assert data["daily"]["tokens"]["used"] == 0
        assert data["daily"]["tokens"]["limit"] == 10000
