"""
Tests for key issuance, usage, health and framework-level responses.
"""

import pytest
from fastapi import APIRouter
from httpx import ASGITransport, AsyncClient

from gateway.context import ServiceContext
from gateway.main import create_app
from gateway.services.identity import KEY_PREFIX
from gateway.services.usage import UsageJournal


class TestCreateKey:
    async def test_issues_key(self, client: AsyncClient):
        response = await client.post(
            "/v1/keys", json={"email": "New.User@Example.com", "name": "laptop"}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["api_key"].startswith(KEY_PREFIX)
        assert data["prefix"] == data["api_key"][:20] + "..."
        assert data["name"] == "laptop"
        assert "cannot be retrieved" in data["message"]

    async def test_legacy_path_and_default_name(self, client: AsyncClient):
        response = await client.post("/keys", json={"email": "legacy@example.com"})

        assert response.status_code == 201
        assert response.json()["name"] == "default"

    async def test_same_email_gets_new_key_same_account(self, client: AsyncClient):
        first = (await client.post("/v1/keys", json={"email": "twice@example.com"})).json()
        second = (await client.post("/v1/keys", json={"email": "TWICE@example.com"})).json()
        assert first["api_key"] != second["api_key"]

        listed = await client.get(
            "/v1/keys", headers={"Authorization": f"Bearer {second['api_key']}"}
        )
        assert {key["prefix"] for key in listed.json()["keys"]} == {
            first["prefix"],
            second["prefix"],
        }

    async def test_invalid_email(self, client: AsyncClient):
        response = await client.post("/v1/keys", json={"email": "no-at-sign"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "invalid_request"
        assert "Valid email is required" in error["message"]

    async def test_missing_body(self, client: AsyncClient):
        response = await client.post("/v1/keys")

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request"


class TestListAndRevoke:
    async def test_requires_auth(self, client: AsyncClient):
        response = await client.get("/v1/keys")
        assert response.status_code == 401
        assert response.json()["error"]["type"] == "auth_error"

    async def test_revoke_own_key(self, client: AsyncClient, make_account):
        account = await make_account("revoker@example.com")
        spare = (await client.post("/v1/keys", json={"email": "revoker@example.com"})).json()

        response = await client.delete(f"/v1/keys/{spare['prefix']}", headers=account.headers)
        assert response.status_code == 200
        assert response.json() == {"prefix": spare["prefix"], "revoked": True}

        # The revoked key stops working immediately
        rejected = await client.get(
            "/v1/keys", headers={"Authorization": f"Bearer {spare['api_key']}"}
        )
        assert rejected.status_code == 401

        keys = (await client.get("/v1/keys", headers=account.headers)).json()["keys"]
        revoked = {key["prefix"]: key["revoked"] for key in keys}
        assert revoked[spare["prefix"]] is True

    async def test_revoke_unknown_prefix(self, client: AsyncClient, make_account):
        account = await make_account()
        response = await client.delete("/v1/keys/cgk_nothere...", headers=account.headers)

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"

    async def test_cannot_revoke_other_users_key(self, client: AsyncClient, make_account):
        owner = await make_account("owner@example.com")
        intruder = await make_account("intruder@example.com")
        owner_prefix = (await client.get("/v1/keys", headers=owner.headers)).json()["keys"][0][
            "prefix"
        ]

        response = await client.delete(f"/v1/keys/{owner_prefix}", headers=intruder.headers)

        assert response.status_code == 404
        assert (await client.get("/v1/keys", headers=owner.headers)).status_code == 200


class TestUsage:
    async def test_usage_report(self, client: AsyncClient, make_account, session_factory):
        account = await make_account(balance=1234)
        async with session_factory() as session:
            journal = UsageJournal(session)
            await journal.record(account.user.user_id, "openai", "gpt-4o", 100, 50, 1)
            await journal.record(account.user.user_id, "openai", "gpt-4o", 200, 10, 1)

        response = await client.get("/v1/usage", headers=account.headers)

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 1234
        assert data["balance_usd"] == "$12.34"
        assert data["subscription_active"] is False
        assert data["subscription_expires_at"] is None
        assert data["usage_last_30_days"] == [
            {
                "provider": "openai",
                "model": "gpt-4o",
                "requests": 2,
                "total_input_tokens": 300,
                "total_output_tokens": 60,
                "total_cost": 2,
            }
        ]
        assert len(data["recent_requests"]) == 2
        assert len(data["keys"]) == 1

    async def test_legacy_usage_path(self, client: AsyncClient, make_account):
        account = await make_account()
        response = await client.get("/usage", headers=account.headers)
        assert response.status_code == 200
        assert response.json()["balance_usd"] == "$0.00"


class TestServiceEndpoints:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"

    async def test_unknown_route(self, client: AsyncClient):
        response = await client.get("/v1/nope")

        assert response.status_code == 404
        assert response.json() == {
            "error": {"message": "Not found: GET /v1/nope", "type": "not_found"}
        }

    async def test_request_id_echoed(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_request_id_generated(self, client: AsyncClient):
        response = await client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 32

    async def test_metrics(self, client: AsyncClient):
        await client.get("/health")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_http_requests_total" in response.text

    async def test_unexpected_error_is_500_envelope(self, context: ServiceContext):
        app = create_app(context)
        boom = APIRouter()

        @boom.get("/boom")
        async def explode() -> None:
            raise RuntimeError("kaboom")

        app.include_router(boom)
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://testserver"
        ) as client:
            response = await client.get("/boom")

        assert response.status_code == 500
        assert response.json() == {
            "error": {"message": "Internal server error", "type": "server_error"}
        }


class TestMetricsDisabled:
    @pytest.fixture
    def settings_overrides(self):
        return {"metrics_enabled": False}

    async def test_metrics_404(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"
