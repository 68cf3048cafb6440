"""Integration tests for API endpoints.

Tests request validation, authentication, health and metrics endpoints of
the deployed service.

Requires: running stack, run with ``pytest --docker``
"""

import httpx
import pytest

API = "/api/v1"


@pytest.mark.docker
@pytest.mark.asyncio
class TestCastValidation:
    """Tests for POST /api/v1/votes/cast request validation."""

    async def test_cast_without_token(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/votes/cast", json={"votes": []})

        assert response.status_code in [401, 422]

    async def test_unknown_position(self, api_client: httpx.AsyncClient, register, clear_databases):
        _, headers = await register()

        response = await api_client.post(
            f"{API}/votes/cast",
            json={"votes": [{"position": "Dean", "candidate_id": "x"}]},
            headers=headers,
        )

        assert response.status_code == 422

    async def test_malformed_json(self, api_client: httpx.AsyncClient, register, clear_databases):
        _, headers = await register()

        response = await api_client.post(
            f"{API}/votes/cast",
            content="not valid json",
            headers={**headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 422


@pytest.mark.docker
@pytest.mark.asyncio
class TestAuthEndpoints:

    async def test_register_login_me(self, api_client: httpx.AsyncClient, register, clear_databases):
        user, headers = await register()

        login = await api_client.post(
            f"{API}/auth/login", json={"student_id": user["student_id"], "password": "secret123"}
        )
        me = await api_client.get(f"{API}/auth/me", headers=headers)

        assert login.status_code == 200
        assert me.json()["id"] == user["id"]

    async def test_admin_route_requires_admin(
        self, api_client: httpx.AsyncClient, register, clear_databases
    ):
        _, headers = await register()

        response = await api_client.post(f"{API}/admin/reset", headers=headers)

        assert response.status_code == 403


@pytest.mark.docker
@pytest.mark.asyncio
class TestOperationalEndpoints:

    async def test_health(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["storage"] == "connected"
        assert data["services"]["redis"] == "connected"

    async def test_metrics(self, api_client: httpx.AsyncClient):
        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "http_request_duration_seconds" in response.text
        assert "vote_errors_total" in response.text
