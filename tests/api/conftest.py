"""Fixtures for exercising the FastAPI app in-process on the memory backend."""

from typing import AsyncGenerator, Dict

import httpx
import pytest
from redis.exceptions import RedisError

from campus_ballot.voting_api import main


@pytest.fixture
async def api_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client bound to a freshly started app with empty storage."""
    async with main.app.router.lifespan_context(main.app):
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client


@pytest.fixture
def student_payload():
    def _payload(student_id: str, **overrides) -> Dict:
        payload = {
            "student_id": student_id,
            "name": f"Student {student_id}",
            "email": f"{student_id.lower()}@campus.edu",
            "password": "secret123",
            "department": "Computer Science",
            "year": 2,
        }
        payload.update(overrides)
        return payload
    return _payload


@pytest.fixture
def register(api_client, student_payload):
    """Register a student and return auth headers."""
    async def _register(student_id: str, **overrides) -> Dict[str, str]:
        response = await api_client.post(
            "/api/v1/auth/register", json=student_payload(student_id, **overrides)
        )
        assert response.status_code == 201, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}
    return _register


@pytest.fixture
async def admin_headers(api_client) -> Dict[str, str]:
    await main.accounts.register(
        student_id="ADMIN001",
        name="Election Administrator",
        email="admin@campus.edu",
        password="admin123",
        department="Student Affairs",
        year=4,
        is_admin=True,
    )
    response = await api_client.post(
        "/api/v1/auth/login", json={"student_id": "admin001", "password": "admin123"}
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
async def candidates(api_client, admin_headers) -> Dict[str, dict]:
    """A president race, a vice president and a treasurer, added through the API."""
    created = {}
    for name, position in [
        ("Alice", "President"),
        ("Bob", "President"),
        ("Carol", "Vice President"),
        ("Dan", "Treasurer"),
    ]:
        response = await api_client.post(
            "/api/v1/admin/candidates",
            json={
                "name": name,
                "position": position,
                "department": "Engineering",
                "year": 3,
                "manifesto": f"{name} for {position}",
            },
            headers=admin_headers,
        )
        assert response.status_code == 201, response.text
        created[name.lower()] = response.json()
    return created


class FakeVoterSet:
    """In-process stand-in for the Redis client behind VoterStatusCache."""

    def __init__(self):
        self.members = set()
        self.fail_delete = False

    async def ping(self):
        return True

    async def sismember(self, key, member):
        return member in self.members

    async def sadd(self, key, member):
        self.members.add(member)

    async def srem(self, key, member):
        self.members.discard(member)

    async def delete(self, key):
        if self.fail_delete:
            raise RedisError("connection reset by peer")
        self.members.clear()

    async def close(self):
        pass


@pytest.fixture
def voter_set(api_client):
    """Install a fake Redis client in the running app's voter cache."""
    fake = FakeVoterSet()
    main.voter_cache.client = fake
    yield fake
    main.voter_cache.client = None
