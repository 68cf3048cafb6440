"""Pytest fixtures for integration tests.

This module provides shared fixtures for testing a running deployment:
an HTTP client for the API, direct PostgreSQL and Redis connections for
assertions, and helpers that create accounts and candidates.
"""

import os
import uuid
from typing import AsyncGenerator, Dict, Generator

import httpx
import psycopg2
import pytest
import redis
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

API = "/api/v1"


@pytest.fixture(scope="session")
def base_url() -> str:
    """Base URL for the voting API."""
    return os.getenv("API_BASE_URL", "http://localhost:8000")


@pytest.fixture(scope="session")
def service_ready(base_url: str):
    """Skip the run unless the API answers its health check."""
    try:
        response = httpx.get(f"{base_url}{API}/health", timeout=2.0)
    except (httpx.ConnectError, httpx.ReadTimeout):
        pytest.skip(f"Voting API not reachable at {base_url}")
    if response.status_code != 200:
        pytest.skip(f"Voting API unhealthy: {response.text}")


@pytest.fixture
async def api_client(base_url: str, service_ready) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client for making API requests."""
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        yield client


@pytest.fixture(scope="session")
def redis_client() -> Generator[redis.Redis, None, None]:
    """Redis client for direct cache assertions."""
    client = redis.Redis(
        host=os.getenv("REDIS_HOST", "localhost"),
        port=int(os.getenv("REDIS_PORT", "6379")),
        db=int(os.getenv("REDIS_DB", "0")),
        decode_responses=True
    )

    try:
        client.ping()
    except redis.ConnectionError:
        pytest.skip("Redis not available")

    yield client

    client.close()


@pytest.fixture(scope="session")
def postgres_connection():
    """PostgreSQL connection for direct database assertions."""
    try:
        conn = psycopg2.connect(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            dbname=os.getenv("POSTGRES_DB", "campus_ballot"),
            user=os.getenv("POSTGRES_USER", "ballot_user"),
            password=os.getenv("POSTGRES_PASSWORD", "ballot_pass")
        )
    except psycopg2.OperationalError as e:
        pytest.skip(f"PostgreSQL not available: {e}")
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)

    yield conn

    conn.close()


@pytest.fixture
def postgres_client(postgres_connection):
    """PostgreSQL cursor for executing queries."""
    cursor = postgres_connection.cursor()
    yield cursor
    cursor.close()


@pytest.fixture
def clear_databases(postgres_client, redis_client: redis.Redis):
    """Remove ballots, candidates, users and cached voter ids before a test."""
    postgres_client.execute("DELETE FROM ballots")
    postgres_client.execute("DELETE FROM candidates")
    postgres_client.execute("DELETE FROM users")
    redis_client.delete("voted_users")
    yield


@pytest.fixture
def register(api_client: httpx.AsyncClient):
    """Register a student with a unique id and return (user, auth headers)."""
    async def _register(department: str = "Computer Science", year: int = 2):
        student_id = f"IT{uuid.uuid4().hex[:8].upper()}"
        response = await api_client.post(f"{API}/auth/register", json={
            "student_id": student_id,
            "name": f"Student {student_id}",
            "email": f"{student_id.lower()}@campus.edu",
            "password": "secret123",
            "department": department,
            "year": year,
        })
        assert response.status_code == 201, response.text
        data = response.json()
        return data["user"], {"Authorization": f"Bearer {data['access_token']}"}
    return _register


@pytest.fixture
async def admin_headers(api_client: httpx.AsyncClient, register, postgres_client) -> Dict[str, str]:
    """Register a student and promote it to administrator in the database."""
    user, headers = await register(department="Student Affairs", year=4)
    postgres_client.execute("UPDATE users SET is_admin = TRUE WHERE id = %s", (user["id"],))
    return headers


@pytest.fixture
async def candidates(api_client: httpx.AsyncClient, admin_headers) -> Dict[str, dict]:
    """Two presidential candidates and a treasurer."""
    created = {}
    for name, position in [("Alice", "President"), ("Bob", "President"), ("Dan", "Treasurer")]:
        response = await api_client.post(
            f"{API}/admin/candidates",
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


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring the running service stack"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
