"""Tests for registration, login and token handling."""

import pytest

from campus_ballot.shared.errors import InvalidCredentials
from campus_ballot.shared.models import User
from campus_ballot.voting_api.auth import JWTAuthProvider


@pytest.mark.asyncio
class TestAuthRoutes:

    async def test_register_normalizes_identity(self, api_client, student_payload):
        response = await api_client.post(
            "/api/v1/auth/register",
            json=student_payload("cs2024100", email="Ada@Campus.Edu"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["student_id"] == "CS2024100"
        assert data["user"]["email"] == "ada@campus.edu"
        assert data["user"]["has_voted"] is False
        assert "password_hash" not in data["user"]

    async def test_duplicate_registration(self, api_client, student_payload):
        first = await api_client.post("/api/v1/auth/register", json=student_payload("CS2024101"))
        assert first.status_code == 201

        same_id = await api_client.post(
            "/api/v1/auth/register",
            json=student_payload("CS2024101", email="other@campus.edu"),
        )
        same_email = await api_client.post(
            "/api/v1/auth/register",
            json=student_payload("CS2024102", email="cs2024101@campus.edu"),
        )

        assert same_id.status_code == 409
        assert same_email.status_code == 409
        assert same_id.json()["error"] == "user_exists"

    @pytest.mark.parametrize("overrides", [
        {"student_id": "AB1"},
        {"student_id": "CS-2024-01"},
        {"password": "123"},
        {"year": 5},
        {"email": "not-an-email"},
        {"email": "a@b..c"},
    ])
    async def test_registration_validation(self, api_client, student_payload, overrides):
        payload = student_payload("CS2024103")
        payload.update(overrides)

        response = await api_client.post("/api/v1/auth/register", json=payload)

        assert response.status_code == 422

    async def test_login_and_me(self, api_client, register):
        await register("CS2024104")

        login = await api_client.post(
            "/api/v1/auth/login", json={"student_id": "cs2024104", "password": "secret123"}
        )
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = await api_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["student_id"] == "CS2024104"

    @pytest.mark.parametrize("student_id,password", [
        ("CS2024105", "wrong-password"),
        ("NOSUCH999", "secret123"),
    ])
    async def test_login_rejected(self, api_client, register, student_id, password):
        await register("CS2024105")

        response = await api_client.post(
            "/api/v1/auth/login", json={"student_id": student_id, "password": password}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_credentials"

    async def test_garbage_token(self, api_client):
        response = await api_client.get(
            "/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"}
        )

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestJWTAuthProvider:

    def make_user(self):
        return User(
            student_id="CS2024200",
            name="Token Holder",
            email="holder@campus.edu",
            department="Arts",
            year=1,
        )

    def test_token_round_trip(self):
        provider = JWTAuthProvider("secret", bcrypt_rounds=4)
        user = self.make_user()

        assert provider.resolve_token(provider.issue_token(user)) == user.id

    def test_token_from_other_secret_rejected(self):
        user = self.make_user()
        token = JWTAuthProvider("one-secret", bcrypt_rounds=4).issue_token(user)

        with pytest.raises(InvalidCredentials):
            JWTAuthProvider("another-secret", bcrypt_rounds=4).resolve_token(token)

    def test_expired_token_rejected(self):
        provider = JWTAuthProvider("secret", expire_minutes=-1, bcrypt_rounds=4)

        with pytest.raises(InvalidCredentials):
            provider.resolve_token(provider.issue_token(self.make_user()))

    def test_password_hashing(self):
        provider = JWTAuthProvider("secret", bcrypt_rounds=4)
        hashed = provider.hash_password("secret123")

        assert hashed != "secret123"
        assert provider.verify_password("secret123", hashed)
        assert not provider.verify_password("secret124", hashed)
        assert not provider.verify_password("secret123", "")
