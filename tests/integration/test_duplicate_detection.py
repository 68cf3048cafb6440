"""Integration tests for double-voting prevention.

Tests that repeated and concurrent submissions by one student produce one
ballot, that the voter cache is filled, and that counters stay equal to the
ballot selections under concurrent load.

Requires: running stack, run with ``pytest --docker``
"""

import asyncio

import httpx
import pytest
import redis

API = "/api/v1"


def ballot(*entries):
    return {"votes": [{"position": c["position"], "candidate_id": c["id"]} for c in entries]}


@pytest.mark.docker
@pytest.mark.asyncio
class TestDuplicateDetection:
    """Tests for double-vote detection."""

    async def test_same_ballot_twice_counts_once(
        self,
        api_client: httpx.AsyncClient,
        register,
        candidates,
        redis_client: redis.Redis,
        clear_databases
    ):
        """Test: submit the same ballot twice, verify it is counted once.

        Flow:
        1. First submission is accepted (201)
        2. Second submission is rejected as already voted (403)
        3. The user id is in the Redis voted_users set
        4. Results show a single vote
        """
        user, headers = await register()

        first = await api_client.post(f"{API}/votes/cast", json=ballot(candidates["alice"]), headers=headers)
        second = await api_client.post(f"{API}/votes/cast", json=ballot(candidates["alice"]), headers=headers)

        assert first.status_code == 201
        assert second.status_code == 403
        assert second.json()["error"] == "already_voted"
        assert redis_client.sismember("voted_users", user["id"])

        results = (await api_client.get(f"{API}/votes/results", headers=headers)).json()
        alice = next(c for c in results["results_by_position"]["President"] if c["name"] == "Alice")
        assert alice["vote_count"] == 1

    async def test_concurrent_submissions_one_ballot(
        self,
        api_client: httpx.AsyncClient,
        register,
        candidates,
        postgres_client,
        clear_databases
    ):
        """Test: 20 simultaneous submissions by one student store one ballot."""
        user, headers = await register()

        responses = await asyncio.gather(*(
            api_client.post(f"{API}/votes/cast", json=ballot(candidates["bob"]), headers=headers)
            for _ in range(20)
        ))

        codes = [r.status_code for r in responses]
        assert codes.count(201) == 1
        assert set(codes) <= {201, 403, 409}

        postgres_client.execute("SELECT COUNT(*) FROM ballots WHERE user_id = %s", (user["id"],))
        assert postgres_client.fetchone()[0] == 1
        postgres_client.execute("SELECT vote_count FROM candidates WHERE id = %s", (candidates["bob"]["id"],))
        assert postgres_client.fetchone()[0] == 1

    @pytest.mark.slow
    async def test_counts_equal_ballots_under_load(
        self,
        api_client: httpx.AsyncClient,
        register,
        candidates,
        admin_headers,
        postgres_client,
        clear_databases
    ):
        """Test: many students voting at once leave no counter drift."""
        voters = [await register() for _ in range(40)]
        picks = ["alice", "bob"]

        await asyncio.gather(*(
            api_client.post(
                f"{API}/votes/cast",
                json=ballot(candidates[picks[i % 2]], candidates["dan"]),
                headers=headers,
            )
            for i, (_, headers) in enumerate(voters)
        ))

        postgres_client.execute(
            """
            SELECT c.id FROM candidates c
            LEFT JOIN (SELECT candidate_id, COUNT(*) AS n FROM ballot_selections GROUP BY candidate_id) s
                ON s.candidate_id = c.id
            WHERE c.vote_count <> COALESCE(s.n, 0)
            """
        )
        assert postgres_client.fetchall() == []

        response = await api_client.post(f"{API}/admin/reconcile", headers=admin_headers)
        assert response.json() == {"candidates_corrected": 0, "users_flagged": 0}
