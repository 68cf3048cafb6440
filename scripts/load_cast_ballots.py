#!/usr/bin/env python3
"""
Load test for ballot casting against a running API.

Logs in the demo students created by seed_election.py, casts one random
ballot per student at a target rate and, for a share of them, fires repeat
submissions at the same time. Reports throughput and latency, and checks
that the results endpoint counts exactly the accepted ballots.

Usage:
    python scripts/seed_election.py --students 2000
    python scripts/load_cast_ballots.py --voters 2000 --rate 200 --repeat-share 0.1

All requests come from one address, so raise RATE_LIMIT on the API first.

Performance Targets:
    - Latency: p95 < 100ms for ballot submission
    - Exactly one accepted ballot per student
"""

import argparse
import asyncio
import json
import random
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

import httpx

API = "/api/v1"


class LoadTestMetrics:
    """Collect and report load test metrics."""

    def __init__(self):
        self.latencies: List[float] = []
        self.statuses: Counter = Counter()
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def record(self, latency: float, status: str):
        self.latencies.append(latency)
        self.statuses[status] += 1

    def percentile(self, percentile: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        index = int(len(ordered) * (percentile / 100.0))
        return ordered[min(index, len(ordered) - 1)]

    @property
    def total(self) -> int:
        return sum(self.statuses.values())

    @property
    def accepted(self) -> int:
        return self.statuses["201"]

    @property
    def requests_per_second(self) -> float:
        duration = (self.end_time or time.time()) - (self.start_time or time.time())
        return self.total / duration if duration > 0 else 0.0

    def generate_report(self) -> str:
        duration = (self.end_time or 0) - (self.start_time or 0)
        report = [
            "\n" + "=" * 70,
            "📊 BALLOT LOAD TEST RESULTS",
            "=" * 70,
            f"\n⏱️  Duration: {duration:.2f} seconds",
            f"📈 Total Requests: {self.total:,}",
            f"✅ Accepted ballots: {self.accepted:,}",
            f"🚀 Requests/sec: {self.requests_per_second:.2f}",
            "\n⏲️  Latency (ms):",
            f"   - Median (p50): {self.percentile(50) * 1000:.2f}",
            f"   - p95: {self.percentile(95) * 1000:.2f}",
            f"   - p99: {self.percentile(99) * 1000:.2f}",
            "\n📋 Responses:",
        ]
        for status, count in sorted(self.statuses.items(), key=lambda x: -x[1]):
            report.append(f"   - {status}: {count:,}")
        report.append("=" * 70 + "\n")
        return "\n".join(report)


async def login(client: httpx.AsyncClient, student_id: str, password: str) -> Optional[str]:
    response = await client.post(
        f"{API}/auth/login", json={"student_id": student_id, "password": password}
    )
    if response.status_code != 200:
        return None
    return response.json()["access_token"]


async def total_votes(client: httpx.AsyncClient, auth: Dict[str, str]) -> int:
    response = await client.get(f"{API}/votes/results", headers=auth)
    return response.json()["totals"]["total_votes"]


def random_ballot(grouped: Dict[str, List[dict]], rng: random.Random) -> dict:
    positions = rng.sample(sorted(grouped), rng.randint(1, len(grouped)))
    return {
        "votes": [
            {"position": p, "candidate_id": rng.choice(grouped[p])["id"]}
            for p in positions
        ]
    }


async def cast(client: httpx.AsyncClient, token: str, ballot: dict, metrics: LoadTestMetrics):
    started = time.time()
    try:
        response = await client.post(
            f"{API}/votes/cast",
            json=ballot,
            headers={"Authorization": f"Bearer {token}"},
            timeout=10.0,
        )
        metrics.record(time.time() - started, str(response.status_code))
    except httpx.HTTPError as e:
        metrics.record(time.time() - started, type(e).__name__)


async def run(args) -> int:
    rng = random.Random(args.seed)
    metrics = LoadTestMetrics()

    async with httpx.AsyncClient(base_url=args.base_url) as client:
        print(f"Logging in {args.voters:,} students...")
        tokens = await asyncio.gather(*(
            login(client, f"STU{i:06d}", args.password) for i in range(args.voters)
        ))
        tokens = [t for t in tokens if t]
        if not tokens:
            print("✗ No student could log in. Run scripts/seed_election.py --students N first.",
                  file=sys.stderr)
            return 1

        auth = {"Authorization": f"Bearer {tokens[0]}"}
        grouped = (await client.get(f"{API}/votes/candidates", headers=auth)).json()
        if not grouped:
            print("✗ No active candidates", file=sys.stderr)
            return 1

        before = await total_votes(client, auth)

        batch_size = max(1, min(args.rate, 100))
        batch_delay = batch_size / args.rate
        metrics.start_time = time.time()

        for offset in range(0, len(tokens), batch_size):
            tasks = []
            for token in tokens[offset:offset + batch_size]:
                ballot = random_ballot(grouped, rng)
                copies = 1 + (args.repeats if rng.random() < args.repeat_share else 0)
                tasks.extend(cast(client, token, ballot, metrics) for _ in range(copies))
            await asyncio.gather(*tasks)
            await asyncio.sleep(batch_delay)

        metrics.end_time = time.time()
        after = await total_votes(client, auth)

    print(metrics.generate_report())

    new_ballots = after - before
    consistent = new_ballots == metrics.accepted and metrics.accepted <= len(tokens)
    print(f"{'✅' if consistent else '❌'} Results count {new_ballots:,} new ballots "
          f"for {metrics.accepted:,} accepted submissions from {len(tokens):,} students")

    if args.output:
        with open(args.output, "w") as f:
            json.dump({
                "timestamp": datetime.now().isoformat(),
                "voters": len(tokens),
                "statuses": dict(metrics.statuses),
                "p95_ms": metrics.percentile(95) * 1000,
                "requests_per_second": metrics.requests_per_second,
                "consistent": consistent,
            }, f, indent=2)

    return 0 if consistent else 2


def main():
    parser = argparse.ArgumentParser(description="Ballot casting load test")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--voters", type=int, default=1000)
    parser.add_argument("--password", default="student123")
    parser.add_argument("--rate", type=int, default=100, help="Target ballots per second")
    parser.add_argument("--repeat-share", type=float, default=0.1,
                        help="Share of students that also send concurrent repeats")
    parser.add_argument("--repeats", type=int, default=3)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--output", help="Write a JSON summary to this file")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
