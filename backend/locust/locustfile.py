"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags contention   # Fight over a single space
  locust -f locustfile.py --tags throughput   # Availability cache
  locust -f locustfile.py --tags edge         # Bad input
  locust -f locustfile.py                     # All tests
"""

import random
from datetime import datetime, timedelta, timezone

import requests
from locust import HttpUser, between, events, tag, task

# Shared state
LOT_IDS = []
CONTENTION_LOT_ID = None
CONTENTION_START = (datetime.now(timezone.utc) + timedelta(days=7)).replace(
    hour=9, minute=0, second=0, microsecond=0
)


def user_headers() -> dict:
    return {"X-User-ID": str(random.randint(1, 1_000_000))}


def contention_interval() -> dict:
    return {
        "start_time": CONTENTION_START.isoformat(),
        "end_time": (CONTENTION_START + timedelta(hours=1)).isoformat(),
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Setup: create a capacity-1 lot for the contention test."""
    global CONTENTION_LOT_ID

    resp = requests.post(
        f"{environment.host}/api/v1/parking-lots/",
        json={"name": "Contention Lot", "capacity": 1, "hourly_rate": "10.00", "daily_rate": "100.00"},
        timeout=10,
    )
    if resp.status_code == 201:
        CONTENTION_LOT_ID = resp.json()["id"]
        LOT_IDS.append(CONTENTION_LOT_ID)
        print(f"\nCreated lot {CONTENTION_LOT_ID} with 1 space\n")


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - many drivers, one space, one hour

    Run: locust -f locustfile.py --tags contention -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT COUNT(*) FROM reservations
      WHERE resource_id = X AND status IN ('confirmed', 'active');
    Should be exactly 1
    """
    wait_time = between(0, 0.1)

    @tag("contention")
    @task
    def reserve_last_space(self):
        if not CONTENTION_LOT_ID:
            return

        with self.client.post(
            "/api/v1/reservations/",
            json={"resource_id": CONTENTION_LOT_ID, **contention_interval()},
            headers=user_headers(),
            catch_response=True,
        ) as resp:
            if resp.status_code in (201, 409):
                resp.success()  # 409 expected once the space is gone
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("contention")
    @task
    def join_waitlist(self):
        if not CONTENTION_LOT_ID:
            return

        with self.client.post(
            "/api/v1/waitlist/",
            json={
                "resource_id": CONTENTION_LOT_ID,
                "desired_start": CONTENTION_START.isoformat(),
                "desired_end": (CONTENTION_START + timedelta(hours=1)).isoformat(),
            },
            headers=user_headers(),
            catch_response=True,
        ) as resp:
            if resp.status_code in (201, 422):
                resp.success()  # 422 while the space is still free
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - availability cache effectiveness

    Run twice, with and without Redis, and compare P95 latency:
      locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def check_availability(self):
        if not LOT_IDS:
            return
        lot_id = random.choice(LOT_IDS)
        self.client.get(
            f"/api/v1/parking-lots/{lot_id}/availability",
            params=contention_interval(),
            name="/api/v1/parking-lots/{id}/availability [cached]",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_lot(self):
        with self.client.post(
            "/api/v1/reservations/",
            json={"resource_id": 999999, **contention_interval()},
            headers=user_headers(),
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def inverted_interval(self):
        interval = contention_interval()
        with self.client.post(
            "/api/v1/reservations/",
            json={
                "resource_id": CONTENTION_LOT_ID or 1,
                "start_time": interval["end_time"],
                "end_time": interval["start_time"],
            },
            headers=user_headers(),
            catch_response=True,
        ) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/reservations/",
            data="not json at all",
            headers=user_headers(),
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def missing_user(self):
        with self.client.post(
            "/api/v1/reservations/",
            json={"resource_id": 1, **contention_interval()},
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))
