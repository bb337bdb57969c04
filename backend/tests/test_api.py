"""
Tests for the HTTP surface: parking lots, validation and error mapping, inbox, recurrence and admin.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from parking_scheduler.services import cache_service

from conftest import NOW, TOMORROW_9AM


def interval(start=TOMORROW_9AM, hours: int = 1) -> dict:
    return {"start_time": start.isoformat(), "end_time": (start + timedelta(hours=hours)).isoformat()}


@pytest.mark.asyncio
async def test_create_and_list_parking_lots(client: AsyncClient):
    response = await client.post(
        "/api/v1/parking-lots/",
        json={
            "name": "Levy Junction",
            "address": "Church Road, Lusaka",
            "capacity": 40,
            "hourly_rate": "15.00",
            "daily_rate": "120.00",
        },
    )
    assert response.status_code == 201
    lot = response.json()
    assert lot["capacity"] == 40
    assert lot["currency"] == "ZMW"
    assert lot["is_active"] is True

    listed = await client.get("/api/v1/parking-lots/")
    assert [item["id"] for item in listed.json()] == [lot["id"]]


@pytest.mark.asyncio
async def test_create_parking_lot_validation(client: AsyncClient):
    response = await client.post(
        "/api/v1/parking-lots/",
        json={"name": "Nowhere", "capacity": 0, "hourly_rate": "1.00", "daily_rate": "1.00"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_parking_lot(client: AsyncClient):
    response = await client.get("/api/v1/parking-lots/9999")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, test_lot, user_headers):
    await client.post(
        "/api/v1/reservations/",
        json={"resource_id": test_lot.id, **interval()},
        headers=user_headers(1),
    )

    response = await client.get(f"/api/v1/parking-lots/{test_lot.id}/availability", params=interval())

    assert response.status_code == 200
    data = response.json()
    assert data["capacity"] == 2
    assert data["available_units"] == 1
    assert data["free_unit"] == 2
    assert data["is_available"] is True
    assert data["cached"] is False


@pytest.mark.asyncio
async def test_availability_rejects_inverted_interval(client: AsyncClient, test_lot):
    params = {"start_time": TOMORROW_9AM.isoformat(), "end_time": (TOMORROW_9AM - timedelta(hours=1)).isoformat()}
    response = await client.get(f"/api/v1/parking-lots/{test_lot.id}/availability", params=params)
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_quote_endpoint(client: AsyncClient, test_lot):
    response = await client.get(f"/api/v1/parking-lots/{test_lot.id}/quote", params=interval(hours=2))
    assert response.status_code == 200
    data = response.json()
    assert data["total_amount"] == "24.00"
    assert [line["type"] for line in data["breakdown"]] == ["hourly", "peak_surcharge"]


@pytest.mark.asyncio
async def test_reservation_requires_user(client: AsyncClient, test_lot):
    response = await client.post("/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_reservation_body_validation(client: AsyncClient, test_lot, user_headers):
    response = await client.post(
        "/api/v1/reservations/",
        json={"resource_id": test_lot.id, "start_time": "tomorrow"},
        headers=user_headers(),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_conflict_body(client: AsyncClient, single_space_lot, user_headers):
    body = {"resource_id": single_space_lot.id, **interval()}
    assert (await client.post("/api/v1/reservations/", json=body, headers=user_headers(1))).status_code == 201

    response = await client.post("/api/v1/reservations/", json=body, headers=user_headers(2))

    assert response.status_code == 409
    assert response.json() == {
        "message": "No units available for the requested interval",
        "resource_id": single_space_lot.id,
        "capacity": 1,
        "available_units": 0,
        "required_units": 1,
        "waitlist_eligible": True,
    }


@pytest.mark.asyncio
async def test_cached_availability_is_dropped_after_commit(
    client: AsyncClient, db_session, test_lot, user_headers, monkeypatch
):
    invalidated = []

    async def record(resource_id=None):
        invalidated.append((resource_id, db_session.in_transaction()))

    monkeypatch.setattr(cache_service, "invalidate_availability_cache", record)
    created = await client.post(
        "/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()}, headers=user_headers(1)
    )
    cancelled = await client.post(
        f"/api/v1/reservations/{created.json()['id']}/cancel",
        json={"reason": "Plans changed"},
        headers=user_headers(1),
    )

    assert cancelled.json()["status"] == "cancelled"
    assert invalidated == [(test_lot.id, False), (test_lot.id, False)]


@pytest.mark.asyncio
async def test_reservations_are_private(client: AsyncClient, test_lot, user_headers):
    created = await client.post(
        "/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()}, headers=user_headers(1)
    )
    reservation_id = created.json()["id"]

    assert (await client.get(f"/api/v1/reservations/{reservation_id}", headers=user_headers(2))).status_code == 404
    mine = await client.get("/api/v1/reservations/", params={"status": "confirmed"}, headers=user_headers(1))
    assert [r["id"] for r in mine.json()] == [reservation_id]


@pytest.mark.asyncio
async def test_check_in_too_early_is_conflict(client: AsyncClient, test_lot, user_headers):
    created = await client.post(
        "/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()}, headers=user_headers(1)
    )
    response = await client.post(f"/api/v1/reservations/{created.json()['id']}/check-in", headers=user_headers(1))

    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateTransition"


@pytest.mark.asyncio
async def test_payment_update(client: AsyncClient, test_lot, user_headers):
    created = await client.post(
        "/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()}, headers=user_headers(1)
    )
    response = await client.patch(
        f"/api/v1/reservations/{created.json()['id']}/payment",
        json={"payment_status": "paid"},
        headers=user_headers(1),
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_notification_inbox(client: AsyncClient, test_lot, user_headers):
    await client.post(
        "/api/v1/reservations/", json={"resource_id": test_lot.id, **interval()}, headers=user_headers(1)
    )
    dispatched = await client.post("/api/v1/admin/ticks/dispatch")
    assert dispatched.json()["outcomes"]["sent"] == 1

    inbox = await client.get("/api/v1/notifications/", params={"unread_only": True}, headers=user_headers(1))
    [notification] = inbox.json()
    assert notification["status"] == "sent"
    assert notification["title"] == "Booking Confirmed"

    read = await client.post(f"/api/v1/notifications/{notification['id']}/read", headers=user_headers(1))
    assert read.json()["status"] == "read"

    unread = await client.get("/api/v1/notifications/", params={"unread_only": True}, headers=user_headers(1))
    assert unread.json() == []


@pytest.mark.asyncio
async def test_recurrence_rule_endpoints(client: AsyncClient, single_space_lot, user_headers):
    created = await client.post(
        "/api/v1/recurrence-rules/",
        json={
            "resource_id": single_space_lot.id,
            "pattern": "weekdays",
            "start_time": "09:00:00",
            "duration_minutes": 120,
            "start_date": NOW.date().isoformat(),
            "max_occurrences": 10,
        },
        headers=user_headers(1),
    )
    assert created.status_code == 201
    rule = created.json()
    assert rule["next_occurrence"] == "2026-03-02"

    cleared = await client.patch(
        f"/api/v1/recurrence-rules/{rule['id']}", json={"start_time": None}, headers=user_headers(1)
    )
    assert cleared.status_code == 422
    assert cleared.json()["error"] == "ValidationError"

    paused = await client.post(
        f"/api/v1/recurrence-rules/{rule['id']}/pause", json={"reason": "Holiday"}, headers=user_headers(1)
    )
    assert paused.json()["status"] == "paused"

    tick = await client.post("/api/v1/admin/ticks/recurrence")
    assert tick.json()["processed"] == 0

    resumed = await client.post(f"/api/v1/recurrence-rules/{rule['id']}/resume", headers=user_headers(1))
    assert resumed.json()["status"] == "active"

    tick = await client.post("/api/v1/admin/ticks/recurrence")
    assert tick.json()["outcomes"] == {"created": 1}

    rule = (await client.get(f"/api/v1/recurrence-rules/{rule['id']}", headers=user_headers(1))).json()
    assert rule["occurrence_count"] == 1
    assert rule["next_occurrence"] == "2026-03-03"

    cancelled = await client.post(f"/api/v1/recurrence-rules/{rule['id']}/cancel", headers=user_headers(1))
    assert cancelled.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_unknown_tick(client: AsyncClient):
    response = await client.post("/api/v1/admin/ticks/everything")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
