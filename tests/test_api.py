"""
Integration tests for the REST API endpoints.

Runs the real app against the in-memory SQLite database from ``conftest``;
the notification client is replaced by a mock.
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from tests.conftest import PICKUP_LAT, PICKUP_LNG, make_captain

RIDE_BODY = {
    "rider_id": 42,
    "vehicle_type": "cab",
    "pickup_lat": PICKUP_LAT,
    "pickup_lng": PICKUP_LNG,
    "drop_lat": 12.9352,
    "drop_lng": 77.6245,
    "estimated_fare": 180,
}


async def _create_ride(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/api/v1/rides", json={**RIDE_BODY, **overrides})
    assert resp.status_code == 201
    return resp.json()


async def _match(client: AsyncClient, ride_id: int, **overrides):
    body = {
        "ride_id": ride_id,
        "pickup_lat": PICKUP_LAT,
        "pickup_lng": PICKUP_LNG,
        "vehicle_type": "cab",
        "estimated_fare": 180,
        **overrides,
    }
    return await client.post("/api/v1/dispatch/match", json=body)


# ── Health & validation ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_malformed_request_is_422(client: AsyncClient):
    resp = await client.post("/api/v1/rides", json={**RIDE_BODY, "pickup_lat": 123})
    assert resp.status_code == 422
    assert resp.json() == {"detail": "Invalid request parameters"}


@pytest.mark.asyncio
async def test_unknown_vehicle_type_is_422(client: AsyncClient):
    resp = await _match(client, 1, vehicle_type="helicopter")
    assert resp.status_code == 422


# ── Rides ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_and_get_ride(client: AsyncClient):
    ride = await _create_ride(client)
    assert ride["status"] == "pending"

    resp = await client.get(f"/api/v1/rides/{ride['id']}")
    assert resp.status_code == 200
    assert resp.json()["id"] == ride["id"]


@pytest.mark.asyncio
async def test_get_ride_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/rides/9999")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Ride not found"}


@pytest.mark.asyncio
async def test_idempotency_key(client: AsyncClient):
    body = {**RIDE_BODY, "idempotency_key": "unique-key-123"}
    resp1 = await client.post("/api/v1/rides", json=body)
    resp2 = await client.post("/api/v1/rides", json=body)
    assert resp1.status_code == 201
    assert resp2.status_code == 200
    assert resp1.json()["id"] == resp2.json()["id"]


# ── Dispatch, offers, trip ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_match_then_accept_then_trip(client: AsyncClient, db_session, notifier):
    captain_id = await make_captain(db_session, km_from_pickup=0.8)
    ride = await _create_ride(client)

    resp = await _match(client, ride["id"])
    assert resp.status_code == 200
    match = resp.json()
    assert match["matched"] is True
    assert match["message"] == "Captain found"
    assert match["captain"]["id"] == captain_id
    assert match["captain"]["vehicle"]["make"] == "Maruti"
    assert match["offer_id"] is not None
    assert len(match["otp"]) == 4

    resp = await client.post(
        "/api/v1/offers/respond",
        json={"offer_id": match["offer_id"], "captain_id": captain_id, "response": "accept"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["action"] == "accepted"
    assert body["ride"]["status"] == "captain_arriving"

    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/arrived", json={"captain_id": captain_id}
    )
    assert resp.json()["status"] == "waiting_for_rider"

    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/start",
        json={"captain_id": captain_id, "otp": match["otp"]},
    )
    assert resp.json()["status"] == "in_progress"

    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/complete", json={"captain_id": captain_id}
    )
    assert resp.json()["status"] == "completed"

    resp = await client.get(f"/api/v1/captains/{captain_id}/metrics")
    metrics = resp.json()
    assert metrics["total_rides_completed"] == 1
    assert metrics["total_offers_accepted"] == 1
    assert notifier.send.await_count >= 3


@pytest.mark.asyncio
async def test_no_captains_returns_retry(client: AsyncClient):
    ride = await _create_ride(client)

    resp = await _match(client, ride["id"])
    body = resp.json()
    assert resp.status_code == 200
    assert body["matched"] is False
    assert body["retry"] is True
    assert body["current_radius_km"] == 1.5
    assert body["next_radius_km"] == 2.5


@pytest.mark.asyncio
async def test_auto_retry_reports_exhaustion(client: AsyncClient):
    ride = await _create_ride(client)

    resp = await _match(client, ride["id"], auto_retry=True)
    body = resp.json()
    assert body["matched"] is False
    assert body["retry"] is False
    assert body["matching_attempts"] == 3


@pytest.mark.asyncio
async def test_match_unknown_ride_is_404(client: AsyncClient):
    resp = await _match(client, 4040)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_decline_is_idempotent(client: AsyncClient, db_session):
    captain_id = await make_captain(db_session, km_from_pickup=0.8)
    ride = await _create_ride(client)
    offer_id = (await _match(client, ride["id"])).json()["offer_id"]
    body = {"offer_id": offer_id, "captain_id": captain_id, "response": "decline"}

    first = (await client.post("/api/v1/offers/respond", json=body)).json()
    second = (await client.post("/api/v1/offers/respond", json=body)).json()

    assert first["action"] == "declined" and first["captains_tried"] == 1
    assert second["already_resolved"] is True
    assert second["success"] is False


@pytest.mark.asyncio
async def test_wrong_otp_is_400(client: AsyncClient, db_session):
    captain_id = await make_captain(db_session, km_from_pickup=0.8)
    ride = await _create_ride(client)
    match = (await _match(client, ride["id"])).json()
    await client.post(
        "/api/v1/offers/respond",
        json={"offer_id": match["offer_id"], "captain_id": captain_id, "response": "accept"},
    )
    await client.post(f"/api/v1/rides/{ride['id']}/arrived", json={"captain_id": captain_id})

    wrong = "0000" if match["otp"] != "0000" else "1111"
    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/start", json={"captain_id": captain_id, "otp": wrong}
    )
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Invalid OTP"}


# ── Cancellation & reassignment ───────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_pending_ride(client: AsyncClient):
    ride = await _create_ride(client)
    resp = await client.post(
        "/api/v1/cancellations",
        json={"ride_id": ride["id"], "cancelled_by": "rider", "user_id": 42},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["cancellation_fee"] == 0
    assert body["message"] == "Ride cancelled successfully"


@pytest.mark.asyncio
async def test_cancel_already_cancelled_ride_fails(client: AsyncClient):
    ride = await _create_ride(client)
    body = {"ride_id": ride["id"], "cancelled_by": "rider", "user_id": 42}
    await client.post("/api/v1/cancellations", json=body)
    resp = await client.post("/api/v1/cancellations", json=body)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_reassign_matched_ride(client: AsyncClient, db_session):
    captain_id = await make_captain(db_session, km_from_pickup=0.8)
    ride = await _create_ride(client)
    await _match(client, ride["id"])

    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/reassign",
        json={"reason": "captain_cancelled", "captain_id": captain_id},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["reassigned"] is True
    assert body["excluded_captain_ids"] == [captain_id]

    ride_now = (await client.get(f"/api/v1/rides/{ride['id']}")).json()
    assert ride_now["status"] == "searching"
    assert ride_now["reassignment_count"] == 1


# ── Captains ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_captain_onboarding(client: AsyncClient):
    resp = await client.post(
        "/api/v1/captains",
        json={
            "name": "Suresh",
            "is_verified": True,
            "vehicle": {
                "vehicle_type": "auto",
                "make": "Bajaj",
                "model": "RE",
                "registration_number": "KA-05-AB-0001",
            },
        },
    )
    assert resp.status_code == 201
    captain = resp.json()
    assert captain["status"] == "offline"
    assert captain["vehicles"][0]["vehicle_type"] == "auto"

    resp = await client.put(
        f"/api/v1/captains/{captain['id']}/location",
        json={"lat": PICKUP_LAT, "lng": PICKUP_LNG},
    )
    assert resp.json()["current_lat"] == PICKUP_LAT

    resp = await client.patch(
        f"/api/v1/captains/{captain['id']}/availability", json={"online": True}
    )
    assert resp.json()["status"] == "online"


@pytest.mark.asyncio
async def test_unknown_captain_is_404(client: AsyncClient):
    resp = await client.get("/api/v1/captains/999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_nearby_captains(client: AsyncClient, db_session):
    near = await make_captain(db_session, km_from_pickup=0.5)
    await make_captain(db_session, km_from_pickup=5.0)

    resp = await client.get(
        "/api/v1/captains/nearby", params={"lat": PICKUP_LAT, "lng": PICKUP_LNG}
    )
    assert resp.status_code == 200
    captains = resp.json()["captains"]
    assert [c["id"] for c in captains] == [near]
    assert captains[0]["distance_km"] == 0.5
    assert captains[0]["vehicle_type"] == "cab"
    assert captains[0]["rating"] == 5.0


@pytest.mark.asyncio
async def test_nearby_captains_requires_coordinates(client: AsyncClient):
    resp = await client.get("/api/v1/captains/nearby", params={"lat": PICKUP_LAT})
    assert resp.status_code == 422


# ── Admin ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_matching_config_roundtrip(client: AsyncClient):
    resp = await client.get("/api/v1/admin/matching-config/pune")
    assert resp.json()["city"] == "default"

    resp = await client.put(
        "/api/v1/admin/matching-config/pune", json={"initial_radius_km": 2.0}
    )
    assert resp.status_code == 200

    resp = await client.get("/api/v1/admin/matching-config/pune")
    body = resp.json()
    assert body["city"] == "pune"
    assert body["initial_radius_km"] == 2.0


@pytest.mark.asyncio
async def test_invalid_matching_config_is_400(client: AsyncClient):
    resp = await client.put(
        "/api/v1/admin/matching-config/pune",
        json={"initial_radius_km": 6.0, "max_radius_km": 5.0},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_penalty_rules(client: AsyncClient):
    resp = await client.get("/api/v1/admin/penalties")
    assert len(resp.json()) == 7

    resp = await client.post(
        "/api/v1/admin/penalties",
        json={
            "city": "mumbai",
            "cancelled_by": "rider",
            "ride_status": "matched",
            "min_time_after_match_seconds": 60,
            "penalty_amount": 20,
        },
    )
    assert resp.status_code == 201
    assert resp.json()["id"] is not None
