"""Notification client: delivery failures are logged and never raised."""

import json
import logging

import httpx
import pytest

from src.domain.enums import RideStatus, VehicleType
from src.infrastructure.notifications import NotificationClient
from src.infrastructure.repositories import RideRepository
from src.services.dispatch import DispatchOrchestrator, MatchRequest
from tests.conftest import PICKUP_LAT, PICKUP_LNG, make_captain, make_ride

URL = "https://push.test/notify"


def client_with(handler) -> NotificationClient:
    return NotificationClient(url=URL, token="t0ken", transport=httpx.MockTransport(handler))


def refuse_connection(request: httpx.Request) -> httpx.Response:
    raise OSError("connection refused")


@pytest.mark.asyncio
async def test_delivered():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = client_with(handler)
    assert await notifier.send([7, None], "Ride matched", "Your captain is on the way") is True
    await notifier.close()

    assert seen[0].headers["Authorization"] == "Bearer t0ken"
    assert json.loads(seen[0].content)["user_ids"] == [7]


@pytest.mark.asyncio
async def test_server_error_is_swallowed(caplog):
    notifier = client_with(lambda request: httpx.Response(500))

    with caplog.at_level(logging.WARNING, logger="src.infrastructure.notifications"):
        assert await notifier.send([7], "Ride matched", "body") is False

    assert "failed" in caplog.text


@pytest.mark.asyncio
async def test_transport_crash_is_swallowed(caplog):
    notifier = client_with(refuse_connection)

    with caplog.at_level(logging.ERROR, logger="src.infrastructure.notifications"):
        assert await notifier.send([7], "Ride matched", "body") is False

    assert "connection refused" in caplog.text


@pytest.mark.asyncio
async def test_disabled_without_url():
    notifier = NotificationClient(url="")
    assert notifier.enabled is False
    assert await notifier.send([7], "Ride matched", "body") is False


@pytest.mark.asyncio
async def test_match_survives_broken_notifier(db_session, clock):
    captain_id = await make_captain(db_session, km_from_pickup=0.5)
    ride_id = await make_ride(db_session)
    orchestrator = DispatchOrchestrator(db_session, client_with(refuse_connection), clock)

    result = await orchestrator.match_ride(
        MatchRequest(ride_id, PICKUP_LAT, PICKUP_LNG, VehicleType.CAB)
    )

    assert result.matched is True
    assert result.captain.captain_id == captain_id
    ride = await RideRepository(db_session).get(ride_id)
    assert ride.status == RideStatus.MATCHED
