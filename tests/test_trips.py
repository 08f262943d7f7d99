"""Trip progress: arrival, OTP start, completion."""

from __future__ import annotations

import pytest
import pytest_asyncio

from src.domain.enums import CaptainStatus, OfferResponse, RideStatus, VehicleType
from src.domain.errors import InvalidStateError, NotFoundError, ValidationError
from src.infrastructure.repositories import (
    CaptainRepository,
    MetricsRepository,
    RideRepository,
)
from src.services.dispatch import DispatchOrchestrator, MatchRequest
from src.services.offers import OfferLifecycleManager
from src.services.trips import TripService
from tests.conftest import PICKUP_LAT, PICKUP_LNG, make_captain, make_ride


@pytest.fixture
def trips(db_session, notifier, clock):
    return TripService(db_session, notifier, clock)


@pytest_asyncio.fixture
async def accepted(db_session, notifier, clock):
    captain_id = await make_captain(db_session, km_from_pickup=0.5)
    ride_id = await make_ride(db_session)
    match = await DispatchOrchestrator(db_session, notifier, clock).match_ride(
        MatchRequest(ride_id, PICKUP_LAT, PICKUP_LNG, VehicleType.CAB)
    )
    await OfferLifecycleManager(db_session, notifier, clock).respond(
        match.offer.id, captain_id, OfferResponse.ACCEPT
    )
    return ride_id, captain_id, match.otp


class TestTripFlow:
    @pytest.mark.asyncio
    async def test_full_trip(self, db_session, trips, accepted, clock):
        ride_id, captain_id, otp = accepted

        ride = await trips.mark_arrived(ride_id, captain_id)
        assert ride.status == RideStatus.WAITING_FOR_RIDER

        clock.advance(60)
        ride = await trips.start_trip(ride_id, captain_id, otp)
        assert ride.status == RideStatus.IN_PROGRESS
        assert ride.started_at == clock.now

        clock.advance(20 * 60)
        ride = await trips.complete_trip(ride_id, captain_id)
        assert ride.status == RideStatus.COMPLETED
        assert ride.completed_at == clock.now

        stored = await RideRepository(db_session).get(ride_id)
        assert stored.status == RideStatus.COMPLETED

        captain = await CaptainRepository(db_session).get_by_id(captain_id)
        assert captain.status == CaptainStatus.ONLINE

        metrics = await MetricsRepository(db_session).get(captain_id)
        assert metrics.total_rides_completed == 1
        assert metrics.cancellation_rate == 0.0

    @pytest.mark.asyncio
    async def test_rider_gets_otp_on_arrival(self, trips, accepted, notifier):
        ride_id, captain_id, otp = accepted
        notifier.send.reset_mock()

        await trips.mark_arrived(ride_id, captain_id)

        args, _ = notifier.send.call_args
        assert args[0] == [42]
        assert otp in args[2]


class TestTripGuards:
    @pytest.mark.asyncio
    async def test_wrong_otp_rejected(self, db_session, trips, accepted):
        ride_id, captain_id, otp = accepted
        await trips.mark_arrived(ride_id, captain_id)
        wrong = "0000" if otp != "0000" else "1111"

        with pytest.raises(ValidationError) as exc:
            await trips.start_trip(ride_id, captain_id, wrong)
        assert exc.value.public_message == "Invalid OTP"

        ride = await RideRepository(db_session).get(ride_id)
        assert ride.status == RideStatus.WAITING_FOR_RIDER

    @pytest.mark.asyncio
    async def test_cannot_start_before_arrival(self, trips, accepted):
        ride_id, captain_id, otp = accepted
        with pytest.raises(InvalidStateError):
            await trips.start_trip(ride_id, captain_id, otp)

    @pytest.mark.asyncio
    async def test_cannot_complete_before_start(self, trips, accepted):
        ride_id, captain_id, _ = accepted
        await trips.mark_arrived(ride_id, captain_id)
        with pytest.raises(InvalidStateError):
            await trips.complete_trip(ride_id, captain_id)

    @pytest.mark.asyncio
    async def test_other_captain_rejected(self, trips, accepted):
        ride_id, captain_id, _ = accepted
        with pytest.raises(InvalidStateError):
            await trips.mark_arrived(ride_id, captain_id + 1)

    @pytest.mark.asyncio
    async def test_unknown_ride(self, trips):
        with pytest.raises(NotFoundError):
            await trips.mark_arrived(777, 1)
