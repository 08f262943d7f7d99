"""
Dispatch orchestrator tests.

Covers the three reference flows (immediate match, radius expansion,
decline then re-match), search bounds and exhaustion, and the
single-assignment guarantee under a stale candidate snapshot.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from src.domain.enums import CaptainStatus, OfferResponse, OfferStatus, RideStatus, VehicleType
from src.domain.errors import InvalidStateError, NotFoundError
from src.infrastructure.repositories import (
    CaptainRepository,
    ConfigRepository,
    MetricsRepository,
    OfferRepository,
    RideRepository,
)
from src.services.dispatch import DispatchOrchestrator, MatchRequest
from src.services.offers import OfferLifecycleManager
from tests.conftest import PICKUP_LAT, PICKUP_LNG, make_captain, make_ride


def match_request(ride_id: int, vehicle_type: VehicleType = VehicleType.CAB) -> MatchRequest:
    return MatchRequest(
        ride_id=ride_id,
        pickup_lat=PICKUP_LAT,
        pickup_lng=PICKUP_LNG,
        vehicle_type=vehicle_type,
        estimated_fare=200.0,
    )


@pytest.fixture
def orchestrator(db_session, notifier, clock):
    return DispatchOrchestrator(db_session, notifier, clock)


class TestImmediateMatch:
    @pytest.mark.asyncio
    async def test_candidate_inside_initial_radius_is_offered(
        self, db_session, orchestrator, clock, notifier
    ):
        captain_id = await make_captain(db_session, km_from_pickup=1.0)
        ride_id = await make_ride(db_session)

        result = await orchestrator.match_ride(match_request(ride_id))

        assert result.matched is True
        assert result.captain.captain_id == captain_id
        assert result.offer.expires_at == clock.now + timedelta(seconds=15)
        assert len(result.otp) == 4 and result.otp.isdigit()

        ride = await RideRepository(db_session).get(ride_id)
        assert ride.status == RideStatus.MATCHED
        assert ride.captain_id == captain_id
        assert ride.otp == result.otp
        assert ride.current_radius_km == 1.5

        captain = await CaptainRepository(db_session).get_by_id(captain_id)
        assert captain.status == CaptainStatus.ON_RIDE

        metrics = await MetricsRepository(db_session).get(captain_id)
        assert metrics.total_offers_received == 1

    @pytest.mark.asyncio
    async def test_offer_carries_distance_eta_and_earnings(
        self, db_session, orchestrator
    ):
        await make_captain(db_session, km_from_pickup=1.0)
        ride_id = await make_ride(db_session)

        result = await orchestrator.match_ride(match_request(ride_id))

        assert result.offer.distance_to_pickup_km == 1.0
        assert result.offer.eta_minutes == 3
        assert result.offer.estimated_earnings == 160
        assert result.offer.offer_sequence == 1

    @pytest.mark.asyncio
    async def test_captain_notified_after_match(self, db_session, orchestrator, notifier):
        await make_captain(db_session, km_from_pickup=0.5)
        ride_id = await make_ride(db_session)

        result = await orchestrator.match_ride(match_request(ride_id))

        notifier.send.assert_awaited_once()
        args, kwargs = notifier.send.call_args
        assert args[1] == "New Ride Request!"
        assert kwargs["data"]["offer_id"] == result.offer.id

    @pytest.mark.asyncio
    async def test_best_score_wins_and_others_are_reported(
        self, db_session, orchestrator
    ):
        near = await make_captain(db_session, km_from_pickup=0.3)
        far = await make_captain(db_session, km_from_pickup=1.2)

        ride_id = await make_ride(db_session)
        result = await orchestrator.match_ride(match_request(ride_id))

        assert result.captain.captain_id == near
        assert [c.captain_id for c in result.other_candidates] == [far]


class TestRadiusExpansion:
    @pytest.mark.asyncio
    async def test_retry_then_match_after_expansion(self, db_session, orchestrator):
        captain_id = await make_captain(db_session, km_from_pickup=2.2)
        ride_id = await make_ride(db_session)

        first = await orchestrator.match_ride(match_request(ride_id))
        assert first.matched is False
        assert first.retry is True
        assert first.current_radius_km == 1.5
        assert first.next_radius_km == 2.5

        ride = await RideRepository(db_session).get(ride_id)
        assert ride.status == RideStatus.SEARCHING
        assert ride.matching_attempts == 1

        second = await orchestrator.match_ride(match_request(ride_id))
        assert second.matched is True
        assert second.captain.captain_id == captain_id
        assert second.current_radius_km == 2.5

    @pytest.mark.asyncio
    async def test_radius_never_exceeds_max(self, db_session, orchestrator):
        ride_id = await make_ride(db_session)
        radii = []
        for _ in range(3):
            result = await orchestrator.match_ride(match_request(ride_id))
            radii.append(result.current_radius_km)

        assert radii == [1.5, 2.5, 3.5]
        assert radii == sorted(radii)
        assert all(r <= 5.0 for r in radii)

    @pytest.mark.asyncio
    async def test_exhausted_after_retry_budget(self, db_session, orchestrator):
        ride_id = await make_ride(db_session)

        results = [await orchestrator.match_ride(match_request(ride_id)) for _ in range(3)]

        assert [r.retry for r in results] == [True, True, False]
        assert results[-1].exhausted
        assert "No captains available" in results[-1].message

    @pytest.mark.asyncio
    async def test_exhausted_once_radius_saturates(self, db_session, orchestrator):
        await ConfigRepository(db_session).upsert_matching_config(
            (await ConfigRepository(db_session).get_matching_config()).model_copy(
                update={"max_retry_attempts": 10, "max_radius_km": 2.5}
            )
        )
        await db_session.commit()
        ride_id = await make_ride(db_session)

        first = await orchestrator.match_ride(match_request(ride_id))
        second = await orchestrator.match_ride(match_request(ride_id))

        assert first.retry is True
        assert second.retry is False
        assert second.current_radius_km == 2.5

    @pytest.mark.asyncio
    async def test_match_with_retries_expands_internally(self, db_session, orchestrator):
        captain_id = await make_captain(db_session, km_from_pickup=3.2)
        ride_id = await make_ride(db_session)

        result = await orchestrator.match_with_retries(match_request(ride_id))

        assert result.matched is True
        assert result.captain.captain_id == captain_id
        assert result.matching_attempts == 3


class TestDeclineAndRematch:
    @pytest.mark.asyncio
    async def test_next_best_captain_after_decline(
        self, db_session, orchestrator, notifier, clock
    ):
        best = await make_captain(db_session, km_from_pickup=0.4)
        second_best = await make_captain(db_session, km_from_pickup=1.1)
        ride_id = await make_ride(db_session)

        first = await orchestrator.match_ride(match_request(ride_id))
        assert first.captain.captain_id == best

        lifecycle = OfferLifecycleManager(db_session, notifier, clock)
        outcome = await lifecycle.respond(first.offer.id, best, OfferResponse.DECLINE)
        assert outcome.action == OfferStatus.DECLINED

        ride = await RideRepository(db_session).get(ride_id)
        assert ride.status == RideStatus.SEARCHING
        assert best in ride.excluded_captain_ids
        assert ride.captain_id is None

        second = await orchestrator.match_ride(match_request(ride_id))
        assert second.matched is True
        assert second.captain.captain_id == second_best
        assert second.offer.offer_sequence == 2

    @pytest.mark.asyncio
    async def test_offer_budget_stops_matching(self, db_session, orchestrator, notifier, clock):
        captains = [await make_captain(db_session, km_from_pickup=0.2 * i) for i in range(1, 7)]
        ride_id = await make_ride(db_session)
        await ConfigRepository(db_session).upsert_matching_config(
            (await ConfigRepository(db_session).get_matching_config()).model_copy(
                update={"max_retry_attempts": 20}
            )
        )
        await db_session.commit()

        lifecycle = OfferLifecycleManager(db_session, notifier, clock)
        offered = []
        for _ in range(5):
            result = await orchestrator.match_ride(match_request(ride_id))
            assert result.matched
            offered.append(result.captain.captain_id)
            await lifecycle.respond(
                result.offer.id, result.captain.captain_id, OfferResponse.DECLINE
            )

        final = await orchestrator.match_ride(match_request(ride_id))
        assert final.matched is False
        assert final.retry is False
        assert offered == captains[:5]


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_unknown_ride(self, db_session, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.match_ride(match_request(9999))

    @pytest.mark.asyncio
    async def test_matched_ride_with_live_offer_rejected(self, db_session, orchestrator):
        await make_captain(db_session, km_from_pickup=0.5)
        ride_id = await make_ride(db_session)
        await orchestrator.match_ride(match_request(ride_id))

        with pytest.raises(InvalidStateError):
            await orchestrator.match_ride(match_request(ride_id))

    @pytest.mark.asyncio
    async def test_overdue_offer_is_expired_before_rematching(
        self, db_session, orchestrator, clock
    ):
        first_captain = await make_captain(db_session, km_from_pickup=0.5)
        other = await make_captain(db_session, km_from_pickup=1.0)
        ride_id = await make_ride(db_session)
        first = await orchestrator.match_ride(match_request(ride_id))
        assert first.captain.captain_id == first_captain

        clock.advance(16)
        second = await orchestrator.match_ride(match_request(ride_id))

        assert second.matched is True
        assert second.captain.captain_id == other
        offers = await OfferRepository(db_session).list_for_ride(ride_id)
        assert [o.response_status for o in offers] == [
            OfferStatus.EXPIRED,
            OfferStatus.PENDING,
        ]
        captain = await CaptainRepository(db_session).get_by_id(first_captain)
        assert captain.status == CaptainStatus.ONLINE


class TestSingleAssignment:
    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_double_assign(self, db_session, orchestrator):
        captain_id = await make_captain(db_session, km_from_pickup=0.5)
        ride_a = await make_ride(db_session)
        ride_b = await make_ride(db_session, rider_id=43)

        repo = CaptainRepository(db_session)
        stale_snapshot = await repo.get_working_set(VehicleType.CAB)
        assert [s.captain_id for s in stale_snapshot] == [captain_id]

        first = await orchestrator.match_ride(match_request(ride_a))
        assert first.matched is True

        # ride B sees the captain as still online, as a concurrent request would
        with patch.object(
            CaptainRepository,
            "get_working_set",
            AsyncMock(return_value=stale_snapshot),
        ):
            second = await orchestrator.match_ride(match_request(ride_b))

        assert second.matched is False
        ride = await RideRepository(db_session).get(ride_b)
        assert ride.status == RideStatus.SEARCHING
        assert ride.captain_id is None

        rides_a = await OfferRepository(db_session).list_for_ride(ride_a)
        rides_b = await OfferRepository(db_session).list_for_ride(ride_b)
        assert len(rides_a) == 1 and rides_b == []

    @pytest.mark.asyncio
    async def test_lost_claim_falls_through_to_next_candidate(
        self, db_session, orchestrator
    ):
        busy = await make_captain(db_session, km_from_pickup=0.3)
        free = await make_captain(db_session, km_from_pickup=1.0)
        ride_a = await make_ride(db_session)
        ride_b = await make_ride(db_session, rider_id=43)

        stale_snapshot = await CaptainRepository(db_session).get_working_set(VehicleType.CAB)
        first = await orchestrator.match_ride(match_request(ride_a))
        assert first.captain.captain_id == busy

        with patch.object(
            CaptainRepository,
            "get_working_set",
            AsyncMock(return_value=stale_snapshot),
        ):
            second = await orchestrator.match_ride(match_request(ride_b))

        assert second.matched is True
        assert second.captain.captain_id == free
