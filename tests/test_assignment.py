"""Tests for the assignment coordinator: accept, admin assign, contention."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.models.ems import Coordinate, EMSStatus
from app.models.events import EventType, request_topic
from app.services import assignment, geolocation, lifecycle, request_store
from app.services.errors import (
    DuplicateActiveRequest,
    LocationUnavailable,
    NotFound,
    ParamedicBusy,
    RequestUnavailable,
)
from app.services.event_bus import event_bus

MEDIC_POSITION = Coordinate(lat=1.01, lng=2.01, accuracy=8.0)


class TestAccept:
    async def test_accept_binds_paramedic(self, make_request):
        request = await make_request()
        accepted = await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)

        assert accepted.status == EMSStatus.ENROUTE
        assert accepted.paramedic_ref == "medic-1"
        assert accepted.dispatch_time is not None
        assert accepted.paramedic_location == MEDIC_POSITION
        assert accepted.version == request.version + 1

    async def test_accept_publishes_assigned_event(self, make_request):
        request = await make_request()
        subscription = event_bus.subscribe(request_topic(request.id))
        await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)

        event = subscription.get_nowait()
        assert event.type == EventType.REQUEST_ASSIGNED
        assert event.from_status == EMSStatus.PENDING
        assert event.to_status == EMSStatus.ENROUTE
        assert event.actor_ref == "medic-1"
        assert event.location == MEDIC_POSITION
        assert subscription.empty()

    async def test_assigned_event_reaches_paramedic_topic(self, make_request):
        request = await make_request()
        subscription = event_bus.subscribe("mine:medic-1")
        await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)
        assert subscription.get_nowait().request_id == request.id

    async def test_accept_records_location_sample(self, make_request):
        request = await make_request()
        await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)
        samples = await request_store.latest_samples(request.id)
        assert [s.actor_ref for s in samples] == ["medic-1"]
        assert samples[0].location == MEDIC_POSITION

    async def test_accept_already_taken(self, make_request):
        request = await make_request()
        await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)
        with pytest.raises(RequestUnavailable) as exc_info:
            await assignment.accept_request(request.id, "medic-2", MEDIC_POSITION)
        assert exc_info.value.retryable is True

    async def test_accept_cancelled_request(self, make_request):
        request = await make_request()
        await lifecycle.cancel_request(request.id, "patient-1")
        with pytest.raises(RequestUnavailable):
            await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)

    async def test_accept_unknown_request(self, db):
        with pytest.raises(NotFound):
            await assignment.accept_request("missing", "medic-1", MEDIC_POSITION)


class TestContention:
    async def test_concurrent_accepts_have_one_winner(self, make_request):
        request = await make_request()
        paramedics = [f"medic-{i}" for i in range(8)]

        results = await asyncio.gather(
            *(assignment.accept_request(request.id, ref, MEDIC_POSITION) for ref in paramedics),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(exc, RequestUnavailable) for exc in losers)

        stored = await request_store.get_request(request.id)
        assert stored.paramedic_ref == winners[0].paramedic_ref
        assert stored.status == EMSStatus.ENROUTE

    async def test_loser_sees_winner_in_request(self, make_request):
        """Two paramedics race; the loser can look up who won."""
        request = await make_request()
        subscription = event_bus.subscribe(request_topic(request.id))

        a, b = await asyncio.gather(
            assignment.accept_request(request.id, "medic-a", MEDIC_POSITION),
            assignment.accept_request(request.id, "medic-b", MEDIC_POSITION),
            return_exceptions=True,
        )
        winner = a if not isinstance(a, Exception) else b
        loser = b if winner is a else a
        assert isinstance(loser, RequestUnavailable)

        event = subscription.get_nowait()
        assert event.type == EventType.REQUEST_ASSIGNED
        assert event.actor_ref == winner.paramedic_ref
        assert subscription.empty()
        assert (await request_store.get_request(request.id)).paramedic_ref == winner.paramedic_ref

    async def test_same_paramedic_two_requests_concurrently(self, make_request):
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")

        results = await asyncio.gather(
            assignment.accept_request(first.id, "medic-1", MEDIC_POSITION),
            assignment.accept_request(second.id, "medic-1", MEDIC_POSITION),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, ParamedicBusy)) == 1


class TestParamedicBusy:
    async def test_busy_paramedic_rejected(self, make_request):
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")
        await assignment.accept_request(first.id, "medic-1", MEDIC_POSITION)

        with pytest.raises(ParamedicBusy) as exc_info:
            await assignment.accept_request(second.id, "medic-1", MEDIC_POSITION)
        assert exc_info.value.request_id == first.id
        assert (await request_store.get_request(second.id)).status == EMSStatus.PENDING

    async def test_busy_while_arrived(self, make_request):
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")
        await assignment.accept_request(first.id, "medic-1", MEDIC_POSITION)
        await lifecycle.mark_arrived(first.id)

        with pytest.raises(ParamedicBusy):
            await assignment.accept_request(second.id, "medic-1", MEDIC_POSITION)

    async def test_free_after_completion(self, make_request):
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")
        await assignment.accept_request(first.id, "medic-1", MEDIC_POSITION)
        await lifecycle.mark_arrived(first.id)
        await lifecycle.complete_request(first.id)

        accepted = await assignment.accept_request(second.id, "medic-1", MEDIC_POSITION)
        assert accepted.paramedic_ref == "medic-1"

    async def test_unique_index_backstops_busy_check(self, make_request):
        """A binding committed elsewhere still trips the partial unique index."""
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")
        await assignment.accept_request(first.id, "medic-1", MEDIC_POSITION)

        with patch.object(request_store, "find_busy_for_paramedic", AsyncMock(return_value=None)):
            with pytest.raises(ParamedicBusy):
                await assignment.accept_request(second.id, "medic-1", MEDIC_POSITION)
        assert (await request_store.get_request(second.id)).status == EMSStatus.PENDING

    async def test_unique_index_backstops_duplicate_patient(self, make_request):
        await make_request(patient_ref="patient-1")
        with patch.object(request_store, "find_active_for_patient", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateActiveRequest):
                await make_request(patient_ref="patient-1")


class TestGeolocationFallback:
    async def test_accept_without_position_uses_last_known(self, make_request):
        first = await make_request(patient_ref="patient-1")
        await assignment.accept_request(first.id, "medic-1", MEDIC_POSITION)
        await lifecycle.mark_arrived(first.id)
        await lifecycle.complete_request(first.id)

        second = await make_request(patient_ref="patient-2")
        accepted = await assignment.accept_request(second.id, "medic-1")
        assert accepted.paramedic_location == MEDIC_POSITION

    async def test_accept_without_any_position(self, make_request):
        request = await make_request()
        with pytest.raises(LocationUnavailable) as exc_info:
            await assignment.accept_request(request.id, "medic-1")
        assert exc_info.value.retryable is True
        assert (await request_store.get_request(request.id)).status == EMSStatus.PENDING

    async def test_slow_source_treated_as_unavailable(self, make_request):
        class SlowSource(geolocation.GeolocationSource):
            async def current_position(self, actor_ref):
                await asyncio.sleep(5)

        request = await make_request()
        with patch.object(geolocation, "_source", SlowSource()), \
                patch.object(geolocation, "GEOLOCATION_TIMEOUT_SECONDS", 0.01):
            with pytest.raises(LocationUnavailable):
                await assignment.accept_request(request.id, "medic-1")

    async def test_failing_source_treated_as_unavailable(self, db):
        class BrokenSource(geolocation.GeolocationSource):
            async def current_position(self, actor_ref):
                raise RuntimeError("GPS offline")

        assert await geolocation.fetch_position("medic-1", source=BrokenSource()) is None


class TestAdminAssign:
    async def test_assign_with_position(self, make_request):
        request = await make_request()
        assigned = await assignment.assign_by_admin(
            request.id, "medic-7", location=MEDIC_POSITION, admin_ref="dispatcher-1"
        )
        assert assigned.status == EMSStatus.ENROUTE
        assert assigned.paramedic_ref == "medic-7"
        assert assigned.paramedic_location == MEDIC_POSITION

        history = await request_store.get_history(request.id)
        assert history[-1].actor_ref == "dispatcher-1"
        assert history[-1].notes == "Assigned by dispatcher-1"

    async def test_assign_without_position(self, make_request):
        request = await make_request()
        assigned = await assignment.assign_by_admin(request.id, "medic-7")
        assert assigned.status == EMSStatus.ENROUTE
        assert assigned.paramedic_location is None
        assert await request_store.latest_samples(request.id) == []

    async def test_assign_respects_busy(self, make_request):
        first = await make_request(patient_ref="patient-1")
        second = await make_request(patient_ref="patient-2")
        await assignment.assign_by_admin(first.id, "medic-7")
        with pytest.raises(ParamedicBusy):
            await assignment.assign_by_admin(second.id, "medic-7")

    async def test_assign_non_pending(self, make_request):
        request = await make_request()
        await assignment.accept_request(request.id, "medic-1", MEDIC_POSITION)
        with pytest.raises(RequestUnavailable):
            await assignment.assign_by_admin(request.id, "medic-7")
