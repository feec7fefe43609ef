"""Tests for Pydantic models."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.models.ems import (
    ACTIVE_STATUSES,
    BUSY_STATUSES,
    TERMINAL_STATUSES,
    Coordinate,
    EMSRequest,
    EMSRequestCreate,
    EMSStatus,
    EmergencyType,
    LocationReport,
    Priority,
)
from app.models.events import (
    ALL_ACTIVE_TOPIC,
    DispatchEvent,
    EventType,
    mine_topic,
    request_topic,
)


def _request(**overrides) -> EMSRequest:
    now = datetime.now(UTC)
    data = {
        "id": "req-1",
        "patient_ref": "patient-1",
        "status": EMSStatus.PENDING,
        "priority": Priority.HIGH,
        "emergency_type": EmergencyType.TRAUMA,
        "patient_location": Coordinate(lat=1.0, lng=2.0),
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return EMSRequest(**data)


class TestCoordinate:
    def test_valid(self):
        c = Coordinate(lat=-33.9, lng=151.2, accuracy=12.5)
        assert c.lat == -33.9
        assert c.accuracy == 12.5

    def test_accuracy_optional(self):
        assert Coordinate(lat=0, lng=0).accuracy is None

    @pytest.mark.parametrize("lat,lng", [(91, 0), (-91, 0), (0, 181), (0, -181)])
    def test_out_of_range(self, lat, lng):
        with pytest.raises(ValidationError):
            Coordinate(lat=lat, lng=lng)

    def test_negative_accuracy_rejected(self):
        with pytest.raises(ValidationError):
            Coordinate(lat=0, lng=0, accuracy=-1)


class TestStatusSets:
    def test_partition(self):
        """Every status is either active or terminal, never both."""
        assert ACTIVE_STATUSES | TERMINAL_STATUSES == set(EMSStatus)
        assert not ACTIVE_STATUSES & TERMINAL_STATUSES

    def test_busy_is_subset_of_active(self):
        assert BUSY_STATUSES < ACTIVE_STATUSES
        assert EMSStatus.PENDING not in BUSY_STATUSES


class TestEMSRequest:
    def test_defaults(self):
        body = EMSRequestCreate(patient_ref="p", location=Coordinate(lat=1, lng=1))
        assert body.emergency_type == EmergencyType.OTHER
        assert body.priority == Priority.MEDIUM

    def test_empty_patient_ref_rejected(self):
        with pytest.raises(ValidationError):
            EMSRequestCreate(patient_ref="", location=Coordinate(lat=1, lng=1))

    def test_is_terminal(self):
        assert not _request().is_terminal
        assert _request(status=EMSStatus.COMPLETED).is_terminal
        assert _request(status=EMSStatus.CANCELLED).is_terminal

    def test_enum_values_serialize(self):
        data = _request().model_dump(mode="json")
        assert data["status"] == "pending"
        assert data["priority"] == "high"
        assert data["emergency_type"] == "trauma"


class TestLocationReport:
    def test_timestamp_normalized_to_utc(self):
        local = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        report = LocationReport(actor_ref="a", location=Coordinate(lat=0, lng=0), timestamp=local)
        assert report.timestamp.tzinfo == UTC
        assert report.timestamp.hour == 10

    def test_naive_timestamp_taken_as_utc(self):
        report = LocationReport(
            actor_ref="a",
            location=Coordinate(lat=0, lng=0),
            timestamp=datetime(2026, 1, 1, 12, 0),
        )
        assert report.timestamp == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def test_timestamp_required(self):
        with pytest.raises(ValidationError):
            LocationReport(actor_ref="a", location=Coordinate(lat=0, lng=0))


class TestDispatchEvent:
    def test_for_request_uses_version_as_sequence(self):
        request = _request(version=4)
        event = DispatchEvent.for_request(EventType.REQUEST_UPDATED, request)
        assert event.sequence == 4
        assert event.request_id == "req-1"
        assert event.event_id

    def test_topics_without_paramedic(self):
        event = DispatchEvent.for_request(EventType.REQUEST_CREATED, _request())
        assert event.topics() == {ALL_ACTIVE_TOPIC, request_topic("req-1"), mine_topic("patient-1")}

    def test_topics_with_paramedic(self):
        request = _request(status=EMSStatus.ENROUTE, paramedic_ref="medic-1")
        event = DispatchEvent.for_request(EventType.REQUEST_ASSIGNED, request)
        assert mine_topic("medic-1") in event.topics()

    def test_is_location(self):
        request = _request()
        assert DispatchEvent.for_request(EventType.LOCATION_UPDATED, request).is_location
        assert not DispatchEvent.for_request(EventType.STATUS_CHANGED, request).is_location

    def test_json_type_name(self):
        event = DispatchEvent.for_request(EventType.REQUEST_CANCELLED, _request())
        assert event.model_dump(mode="json")["type"] == "RequestCancelled"
