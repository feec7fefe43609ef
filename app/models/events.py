import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from app.models.ems import Coordinate, EMSRequest, EMSStatus


class EventType(str, Enum):
    REQUEST_CREATED = "RequestCreated"
    REQUEST_ASSIGNED = "RequestAssigned"
    STATUS_CHANGED = "StatusChanged"
    LOCATION_UPDATED = "LocationUpdated"
    REQUEST_CANCELLED = "RequestCancelled"
    REQUEST_UPDATED = "RequestUpdated"


ALL_ACTIVE_TOPIC = "all-active"


def request_topic(request_id: str) -> str:
    return f"request:{request_id}"


def mine_topic(actor_ref: str) -> str:
    return f"mine:{actor_ref}"


class DispatchEvent(BaseModel):
    """A committed change to one EMS request.

    ``request`` is the full snapshot after the change, so a subscriber that
    missed earlier events can reconcile from the latest one. ``sequence`` is
    the request version the change produced.
    """

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: EventType
    request_id: str
    sequence: int
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    request: EMSRequest
    from_status: EMSStatus | None = None
    to_status: EMSStatus | None = None
    actor_ref: str | None = None
    location: Coordinate | None = None
    timestamp: datetime | None = None

    @classmethod
    def for_request(cls, event_type: EventType, request: EMSRequest, **delta) -> "DispatchEvent":
        return cls(
            type=event_type,
            request_id=request.id,
            sequence=request.version,
            request=request,
            **delta,
        )

    @property
    def is_location(self) -> bool:
        return self.type == EventType.LOCATION_UPDATED

    def topics(self) -> set[str]:
        topics = {ALL_ACTIVE_TOPIC, request_topic(self.request_id), mine_topic(self.request.patient_ref)}
        if self.request.paramedic_ref:
            topics.add(mine_topic(self.request.paramedic_ref))
        return topics
