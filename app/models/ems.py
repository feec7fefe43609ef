from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class EMSStatus(str, Enum):
    PENDING = "pending"
    ENROUTE = "enroute"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EmergencyType(str, Enum):
    CARDIAC = "cardiac"
    RESPIRATORY = "respiratory"
    TRAUMA = "trauma"
    STROKE = "stroke"
    OVERDOSE = "overdose"
    ALLERGIC_REACTION = "allergic_reaction"
    MENTAL_HEALTH = "mental_health"
    ACCIDENT = "accident"
    FALL = "fall"
    BURN = "burn"
    OTHER = "other"


ACTIVE_STATUSES = frozenset({EMSStatus.PENDING, EMSStatus.ENROUTE, EMSStatus.ARRIVED})
BUSY_STATUSES = frozenset({EMSStatus.ENROUTE, EMSStatus.ARRIVED})
TERMINAL_STATUSES = frozenset({EMSStatus.COMPLETED, EMSStatus.CANCELLED})

# Triage order for dashboards; lower sorts first
PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


def utc(value: datetime) -> datetime:
    """Normalize a timestamp to UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Coordinate(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    accuracy: float | None = Field(None, ge=0.0)


class EMSRequest(BaseModel):
    id: str
    patient_ref: str
    paramedic_ref: str | None = None
    status: EMSStatus
    priority: Priority
    emergency_type: EmergencyType
    patient_location: Coordinate
    paramedic_location: Coordinate | None = None
    description: str | None = None
    contact_number: str | None = None
    notes: str | None = None
    created_at: datetime
    dispatch_time: datetime | None = None
    arrival_time: datetime | None = None
    completion_time: datetime | None = None
    updated_at: datetime
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class EMSRequestCreate(BaseModel):
    patient_ref: str = Field(..., min_length=1)
    location: Coordinate
    emergency_type: EmergencyType = EmergencyType.OTHER
    priority: Priority = Priority.MEDIUM
    description: str | None = None
    contact_number: str | None = None


class AcceptRequest(BaseModel):
    paramedic_ref: str = Field(..., min_length=1)
    location: Coordinate | None = None


class AssignRequest(BaseModel):
    location: Coordinate | None = None
    admin_ref: str | None = None


class LocationReport(BaseModel):
    actor_ref: str = Field(..., min_length=1)
    location: Coordinate
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return utc(value)


class LocationAck(BaseModel):
    request_id: str
    actor_ref: str
    timestamp: datetime
    accepted: bool


class LocationSample(BaseModel):
    request_id: str
    actor_ref: str
    location: Coordinate
    timestamp: datetime


class StatusUpdate(BaseModel):
    status: EMSStatus
    notes: str | None = None
    actor_ref: str | None = None


class CancelRequest(BaseModel):
    actor_ref: str = Field(..., min_length=1)
    reason: str | None = None


class DetailsUpdate(BaseModel):
    description: str | None = None
    contact_number: str | None = None
    notes: str | None = None


class StatusHistoryEntry(BaseModel):
    request_id: str
    from_status: EMSStatus | None = None
    to_status: EMSStatus
    actor_ref: str | None = None
    notes: str | None = None
    changed_at: datetime
    version: int


class RouteEstimate(BaseModel):
    distance_m: float
    duration_s: float
    distance_text: str
    duration_text: str
    source: str
    approximate: bool = False


class ActiveRequestView(BaseModel):
    """Active request as seen from a paramedic's position."""

    request: EMSRequest
    distance_m: float | None = None
    distance_text: str | None = None
    within_range: bool | None = None
    estimate: RouteEstimate | None = None


class SummaryWindow(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class DispatchSummary(BaseModel):
    """Dispatcher overview of the requests created within a time window."""

    window: SummaryWindow
    since: datetime | None = None
    total: int
    active: int
    unassigned: int
    critical: int
    completed: int
    cancelled: int
    average_response_minutes: float | None = None
