import logging

from fastapi import APIRouter, Query

from app.models.ems import (
    AcceptRequest,
    ActiveRequestView,
    AssignRequest,
    CancelRequest,
    Coordinate,
    DetailsUpdate,
    DispatchSummary,
    EMSRequest,
    EMSRequestCreate,
    LocationAck,
    LocationReport,
    LocationSample,
    RouteEstimate,
    StatusHistoryEntry,
    StatusUpdate,
    SummaryWindow,
)
from app.services import assignment, lifecycle, location_tracker, queries

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ems", tags=["ems"])


@router.post("/request", response_model=EMSRequest)
async def create_request(body: EMSRequestCreate):
    """Open an EMS request for a patient (patient only)."""
    return await lifecycle.create_request(body)


@router.get("/active", response_model=list[EMSRequest])
async def get_active_requests():
    """All pending, enroute and arrived requests, most urgent first."""
    return await queries.get_active_requests()


@router.get("/active/nearby", response_model=list[ActiveRequestView])
async def get_active_requests_nearby(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lng: float = Query(..., ge=-180.0, le=180.0),
    route: bool = False,
):
    """Active requests with straight-line distance from a paramedic's position.

    With route=true each entry also carries a road ETA.
    """
    return await queries.get_active_requests_near(Coordinate(lat=lat, lng=lng), route=route)


@router.get("/my-requests", response_model=list[EMSRequest])
async def get_my_requests(actor_ref: str = Query(..., min_length=1), active_only: bool = False):
    """Requests the actor owns as patient or is bound to as paramedic."""
    return await queries.get_my_requests(actor_ref, active_only=active_only)


@router.get("/summary", response_model=DispatchSummary)
async def get_dispatch_summary(window: SummaryWindow = SummaryWindow.ALL):
    """Dispatcher overview: active, unassigned and critical counts plus average response time."""
    return await queries.get_dispatch_summary(window)


@router.get("/{request_id}", response_model=EMSRequest)
async def get_request(request_id: str):
    return await queries.get_request(request_id)


@router.patch("/{request_id}", response_model=EMSRequest)
async def update_request_details(request_id: str, body: DetailsUpdate):
    """Edit description, contact number or notes until the request is terminal."""
    return await lifecycle.update_details(request_id, body)


@router.get("/{request_id}/history", response_model=list[StatusHistoryEntry])
async def get_request_history(request_id: str):
    return await queries.get_history(request_id)


@router.post("/{request_id}/accept", response_model=EMSRequest)
async def accept_request(request_id: str, body: AcceptRequest):
    """A paramedic accepts a pending request. First accept wins."""
    return await assignment.accept_request(request_id, body.paramedic_ref, body.location)


@router.post("/{request_id}/assign/{paramedic_ref}", response_model=EMSRequest)
async def assign_paramedic(request_id: str, paramedic_ref: str, body: AssignRequest | None = None):
    """Dispatcher override: bind a paramedic to a pending request."""
    body = body or AssignRequest()
    return await assignment.assign_by_admin(
        request_id, paramedic_ref, location=body.location, admin_ref=body.admin_ref
    )


@router.patch("/{request_id}/location", response_model=LocationAck)
async def report_location(request_id: str, body: LocationReport):
    """Report a device position. Stale samples are acknowledged with accepted=false."""
    return await location_tracker.report_location(
        request_id, body.actor_ref, body.location, body.timestamp
    )


@router.get("/{request_id}/locations", response_model=list[LocationSample])
async def get_latest_locations(request_id: str):
    return await location_tracker.latest_locations(request_id)


@router.patch("/{request_id}/status", response_model=EMSRequest)
async def update_status(request_id: str, body: StatusUpdate):
    return await lifecycle.update_status(
        request_id, body.status, notes=body.notes, actor_ref=body.actor_ref
    )


@router.post("/{request_id}/cancel", response_model=EMSRequest)
async def cancel_request(request_id: str, body: CancelRequest):
    return await lifecycle.cancel_request(request_id, body.actor_ref, reason=body.reason)


@router.get("/{request_id}/estimate", response_model=RouteEstimate)
async def get_estimate(
    request_id: str,
    lat: float | None = Query(None, ge=-90.0, le=90.0),
    lng: float | None = Query(None, ge=-180.0, le=180.0),
):
    """Distance and ETA to the incident, from the given point or the bound paramedic."""
    origin = Coordinate(lat=lat, lng=lng) if lat is not None and lng is not None else None
    return await queries.estimate_for_request(request_id, origin)
