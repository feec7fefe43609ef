"""Dispatch Query Service: read-only projections over the Request Store.

Nothing here is cached; every call reads the store, so "my active request" is
always recomputed rather than remembered.
"""

import logging
from datetime import UTC, datetime, timedelta

from app.models.ems import (
    ACTIVE_STATUSES,
    PRIORITY_RANK,
    ActiveRequestView,
    Coordinate,
    DispatchSummary,
    EMSRequest,
    EMSStatus,
    Priority,
    RouteEstimate,
    StatusHistoryEntry,
    SummaryWindow,
    utc,
)
from app.services import estimator, request_store
from app.services.errors import LocationUnavailable

logger = logging.getLogger(__name__)


def triage_order(requests: list[EMSRequest]) -> list[EMSRequest]:
    """Most urgent first, oldest first within the same priority."""
    return sorted(requests, key=lambda r: (PRIORITY_RANK[r.priority], r.created_at))


async def get_active_requests() -> list[EMSRequest]:
    return triage_order(await request_store.list_active())


async def get_active_requests_near(origin: Coordinate, route: bool = False) -> list[ActiveRequestView]:
    """Active requests with straight-line distance from ``origin``.

    Distance and range always come from the haversine estimate. With
    ``route`` each view also carries a road estimate, fetched in rate-limited
    batches and falling back to straight line per request.
    """
    requests = await get_active_requests()
    estimates: dict[str, RouteEstimate] = {}
    if route and requests:
        estimates = await estimator.estimate_many(origin, {r.id: r.patient_location for r in requests})

    views = []
    for request in requests:
        distance = estimator.haversine_distance(origin, request.patient_location)
        views.append(
            ActiveRequestView(
                request=request,
                distance_m=distance,
                distance_text=estimator.format_distance(distance),
                within_range=estimator.is_within_response_range(distance, request.priority),
                estimate=estimates.get(request.id),
            )
        )
    return views


async def get_my_requests(actor_ref: str, active_only: bool = False) -> list[EMSRequest]:
    return await request_store.list_for_actor(actor_ref, active_only=active_only)


async def get_request(request_id: str) -> EMSRequest:
    return await request_store.require_request(request_id)


async def get_history(request_id: str) -> list[StatusHistoryEntry]:
    await request_store.require_request(request_id)
    return await request_store.get_history(request_id)


async def estimate_for_request(request_id: str, origin: Coordinate | None = None) -> RouteEstimate:
    """ETA from ``origin`` (default: the bound paramedic) to the incident."""
    request = await request_store.require_request(request_id)
    origin = origin or request.paramedic_location
    if origin is None:
        raise LocationUnavailable(
            f"No paramedic position known for request {request_id}", request_id=request_id
        )
    return await estimator.estimate(origin, request.patient_location)


def window_start(window: SummaryWindow, now: datetime) -> datetime | None:
    """Earliest creation time inside ``window``; None for all time."""
    now = utc(now)
    if window == SummaryWindow.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == SummaryWindow.WEEK:
        return now - timedelta(days=7)
    if window == SummaryWindow.MONTH:
        return now - timedelta(days=30)
    return None


def summarize(requests: list[EMSRequest], window: SummaryWindow, since: datetime | None) -> DispatchSummary:
    active = [r for r in requests if r.status in ACTIVE_STATUSES]
    completed = [r for r in requests if r.status == EMSStatus.COMPLETED and r.completion_time]

    # Created to completion, over completed requests only
    average = None
    if completed:
        total_seconds = sum((r.completion_time - r.created_at).total_seconds() for r in completed)
        average = round(total_seconds / len(completed) / 60, 1)

    return DispatchSummary(
        window=window,
        since=since,
        total=len(requests),
        active=len(active),
        unassigned=sum(1 for r in active if r.paramedic_ref is None),
        critical=sum(1 for r in active if r.priority == Priority.CRITICAL),
        completed=len(completed),
        cancelled=sum(1 for r in requests if r.status == EMSStatus.CANCELLED),
        average_response_minutes=average,
    )


async def get_dispatch_summary(
    window: SummaryWindow = SummaryWindow.ALL, now: datetime | None = None
) -> DispatchSummary:
    """Counts and average response time for the dispatcher overview."""
    since = window_start(window, now or datetime.now(UTC))
    return summarize(await request_store.list_requests(since), window, since)
