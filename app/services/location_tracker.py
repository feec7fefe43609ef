"""Location Tracker.

Ingests timestamped samples from patient and paramedic devices. Samples may
arrive late, duplicated or out of order; the newest by timestamp wins, not the
newest to arrive. Stale samples are acknowledged and dropped.

This path never takes the request lock, so a burst of samples cannot hold up
an accept or a status change.
"""

import logging
from datetime import datetime

from app.models.ems import (
    Coordinate,
    EMSStatus,
    LocationAck,
    LocationSample,
    RouteEstimate,
    utc,
)
from app.models.events import DispatchEvent, EventType
from app.services import estimator, request_store
from app.services.errors import ActorNotPermitted, AlreadyTerminal
from app.services.event_bus import event_bus

logger = logging.getLogger(__name__)


async def report_location(
    request_id: str,
    actor_ref: str,
    location: Coordinate,
    timestamp: datetime,
) -> LocationAck:
    timestamp = utc(timestamp)
    request = await request_store.require_request(request_id)
    if request.is_terminal:
        raise AlreadyTerminal(
            f"Request is already {request.status.value}; location not recorded",
            request_id=request_id,
        )

    is_paramedic = request.paramedic_ref is not None and actor_ref == request.paramedic_ref
    if not is_paramedic and actor_ref != request.patient_ref:
        raise ActorNotPermitted(
            f"{actor_ref} is not a participant of request {request_id}",
            request_id=request_id,
        )

    accepted = await request_store.record_location_sample(request_id, actor_ref, location, timestamp)
    if not accepted:
        logger.debug(
            "Dropped stale sample from %s on %s (t=%s)", actor_ref, request_id, timestamp.isoformat()
        )
        return LocationAck(request_id=request_id, actor_ref=actor_ref, timestamp=timestamp, accepted=False)

    # Only the paramedic's position on an enroute request lives on the request
    # itself; the incident location never moves.
    if is_paramedic and request.status == EMSStatus.ENROUTE:
        moved = await request_store.update_paramedic_location(request_id, actor_ref, location, timestamp)
        if not moved:
            logger.debug("Paramedic position on %s not moved by sample at %s", request_id, timestamp.isoformat())

    snapshot = await request_store.require_request(request_id)
    # A concurrent report with a later timestamp may have landed in between;
    # its own publish carries the newer position.
    stored = await request_store.get_sample(request_id, actor_ref)
    if stored is not None and stored.timestamp > timestamp:
        logger.debug("Sample from %s on %s superseded before publish", actor_ref, request_id)
        return LocationAck(request_id=request_id, actor_ref=actor_ref, timestamp=timestamp, accepted=True)

    await event_bus.publish(
        DispatchEvent.for_request(
            EventType.LOCATION_UPDATED,
            snapshot,
            actor_ref=actor_ref,
            location=location,
            timestamp=timestamp,
        )
    )
    return LocationAck(request_id=request_id, actor_ref=actor_ref, timestamp=timestamp, accepted=True)


async def latest_locations(request_id: str) -> list[LocationSample]:
    """Latest accepted sample per actor on a request."""
    await request_store.require_request(request_id)
    return await request_store.latest_samples(request_id)


async def estimate(origin: Coordinate, destination: Coordinate) -> RouteEstimate:
    """Distance and ETA between two points; display-only."""
    return await estimator.estimate(origin, destination)
