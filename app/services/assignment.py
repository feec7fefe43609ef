"""Assignment Coordinator.

Binds a paramedic to a pending request. Concurrent accepts of one request are
serialized on the request lock and decided by a guarded update, so the first
committer wins and every other caller gets RequestUnavailable. The paramedic
lock, taken first, keeps one paramedic from being bound to two requests.
Priority plays no part here: paramedics pull requests, nothing is pushed.
"""

import logging
from datetime import datetime

from app.database import IntegrityViolation, format_ts
from app.models.ems import Coordinate, EMSRequest, EMSStatus
from app.models.events import DispatchEvent, EventType
from app.services import geolocation, request_store
from app.services.errors import LocationUnavailable, ParamedicBusy, RequestUnavailable
from app.services.event_bus import event_bus
from app.services.lifecycle import transition_time
from app.services.locks import paramedic_locks, request_locks
from app.services.state_machine import Action, next_status

logger = logging.getLogger(__name__)


async def accept_request(
    request_id: str,
    paramedic_ref: str,
    location: Coordinate | None = None,
) -> EMSRequest:
    """A paramedic takes a pending request.

    Without an explicit coordinate the paramedic's last known position is used;
    if there is none, the accept fails with LocationUnavailable.
    """
    located_at = None
    if location is None:
        sample = await geolocation.fetch_position(paramedic_ref)
        if sample is None:
            raise LocationUnavailable(
                f"No position available for paramedic {paramedic_ref}",
                request_id=request_id,
            )
        location, located_at = sample.location, sample.timestamp
    return await _bind(request_id, paramedic_ref, location, located_at, actor_ref=paramedic_ref)


async def assign_by_admin(
    request_id: str,
    paramedic_ref: str,
    location: Coordinate | None = None,
    admin_ref: str | None = None,
) -> EMSRequest:
    """A dispatcher binds a paramedic to a pending request.

    The position is optional: the paramedic's last known one is used when
    available, otherwise it stays unset until their first location report.
    """
    located_at = None
    if location is None:
        sample = await geolocation.fetch_position(paramedic_ref)
        if sample is not None:
            location, located_at = sample.location, sample.timestamp
    return await _bind(
        request_id,
        paramedic_ref,
        location,
        located_at,
        actor_ref=admin_ref or paramedic_ref,
        notes=f"Assigned by {admin_ref}" if admin_ref else None,
    )


async def _bind(
    request_id: str,
    paramedic_ref: str,
    location: Coordinate | None,
    located_at: datetime | None,
    actor_ref: str,
    notes: str | None = None,
) -> EMSRequest:
    async with paramedic_locks.hold(paramedic_ref):
        async with request_locks.hold(request_id):
            request = await request_store.require_request(request_id)
            if request.status != EMSStatus.PENDING:
                logger.info(
                    "Paramedic %s lost request %s (status %s)",
                    paramedic_ref,
                    request_id,
                    request.status.value,
                )
                raise RequestUnavailable(
                    f"Request {request_id} is no longer pending", request_id=request_id
                )

            busy = await request_store.find_busy_for_paramedic(paramedic_ref)
            if busy is not None:
                raise ParamedicBusy(
                    f"Paramedic {paramedic_ref} is already assigned to request {busy.id}",
                    request_id=busy.id,
                )

            target = next_status(request.status, Action.ACCEPT, request_id)
            now = transition_time(request)
            located_at = located_at or now
            fields = {
                "paramedic_ref": paramedic_ref,
                "dispatch_time": format_ts(now),
                **request_store.paramedic_location_columns(location, located_at),
            }
            try:
                won = await request_store.apply_transition(
                    request, target, now, fields, actor_ref=actor_ref, notes=notes
                )
            except IntegrityViolation as exc:
                # Bound elsewhere by another instance in the meantime
                raise ParamedicBusy(
                    f"Paramedic {paramedic_ref} is already assigned", request_id=request_id
                ) from exc
            if not won:
                raise RequestUnavailable(
                    f"Request {request_id} was taken by another paramedic", request_id=request_id
                )

            if location is not None:
                await request_store.record_location_sample(request_id, paramedic_ref, location, located_at)

            updated = await request_store.require_request(request_id)
            logger.info("Paramedic %s dispatched to request %s", paramedic_ref, request_id)
            await event_bus.publish(
                DispatchEvent.for_request(
                    EventType.REQUEST_ASSIGNED,
                    updated,
                    from_status=EMSStatus.PENDING,
                    to_status=target,
                    actor_ref=paramedic_ref,
                    location=location,
                    timestamp=located_at if location is not None else None,
                )
            )
    return updated
