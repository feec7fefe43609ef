"""Request Lifecycle Manager.

Creates requests and applies the arrival, completion and cancellation
transitions. Every mutation of an existing request runs under that request's
lock, and its event is published before the lock is released, so subscribers
see one request's changes in commit order.
"""

import logging
import uuid
from datetime import UTC, datetime

from app.database import IntegrityViolation, format_ts
from app.models.ems import (
    DetailsUpdate,
    EMSRequest,
    EMSRequestCreate,
    EMSStatus,
)
from app.models.events import DispatchEvent, EventType
from app.services import request_store
from app.services.errors import AlreadyTerminal, DuplicateActiveRequest, RequestUnavailable
from app.services.event_bus import event_bus
from app.services.locks import patient_locks, request_locks
from app.services.state_machine import Action, action_for_status, next_status

logger = logging.getLogger(__name__)

# Guarded writes retried when a concurrent location update bumped the version
MAX_GUARD_RETRIES = 3


def transition_time(request: EMSRequest) -> datetime:
    """Now, but never earlier than a timestamp the request already carries."""
    stamps = [
        ts
        for ts in (request.created_at, request.dispatch_time, request.arrival_time)
        if ts is not None
    ]
    return max([datetime.now(UTC), *stamps])


async def create_request(body: EMSRequestCreate) -> EMSRequest:
    """Open a new pending request for a patient with no other active request."""
    async with patient_locks.hold(body.patient_ref):
        existing = await request_store.find_active_for_patient(body.patient_ref)
        if existing is not None:
            raise DuplicateActiveRequest(
                f"Patient {body.patient_ref} already has an active request",
                request_id=existing.id,
            )

        now = datetime.now(UTC)
        request = EMSRequest(
            id=str(uuid.uuid4()),
            patient_ref=body.patient_ref,
            status=EMSStatus.PENDING,
            priority=body.priority,
            emergency_type=body.emergency_type,
            patient_location=body.location,
            description=body.description,
            contact_number=body.contact_number,
            created_at=now,
            updated_at=now,
            version=1,
        )
        try:
            await request_store.insert_request(request)
        except IntegrityViolation as exc:
            # Another instance won the race for this patient
            raise DuplicateActiveRequest(
                f"Patient {body.patient_ref} already has an active request"
            ) from exc

        request = await request_store.require_request(request.id)
        logger.info(
            "Created %s %s request %s for patient %s",
            request.priority.value,
            request.emergency_type.value,
            request.id,
            request.patient_ref,
        )
        await event_bus.publish(
            DispatchEvent.for_request(
                EventType.REQUEST_CREATED,
                request,
                to_status=EMSStatus.PENDING,
                actor_ref=request.patient_ref,
            )
        )
    return request


def _transition_fields(target: EMSStatus, now: datetime, notes: str | None) -> dict:
    fields = {}
    if target == EMSStatus.ARRIVED:
        fields["arrival_time"] = format_ts(now)
    elif target in (EMSStatus.COMPLETED, EMSStatus.CANCELLED):
        fields["completion_time"] = format_ts(now)
    if notes is not None:
        fields["notes"] = notes
    return fields


async def _transition(
    request_id: str,
    action: Action,
    actor_ref: str | None = None,
    notes: str | None = None,
) -> EMSRequest:
    async with request_locks.hold(request_id):
        for _ in range(MAX_GUARD_RETRIES):
            request = await request_store.require_request(request_id)
            target = next_status(request.status, action, request_id)
            now = transition_time(request)
            fields = _transition_fields(target, now, notes)
            if await request_store.apply_transition(request, target, now, fields, actor_ref, notes):
                break
        else:
            raise RequestUnavailable(
                f"Request {request_id} kept changing; retry", request_id=request_id
            )

        updated = await request_store.require_request(request_id)
        logger.info(
            "Request %s %s -> %s (actor=%s)",
            request_id,
            request.status.value,
            target.value,
            actor_ref,
        )
        event_type = (
            EventType.REQUEST_CANCELLED if target == EMSStatus.CANCELLED else EventType.STATUS_CHANGED
        )
        await event_bus.publish(
            DispatchEvent.for_request(
                event_type,
                updated,
                from_status=request.status,
                to_status=target,
                actor_ref=actor_ref,
            )
        )
    return updated


async def cancel_request(request_id: str, actor_ref: str, reason: str | None = None) -> EMSRequest:
    return await _transition(request_id, Action.CANCEL, actor_ref=actor_ref, notes=reason)


async def mark_arrived(request_id: str, actor_ref: str | None = None) -> EMSRequest:
    return await _transition(request_id, Action.MARK_ARRIVED, actor_ref=actor_ref)


async def complete_request(
    request_id: str, actor_ref: str | None = None, notes: str | None = None
) -> EMSRequest:
    return await _transition(request_id, Action.COMPLETE, actor_ref=actor_ref, notes=notes)


async def update_status(
    request_id: str,
    target: EMSStatus,
    notes: str | None = None,
    actor_ref: str | None = None,
) -> EMSRequest:
    """Apply the transition that leads to ``target``, validated by the state machine."""
    request = await request_store.require_request(request_id)
    if request.is_terminal:
        raise AlreadyTerminal(
            f"Request is already {request.status.value}", request_id=request_id
        )
    action = action_for_status(target, request_id)
    return await _transition(request_id, action, actor_ref=actor_ref, notes=notes)


async def update_details(request_id: str, body: DetailsUpdate) -> EMSRequest:
    """Edit the free-text fields of a request that is not yet terminal."""
    fields = body.model_dump(exclude_none=True)
    async with request_locks.hold(request_id):
        for _ in range(MAX_GUARD_RETRIES):
            request = await request_store.require_request(request_id)
            if request.is_terminal:
                raise AlreadyTerminal(
                    f"Request is already {request.status.value}", request_id=request_id
                )
            if not fields:
                return request
            if await request_store.update_details(request, fields, datetime.now(UTC)):
                break
        else:
            raise RequestUnavailable(
                f"Request {request_id} kept changing; retry", request_id=request_id
            )

        updated = await request_store.require_request(request_id)
        logger.info("Updated %s on request %s", ", ".join(sorted(fields)), request_id)
        await event_bus.publish(DispatchEvent.for_request(EventType.REQUEST_UPDATED, updated))
    return updated
