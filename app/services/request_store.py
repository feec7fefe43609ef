"""Request Store: the durable record of every EMS request.

The store is the single source of truth. Every state-changing statement is
guarded on the status (and version) the caller observed, so a write that lost
a race affects zero rows instead of clobbering the winner.
"""

import logging
from datetime import UTC, datetime

from app.database import format_ts, get_db, parse_ts
from app.models.ems import (
    ACTIVE_STATUSES,
    BUSY_STATUSES,
    Coordinate,
    EMSRequest,
    EMSStatus,
    LocationSample,
    StatusHistoryEntry,
)
from app.services.errors import NotFound

logger = logging.getLogger(__name__)

_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
_BUSY_SQL = ", ".join(f"'{s.value}'" for s in sorted(BUSY_STATUSES, key=lambda s: s.value))

_COLUMNS = (
    "id, patient_ref, paramedic_ref, status, priority, emergency_type, "
    "patient_lat, patient_lng, patient_accuracy, "
    "paramedic_lat, paramedic_lng, paramedic_accuracy, "
    "description, contact_number, notes, "
    "created_at, dispatch_time, arrival_time, completion_time, updated_at, version"
)


def _row_to_request(row) -> EMSRequest:
    paramedic_location = None
    if row["paramedic_lat"] is not None and row["paramedic_lng"] is not None:
        paramedic_location = Coordinate(
            lat=row["paramedic_lat"],
            lng=row["paramedic_lng"],
            accuracy=row["paramedic_accuracy"],
        )
    return EMSRequest(
        id=row["id"],
        patient_ref=row["patient_ref"],
        paramedic_ref=row["paramedic_ref"],
        status=EMSStatus(row["status"]),
        priority=row["priority"],
        emergency_type=row["emergency_type"],
        patient_location=Coordinate(
            lat=row["patient_lat"],
            lng=row["patient_lng"],
            accuracy=row["patient_accuracy"],
        ),
        paramedic_location=paramedic_location,
        description=row["description"],
        contact_number=row["contact_number"],
        notes=row["notes"],
        created_at=parse_ts(row["created_at"]),
        dispatch_time=parse_ts(row["dispatch_time"]),
        arrival_time=parse_ts(row["arrival_time"]),
        completion_time=parse_ts(row["completion_time"]),
        updated_at=parse_ts(row["updated_at"]),
        version=row["version"],
    )


def paramedic_location_columns(location: Coordinate | None, at: datetime | None) -> dict:
    """Column values for setting (or leaving unset) the paramedic position."""
    if location is None:
        return {}
    return {
        "paramedic_lat": location.lat,
        "paramedic_lng": location.lng,
        "paramedic_accuracy": location.accuracy,
        "paramedic_location_at": format_ts(at) if at else None,
    }


async def insert_request(request: EMSRequest) -> None:
    """Insert a new pending request and its first history entry.

    Raises ``IntegrityViolation`` when the patient already owns an active request.
    """
    db = await get_db()
    created = format_ts(request.created_at)
    try:
        await db.execute(
            """INSERT INTO ems_requests (
                id, patient_ref, status, priority, emergency_type,
                patient_lat, patient_lng, patient_accuracy,
                description, contact_number, created_at, updated_at, version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                request.id,
                request.patient_ref,
                request.status.value,
                request.priority.value,
                request.emergency_type.value,
                request.patient_location.lat,
                request.patient_location.lng,
                request.patient_location.accuracy,
                request.description,
                request.contact_number,
                created,
                format_ts(request.updated_at),
                request.version,
            ),
        )
        await _insert_history(
            db, request.id, None, request.status, request.patient_ref, None, created, request.version
        )
    except Exception:
        # The request row must never be committed without its history
        await db.rollback()
        raise
    await db.commit()


async def get_request(request_id: str) -> EMSRequest | None:
    db = await get_db()
    row = await db.fetch_one(f"SELECT {_COLUMNS} FROM ems_requests WHERE id = ?", (request_id,))
    return _row_to_request(row) if row else None


async def require_request(request_id: str) -> EMSRequest:
    request = await get_request(request_id)
    if request is None:
        raise NotFound(f"EMS request {request_id} not found", request_id=request_id)
    return request


async def find_active_for_patient(patient_ref: str) -> EMSRequest | None:
    db = await get_db()
    row = await db.fetch_one(
        f"SELECT {_COLUMNS} FROM ems_requests WHERE patient_ref = ? AND status IN ({_ACTIVE_SQL})",
        (patient_ref,),
    )
    return _row_to_request(row) if row else None


async def find_busy_for_paramedic(paramedic_ref: str) -> EMSRequest | None:
    db = await get_db()
    row = await db.fetch_one(
        f"SELECT {_COLUMNS} FROM ems_requests WHERE paramedic_ref = ? AND status IN ({_BUSY_SQL})",
        (paramedic_ref,),
    )
    return _row_to_request(row) if row else None


async def list_active() -> list[EMSRequest]:
    db = await get_db()
    rows = await db.fetch_all(
        f"SELECT {_COLUMNS} FROM ems_requests WHERE status IN ({_ACTIVE_SQL}) ORDER BY created_at ASC"
    )
    return [_row_to_request(row) for row in rows]


async def list_requests(since: datetime | None = None) -> list[EMSRequest]:
    """Every request, optionally only those created at or after ``since``."""
    db = await get_db()
    if since is None:
        rows = await db.fetch_all(f"SELECT {_COLUMNS} FROM ems_requests ORDER BY created_at ASC")
    else:
        rows = await db.fetch_all(
            f"SELECT {_COLUMNS} FROM ems_requests WHERE created_at >= ? ORDER BY created_at ASC",
            (format_ts(since),),
        )
    return [_row_to_request(row) for row in rows]


async def list_for_actor(actor_ref: str, active_only: bool = False) -> list[EMSRequest]:
    db = await get_db()
    query = f"SELECT {_COLUMNS} FROM ems_requests WHERE (patient_ref = ? OR paramedic_ref = ?)"
    if active_only:
        query += f" AND status IN ({_ACTIVE_SQL})"
    query += " ORDER BY created_at DESC"
    rows = await db.fetch_all(query, (actor_ref, actor_ref))
    return [_row_to_request(row) for row in rows]


async def apply_transition(
    request: EMSRequest,
    new_status: EMSStatus,
    now: datetime,
    fields: dict | None = None,
    actor_ref: str | None = None,
    notes: str | None = None,
) -> bool:
    """Move ``request`` to ``new_status`` if nobody changed it since it was read.

    ``fields`` holds extra column values to set in the same statement.
    Returns False when the guarded update matched no row.
    """
    db = await get_db()
    changed_at = format_ts(now)
    columns = {"status": new_status.value, "updated_at": changed_at, **(fields or {})}
    assignments = ", ".join(f"{col} = ?" for col in columns)
    try:
        count = await db.execute(
            f"UPDATE ems_requests SET {assignments}, version = version + 1 "
            "WHERE id = ? AND status = ? AND version = ?",
            (*columns.values(), request.id, request.status.value, request.version),
        )
        if count == 1:
            await _insert_history(
                db, request.id, request.status, new_status, actor_ref, notes, changed_at, request.version + 1
            )
    except Exception:
        await db.rollback()
        raise
    if count != 1:
        logger.debug(
            "Guarded transition %s -> %s on %s matched no row",
            request.status.value,
            new_status.value,
            request.id,
        )
        return False
    await db.commit()
    return True


async def update_details(request: EMSRequest, fields: dict, now: datetime) -> bool:
    """Update free-text fields of a non-terminal request."""
    db = await get_db()
    columns = {**fields, "updated_at": format_ts(now)}
    assignments = ", ".join(f"{col} = ?" for col in columns)
    count = await db.execute(
        f"UPDATE ems_requests SET {assignments}, version = version + 1 "
        f"WHERE id = ? AND version = ? AND status IN ({_ACTIVE_SQL})",
        (*columns.values(), request.id, request.version),
    )
    await db.commit()
    return count == 1


async def record_location_sample(
    request_id: str, actor_ref: str, location: Coordinate, recorded_at: datetime
) -> bool:
    """Keep the sample if it is not older than the stored one for this actor.

    Returns False when the sample was stale and nothing was written.
    """
    db = await get_db()
    count = await db.execute(
        """INSERT INTO location_samples (request_id, actor_ref, lat, lng, accuracy, recorded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (request_id, actor_ref) DO UPDATE SET
            lat = excluded.lat,
            lng = excluded.lng,
            accuracy = excluded.accuracy,
            recorded_at = excluded.recorded_at
        WHERE excluded.recorded_at >= location_samples.recorded_at""",
        (request_id, actor_ref, location.lat, location.lng, location.accuracy, format_ts(recorded_at)),
    )
    await db.commit()
    return count == 1


async def update_paramedic_location(
    request_id: str, paramedic_ref: str, location: Coordinate, recorded_at: datetime
) -> bool:
    """Move the bound paramedic's position on an enroute request.

    Only the bound paramedic may move it, and never backwards in time.
    """
    db = await get_db()
    ts = format_ts(recorded_at)
    count = await db.execute(
        """UPDATE ems_requests SET
            paramedic_lat = ?, paramedic_lng = ?, paramedic_accuracy = ?,
            paramedic_location_at = ?, updated_at = ?, version = version + 1
        WHERE id = ? AND status = ? AND paramedic_ref = ?
            AND (paramedic_location_at IS NULL OR paramedic_location_at <= ?)""",
        (
            location.lat,
            location.lng,
            location.accuracy,
            ts,
            format_ts(datetime.now(UTC)),
            request_id,
            EMSStatus.ENROUTE.value,
            paramedic_ref,
            ts,
        ),
    )
    await db.commit()
    return count == 1


def _row_to_sample(row) -> LocationSample:
    return LocationSample(
        request_id=row["request_id"],
        actor_ref=row["actor_ref"],
        location=Coordinate(lat=row["lat"], lng=row["lng"], accuracy=row["accuracy"]),
        timestamp=parse_ts(row["recorded_at"]),
    )


async def get_sample(request_id: str, actor_ref: str) -> LocationSample | None:
    db = await get_db()
    row = await db.fetch_one(
        "SELECT * FROM location_samples WHERE request_id = ? AND actor_ref = ?",
        (request_id, actor_ref),
    )
    return _row_to_sample(row) if row else None


async def latest_samples(request_id: str) -> list[LocationSample]:
    db = await get_db()
    rows = await db.fetch_all(
        "SELECT * FROM location_samples WHERE request_id = ? ORDER BY actor_ref",
        (request_id,),
    )
    return [_row_to_sample(row) for row in rows]


async def last_known_sample(actor_ref: str) -> LocationSample | None:
    """Most recent sample an actor reported on any request."""
    db = await get_db()
    row = await db.fetch_one(
        "SELECT * FROM location_samples WHERE actor_ref = ? ORDER BY recorded_at DESC LIMIT 1",
        (actor_ref,),
    )
    return _row_to_sample(row) if row else None


async def get_history(request_id: str) -> list[StatusHistoryEntry]:
    db = await get_db()
    rows = await db.fetch_all(
        "SELECT * FROM ems_status_history WHERE request_id = ? ORDER BY version ASC, id ASC",
        (request_id,),
    )
    return [
        StatusHistoryEntry(
            request_id=row["request_id"],
            from_status=row["from_status"],
            to_status=row["to_status"],
            actor_ref=row["actor_ref"],
            notes=row["notes"],
            changed_at=parse_ts(row["changed_at"]),
            version=row["version"],
        )
        for row in rows
    ]


async def _insert_history(
    db,
    request_id: str,
    from_status: EMSStatus | None,
    to_status: EMSStatus,
    actor_ref: str | None,
    notes: str | None,
    changed_at: str,
    version: int,
) -> None:
    await db.execute(
        """INSERT INTO ems_status_history
            (request_id, from_status, to_status, actor_ref, notes, changed_at, version)
        VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            request_id,
            from_status.value if from_status else None,
            to_status.value,
            actor_ref,
            notes,
            changed_at,
            version,
        ),
    )
