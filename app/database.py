from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from app.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_REQUESTS

try:  # Optional: only required when DATABASE_URL is set (Cloud SQL / Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class IntegrityViolation(Exception):
    """A write was rejected by a uniqueness constraint."""

    def __init__(self, message: str, constraint: str | None = None) -> None:
        super().__init__(message)
        self.constraint = constraint


def _rowcount_from_status(status: str | None) -> int:
    # asyncpg returns command tags such as "UPDATE 1" or "INSERT 0 1"
    if not status:
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of rows it affected."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        try:
            cursor = await self.conn.execute(query, params or ())
        except aiosqlite.IntegrityError as exc:
            raise IntegrityViolation(str(exc)) from exc
        return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            try:
                status = await conn.execute(q, *(params or ()))
            except asyncpg.UniqueViolationError as exc:
                raise IntegrityViolation(str(exc), getattr(exc, "constraint_name", None)) from exc
        return _rowcount_from_status(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def rollback(self) -> None:
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL:
            if DATABASE_URL.startswith("sqlite"):
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
                conn = await aiosqlite.connect(sqlite_path)
                conn.row_factory = aiosqlite.Row
                _db = SQLiteAdapter(conn)
                logger.info("Connected to SQLite database at %s", sqlite_path)
            else:
                if asyncpg is None:
                    raise RuntimeError(
                        "DATABASE_URL is set but asyncpg is not installed. "
                        "Install asyncpg or unset DATABASE_URL."
                    )
                pool = await asyncpg.create_pool(
                    dsn=DATABASE_URL,
                    min_size=1,
                    max_size=DATABASE_MAX_CONNECTIONS,
                )
                _db = PostgresAdapter(pool)
                logger.info("Connected to Postgres database")
        else:
            conn = await aiosqlite.connect(DATABASE_PATH)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return "/" + path.lstrip("/")
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


# Timestamps are stored as fixed-width UTC ISO strings on both engines so
# that lexical and chronological order agree.
SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS ems_requests (
        id TEXT PRIMARY KEY,
        patient_ref TEXT NOT NULL,
        paramedic_ref TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        priority TEXT NOT NULL,
        emergency_type TEXT NOT NULL,
        patient_lat REAL NOT NULL,
        patient_lng REAL NOT NULL,
        patient_accuracy REAL,
        paramedic_lat REAL,
        paramedic_lng REAL,
        paramedic_accuracy REAL,
        paramedic_location_at TEXT,
        description TEXT,
        contact_number TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        dispatch_time TEXT,
        arrival_time TEXT,
        completion_time TEXT,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_ems_active_patient
        ON ems_requests (patient_ref)
        WHERE status IN ('pending', 'enroute', 'arrived');

    CREATE UNIQUE INDEX IF NOT EXISTS uq_ems_busy_paramedic
        ON ems_requests (paramedic_ref)
        WHERE status IN ('enroute', 'arrived');

    CREATE INDEX IF NOT EXISTS ix_ems_status ON ems_requests (status);

    CREATE TABLE IF NOT EXISTS ems_status_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        actor_ref TEXT,
        notes TEXT,
        changed_at TEXT NOT NULL,
        version INTEGER NOT NULL,
        FOREIGN KEY (request_id) REFERENCES ems_requests(id)
    );

    CREATE TABLE IF NOT EXISTS location_samples (
        request_id TEXT NOT NULL,
        actor_ref TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        accuracy REAL,
        recorded_at TEXT NOT NULL,
        PRIMARY KEY (request_id, actor_ref),
        FOREIGN KEY (request_id) REFERENCES ems_requests(id)
    );
"""

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS ems_requests (
        id TEXT PRIMARY KEY,
        patient_ref TEXT NOT NULL,
        paramedic_ref TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        priority TEXT NOT NULL,
        emergency_type TEXT NOT NULL,
        patient_lat DOUBLE PRECISION NOT NULL,
        patient_lng DOUBLE PRECISION NOT NULL,
        patient_accuracy DOUBLE PRECISION,
        paramedic_lat DOUBLE PRECISION,
        paramedic_lng DOUBLE PRECISION,
        paramedic_accuracy DOUBLE PRECISION,
        paramedic_location_at TEXT,
        description TEXT,
        contact_number TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        dispatch_time TEXT,
        arrival_time TEXT,
        completion_time TEXT,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ems_active_patient
        ON ems_requests (patient_ref)
        WHERE status IN ('pending', 'enroute', 'arrived');
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ems_busy_paramedic
        ON ems_requests (paramedic_ref)
        WHERE status IN ('enroute', 'arrived');
    """,
    "CREATE INDEX IF NOT EXISTS ix_ems_status ON ems_requests (status);",
    """
    CREATE TABLE IF NOT EXISTS ems_status_history (
        id BIGSERIAL PRIMARY KEY,
        request_id TEXT NOT NULL REFERENCES ems_requests(id),
        from_status TEXT,
        to_status TEXT NOT NULL,
        actor_ref TEXT,
        notes TEXT,
        changed_at TEXT NOT NULL,
        version INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS location_samples (
        request_id TEXT NOT NULL REFERENCES ems_requests(id),
        actor_ref TEXT NOT NULL,
        lat DOUBLE PRECISION NOT NULL,
        lng DOUBLE PRECISION NOT NULL,
        accuracy DOUBLE PRECISION,
        recorded_at TEXT NOT NULL,
        PRIMARY KEY (request_id, actor_ref)
    );
    """,
]


def format_ts(value: datetime) -> str:
    """Serialize a timestamp as a fixed-width UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


async def init_db() -> None:
    db = await get_db()

    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)

    await db.commit()

    if SEED_DEMO_REQUESTS:
        await _seed_demo_requests(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_requests(db: DatabaseAdapter) -> None:
    """Seed pending demo requests for dashboard previews."""
    now = datetime.now(UTC)

    demo_requests = [
        (
            "demo-cardiac",
            "demo-patient-1",
            "critical",
            "cardiac",
            40.7128,
            -74.0060,
            "Chest pain radiating to left arm",
            "+1-555-0101",
            format_ts(now - timedelta(minutes=4)),
        ),
        (
            "demo-fall",
            "demo-patient-2",
            "medium",
            "fall",
            40.7306,
            -73.9866,
            "Elderly patient fell down stairs, conscious",
            "+1-555-0102",
            format_ts(now - timedelta(minutes=9)),
        ),
        (
            "demo-respiratory",
            "demo-patient-3",
            "high",
            "respiratory",
            40.7484,
            -73.9857,
            "Severe shortness of breath, known asthmatic",
            None,
            format_ts(now - timedelta(minutes=2)),
        ),
    ]

    existing_rows = await db.fetch_all(
        "SELECT id FROM ems_requests WHERE id IN ('demo-cardiac', 'demo-fall', 'demo-respiratory')"
    )
    existing = {row["id"] for row in existing_rows}
    demo_requests = [req for req in demo_requests if req[0] not in existing]
    if not demo_requests:
        return

    await db.executemany(
        """INSERT INTO ems_requests (
            id, patient_ref, priority, emergency_type, patient_lat, patient_lng,
            description, contact_number, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [(*req, req[-1]) for req in demo_requests],
    )
    await db.executemany(
        """INSERT INTO ems_status_history (request_id, from_status, to_status, changed_at, version)
        VALUES (?, NULL, 'pending', ?, 1)""",
        [(req[0], req[-1]) for req in demo_requests],
    )
    await db.commit()
    logger.info("Seeded %d demo EMS requests", len(demo_requests))
