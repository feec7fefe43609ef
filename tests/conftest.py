import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB and no external API keys for tests
os.environ["ORS_API_KEY"] = ""
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_REQUESTS"] = "false"
os.environ["GCP_PROJECT_ID"] = ""
os.environ["GCP_PUBSUB_TOPIC"] = ""

from app.database import close_db, init_db
from app.main import app
from app.models.ems import Coordinate, EMSRequestCreate, EmergencyType, Priority
from app.services import lifecycle
from app.services.event_bus import event_bus


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import app.database as db_mod

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_REQUESTS = False

    event_bus.reset()
    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()
    event_bus.reset()


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for HTTP and WebSocket tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for async HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_request(db):
    """Create a pending request for a patient through the lifecycle manager."""

    async def _make(
        patient_ref: str = "patient-1",
        lat: float = 1.0,
        lng: float = 2.0,
        priority: Priority = Priority.CRITICAL,
        emergency_type: EmergencyType = EmergencyType.CARDIAC,
    ):
        return await lifecycle.create_request(
            EMSRequestCreate(
                patient_ref=patient_ref,
                location=Coordinate(lat=lat, lng=lng),
                emergency_type=emergency_type,
                priority=priority,
                description="Chest pain",
                contact_number="+1-555-0100",
            )
        )

    return _make
