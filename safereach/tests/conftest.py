"""
Centralized Test Configuration.
"""

import os

# Must be set before the app (and its engine) is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REALTIME_BACKEND", "memory")

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from safereach.app.main import app
from safereach.app.core.jwt import create_access_token
from safereach.app.core.reliability import CircuitBreaker
from safereach.app.db.session import get_db, get_session_factory, Base
from safereach.app.models.contact import Contact
from safereach.app.models.traveler import Traveler
from safereach.app.services.checkin_scheduler import get_checkin_scheduler
from safereach.app.services.geocoding import NominatimGeocoder
from safereach.app.services.realtime import RealtimeChannel, get_realtime_channel
from safereach.app.services.route_estimator import RouteEstimator, get_route_estimator
from safereach.app.services.routing_providers import OSRMRoutingProvider
from safereach.tests.fakes import GEOCODER_URL, OSRM_URL, FakeScheduler, FakeServices

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
async def engine():
    """
    Fresh in-memory database per test.

    The single pooled connection carries asyncio state bound to the loop
    that first waits on it, so it must not outlive the test's loop.
    """
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def channel():
    realtime = RealtimeChannel()
    yield realtime
    await realtime.close()


@pytest.fixture
def fake_services():
    return FakeServices()


@pytest.fixture
async def http_client(fake_services):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_services.handler)) as client:
        yield client


@pytest.fixture
def route_estimator(http_client):
    return RouteEstimator(
        NominatimGeocoder(http_client, GEOCODER_URL, "safereach-tests"),
        OSRMRoutingProvider(http_client, OSRM_URL),
        max_retries=0,
        circuit_breaker=CircuitBreaker(failure_threshold=3, reset_timeout=30),
    )


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture(autouse=True)
def apply_overrides(session_factory, channel, route_estimator, scheduler):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_realtime_channel] = lambda: channel
    app.dependency_overrides[get_route_estimator] = lambda: route_estimator
    app.dependency_overrides[get_checkin_scheduler] = lambda: scheduler
    yield
    app.dependency_overrides = {}


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def traveler(db_session):
    traveler = Traveler(name="Maya Chen", phone="+15550100", default_checkin_interval_minutes=5)
    db_session.add(traveler)
    await db_session.commit()
    await db_session.refresh(traveler)
    return traveler


@pytest.fixture
async def contacts(db_session, traveler):
    rows = [
        Contact(traveler_id=traveler.id, name="Sam Rivera", phone="+15550101", is_default=True),
        Contact(traveler_id=traveler.id, name="Jo Okafor", phone="+15550102"),
    ]
    db_session.add_all(rows)
    await db_session.commit()
    for row in rows:
        await db_session.refresh(row)
    return rows


@pytest.fixture
def auth_headers(traveler):
    token = create_access_token(data={"sub": traveler.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def journey_payload(contacts):
    return {
        "start_name": "Central Library",
        "start_address": "Central Library",
        "dest_name": "Riverside Park",
        "dest_address": "Riverside Park",
        "contact_ids": [contact.id for contact in contacts],
        "checkin_interval_minutes": 5,
    }
