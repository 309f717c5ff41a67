import json
import os
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from cryptography.fernet import Fernet

# Settings are read at import time; configure the environment first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = Fernet.generate_key().decode("utf-8")
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["INTERNAL_ADMIN_KEY"] = "test-internal"

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from listing_sync.models import Base
from listing_sync.main import app
from listing_sync.core.db import get_db, get_session_factory
from listing_sync.api.deps import get_client_factory
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.orchestrator import OrchestratorOptions, SyncOrchestrator
from listing_sync.services.sync_sessions import SyncSessionStore
from listing_sync.upstream.client import UpstreamClient
from listing_sync.upstream.rate_limit import FixedWindowRateLimiter

UPSTREAM_URL = "https://upstream.test"


class Clock:
    """Settable UTC clock for last_synced_at / session timing."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeUpstream:
    """In-memory upstream CRM served through httpx.MockTransport."""

    def __init__(self):
        self.active: list[dict] = []
        self.deleted: list[dict] = []
        self.by_id: dict[int, dict] = {}
        self.lookups: dict[str, list[dict]] = {}
        self.connection_ok = True
        self.page_size: int | None = None
        self.fail_status: dict[int, list[int]] = {}  # StatusID -> queued HTTP error codes
        self.requests: list[httpx.Request] = []
        self.bodies: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/properties" and request.method == "GET":
            return httpx.Response(200, json={"success": self.connection_ok})

        if path == "/api/properties" and request.method == "POST":
            payload = json.loads(request.content or b"{}")
            self.bodies.append(payload)
            status_id = int(payload.get("StatusID", 1))

            queued = self.fail_status.get(status_id) or []
            if queued:
                return httpx.Response(queued.pop(0), text="upstream unavailable")

            records = self.active if status_id == 1 else self.deleted
            page = int(parse_qs(urlparse(str(request.url)).query).get("page", ["1"])[0])
            if self.page_size:
                start = (page - 1) * self.page_size
                chunk = records[start:start + self.page_size]
                more = start + self.page_size < len(records)
            else:
                chunk, more = records, False
            return httpx.Response(200, json={
                "success": True,
                "total": len(records),
                "data": chunk,
                "nextPage": f"{UPSTREAM_URL}/api/properties?page={page + 1}" if more else None,
            })

        if path.startswith("/api/properties/"):
            upstream_id = int(path.rsplit("/", 1)[1])
            record = self.by_id.get(upstream_id)
            if record is None:
                return httpx.Response(200, json={"success": False, "error": "not found"})
            return httpx.Response(200, json={"success": True, "data": record})

        if path.startswith("/api/lookups/"):
            lookup_type = path.rsplit("/", 1)[1]
            return httpx.Response(200, json={"success": True, "data": self.lookups.get(lookup_type, [])})

        return httpx.Response(404, json={"success": False})

    def factory(self, auth_token: str, base_url: str) -> UpstreamClient:
        return UpstreamClient(
            auth_token=auth_token,
            base_url=base_url,
            rate_limiter=FixedWindowRateLimiter(limit=1000),
            http=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            lookup_pause_seconds=0,
        )


def make_record(upstream_id: int, *, update_date: str = "2024-05-01T10:00:00Z", price=100000.0, **extra) -> dict:
    record = {
        "Id": upstream_id,
        "Category_ID": 1,
        "Price": price,
        "SqrMeters": 85.0,
        "Rooms": 3,
        "UpdateDate": update_date,
        "SendDate": "2024-04-01T09:00:00Z",
        "StatusID": 1,
        "Token": "per-property-token",
        "Images": [
            {"Id": upstream_id * 10 + 1, "OrderNum": 2, "Url": f"https://img.test/{upstream_id}/b.jpg"},
            {"Id": upstream_id * 10 + 2, "OrderNum": 1, "Url": f"https://img.test/{upstream_id}/a.jpg"},
        ],
        "Characteristics": [
            {"Id": 1, "Language_Id": 4, "Title": "Τίτλος", "Value": f"Διαμέρισμα {upstream_id}"},
            {"Id": 2, "Language_Id": 4, "Title": "Αγγελία", "Value": "Φωτεινό διαμέρισμα"},
            {"Id": 3, "Language_Id": 1, "Title": "Τίτλος", "Value": f"Apartment {upstream_id}"},
        ],
        "Partner": {"Id": 7, "Firstname": "Maria", "Lastname": "Pappa", "Email": "maria@agency.test"},
        "DistanceFrom": [{"Place_ID": 3, "Distance": 500, "Measure_ID": 1, "Description": [{"Language_Id": 4, "Value": "Θάλασσα"}]}],
        "Parkings": [{"Type": "pilotis"}],
        "Basements": [],
        "Flags": [{"Name": "exclusive", "Value": True}],
    }
    record.update(extra)
    return record


@pytest_asyncio.fixture
async def engine(tmp_path):
    url = os.getenv("DATABASE_URL_TEST") or f"sqlite+aiosqlite:///{tmp_path / 'listing_sync.db'}"
    eng = create_async_engine(url)

    if eng.dialect.name == "sqlite":
        # WAL lets readers run beside a writer; BEGIN IMMEDIATE serializes writers instead of failing them
        @event.listens_for(eng.sync_engine, "connect")
        def _on_connect(dbapi_connection, _record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(eng.sync_engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gateway(session_factory, clock):
    return PropertyGateway(session_factory, language_id=4, clock=clock)


@pytest.fixture
def sessions(session_factory, clock):
    return SyncSessionStore(session_factory, clock=clock)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(gateway, sessions, upstream, sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SyncOrchestrator(
        gateway=gateway,
        sessions=sessions,
        client_factory=upstream.factory,
        options=OrchestratorOptions(batch_size=10, batch_pause_seconds=0.1, fetch_max_attempts=3),
        sleep=_sleep,
    )


@pytest_asyncio.fixture
async def client(session_factory, upstream):
    """
    HTTP client against the app, wired to the test DB and the fake upstream.
    """
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_client_factory] = lambda: upstream.factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
