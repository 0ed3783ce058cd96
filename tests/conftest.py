import os

# Settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./clinicflow_test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("RUN_FANOUT_CONSUMER", "false")
os.environ.setdefault("RUN_PUSH_GATEWAY", "false")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from collections.abc import AsyncGenerator  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from uuid import uuid4  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event, insert  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from clinicflow.config import Settings, get_settings  # noqa: E402
from clinicflow.container import ServiceContainer  # noqa: E402
from clinicflow.main import app  # noqa: E402
from clinicflow.models import metadata, users  # noqa: E402
from clinicflow.schemas.users import DirectoryEntry, UserRole  # noqa: E402
from helpers import StaticDirectory  # noqa: E402

# Optional real PostgreSQL for the store (must be a disposable database)
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """Take the write lock at BEGIN so concurrent writers queue instead of failing."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with an empty schema."""
    if TEST_DATABASE_URL:
        test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    else:
        test_engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'clinicflow.db'}",
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        _serialize_sqlite_writers(test_engine)

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    """Create an isolated in-memory Redis."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: no retry delays, no background workers."""
    return get_settings().model_copy(
        update={
            "post_commit_retry_delay": 0.0,
            "run_fanout_consumer": False,
            "run_push_gateway": False,
            "push_auth_timeout_seconds": 1.0,
        }
    )


@pytest.fixture
def people() -> SimpleNamespace:
    """Directory entries for every role the tests act as."""
    return SimpleNamespace(
        patient=DirectoryEntry(
            id=uuid4(),
            email="alice@example.com",
            first_name="Alice",
            last_name="Smith",
            role=UserRole.PATIENT,
        ),
        other_patient=DirectoryEntry(
            id=uuid4(),
            email="bob@example.com",
            first_name="Bob",
            last_name="Jones",
            role=UserRole.PATIENT,
        ),
        doctor=DirectoryEntry(
            id=uuid4(),
            email="house@example.com",
            first_name="Gregory",
            last_name="House",
            role=UserRole.DOCTOR,
            specialization="Diagnostics",
        ),
        other_doctor=DirectoryEntry(
            id=uuid4(),
            email="wilson@example.com",
            first_name="James",
            last_name="Wilson",
            role=UserRole.DOCTOR,
            specialization="Oncology",
        ),
        admin=DirectoryEntry(
            id=uuid4(),
            email="admin@example.com",
            first_name="Lisa",
            last_name="Cuddy",
            role=UserRole.ADMIN,
        ),
    )


@pytest_asyncio.fixture
async def directory_users(engine: AsyncEngine, people: SimpleNamespace) -> SimpleNamespace:
    """Store the test people in the users table."""
    async with engine.begin() as conn:
        for entry in vars(people).values():
            await conn.execute(
                insert(users).values(
                    id=entry.id,
                    email=entry.email,
                    first_name=entry.first_name,
                    last_name=entry.last_name,
                    role=entry.role.value,
                    specialization=entry.specialization,
                )
            )
    return people


@pytest.fixture
def directory(people: SimpleNamespace) -> StaticDirectory:
    return StaticDirectory(list(vars(people).values()))


@pytest_asyncio.fixture
async def container(
    settings: Settings,
    engine: AsyncEngine,
    redis_client: fakeredis.FakeAsyncRedis,
    directory: StaticDirectory,
) -> AsyncGenerator[ServiceContainer, None]:
    """Service container wired to the test engine, fake Redis and static directory."""
    services = ServiceContainer(settings, engine=engine, redis_client=redis_client)
    services.directory = directory
    yield services
    await services.stop()


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    original = app.state.container
    app.state.container = container

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.state.container = original


@pytest.fixture
def appointment_payload(people: SimpleNamespace) -> dict:
    """Booking request for the default doctor."""
    return {
        "doctor_id": str(people.doctor.id),
        "date": "2025-03-01",
        "time": "09:00",
        "reason": "annual checkup visit",
    }
