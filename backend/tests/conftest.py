import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("NOTIFICATION_MODE", "log")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from booking_engine.domain.checkout.service import CheckoutOrchestrator
from booking_engine.domain.outbox.notifier import NoopNotifier
from booking_engine.infra.db import Base, get_db_session
from booking_engine.infra.metrics import metrics
from booking_engine.main import app
from booking_engine.services import AppServices
from booking_engine.settings import settings
from tests.factories import FakeGateway


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    # Separate connections per session so concurrent holds really contend.
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original_hold_window = settings.hold_window_minutes
    original_outbox_max_attempts = settings.outbox_max_attempts
    original_outbox_backoff = settings.outbox_base_backoff_seconds
    original_gateway_backoff = settings.gateway_backoff_seconds
    original_gateway_attempts = settings.gateway_max_attempts
    original_metrics = settings.metrics_enabled
    original_notification_mode = settings.notification_mode
    yield
    settings.hold_window_minutes = original_hold_window
    settings.outbox_max_attempts = original_outbox_max_attempts
    settings.outbox_base_backoff_seconds = original_outbox_backoff
    settings.gateway_backoff_seconds = original_gateway_backoff
    settings.gateway_max_attempts = original_gateway_attempts
    settings.metrics_enabled = original_metrics
    settings.notification_mode = original_notification_mode


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


def _test_services(gateway: FakeGateway) -> AppServices:
    return AppServices(
        gateway=gateway,
        notifier=NoopNotifier(),
        checkout=CheckoutOrchestrator(gateway, max_attempts=3, backoff_seconds=0),
        metrics=metrics,
    )


def _install_overrides(async_session_maker, gateway):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_services = getattr(app.state, "services", None)
    app.state.db_session_factory = async_session_maker
    app.state.services = _test_services(gateway)
    return original_factory, original_services


@pytest.fixture()
def client(async_session_maker, gateway):
    ensure_event_loop()
    original_factory, original_services = _install_overrides(async_session_maker, gateway)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services


@pytest.fixture()
def client_no_raise(async_session_maker, gateway):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    original_factory, original_services = _install_overrides(async_session_maker, gateway)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services
