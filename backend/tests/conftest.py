import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")


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
from sqlalchemy.pool import StaticPool

from tests.xero_fakes import FakeXero
from xerosync.infra.db import Base, get_db_session
from xerosync.infra.metrics import Metrics
from xerosync.main import app
from xerosync.services import build_app_services
from xerosync.settings import settings

ADMIN_AUTH = ("admin", "admin-secret")
FINANCE_AUTH = ("accountant", "accountant-secret")
VIEWER_AUTH = ("viewer", "viewer-secret")


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    tracked = (
        "admin_basic_username",
        "admin_basic_password",
        "accountant_basic_username",
        "accountant_basic_password",
        "viewer_basic_username",
        "viewer_basic_password",
        "testing",
        "app_env",
        "metrics_enabled",
        "metrics_token",
        "xero_client_id",
        "xero_client_secret",
        "xero_redirect_uri",
        "xero_scheduler_enabled",
        "xero_min_sync_spacing_seconds",
        "xero_request_spacing_seconds",
        "xero_sync_batch_limit",
        "xero_sync_max_items",
        "xero_synced_retention_days",
        "xero_sync_log_retention_days",
    )
    original = {name: getattr(settings, name) for name in tracked}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.xero_min_sync_spacing_seconds = 0.0
    settings.xero_request_spacing_seconds = 0.0
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def fake_xero() -> FakeXero:
    return FakeXero()


@pytest.fixture()
def admin_credentials():
    settings.admin_basic_username, settings.admin_basic_password = ADMIN_AUTH
    settings.accountant_basic_username, settings.accountant_basic_password = FINANCE_AUTH
    settings.viewer_basic_username, settings.viewer_basic_password = VIEWER_AUTH
    yield


@pytest.fixture()
def app_services(async_session_maker, fake_xero):
    return build_app_services(
        settings,
        session_factory=async_session_maker,
        metrics=Metrics(enabled=True),
        api_transport=fake_xero.transport,
        token_transport=fake_xero.token_transport,
        sleep=_no_sleep,
    )


@pytest.fixture()
def client(async_session_maker, app_services):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_state = {
        name: getattr(app.state, name, None)
        for name in ("services", "metrics", "db_session_factory", "app_settings")
    }
    app.state.services = app_services
    app.state.metrics = app_services.metrics
    app.state.db_session_factory = async_session_maker
    app.state.app_settings = settings
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    for name, value in original_state.items():
        setattr(app.state, name, value)
