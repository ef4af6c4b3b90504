"""
Pytest fixtures for backend testing.
Provides settings, wired history services, SQLite-backed sessions and an API client.
"""

import base64
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.audit import AuditLog, InMemoryAccessEventStore
from app.core.config import Settings, get_settings
from app.core.encryption import EncryptionService, InMemoryKeyStore
from app.core.masking import ValueCodec
from app.core.protection import ProtectionGateway
from app.db.models import Base
from app.main import create_application
from app.modules.history.container import HistoryServices, build_services

TEST_KEY = bytes(range(32))
TEST_KEY_B64 = base64.b64encode(TEST_KEY).decode("ascii")

VIEWER_ID = "auditor-1"
ADMIN_ID = "admin-1"
OUTSIDER_ID = "operator-7"


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        encryption_master_key=TEST_KEY_B64,
        allowed_viewers=[VIEWER_ID],
        admin_users=[ADMIN_ID],
        metrics_enabled=False,
        demo_fallback_enabled=False,
        history_store_backend="memory",
    )


@pytest.fixture
def codec() -> ValueCodec:
    return ValueCodec(timezone="America/Sao_Paulo")


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(InMemoryKeyStore({1: TEST_KEY}))


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog(InMemoryAccessEventStore())


@pytest.fixture
def gateway(encryption: EncryptionService, codec: ValueCodec, audit_log: AuditLog) -> ProtectionGateway:
    return ProtectionGateway(
        encryption,
        codec,
        audit_log,
        allowed_viewers=[VIEWER_ID],
        sensitive_fields={"cpf": "cpf", "telefone": "phone", "email": "email"},
    )


@pytest.fixture
def services(settings: Settings) -> HistoryServices:
    return build_services(settings)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database with the ORM schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'history.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=sqlite_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def unreachable_session_factory(tmp_path: Path) -> async_sessionmaker[AsyncSession]:
    """Sessions for a SQLite file whose directory does not exist, so every query fails."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'history.db'}")
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_client(
    settings: Settings, services: HistoryServices
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client bound to a freshly wired application."""
    app = create_application(settings)
    app.state.history_services = services

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
