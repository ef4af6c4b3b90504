"""Per-tenant audit configuration storage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger
from app.db.models import AuditConfigurationRecord
from app.modules.history.errors import StoreUnavailableError
from app.modules.history.models import AuditConfiguration, as_utc, utcnow

logger = get_logger(__name__)


def default_configuration(tenant_id: str, settings: Settings) -> AuditConfiguration:
    """Policy applied to a tenant until an administrator saves one."""
    return AuditConfiguration(
        tenant_id=tenant_id,
        retention_days=settings.default_retention_days,
        max_versions_per_subject=settings.default_max_versions,
    )


class AuditConfigurationStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str) -> AuditConfiguration | None: ...

    @abstractmethod
    async def save(self, config: AuditConfiguration) -> AuditConfiguration: ...


class InMemoryAuditConfigurationStore(AuditConfigurationStore):
    def __init__(self) -> None:
        self._configs: dict[str, AuditConfiguration] = {}

    async def get(self, tenant_id: str) -> AuditConfiguration | None:
        config = self._configs.get(tenant_id)
        return replace(config) if config is not None else None

    async def save(self, config: AuditConfiguration) -> AuditConfiguration:
        existing = self._configs.get(config.tenant_id)
        now = utcnow()
        stored = replace(
            config,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._configs[config.tenant_id] = stored
        return replace(stored)


class SqlAuditConfigurationStore(AuditConfigurationStore):
    """Configurations in the ``audit_configurations`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str) -> AuditConfiguration | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(AuditConfigurationRecord, tenant_id)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("audit_configuration_store_unavailable", error=type(exc).__name__)
            raise StoreUnavailableError("configuration store unavailable") from exc
        if row is None:
            return None
        return AuditConfiguration(
            tenant_id=row.tenant_id,
            retention_days=row.retention_days,
            max_versions_per_subject=row.max_versions_per_subject,
            audited_fields=list(row.audited_fields),
            notify_on_change=row.notify_on_change,
            notification_recipients=list(row.notification_recipients),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    async def save(self, config: AuditConfiguration) -> AuditConfiguration:
        now = utcnow()
        try:
            async with self._session_factory() as session, session.begin():
                row = await session.get(AuditConfigurationRecord, config.tenant_id)
                if row is None:
                    row = AuditConfigurationRecord(tenant_id=config.tenant_id, created_at=now)
                    session.add(row)
                row.retention_days = config.retention_days
                row.max_versions_per_subject = config.max_versions_per_subject
                row.audited_fields = list(config.audited_fields)
                row.notify_on_change = config.notify_on_change
                row.notification_recipients = list(config.notification_recipients)
                row.updated_at = now
                created_at = as_utc(row.created_at)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("audit_configuration_store_unavailable", error=type(exc).__name__)
            raise StoreUnavailableError("configuration store unavailable") from exc
        return replace(config, created_at=created_at, updated_at=now)
