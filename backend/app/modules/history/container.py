"""Construction of the history service graph for one application instance."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.audit import AccessEventStore, AuditLog, InMemoryAccessEventStore, SqlAccessEventStore
from app.core.config import Settings
from app.core.encryption import EncryptionService, InMemoryKeyStore
from app.core.masking import ValueCodec
from app.core.notifications import EmailClient
from app.core.protection import ProtectionGateway
from app.modules.history.configuration import (
    AuditConfigurationStore,
    InMemoryAuditConfigurationStore,
    SqlAuditConfigurationStore,
)
from app.modules.history.demo import demo_entries
from app.modules.history.service import HistoryService
from app.modules.history.sql_store import SqlVersionStore
from app.modules.history.store import FallbackVersionStore, InMemoryVersionStore, VersionStore


@dataclass(slots=True)
class HistoryServices:
    """Long-lived collaborators shared by all requests of one app instance."""

    settings: Settings
    encryption: EncryptionService
    audit_log: AuditLog
    gateway: ProtectionGateway
    store: VersionStore
    history: HistoryService


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HistoryServices:
    """Wire every collaborator explicitly; nothing here is a module-level singleton."""
    codec = ValueCodec(
        timezone=settings.export_timezone,
        include_original=settings.include_plaintext_preview,
    )
    encryption = EncryptionService(
        InMemoryKeyStore.from_settings(settings),
        decrypt_grace_days=settings.key_decrypt_grace_days,
    )

    store: VersionStore
    event_store: AccessEventStore
    config_store: AuditConfigurationStore
    if settings.history_store_backend == "sql":
        if session_factory is None:
            raise RuntimeError("SQL history backend requires an initialized database")
        store = SqlVersionStore(session_factory)
        event_store = SqlAccessEventStore(session_factory)
        config_store = SqlAuditConfigurationStore(session_factory)
    else:
        store = InMemoryVersionStore()
        event_store = InMemoryAccessEventStore()
        config_store = InMemoryAuditConfigurationStore()

    if settings.demo_fallback_enabled:
        store = FallbackVersionStore(
            store, partial(demo_entries, tenant_id=settings.default_tenant_id)
        )

    audit_log = AuditLog(event_store, max_events=settings.access_log_max_events)
    gateway = ProtectionGateway(
        encryption,
        codec,
        audit_log,
        allowed_viewers=settings.allowed_viewers,
        sensitive_fields=settings.sensitive_fields,
    )
    history = HistoryService(
        store,
        gateway,
        audit_log,
        codec,
        config_store,
        settings=settings,
        email_client=EmailClient(settings),
    )
    return HistoryServices(
        settings=settings,
        encryption=encryption,
        audit_log=audit_log,
        gateway=gateway,
        store=store,
        history=history,
    )


def get_services(request: Request) -> HistoryServices:
    """Dependency returning the services built at application startup."""
    services: HistoryServices = request.app.state.history_services
    return services
