"""
SQLAlchemy ORM models for the customer history service.

JSON columns map to JSONB on PostgreSQL and to plain JSON elsewhere, so the
same models back the SQLite test database.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.modules.history.models import Operation


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
        list[Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


# =============================================================================
# Version Log
# =============================================================================


class HistorySubjectHead(Base):
    """
    Per-subject version counter and chain tip.

    The row is locked while a new version is allocated; ``last_version`` is a
    high-water mark that retention never lowers.
    """

    __tablename__ = "history_subject_heads"

    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class HistoryEntry(Base):
    """
    Immutable, hash-chained version of a customer record.

    Sensitive snapshot members are stored as encrypted markers, never as
    plain values.
    """

    __tablename__ = "history_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[Operation] = mapped_column(
        Enum(
            Operation,
            name="history_operation",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    previous_snapshot: Mapped[dict[str, Any] | None] = mapped_column()
    new_snapshot: Mapped[dict[str, Any] | None] = mapped_column()
    changed_fields: Mapped[list[Any]] = mapped_column(
        nullable=False,
        comment='Sorted field names, or ["*"] for create/delete',
    )
    actor_id: Mapped[str | None] = mapped_column(
        String(255),
        comment="Verified caller id (NULL for system processes)",
    )
    reason: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("subject_id", "version", name="uq_history_entries_subject_version"),
        Index("ix_history_entries_tenant_occurred_at", "tenant_id", "occurred_at"),
        Index("ix_history_entries_actor_id", "actor_id"),
    )


# =============================================================================
# Access Events
# =============================================================================


class AccessEventRecord(Base):
    """Who viewed, decrypted or exported which protected data."""

    __tablename__ = "access_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data_type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Field name or data type that was accessed",
    )
    subject_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="view, decrypt or export",
    )
    outcome: Mapped[str | None] = mapped_column(
        String(50),
        comment="Internal outcome (masked, decrypted, decryption_failed, ...)",
    )

    __table_args__ = (
        Index("ix_access_events_timestamp", "timestamp"),
        Index("ix_access_events_user_id", "user_id"),
        Index("ix_access_events_subject_id", "subject_id"),
    )


# =============================================================================
# Audit Configuration
# =============================================================================


class AuditConfigurationRecord(Base):
    """Per-tenant history policy."""

    __tablename__ = "audit_configurations"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=365)
    max_versions_per_subject: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    audited_fields: Mapped[list[Any]] = mapped_column(nullable=False)
    notify_on_change: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_recipients: Mapped[list[Any]] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
