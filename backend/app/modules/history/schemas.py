"""Pydantic schemas for customer history API requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.audit import AccessAction, AccessEvent
from app.core.crypto.verification import ChainVerificationResult
from app.modules.history.models import (
    AuditConfiguration,
    ChangeKind,
    FieldChange,
    HistoryPage,
    HistoryStatistics,
    Operation,
    RetentionReport,
    VersionEntry,
)
from app.modules.history.service import ChangeRow

# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class MutationRequest(BaseModel):
    """A mutation of one customer record, as handed over by the record store."""

    previous: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    operation: Operation | None = Field(
        default=None, description="Derived from the snapshots when omitted"
    )
    reason: str | None = Field(default=None, max_length=2000)
    tenant_id: str | None = None
    skip_unchanged: bool = True


class AuditConfigurationUpdate(BaseModel):
    retention_days: int = Field(default=365, ge=1, le=3650)
    max_versions_per_subject: int = Field(default=100, ge=1, le=10000)
    audited_fields: list[str] = Field(default_factory=list)
    notify_on_change: bool = False
    notification_recipients: list[str] = Field(default_factory=list)

    @field_validator("notification_recipients")
    @classmethod
    def _validate_recipients(cls, value: list[str]) -> list[str]:
        recipients = [item.strip() for item in value if item.strip()]
        for recipient in recipients:
            local, sep, domain = recipient.partition("@")
            if not sep or not local or "." not in domain:
                raise ValueError(f"invalid e-mail address: {recipient!r}")
        return recipients

    @field_validator("audited_fields")
    @classmethod
    def _normalize_fields(cls, value: list[str]) -> list[str]:
        return sorted({item.strip() for item in value if item.strip()})


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class VersionEntryResponse(BaseModel):
    """Single version in API responses, revealed for the requesting caller."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    subject_id: str
    version: int
    operation: Operation
    previous_snapshot: dict[str, Any] | None = None
    new_snapshot: dict[str, Any] | None = None
    changed_fields: list[str]
    actor_id: str | None = None
    reason: str | None = None
    occurred_at: datetime
    entry_hash: str

    @classmethod
    def from_entry(cls, entry: VersionEntry) -> VersionEntryResponse:
        return cls(
            id=entry.id,
            tenant_id=entry.tenant_id,
            subject_id=entry.subject_id,
            version=entry.version,
            operation=entry.operation,
            previous_snapshot=entry.previous_snapshot,
            new_snapshot=entry.new_snapshot,
            changed_fields=list(entry.changed_fields),
            actor_id=entry.actor_id,
            reason=entry.reason,
            occurred_at=entry.occurred_at,
            entry_hash=entry.entry_hash,
        )


class MutationResponse(BaseModel):
    recorded: bool
    entry: VersionEntryResponse | None = None


class VersionListResponse(BaseModel):
    """Paginated list of versions, newest first."""

    items: list[VersionEntryResponse]
    total: int
    limit: int
    offset: int

    @classmethod
    def from_page(cls, page: HistoryPage) -> VersionListResponse:
        return cls(
            items=[VersionEntryResponse.from_entry(entry) for entry in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )


class FieldChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    old_value: Any = None
    new_value: Any = None
    change_kind: ChangeKind

    @classmethod
    def from_change(cls, change: FieldChange) -> FieldChangeResponse:
        return cls.model_validate(change)


class ChangeRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    label: str
    old_value: str
    new_value: str
    change_kind: ChangeKind

    @classmethod
    def from_row(cls, row: ChangeRow) -> ChangeRowResponse:
        return cls.model_validate(row)


class CountEntry(BaseModel):
    name: str
    count: int


class StatisticsResponse(BaseModel):
    total: int
    today: int
    last_7_days: int
    last_30_days: int
    top_users: list[CountEntry]
    top_fields: list[CountEntry]

    @classmethod
    def from_statistics(cls, stats: HistoryStatistics) -> StatisticsResponse:
        return cls(
            total=stats.total,
            today=stats.today,
            last_7_days=stats.last_7_days,
            last_30_days=stats.last_30_days,
            top_users=[CountEntry(name=name, count=count) for name, count in stats.top_users],
            top_fields=[CountEntry(name=name, count=count) for name, count in stats.top_fields],
        )


class AuditConfigurationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    retention_days: int
    max_versions_per_subject: int
    audited_fields: list[str]
    notify_on_change: bool
    notification_recipients: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_config(cls, config: AuditConfiguration) -> AuditConfigurationResponse:
        return cls.model_validate(config)


class AccessEventResponse(BaseModel):
    """Access event as shown to administrators."""

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    user_id: str
    data_type: str
    subject_id: str | None = None
    action: AccessAction
    outcome: str | None = None

    @classmethod
    def from_event(cls, event: AccessEvent) -> AccessEventResponse:
        return cls(
            timestamp=event.timestamp,
            user_id=event.user_id,
            data_type=event.data_type,
            subject_id=event.subject_id,
            action=event.action,
            outcome=event.outcome.value if event.outcome else None,
        )


class ChainVerificationResponse(BaseModel):
    """Result of verifying the hash chain of one subject."""

    subject_id: str
    is_valid: bool
    verified_count: int
    first_break_at: int | None = None
    errors: list[str]

    @classmethod
    def from_result(
        cls, subject_id: str, result: ChainVerificationResult
    ) -> ChainVerificationResponse:
        return cls(
            subject_id=subject_id,
            is_valid=result.is_valid,
            verified_count=result.verified_count,
            first_break_at=result.first_break_at,
            errors=result.errors,
        )


class RetentionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    expired_entries: int
    trimmed_entries: int
    purged_access_events: int

    @classmethod
    def from_report(cls, report: RetentionReport) -> RetentionResponse:
        return cls.model_validate(report)


class KeyInfoResponse(BaseModel):
    id: str
    version: int
    algorithm: str
    created_at: datetime
    expires_at: datetime | None = None
    is_active: bool


class KeyHealthResponse(BaseModel):
    status: str
    issues: list[str]
    recommendations: list[str]
