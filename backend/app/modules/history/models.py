"""Domain types for the customer version log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any, TypeAlias
from uuid import UUID

FieldValue: TypeAlias = (
    str | int | float | bool | None | list["FieldValue"] | dict[str, "FieldValue"]
)
Snapshot: TypeAlias = dict[str, FieldValue]

# Sentinel changed-field list for create and delete entries.
ALL_FIELDS = "*"

DEFAULT_AUDITED_FIELDS: tuple[str, ...] = (
    "nome",
    "email",
    "telefone",
    "cpf",
    "endereco",
    "limite_credito",
    "status",
)


class Operation(str, PyEnum):
    """Mutation kinds recorded in the version log."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeKind(str, PyEnum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(slots=True, frozen=True)
class VersionEntry:
    """One immutable, hash-chained record in a subject's version log."""

    id: UUID
    tenant_id: str
    subject_id: str
    version: int
    operation: Operation
    previous_snapshot: Snapshot | None
    new_snapshot: Snapshot | None
    changed_fields: tuple[str, ...]
    actor_id: str | None
    reason: str | None
    occurred_at: datetime
    prev_entry_hash: str
    entry_hash: str

    @property
    def all_fields_changed(self) -> bool:
        return self.changed_fields == (ALL_FIELDS,)

    def hash_payload(self) -> dict[str, Any]:
        """Fields covered by ``entry_hash``, as JSON-compatible values."""
        return entry_hash_payload(
            entry_id=self.id,
            tenant_id=self.tenant_id,
            subject_id=self.subject_id,
            version=self.version,
            operation=self.operation,
            previous_snapshot=self.previous_snapshot,
            new_snapshot=self.new_snapshot,
            changed_fields=self.changed_fields,
            actor_id=self.actor_id,
            reason=self.reason,
            occurred_at=self.occurred_at,
        )

    def chain_dict(self) -> dict[str, Any]:
        return {
            **self.hash_payload(),
            "entry_hash": self.entry_hash,
            "prev_entry_hash": self.prev_entry_hash,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "subject_id": self.subject_id,
            "version": self.version,
            "operation": self.operation.value,
            "previous_snapshot": self.previous_snapshot,
            "new_snapshot": self.new_snapshot,
            "changed_fields": list(self.changed_fields),
            "actor_id": self.actor_id,
            "reason": self.reason,
            "occurred_at": self.occurred_at.isoformat(),
            "entry_hash": self.entry_hash,
        }

    def effective_snapshot(self) -> Snapshot:
        """State after this entry; a delete falls back to the state it removed."""
        if self.new_snapshot is not None:
            return self.new_snapshot
        return self.previous_snapshot or {}


def entry_hash_payload(
    *,
    entry_id: UUID,
    tenant_id: str,
    subject_id: str,
    version: int,
    operation: Operation,
    previous_snapshot: Snapshot | None,
    new_snapshot: Snapshot | None,
    changed_fields: tuple[str, ...],
    actor_id: str | None,
    reason: str | None,
    occurred_at: datetime,
) -> dict[str, Any]:
    return {
        "id": str(entry_id),
        "tenant_id": tenant_id,
        "subject_id": subject_id,
        "version": version,
        "operation": operation.value,
        "previous_snapshot": previous_snapshot,
        "new_snapshot": new_snapshot,
        "changed_fields": list(changed_fields),
        "actor_id": actor_id,
        "reason": reason,
        "occurred_at": as_utc(occurred_at).isoformat(timespec="microseconds"),
    }


@dataclass(slots=True)
class VersionFilter:
    """Optional, AND-combined filters for listing a subject's versions."""

    operation: Operation | None = None
    actor_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    changed_fields: frozenset[str] | None = None
    search: str | None = None
    limit: int = 50
    offset: int = 0

    def matches(self, entry: VersionEntry) -> bool:
        if self.operation is not None and entry.operation != self.operation:
            return False
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        occurred_at = as_utc(entry.occurred_at)
        if self.date_from is not None and occurred_at < as_utc(self.date_from):
            return False
        if self.date_to is not None and occurred_at > as_utc(self.date_to):
            return False
        if self.changed_fields:
            if not entry.all_fields_changed and not self.changed_fields.intersection(
                entry.changed_fields
            ):
                return False
        if self.search:
            if self.search.casefold() not in (entry.reason or "").casefold():
                return False
        return True


@dataclass(slots=True, frozen=True)
class FieldChange:
    field: str
    old_value: FieldValue
    new_value: FieldValue
    change_kind: ChangeKind


@dataclass(slots=True)
class HistoryPage:
    items: list[VersionEntry]
    total: int
    limit: int
    offset: int


@dataclass(slots=True)
class AuditConfiguration:
    """Per-tenant history policy, managed by administrators."""

    tenant_id: str
    retention_days: int = 365
    max_versions_per_subject: int = 100
    audited_fields: list[str] = field(default_factory=lambda: list(DEFAULT_AUDITED_FIELDS))
    notify_on_change: bool = False
    notification_recipients: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def project(self, snapshot: Snapshot | None) -> Snapshot | None:
        """Keep only audited fields; an empty audited set tracks everything."""
        if snapshot is None or not self.audited_fields:
            return snapshot
        audited = set(self.audited_fields)
        return {name: value for name, value in snapshot.items() if name in audited}


@dataclass(slots=True)
class HistoryStatistics:
    total: int = 0
    today: int = 0
    last_7_days: int = 0
    last_30_days: int = 0
    top_users: list[tuple[str, int]] = field(default_factory=list)
    top_fields: list[tuple[str, int]] = field(default_factory=list)


@dataclass(slots=True)
class RetentionReport:
    tenant_id: str
    expired_entries: int = 0
    trimmed_entries: int = 0
    purged_access_events: int = 0
