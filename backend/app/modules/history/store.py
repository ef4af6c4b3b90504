"""
Append-only, per-subject versioned log of history entries.

``append`` is the only operation that needs mutual exclusion: the next version
number is read and written under a per-subject lock. Version numbers follow a
per-subject high-water mark that survives retention, so they are never reused.
"""

from __future__ import annotations

import asyncio
import weakref
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from app.core.crypto.hash_chain import GENESIS_HASH, compute_entry_hash
from app.core.logging import get_logger
from app.modules.history.diff import diff
from app.modules.history.errors import (
    InvalidMutationError,
    InvalidVersionError,
    NotFoundError,
    StoreUnavailableError,
)
from app.modules.history.models import (
    ALL_FIELDS,
    Operation,
    Snapshot,
    VersionEntry,
    VersionFilter,
    as_utc,
    entry_hash_payload,
    utcnow,
)

logger = get_logger(__name__)


# =============================================================================
# Shared helpers
# =============================================================================


def resolve_changed_fields(
    operation: Operation,
    previous: Snapshot | None,
    new: Snapshot | None,
    changed_fields: Sequence[str] | None = None,
) -> tuple[str, ...]:
    """Validate the mutation shape and return its changed-field set."""
    if previous is None and new is None:
        raise InvalidMutationError("a mutation needs at least one snapshot")
    result = diff(previous, new)
    if result.operation is not operation:
        raise InvalidMutationError(
            f"{operation.value} is inconsistent with the supplied snapshots "
            f"(expected {result.operation.value})"
        )
    if operation is not Operation.UPDATE:
        return (ALL_FIELDS,)
    if changed_fields is not None:
        return tuple(sorted(set(changed_fields)))
    return result.changed_fields


def build_entry(
    *,
    tenant_id: str,
    subject_id: str,
    version: int,
    operation: Operation,
    previous: Snapshot | None,
    new: Snapshot | None,
    changed_fields: tuple[str, ...],
    actor_id: str | None,
    reason: str | None,
    prev_entry_hash: str,
    occurred_at: datetime | None = None,
    entry_id: UUID | None = None,
) -> VersionEntry:
    """Create a hash-chained entry linked to ``prev_entry_hash``."""
    entry_id = entry_id or uuid4()
    occurred_at = as_utc(occurred_at or utcnow())
    payload = entry_hash_payload(
        entry_id=entry_id,
        tenant_id=tenant_id,
        subject_id=subject_id,
        version=version,
        operation=operation,
        previous_snapshot=previous,
        new_snapshot=new,
        changed_fields=changed_fields,
        actor_id=actor_id,
        reason=reason,
        occurred_at=occurred_at,
    )
    return VersionEntry(
        id=entry_id,
        tenant_id=tenant_id,
        subject_id=subject_id,
        version=version,
        operation=operation,
        previous_snapshot=previous,
        new_snapshot=new,
        changed_fields=changed_fields,
        actor_id=actor_id,
        reason=reason,
        occurred_at=occurred_at,
        prev_entry_hash=prev_entry_hash,
        entry_hash=compute_entry_hash(payload, prev_entry_hash),
    )


def apply_filter(entries: Sequence[VersionEntry], filters: VersionFilter) -> list[VersionEntry]:
    """Newest-first page of ``entries`` matching ``filters``."""
    matching = [entry for entry in entries if filters.matches(entry)]
    matching.sort(key=lambda entry: entry.version, reverse=True)
    return matching[filters.offset : filters.offset + filters.limit]


def select_version(entries: Sequence[VersionEntry], high_water: int, version: int) -> VersionEntry:
    if not entries:
        raise NotFoundError("subject has no history")
    if version <= 0 or version > high_water:
        raise InvalidVersionError(f"version must be between 1 and {high_water}, got {version}")
    for entry in entries:
        if entry.version == version:
            return entry
    raise NotFoundError(f"version {version} was removed by retention")


class SubjectLocks:
    """Per-subject append locks. A lock is dropped once no task holds or awaits it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, subject_id: str) -> asyncio.Lock:
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# Store interface
# =============================================================================


class VersionStore(ABC):
    """Append-only version log. Implementations serialize ``append`` per subject."""

    @abstractmethod
    async def append(
        self,
        subject_id: str,
        operation: Operation,
        previous: Snapshot | None,
        new: Snapshot | None,
        actor_id: str | None,
        reason: str | None,
        *,
        tenant_id: str,
        changed_fields: Sequence[str] | None = None,
    ) -> VersionEntry: ...

    @abstractmethod
    async def list_versions(
        self, subject_id: str, filters: VersionFilter | None = None
    ) -> list[VersionEntry]: ...

    @abstractmethod
    async def count_versions(self, subject_id: str, filters: VersionFilter | None = None) -> int: ...

    @abstractmethod
    async def get_version(self, subject_id: str, version: int) -> VersionEntry: ...

    @abstractmethod
    async def latest_version(self, subject_id: str) -> int:
        """High-water mark of the subject (0 when nothing was ever appended)."""

    @abstractmethod
    async def list_chain(self, subject_id: str) -> list[VersionEntry]:
        """All kept entries of the subject in ascending version order."""

    @abstractmethod
    async def list_all(
        self, *, tenant_id: str | None = None, since: datetime | None = None
    ) -> list[VersionEntry]: ...

    @abstractmethod
    async def purge_older_than(
        self, days: int, *, tenant_id: str | None = None, now: datetime | None = None
    ) -> int: ...

    @abstractmethod
    async def trim_to_max_versions(self, max_versions: int, *, tenant_id: str | None = None) -> int:
        """Keep only the ``max_versions`` most recent entries of each subject."""


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryVersionStore(VersionStore):
    """Process-local store used for development, tests and the demo dataset."""

    def __init__(self) -> None:
        self._entries: dict[str, list[VersionEntry]] = defaultdict(list)
        self._high_water: dict[str, int] = defaultdict(int)
        self._last_hash: dict[str, str] = {}
        self._locks = SubjectLocks()

    async def append(
        self,
        subject_id: str,
        operation: Operation,
        previous: Snapshot | None,
        new: Snapshot | None,
        actor_id: str | None,
        reason: str | None,
        *,
        tenant_id: str,
        changed_fields: Sequence[str] | None = None,
    ) -> VersionEntry:
        resolved = resolve_changed_fields(operation, previous, new, changed_fields)
        async with self._locks(subject_id):
            entry = build_entry(
                tenant_id=tenant_id,
                subject_id=subject_id,
                version=self._high_water[subject_id] + 1,
                operation=operation,
                previous=previous,
                new=new,
                changed_fields=resolved,
                actor_id=actor_id,
                reason=reason,
                prev_entry_hash=self._last_hash.get(subject_id, GENESIS_HASH),
            )
            self._entries[subject_id].append(entry)
            self._high_water[subject_id] = entry.version
            self._last_hash[subject_id] = entry.entry_hash
        return entry

    async def list_versions(
        self, subject_id: str, filters: VersionFilter | None = None
    ) -> list[VersionEntry]:
        return apply_filter(self._entries.get(subject_id, []), filters or VersionFilter())

    async def count_versions(self, subject_id: str, filters: VersionFilter | None = None) -> int:
        filters = filters or VersionFilter()
        return sum(1 for entry in self._entries.get(subject_id, []) if filters.matches(entry))

    async def get_version(self, subject_id: str, version: int) -> VersionEntry:
        return select_version(
            self._entries.get(subject_id, []), self._high_water.get(subject_id, 0), version
        )

    async def latest_version(self, subject_id: str) -> int:
        return self._high_water.get(subject_id, 0)

    async def list_chain(self, subject_id: str) -> list[VersionEntry]:
        return list(self._entries.get(subject_id, []))

    async def list_all(
        self, *, tenant_id: str | None = None, since: datetime | None = None
    ) -> list[VersionEntry]:
        return [
            entry
            for entries in self._entries.values()
            for entry in entries
            if (tenant_id is None or entry.tenant_id == tenant_id)
            and (since is None or entry.occurred_at >= as_utc(since))
        ]

    async def purge_older_than(
        self, days: int, *, tenant_id: str | None = None, now: datetime | None = None
    ) -> int:
        cutoff = as_utc(now or utcnow()) - timedelta(days=days)
        removed = 0
        for subject_id, entries in self._entries.items():
            kept = [
                entry
                for entry in entries
                if entry.occurred_at >= cutoff
                or (tenant_id is not None and entry.tenant_id != tenant_id)
            ]
            removed += len(entries) - len(kept)
            self._entries[subject_id] = kept
        return removed

    async def trim_to_max_versions(self, max_versions: int, *, tenant_id: str | None = None) -> int:
        removed = 0
        for subject_id, entries in self._entries.items():
            scoped = [e for e in entries if tenant_id is None or e.tenant_id == tenant_id]
            excess = len(scoped) - max_versions
            if excess <= 0:
                continue
            doomed = {entry.id for entry in scoped[:excess]}
            self._entries[subject_id] = [entry for entry in entries if entry.id not in doomed]
            removed += len(doomed)
        return removed


# =============================================================================
# Demo fallback
# =============================================================================


class FallbackVersionStore(VersionStore):
    """Serve demo data on reads when the primary store is unreachable.

    Writes always go to the primary; a ``StoreUnavailableError`` there is
    propagated so no audit entry is ever silently dropped.
    """

    def __init__(
        self,
        primary: VersionStore,
        demo_entries: Callable[[str], list[VersionEntry]],
    ) -> None:
        self._primary = primary
        self._demo_entries = demo_entries

    @property
    def primary(self) -> VersionStore:
        return self._primary

    def _degraded(self, operation: str, subject_id: str | None = None) -> None:
        logger.warning("history_store_degraded_to_demo", operation=operation, subject_id=subject_id)

    async def append(
        self,
        subject_id: str,
        operation: Operation,
        previous: Snapshot | None,
        new: Snapshot | None,
        actor_id: str | None,
        reason: str | None,
        *,
        tenant_id: str,
        changed_fields: Sequence[str] | None = None,
    ) -> VersionEntry:
        return await self._primary.append(
            subject_id,
            operation,
            previous,
            new,
            actor_id,
            reason,
            tenant_id=tenant_id,
            changed_fields=changed_fields,
        )

    async def list_versions(
        self, subject_id: str, filters: VersionFilter | None = None
    ) -> list[VersionEntry]:
        try:
            return await self._primary.list_versions(subject_id, filters)
        except StoreUnavailableError:
            self._degraded("list_versions", subject_id)
            return apply_filter(self._demo_entries(subject_id), filters or VersionFilter())

    async def count_versions(self, subject_id: str, filters: VersionFilter | None = None) -> int:
        try:
            return await self._primary.count_versions(subject_id, filters)
        except StoreUnavailableError:
            self._degraded("count_versions", subject_id)
            filters = filters or VersionFilter()
            return sum(1 for entry in self._demo_entries(subject_id) if filters.matches(entry))

    async def get_version(self, subject_id: str, version: int) -> VersionEntry:
        try:
            return await self._primary.get_version(subject_id, version)
        except StoreUnavailableError:
            self._degraded("get_version", subject_id)
            entries = self._demo_entries(subject_id)
            return select_version(entries, max((e.version for e in entries), default=0), version)

    async def latest_version(self, subject_id: str) -> int:
        try:
            return await self._primary.latest_version(subject_id)
        except StoreUnavailableError:
            self._degraded("latest_version", subject_id)
            return max((entry.version for entry in self._demo_entries(subject_id)), default=0)

    async def list_chain(self, subject_id: str) -> list[VersionEntry]:
        try:
            return await self._primary.list_chain(subject_id)
        except StoreUnavailableError:
            self._degraded("list_chain", subject_id)
            return sorted(self._demo_entries(subject_id), key=lambda entry: entry.version)

    async def list_all(
        self, *, tenant_id: str | None = None, since: datetime | None = None
    ) -> list[VersionEntry]:
        try:
            return await self._primary.list_all(tenant_id=tenant_id, since=since)
        except StoreUnavailableError:
            self._degraded("list_all")
            return []

    async def purge_older_than(
        self, days: int, *, tenant_id: str | None = None, now: datetime | None = None
    ) -> int:
        return await self._primary.purge_older_than(days, tenant_id=tenant_id, now=now)

    async def trim_to_max_versions(self, max_versions: int, *, tenant_id: str | None = None) -> int:
        return await self._primary.trim_to_max_versions(max_versions, tenant_id=tenant_id)
