"""Version log persisted with async SQLAlchemy (PostgreSQL in production)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Select, delete, func, select, text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.crypto.hash_chain import GENESIS_HASH
from app.core.logging import get_logger
from app.db.models import HistoryEntry, HistorySubjectHead
from app.modules.history.errors import InvalidVersionError, NotFoundError, StoreUnavailableError
from app.modules.history.models import (
    Operation,
    Snapshot,
    VersionEntry,
    VersionFilter,
    as_utc,
    utcnow,
)
from app.modules.history.store import (
    SubjectLocks,
    VersionStore,
    build_entry,
    resolve_changed_fields,
)

logger = get_logger(__name__)


def _to_entry(row: HistoryEntry) -> VersionEntry:
    return VersionEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        subject_id=row.subject_id,
        version=row.version,
        operation=Operation(row.operation),
        previous_snapshot=row.previous_snapshot,
        new_snapshot=row.new_snapshot,
        changed_fields=tuple(row.changed_fields),
        actor_id=row.actor_id,
        reason=row.reason,
        occurred_at=as_utc(row.occurred_at),
        prev_entry_hash=row.prev_entry_hash,
        entry_hash=row.entry_hash,
    )


def _to_row(entry: VersionEntry) -> HistoryEntry:
    return HistoryEntry(
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
        prev_entry_hash=entry.prev_entry_hash,
        entry_hash=entry.entry_hash,
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlVersionStore(VersionStore):
    """
    Version log in the ``history_entries`` table.

    Version allocation locks the subject's ``history_subject_heads`` row
    (plus an advisory lock on PostgreSQL, which also covers a subject's first
    insert) and is additionally serialized per subject within the process.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks = SubjectLocks()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("history_store_unavailable", error=type(exc).__name__)
            raise StoreUnavailableError("history store unavailable") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

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
        async with self._locks(subject_id), self._session() as session, session.begin():
            if session.bind is not None and session.bind.dialect.name == "postgresql":
                await session.execute(
                    text("SELECT pg_advisory_xact_lock(hashtext(:sid))"),
                    {"sid": subject_id},
                )
            head = (
                await session.execute(
                    select(HistorySubjectHead)
                    .where(HistorySubjectHead.subject_id == subject_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if head is None:
                head = HistorySubjectHead(
                    subject_id=subject_id,
                    tenant_id=tenant_id,
                    last_version=0,
                    last_entry_hash=GENESIS_HASH,
                )
                session.add(head)

            entry = build_entry(
                tenant_id=tenant_id,
                subject_id=subject_id,
                version=head.last_version + 1,
                operation=operation,
                previous=previous,
                new=new,
                changed_fields=resolved,
                actor_id=actor_id,
                reason=reason,
                prev_entry_hash=head.last_entry_hash,
            )
            session.add(_to_row(entry))
            head.last_version = entry.version
            head.last_entry_hash = entry.entry_hash

        logger.debug(
            "history_entry_appended",
            subject_id=subject_id,
            version=entry.version,
            operation=operation.value,
        )
        return entry

    async def purge_older_than(
        self, days: int, *, tenant_id: str | None = None, now: datetime | None = None
    ) -> int:
        cutoff = as_utc(now or utcnow()) - timedelta(days=days)
        stmt = delete(HistoryEntry).where(HistoryEntry.occurred_at < cutoff)
        if tenant_id is not None:
            stmt = stmt.where(HistoryEntry.tenant_id == tenant_id)
        async with self._session() as session, session.begin():
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    async def trim_to_max_versions(self, max_versions: int, *, tenant_id: str | None = None) -> int:
        """Delete each subject's entries beyond its ``max_versions`` newest."""
        subjects_stmt = select(HistoryEntry.subject_id).distinct()
        if tenant_id is not None:
            subjects_stmt = subjects_stmt.where(HistoryEntry.tenant_id == tenant_id)

        removed = 0
        async with self._session() as session, session.begin():
            subject_ids = list((await session.execute(subjects_stmt)).scalars().all())
            for subject_id in subject_ids:
                old_ids_stmt = (
                    select(HistoryEntry.id)
                    .where(HistoryEntry.subject_id == subject_id)
                    .order_by(HistoryEntry.version.desc())
                    .offset(max_versions)
                )
                if tenant_id is not None:
                    old_ids_stmt = old_ids_stmt.where(HistoryEntry.tenant_id == tenant_id)
                old_ids = list((await session.execute(old_ids_stmt)).scalars().all())
                if old_ids:
                    await session.execute(delete(HistoryEntry).where(HistoryEntry.id.in_(old_ids)))
                    removed += len(old_ids)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _filtered(subject_id: str, filters: VersionFilter) -> Select[Any]:
        stmt = select(HistoryEntry).where(HistoryEntry.subject_id == subject_id)
        if filters.operation is not None:
            stmt = stmt.where(HistoryEntry.operation == filters.operation)
        if filters.actor_id is not None:
            stmt = stmt.where(HistoryEntry.actor_id == filters.actor_id)
        if filters.date_from is not None:
            stmt = stmt.where(HistoryEntry.occurred_at >= as_utc(filters.date_from))
        if filters.date_to is not None:
            stmt = stmt.where(HistoryEntry.occurred_at <= as_utc(filters.date_to))
        if filters.search:
            stmt = stmt.where(
                HistoryEntry.reason.ilike(f"%{_escape_like(filters.search)}%", escape="\\")
            )
        return stmt.order_by(HistoryEntry.version.desc())

    async def list_versions(
        self, subject_id: str, filters: VersionFilter | None = None
    ) -> list[VersionEntry]:
        filters = filters or VersionFilter()
        stmt = self._filtered(subject_id, filters)
        # Changed-field intersection is evaluated in Python, the JSON layout
        # differs between dialects.
        if not filters.changed_fields:
            stmt = stmt.limit(filters.limit).offset(filters.offset)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        entries = [_to_entry(row) for row in rows]
        if filters.changed_fields:
            entries = [entry for entry in entries if filters.matches(entry)]
            entries = entries[filters.offset : filters.offset + filters.limit]
        return entries

    async def count_versions(self, subject_id: str, filters: VersionFilter | None = None) -> int:
        filters = filters or VersionFilter()
        stmt = self._filtered(subject_id, filters)
        async with self._session() as session:
            if filters.changed_fields:
                rows = (await session.execute(stmt)).scalars().all()
                return sum(1 for row in rows if filters.matches(_to_entry(row)))
            return int(
                (
                    await session.execute(select(func.count()).select_from(stmt.subquery()))
                ).scalar_one()
            )

    async def get_version(self, subject_id: str, version: int) -> VersionEntry:
        async with self._session() as session:
            kept = (
                await session.execute(
                    select(func.count(HistoryEntry.id)).where(HistoryEntry.subject_id == subject_id)
                )
            ).scalar_one()
            if not kept:
                raise NotFoundError("subject has no history")
            high_water = (
                await session.execute(
                    select(HistorySubjectHead.last_version).where(
                        HistorySubjectHead.subject_id == subject_id
                    )
                )
            ).scalar_one_or_none() or 0
            if version <= 0 or version > high_water:
                raise InvalidVersionError(
                    f"version must be between 1 and {high_water}, got {version}"
                )
            row = (
                await session.execute(
                    select(HistoryEntry).where(
                        HistoryEntry.subject_id == subject_id,
                        HistoryEntry.version == version,
                    )
                )
            ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"version {version} was removed by retention")
        return _to_entry(row)

    async def latest_version(self, subject_id: str) -> int:
        async with self._session() as session:
            high_water = (
                await session.execute(
                    select(HistorySubjectHead.last_version).where(
                        HistorySubjectHead.subject_id == subject_id
                    )
                )
            ).scalar_one_or_none()
        return int(high_water or 0)

    async def list_chain(self, subject_id: str) -> list[VersionEntry]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(HistoryEntry)
                    .where(HistoryEntry.subject_id == subject_id)
                    .order_by(HistoryEntry.version.asc())
                )
            ).scalars().all()
        return [_to_entry(row) for row in rows]

    async def list_all(
        self, *, tenant_id: str | None = None, since: datetime | None = None
    ) -> list[VersionEntry]:
        stmt = select(HistoryEntry)
        if tenant_id is not None:
            stmt = stmt.where(HistoryEntry.tenant_id == tenant_id)
        if since is not None:
            stmt = stmt.where(HistoryEntry.occurred_at >= as_utc(since))
        async with self._session() as session:
            rows = (await session.execute(stmt.order_by(HistoryEntry.occurred_at))).scalars().all()
        return [_to_entry(row) for row in rows]
