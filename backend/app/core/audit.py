"""
Access-event logging for protected customer data.

Every protected read records who viewed, decrypted or exported which field of
which subject. Events go to an injected append-only ``AccessEventStore``;
``AuditLog`` keeps it bounded to the most recent events after each append and
purges by age during retention.

The ``outcome`` attribute distinguishes masked, decrypted and failed reads for
auditors. It is never returned to the caller whose read produced the event.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum as PyEnum

from sqlalchemy import delete, func, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.db.models import AccessEventRecord

logger = get_logger(__name__)

DEFAULT_MAX_EVENTS = 1000


class AccessAction(str, PyEnum):
    VIEW = "view"
    DECRYPT = "decrypt"
    EXPORT = "export"


class AccessOutcome(str, PyEnum):
    """Internal result of a protected read."""

    MASKED = "masked"
    PLAIN = "plain"
    DECRYPTED = "decrypted"
    DECRYPTION_FAILED = "decryption_failed"
    EXPORTED = "exported"


class AccessLogUnavailableError(Exception):
    """The access-event store could not be reached."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


@dataclass(slots=True, frozen=True)
class AccessEvent:
    user_id: str
    data_type: str
    action: AccessAction
    subject_id: str | None = None
    outcome: AccessOutcome | None = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class AccessEventFilter:
    """Optional, AND-combined filters; results are newest first."""

    user_id: str | None = None
    data_type: str | None = None
    action: AccessAction | None = None
    subject_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int | None = None

    def matches(self, event: AccessEvent) -> bool:
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.data_type is not None and event.data_type != self.data_type:
            return False
        if self.action is not None and event.action != self.action:
            return False
        if self.subject_id is not None and event.subject_id != self.subject_id:
            return False
        timestamp = _as_utc(event.timestamp)
        if self.date_from is not None and timestamp < _as_utc(self.date_from):
            return False
        if self.date_to is not None and timestamp > _as_utc(self.date_to):
            return False
        return True


# =============================================================================
# Stores
# =============================================================================


class AccessEventStore(ABC):
    """Append-only store of access events."""

    @abstractmethod
    async def append(self, event: AccessEvent) -> None: ...

    @abstractmethod
    async def trim_to(self, max_events: int) -> int:
        """Drop the oldest events beyond ``max_events``; returns how many."""

    @abstractmethod
    async def query(self, filters: AccessEventFilter) -> list[AccessEvent]: ...

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int: ...

    @abstractmethod
    async def count(self) -> int: ...


class InMemoryAccessEventStore(AccessEventStore):
    def __init__(self) -> None:
        self._events: list[AccessEvent] = []

    async def append(self, event: AccessEvent) -> None:
        self._events.append(event)

    async def trim_to(self, max_events: int) -> int:
        excess = len(self._events) - max_events
        if excess <= 0:
            return 0
        del self._events[:excess]
        return excess

    async def query(self, filters: AccessEventFilter) -> list[AccessEvent]:
        matching = [event for event in reversed(self._events) if filters.matches(event)]
        return matching if filters.limit is None else matching[: filters.limit]

    async def purge_before(self, cutoff: datetime) -> int:
        cutoff = _as_utc(cutoff)
        before = len(self._events)
        self._events = [event for event in self._events if _as_utc(event.timestamp) >= cutoff]
        return before - len(self._events)

    async def count(self) -> int:
        return len(self._events)


class SqlAccessEventStore(AccessEventStore):
    """Access events in the ``access_events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("access_log_store_unavailable", error=type(exc).__name__)
            raise AccessLogUnavailableError("access log store unavailable") from exc

    async def append(self, event: AccessEvent) -> None:
        async with self._session() as session:
            session.add(
                AccessEventRecord(
                    timestamp=event.timestamp,
                    user_id=event.user_id,
                    data_type=event.data_type,
                    subject_id=event.subject_id,
                    action=event.action.value,
                    outcome=event.outcome.value if event.outcome else None,
                )
            )
            await session.commit()

    async def trim_to(self, max_events: int) -> int:
        async with self._session() as session:
            keep_ids = (
                select(AccessEventRecord.id)
                .order_by(AccessEventRecord.id.desc())
                .limit(max_events)
            )
            result = await session.execute(
                delete(AccessEventRecord).where(AccessEventRecord.id.not_in(keep_ids))
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def query(self, filters: AccessEventFilter) -> list[AccessEvent]:
        stmt = select(AccessEventRecord).order_by(AccessEventRecord.id.desc())
        if filters.user_id is not None:
            stmt = stmt.where(AccessEventRecord.user_id == filters.user_id)
        if filters.data_type is not None:
            stmt = stmt.where(AccessEventRecord.data_type == filters.data_type)
        if filters.action is not None:
            stmt = stmt.where(AccessEventRecord.action == filters.action.value)
        if filters.subject_id is not None:
            stmt = stmt.where(AccessEventRecord.subject_id == filters.subject_id)
        if filters.date_from is not None:
            stmt = stmt.where(AccessEventRecord.timestamp >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(AccessEventRecord.timestamp <= filters.date_to)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            AccessEvent(
                user_id=row.user_id,
                data_type=row.data_type,
                action=AccessAction(row.action),
                subject_id=row.subject_id,
                outcome=AccessOutcome(row.outcome) if row.outcome else None,
                timestamp=_as_utc(row.timestamp),
            )
            for row in rows
        ]

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(AccessEventRecord).where(AccessEventRecord.timestamp < cutoff)
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def count(self) -> int:
        async with self._session() as session:
            return int(
                (await session.execute(select(func.count(AccessEventRecord.id)))).scalar_one()
            )


# =============================================================================
# Audit log
# =============================================================================


class AuditLog:
    """Bounded access-event log. Appends and trims are serialized by one lock."""

    def __init__(
        self,
        store: AccessEventStore,
        *,
        max_events: int = DEFAULT_MAX_EVENTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._max_events = max_events
        self._clock = clock
        self._lock = asyncio.Lock()

    async def record(self, event: AccessEvent) -> None:
        async with self._lock:
            await self._store.append(event)
            trimmed = await self._store.trim_to(self._max_events)
        if trimmed:
            logger.debug("access_log_trimmed", removed=trimmed, max_events=self._max_events)

    async def query(self, filters: AccessEventFilter | None = None) -> list[AccessEvent]:
        return await self._store.query(filters or AccessEventFilter())

    async def purge_older_than(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=days)
        async with self._lock:
            removed = await self._store.purge_before(cutoff)
        logger.info("access_log_purged", removed=removed, retention_days=days)
        return removed

    async def count(self) -> int:
        return await self._store.count()
