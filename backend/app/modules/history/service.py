"""
Customer history service.

Records mutations into the version log and serves filtered, compared,
aggregated and exported views of it. Every value leaving this service has
been through the protection gateway for the requesting caller.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from app.core.audit import (
    AccessAction,
    AccessEvent,
    AccessLogUnavailableError,
    AccessOutcome,
    AuditLog,
)
from app.core.config import Settings
from app.core.crypto.verification import ChainVerificationResult, verify_hash_chain
from app.core.encryption import EncryptionError
from app.core.logging import get_logger
from app.core.masking import ValueCodec, field_label
from app.core.notifications import EmailClient, build_history_change_email
from app.core.protection import ProtectionGateway
from app.modules.history.configuration import AuditConfigurationStore, default_configuration
from app.modules.history.diff import compare_snapshots, diff
from app.modules.history.errors import (
    HistoryError,
    HistoryExportError,
    InvalidVersionError,
    NotFoundError,
    OperationFailedError,
)
from app.modules.history.export import ExportFormat, export_csv, export_json
from app.modules.history.models import (
    ALL_FIELDS,
    AuditConfiguration,
    ChangeKind,
    FieldChange,
    HistoryPage,
    HistoryStatistics,
    Operation,
    RetentionReport,
    Snapshot,
    VersionEntry,
    VersionFilter,
    as_utc,
    utcnow,
)
from app.modules.history.store import VersionStore

logger = get_logger(__name__)

_TOP_N = 10


@dataclass(slots=True, frozen=True)
class ChangeRow:
    """Display-ready description of one field change."""

    field: str
    label: str
    old_value: str
    new_value: str
    change_kind: ChangeKind


class HistoryService:
    """Query and recording facade over the version log."""

    def __init__(
        self,
        store: VersionStore,
        gateway: ProtectionGateway,
        audit_log: AuditLog,
        codec: ValueCodec,
        config_store: AuditConfigurationStore,
        *,
        settings: Settings,
        email_client: EmailClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._audit_log = audit_log
        self._codec = codec
        self._config_store = config_store
        self._settings = settings
        self._email_client = email_client
        self._clock = clock

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _tenant(self, tenant_id: str | None) -> str:
        return tenant_id or self._settings.default_tenant_id

    async def get_configuration(self, tenant_id: str | None = None) -> AuditConfiguration:
        tenant = self._tenant(tenant_id)
        stored = await self._config_store.get(tenant)
        return stored if stored is not None else default_configuration(tenant, self._settings)

    async def save_configuration(self, config: AuditConfiguration) -> AuditConfiguration:
        saved = await self._config_store.save(config)
        logger.info(
            "audit_configuration_saved",
            tenant_id=saved.tenant_id,
            retention_days=saved.retention_days,
            max_versions=saved.max_versions_per_subject,
            audited_fields=len(saved.audited_fields),
        )
        return saved

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_mutation(
        self,
        subject_id: str,
        *,
        previous: Snapshot | None,
        new: Snapshot | None,
        actor_id: str | None,
        reason: str | None = None,
        operation: Operation | None = None,
        tenant_id: str | None = None,
        skip_unchanged: bool = True,
    ) -> VersionEntry | None:
        """Protect, diff and append one mutation.

        Snapshots are first reduced to the tenant's audited fields. An update
        that changes none of them is not recorded when ``skip_unchanged`` is
        set, and ``None`` is returned.
        """
        tenant = self._tenant(tenant_id)
        config = await self.get_configuration(tenant)
        projected_previous = config.project(previous)
        projected_new = config.project(new)
        operation = operation or diff(previous, new).operation

        changed_fields: tuple[str, ...] | None = None
        if (
            operation is Operation.UPDATE
            and projected_previous is not None
            and projected_new is not None
        ):
            changed_fields = diff(projected_previous, projected_new).changed_fields
            if not changed_fields and skip_unchanged:
                logger.debug("history_mutation_skipped_unchanged", subject_id=subject_id)
                return None

        entry = await self._store.append(
            subject_id,
            operation,
            self._gateway.protect(projected_previous),
            self._gateway.protect(projected_new),
            actor_id,
            reason,
            tenant_id=tenant,
            changed_fields=changed_fields,
        )
        logger.info(
            "history_entry_recorded",
            subject_id=subject_id,
            tenant_id=tenant,
            version=entry.version,
            operation=entry.operation.value,
            changed_fields=list(entry.changed_fields),
        )

        if config.notify_on_change and config.notification_recipients:
            await self._notify(config, entry)
        return entry

    async def _notify(self, config: AuditConfiguration, entry: VersionEntry) -> None:
        if self._email_client is None:
            return
        template = build_history_change_email(
            tenant_id=entry.tenant_id,
            subject_id=entry.subject_id,
            version=entry.version,
            operation=entry.operation.value,
            changed_fields=entry.changed_fields,
            actor_id=entry.actor_id,
        )
        await self._email_client.send_template(config.notification_recipients, template)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _reveal_entry(self, entry: VersionEntry, caller_id: str, permitted: bool) -> VersionEntry:
        return replace(
            entry,
            previous_snapshot=await self._gateway.reveal(
                entry.previous_snapshot,
                caller_id=caller_id,
                has_permission=permitted,
                subject_id=entry.subject_id,
            ),
            new_snapshot=await self._gateway.reveal(
                entry.new_snapshot,
                caller_id=caller_id,
                has_permission=permitted,
                subject_id=entry.subject_id,
            ),
        )

    async def list_history(
        self,
        subject_id: str,
        filters: VersionFilter | None = None,
        *,
        caller_id: str,
    ) -> HistoryPage:
        filters = filters or VersionFilter()
        entries = await self._store.list_versions(subject_id, filters)
        total = await self._store.count_versions(subject_id, filters)
        permitted = self._gateway.has_view_permission(caller_id)
        items = [await self._reveal_entry(entry, caller_id, permitted) for entry in entries]
        return HistoryPage(items=items, total=total, limit=filters.limit, offset=filters.offset)

    async def get_version(self, subject_id: str, version: int, *, caller_id: str) -> VersionEntry:
        entry = await self._store.get_version(subject_id, version)
        return await self._reveal_entry(
            entry, caller_id, self._gateway.has_view_permission(caller_id)
        )

    async def _reveal_changes(
        self, changes: list[FieldChange], subject_id: str, caller_id: str
    ) -> list[FieldChange]:
        permitted = self._gateway.has_view_permission(caller_id)
        old = await self._gateway.reveal(
            {change.field: change.old_value for change in changes},
            caller_id=caller_id,
            has_permission=permitted,
            subject_id=subject_id,
        ) or {}
        new = await self._gateway.reveal(
            {change.field: change.new_value for change in changes},
            caller_id=caller_id,
            has_permission=permitted,
            subject_id=subject_id,
        ) or {}
        return [
            replace(change, old_value=old.get(change.field), new_value=new.get(change.field))
            for change in changes
        ]

    async def compare_versions(
        self,
        subject_id: str,
        version_a: int,
        version_b: int,
        *,
        caller_id: str,
    ) -> list[FieldChange]:
        """Field changes from version ``a`` to version ``b`` (any two versions)."""
        try:
            entry_a = await self._store.get_version(subject_id, version_a)
            entry_b = await self._store.get_version(subject_id, version_b)
            changes = compare_snapshots(entry_a.effective_snapshot(), entry_b.effective_snapshot())
            return await self._reveal_changes(changes, subject_id, caller_id)
        except (NotFoundError, InvalidVersionError):
            raise
        except (HistoryError, EncryptionError, AccessLogUnavailableError) as exc:
            logger.error(
                "history_compare_failed",
                subject_id=subject_id,
                version_a=version_a,
                version_b=version_b,
                error_kind=type(exc).__name__,
            )
            raise OperationFailedError() from exc

    async def describe_changes(
        self, subject_id: str, version: int, *, caller_id: str
    ) -> list[ChangeRow]:
        """Labelled, display-formatted changes introduced by one version."""
        entry = await self._store.get_version(subject_id, version)
        changes = compare_snapshots(entry.previous_snapshot, entry.new_snapshot)
        revealed = await self._reveal_changes(changes, subject_id, caller_id)
        return [
            ChangeRow(
                field=change.field,
                label=field_label(change.field),
                old_value=self._display(change.field, change.old_value),
                new_value=self._display(change.field, change.new_value),
                change_kind=change.change_kind,
            )
            for change in revealed
        ]

    def _display(self, field: str, value: Any) -> str:
        if self._gateway.is_sensitive(field) and isinstance(value, str):
            return value
        return self._codec.format_field(field, value)

    # ------------------------------------------------------------------
    # Aggregates and exports
    # ------------------------------------------------------------------

    async def statistics(
        self, tenant_id: str | None = None, *, now: datetime | None = None
    ) -> HistoryStatistics:
        """Entry counts plus the most active users and most changed fields (30 days)."""
        now = as_utc(now or self._clock())
        entries = await self._store.list_all(tenant_id=self._tenant(tenant_id))
        local_now = now.astimezone(self._codec.timezone)
        start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)

        stats = HistoryStatistics(total=len(entries))
        users: Counter[str] = Counter()
        fields: Counter[str] = Counter()
        for entry in entries:
            occurred_at = as_utc(entry.occurred_at)
            if occurred_at >= start_of_day:
                stats.today += 1
            if occurred_at >= week_ago:
                stats.last_7_days += 1
            if occurred_at >= month_ago:
                stats.last_30_days += 1
                if entry.actor_id:
                    users[entry.actor_id] += 1
                fields.update(name for name in entry.changed_fields if name != ALL_FIELDS)

        stats.top_users = users.most_common(_TOP_N)
        stats.top_fields = fields.most_common(_TOP_N)
        return stats

    async def export(
        self,
        subject_id: str,
        export_format: ExportFormat,
        *,
        caller_id: str,
        filters: VersionFilter | None = None,
    ) -> str:
        """Render the subject's history as JSON or CSV for one caller."""
        filters = filters or VersionFilter(limit=self._settings.export_max_entries)
        try:
            entries = await self._store.list_versions(subject_id, filters)
            permitted = self._gateway.has_view_permission(caller_id)
            revealed = [await self._reveal_entry(entry, caller_id, permitted) for entry in entries]
            if export_format == "json":
                output = export_json(revealed)
            elif export_format == "csv":
                output = export_csv(revealed, self._codec)
            else:
                raise ValueError(f"unsupported export format {export_format!r}")
            await self._audit_log.record(
                AccessEvent(
                    user_id=caller_id,
                    data_type=f"history:{export_format}",
                    action=AccessAction.EXPORT,
                    subject_id=subject_id,
                    outcome=AccessOutcome.EXPORTED,
                )
            )
        except (HistoryError, EncryptionError, AccessLogUnavailableError, ValueError) as exc:
            logger.error(
                "history_export_failed",
                subject_id=subject_id,
                export_format=export_format,
                error_kind=type(exc).__name__,
            )
            raise HistoryExportError() from exc

        logger.info(
            "history_exported",
            subject_id=subject_id,
            export_format=export_format,
            entries=len(revealed),
        )
        return output

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_retention(
        self, tenant_id: str | None = None, *, now: datetime | None = None
    ) -> RetentionReport:
        """Apply the tenant's retention policy to entries and access events."""
        config = await self.get_configuration(tenant_id)
        report = RetentionReport(tenant_id=config.tenant_id)
        report.expired_entries = await self._store.purge_older_than(
            config.retention_days, tenant_id=config.tenant_id, now=now
        )
        report.trimmed_entries = await self._store.trim_to_max_versions(
            config.max_versions_per_subject, tenant_id=config.tenant_id
        )
        report.purged_access_events = await self._audit_log.purge_older_than(
            self._settings.access_log_retention_days
        )
        logger.info(
            "history_retention_completed",
            tenant_id=report.tenant_id,
            expired_entries=report.expired_entries,
            trimmed_entries=report.trimmed_entries,
            purged_access_events=report.purged_access_events,
        )
        return report

    async def verify_chain(self, subject_id: str) -> ChainVerificationResult:
        entries = await self._store.list_chain(subject_id)
        result = verify_hash_chain([entry.chain_dict() for entry in entries])
        if not result.is_valid:
            logger.warning(
                "history_chain_broken",
                subject_id=subject_id,
                first_break_at=result.first_break_at,
            )
        return result
