"""Tests for the customer history service."""

from __future__ import annotations

import csv
import io
import json
import re
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.audit import AccessAction, AccessEventFilter, AccessOutcome
from app.core.config import Settings
from app.core.encryption import ProtectedValue
from app.modules.history.container import HistoryServices, build_services
from app.modules.history.errors import (
    HistoryExportError,
    InvalidMutationError,
    InvalidVersionError,
    NotFoundError,
    OperationFailedError,
    StoreUnavailableError,
)
from app.modules.history.export import CSV_HEADER
from app.modules.history.models import (
    ALL_FIELDS,
    AuditConfiguration,
    ChangeKind,
    Operation,
    VersionFilter,
    utcnow,
)
from app.modules.history.service import HistoryService

VIEWER = "auditor-1"
OUTSIDER = "operator-7"

CUSTOMER = {
    "nome": "Ana",
    "cpf": "12345678901",
    "telefone": "11999998888",
    "limite_credito": 3000,
    "status": "ativo",
}


async def _record_c1(history: HistoryService) -> None:
    await history.record_mutation("c1", previous=None, new={"nome": "Ana"}, actor_id="u1")
    await history.record_mutation(
        "c1", previous={"nome": "Ana"}, new={"nome": "Ana Silva"}, actor_id="u2"
    )


# =============================================================================
# Recording
# =============================================================================


class TestRecordMutation:
    @pytest.mark.asyncio
    async def test_create_then_update(self, services: HistoryServices) -> None:
        await _record_c1(services.history)

        page = await services.history.list_history("c1", caller_id=OUTSIDER)
        assert page.total == 2
        latest, first = page.items
        assert (first.version, first.operation, first.changed_fields) == (
            1,
            Operation.CREATE,
            (ALL_FIELDS,),
        )
        assert (latest.version, latest.operation, latest.changed_fields) == (
            2,
            Operation.UPDATE,
            ("nome",),
        )

    @pytest.mark.asyncio
    async def test_sensitive_fields_are_encrypted_at_rest(self, services: HistoryServices) -> None:
        entry = await services.history.record_mutation(
            "c2", previous=None, new=CUSTOMER, actor_id="u1"
        )

        assert entry is not None
        stored = (await services.store.get_version("c2", 1)).new_snapshot
        assert stored is not None
        assert ProtectedValue.is_marker(stored["cpf"])
        assert ProtectedValue.is_marker(stored["telefone"])
        assert stored["nome"] == "Ana"
        assert "12345678901" not in json.dumps(stored)

    @pytest.mark.asyncio
    async def test_unchanged_update_is_skipped(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        result = await services.history.record_mutation(
            "c1", previous=CUSTOMER, new=dict(CUSTOMER), actor_id="u1"
        )

        assert result is None
        assert await services.store.latest_version("c1") == 1

    @pytest.mark.asyncio
    async def test_unchanged_update_recorded_on_request(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        entry = await services.history.record_mutation(
            "c1", previous=CUSTOMER, new=dict(CUSTOMER), actor_id="u1", skip_unchanged=False
        )

        assert entry is not None
        assert entry.version == 2
        assert entry.changed_fields == ()

    @pytest.mark.asyncio
    async def test_unaudited_fields_are_ignored(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        result = await services.history.record_mutation(
            "c1",
            previous=CUSTOMER,
            new={**CUSTOMER, "profissao": "Engenheira"},
            actor_id="u1",
        )

        assert result is None
        stored = await services.store.get_version("c1", 1)
        assert "profissao" not in (stored.new_snapshot or {})

    @pytest.mark.asyncio
    async def test_sensitive_change_detected_through_encryption(
        self, services: HistoryServices
    ) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        entry = await services.history.record_mutation(
            "c1",
            previous=CUSTOMER,
            new={**CUSTOMER, "telefone": "11988887777"},
            actor_id="u1",
        )

        assert entry is not None
        assert entry.changed_fields == ("telefone",)

    @pytest.mark.asyncio
    async def test_delete(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
        entry = await services.history.record_mutation(
            "c1", previous=CUSTOMER, new=None, actor_id=None, reason="Solicitação LGPD"
        )
        assert entry is not None
        assert entry.operation is Operation.DELETE
        assert entry.new_snapshot is None

    @pytest.mark.asyncio
    async def test_inconsistent_operation_rejected(self, services: HistoryServices) -> None:
        with pytest.raises(InvalidMutationError):
            await services.history.record_mutation(
                "c1",
                previous={"nome": "Ana"},
                new={"nome": "Bia"},
                actor_id="u1",
                operation=Operation.CREATE,
            )

    @pytest.mark.asyncio
    async def test_both_snapshots_missing_rejected(self, services: HistoryServices) -> None:
        with pytest.raises(InvalidMutationError):
            await services.history.record_mutation("c1", previous=None, new=None, actor_id="u1")


# =============================================================================
# Reading
# =============================================================================


class TestReveal:
    @pytest.mark.asyncio
    async def test_viewer_sees_plaintext(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        entry = await services.history.get_version("c1", 1, caller_id=VIEWER)

        assert entry.new_snapshot == CUSTOMER

    @pytest.mark.asyncio
    async def test_outsider_sees_masked_values(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        entry = await services.history.get_version("c1", 1, caller_id=OUTSIDER)

        assert entry.new_snapshot is not None
        assert entry.new_snapshot["cpf"] == "***.***.**01"
        assert entry.new_snapshot["telefone"] == "(11) *****-88"
        assert entry.new_snapshot["nome"] == "Ana"

    @pytest.mark.asyncio
    async def test_reads_are_logged(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        await services.history.get_version("c1", 1, caller_id=VIEWER)
        await services.history.get_version("c1", 1, caller_id=OUTSIDER)

        decrypted = await services.audit_log.query(AccessEventFilter(user_id=VIEWER))
        masked = await services.audit_log.query(AccessEventFilter(user_id=OUTSIDER))
        assert {event.data_type for event in decrypted} == {"cpf", "telefone"}
        assert all(event.outcome is AccessOutcome.DECRYPTED for event in decrypted)
        assert all(event.outcome is AccessOutcome.MASKED for event in masked)

    @pytest.mark.asyncio
    async def test_filters_apply(self, services: HistoryServices) -> None:
        await _record_c1(services.history)

        page = await services.history.list_history(
            "c1", VersionFilter(operation=Operation.CREATE), caller_id=OUTSIDER
        )

        assert page.total == 1
        assert [entry.version for entry in page.items] == [1]

    @pytest.mark.asyncio
    async def test_unknown_subject(self, services: HistoryServices) -> None:
        page = await services.history.list_history("nobody", caller_id=OUTSIDER)
        assert page.total == 0
        with pytest.raises(NotFoundError):
            await services.history.get_version("nobody", 1, caller_id=OUTSIDER)


class TestCompare:
    @pytest.mark.asyncio
    async def test_c1_scenario(self, services: HistoryServices) -> None:
        await _record_c1(services.history)

        changes = await services.history.compare_versions("c1", 1, 2, caller_id=OUTSIDER)

        assert len(changes) == 1
        assert changes[0].field == "nome"
        assert changes[0].old_value == "Ana"
        assert changes[0].new_value == "Ana Silva"
        assert changes[0].change_kind is ChangeKind.CHANGED

    @pytest.mark.asyncio
    async def test_non_adjacent_versions(self, services: HistoryServices) -> None:
        history = services.history
        await history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
        second = {**CUSTOMER, "telefone": "11988887777"}
        await history.record_mutation("c1", previous=CUSTOMER, new=second, actor_id="u1")
        third = {**second, "limite_credito": 5000}
        await history.record_mutation("c1", previous=second, new=third, actor_id="u1")

        changes = await history.compare_versions("c1", 1, 3, caller_id=VIEWER)

        assert [(c.field, c.old_value, c.new_value) for c in changes] == [
            ("limite_credito", 3000, 5000),
            ("telefone", "11999998888", "11988887777"),
        ]

    @pytest.mark.asyncio
    async def test_compare_masks_for_outsiders(self, services: HistoryServices) -> None:
        history = services.history
        await history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
        await history.record_mutation(
            "c1",
            previous=CUSTOMER,
            new={**CUSTOMER, "telefone": "11988887777"},
            actor_id="u1",
        )

        changes = await history.compare_versions("c1", 1, 2, caller_id=OUTSIDER)

        assert [(c.field, c.old_value, c.new_value) for c in changes] == [
            ("telefone", "(11) *****-88", "(11) *****-77"),
        ]

    @pytest.mark.asyncio
    async def test_invalid_versions(self, services: HistoryServices) -> None:
        await _record_c1(services.history)
        with pytest.raises(InvalidVersionError):
            await services.history.compare_versions("c1", 1, 9, caller_id=OUTSIDER)
        with pytest.raises(NotFoundError):
            await services.history.compare_versions("nobody", 1, 2, caller_id=OUTSIDER)

    @pytest.mark.asyncio
    async def test_store_failure_is_generic(self, services: HistoryServices) -> None:
        services.history._store = MagicMock(  # type: ignore[attr-defined]
            get_version=AsyncMock(side_effect=StoreUnavailableError("down"))
        )
        with pytest.raises(OperationFailedError, match="operation failed"):
            await services.history.compare_versions("c1", 1, 2, caller_id=OUTSIDER)


@pytest.mark.asyncio
async def test_describe_changes(services: HistoryServices) -> None:
    history = services.history
    await history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
    await history.record_mutation(
        "c1",
        previous=CUSTOMER,
        new={**CUSTOMER, "limite_credito": 5000, "telefone": "11988887777"},
        actor_id="u1",
    )

    rows = await history.describe_changes("c1", 2, caller_id=OUTSIDER)

    assert [(row.label, row.old_value, row.new_value) for row in rows] == [
        ("Limite de Crédito", "R$ 3.000,00", "R$ 5.000,00"),
        ("Telefone", "(11) *****-88", "(11) *****-77"),
    ]


# =============================================================================
# Aggregates and exports
# =============================================================================


class TestExport:
    @pytest.mark.asyncio
    async def test_csv_second_line(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new={"nome": "Ana"}, actor_id=None)

        output = await services.history.export("c1", "csv", caller_id=OUTSIDER)

        lines = output.split("\n")
        assert lines[0] == ",".join(f'"{column}"' for column in CSV_HEADER)
        assert re.match(r'^"\d{2}/\d{2}/\d{4}, \d{2}:\d{2}:\d{2}"', lines[1])
        assert '"Criação"' in lines[1]
        assert '"Sistema"' in lines[1]
        assert lines[1].endswith(',""')

    @pytest.mark.asyncio
    async def test_csv_rows(self, services: HistoryServices) -> None:
        history = services.history
        await history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
        await history.record_mutation(
            "c1",
            previous=CUSTOMER,
            new={**CUSTOMER, "nome": "Ana Silva", "status": "inativo"},
            actor_id="u2",
            reason='Pedido "urgente"',
        )

        output = await history.export("c1", "csv", caller_id=OUTSIDER)

        rows = list(csv.reader(io.StringIO(output)))
        assert rows[0] == list(CSV_HEADER)
        assert rows[1][1:] == ["2", "Atualização", "u2", "nome, status", 'Pedido "urgente"']
        assert rows[2][1:] == ["1", "Criação", "u1", "*", ""]

    @pytest.mark.asyncio
    async def test_json_is_revealed_per_caller(self, services: HistoryServices) -> None:
        await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")

        masked = json.loads(await services.history.export("c1", "json", caller_id=OUTSIDER))
        clear = json.loads(await services.history.export("c1", "json", caller_id=VIEWER))

        assert masked[0]["new_snapshot"]["cpf"] == "***.***.**01"
        assert clear[0]["new_snapshot"]["cpf"] == "12345678901"
        assert masked[0]["version"] == 1

    @pytest.mark.asyncio
    async def test_export_is_logged(self, services: HistoryServices) -> None:
        await _record_c1(services.history)
        await services.history.export("c1", "csv", caller_id=OUTSIDER)

        events = await services.audit_log.query(AccessEventFilter(action=AccessAction.EXPORT))
        assert len(events) == 1
        assert events[0].data_type == "history:csv"
        assert events[0].outcome is AccessOutcome.EXPORTED

    @pytest.mark.asyncio
    async def test_unsupported_format(self, services: HistoryServices) -> None:
        with pytest.raises(HistoryExportError):
            await services.history.export("c1", "xml", caller_id=OUTSIDER)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_store_failure(self, services: HistoryServices) -> None:
        services.history._store = MagicMock(  # type: ignore[attr-defined]
            list_versions=AsyncMock(side_effect=StoreUnavailableError("down"))
        )
        with pytest.raises(HistoryExportError):
            await services.history.export("c1", "json", caller_id=OUTSIDER)


@pytest.mark.asyncio
async def test_statistics(services: HistoryServices) -> None:
    history = services.history
    await _record_c1(history)
    await history.record_mutation("c2", previous=None, new={"nome": "Bia"}, actor_id="u1")
    await history.record_mutation(
        "c2", previous={"nome": "Bia"}, new={"nome": "Beatriz"}, actor_id=None
    )

    stats = await history.statistics()

    assert stats.total == 4
    assert stats.today == 4
    assert stats.last_7_days == 4
    assert stats.last_30_days == 4
    assert stats.top_users == [("u1", 2), ("u2", 1)]
    assert stats.top_fields == [("nome", 2)]

    later = await history.statistics(now=utcnow() + timedelta(days=10))
    assert later.today == 0
    assert later.last_7_days == 0
    assert later.last_30_days == 4


@pytest.mark.asyncio
async def test_retention(services: HistoryServices) -> None:
    history = services.history
    await history.save_configuration(
        AuditConfiguration(tenant_id="default", retention_days=30, max_versions_per_subject=2)
    )
    await history.record_mutation("c1", previous=None, new={"nome": "A"}, actor_id="u1")
    for old, new in (("A", "B"), ("B", "C")):
        await history.record_mutation(
            "c1", previous={"nome": old}, new={"nome": new}, actor_id="u1"
        )

    report = await history.run_retention()
    assert report.expired_entries == 0
    assert report.trimmed_entries == 1
    assert [e.version for e in await services.store.list_chain("c1")] == [2, 3]
    assert (await history.verify_chain("c1")).is_valid

    report = await history.run_retention(now=utcnow() + timedelta(days=31))
    assert report.expired_entries == 2
    entry = await history.record_mutation(
        "c1", previous={"nome": "C"}, new={"nome": "D"}, actor_id="u1"
    )
    assert entry is not None and entry.version == 4


@pytest.mark.asyncio
async def test_configuration_defaults_and_save(services: HistoryServices) -> None:
    config = await services.history.get_configuration()
    assert config.tenant_id == "default"
    assert config.retention_days == 365
    assert "cpf" in config.audited_fields

    await services.history.save_configuration(
        AuditConfiguration(tenant_id="default", audited_fields=["nome"])
    )
    await services.history.record_mutation(
        "c1", previous=None, new={"nome": "Ana", "cpf": "12345678901"}, actor_id="u1"
    )
    stored = await services.store.get_version("c1", 1)
    assert stored.new_snapshot == {"nome": "Ana"}


@pytest.mark.asyncio
async def test_verify_chain_detects_tampering(services: HistoryServices) -> None:
    from dataclasses import replace

    await _record_c1(services.history)
    assert (await services.history.verify_chain("c1")).is_valid

    store = services.store
    entries = store._entries["c1"]  # type: ignore[attr-defined]
    entries[0] = replace(entries[0], actor_id="intruder")

    result = await services.history.verify_chain("c1")
    assert not result.is_valid
    assert result.first_break_at == 1


@pytest.mark.asyncio
async def test_notifications_sent_with_field_names_only(settings: Settings) -> None:
    services = build_services(settings)
    email_client = MagicMock()
    email_client.send_template = AsyncMock(return_value=True)
    services.history._email_client = email_client  # type: ignore[attr-defined]
    await services.history.save_configuration(
        AuditConfiguration(
            tenant_id="default",
            notify_on_change=True,
            notification_recipients=["dpo@example.com"],
        )
    )

    await services.history.record_mutation("c1", previous=None, new=CUSTOMER, actor_id="u1")
    await services.history.record_mutation(
        "c1",
        previous=CUSTOMER,
        new={**CUSTOMER, "cpf": "98765432100"},
        actor_id="u1",
    )

    assert email_client.send_template.await_count == 2
    recipients, template = email_client.send_template.await_args.args
    assert recipients == ["dpo@example.com"]
    assert "cpf" in template.text_body
    assert "98765432100" not in template.text_body
    assert "12345678901" not in template.text_body


@pytest.mark.asyncio
async def test_demo_fallback_serves_reads(settings: Settings) -> None:
    services = build_services(settings.model_copy(update={"demo_fallback_enabled": True}))
    services.store._primary = MagicMock(  # type: ignore[attr-defined]
        list_versions=AsyncMock(side_effect=StoreUnavailableError("down")),
        count_versions=AsyncMock(side_effect=StoreUnavailableError("down")),
    )

    page = await services.history.list_history("c9", caller_id=OUTSIDER)

    assert page.total == 3
    assert page.items[0].new_snapshot is not None
    assert page.items[0].new_snapshot["cpf"] == "***.***.**01"


@pytest.mark.asyncio
async def test_demo_fallback_serves_reads_with_database_down(
    settings: Settings, unreachable_session_factory: async_sessionmaker[AsyncSession]
) -> None:
    services = build_services(
        settings.model_copy(
            update={"history_store_backend": "sql", "demo_fallback_enabled": True}
        ),
        unreachable_session_factory,
    )

    page = await services.history.list_history("c9", caller_id=OUTSIDER)
    assert page.total == 3
    latest = page.items[0]
    assert (latest.version, latest.actor_id) == (3, "demo-user")
    assert latest.new_snapshot is not None
    assert latest.new_snapshot["cpf"] == "***.***.**01"

    entry = await services.history.get_version("c9", 2, caller_id=VIEWER)
    assert entry.new_snapshot is not None
    assert entry.new_snapshot["telefone"] == "11999999999"

    rows = await services.history.describe_changes("c9", 2, caller_id=OUTSIDER)
    assert [(row.field, row.old_value, row.new_value) for row in rows] == [
        ("telefone", "(11) *****-88", "(11) *****-99")
    ]


@pytest.mark.asyncio
async def test_database_down_without_fallback_raises(
    settings: Settings, unreachable_session_factory: async_sessionmaker[AsyncSession]
) -> None:
    services = build_services(
        settings.model_copy(update={"history_store_backend": "sql"}),
        unreachable_session_factory,
    )

    with pytest.raises(StoreUnavailableError):
        await services.history.list_history("c9", caller_id=OUTSIDER)


@pytest.mark.asyncio
async def test_numeric_sensitive_values_are_protected(services: HistoryServices) -> None:
    await services.history.save_configuration(
        AuditConfiguration(tenant_id="default", audited_fields=[])
    )
    record = {"nome": "Ana", "telefone": 11999998888, "renda_mensal": 8500.0}

    await services.history.record_mutation("c1", previous=None, new=record, actor_id="u1")

    stored = await services.store.get_version("c1", 1)
    assert stored.new_snapshot is not None
    assert ProtectedValue.is_marker(stored.new_snapshot["telefone"])
    assert ProtectedValue.is_marker(stored.new_snapshot["renda_mensal"])

    outsider = await services.history.get_version("c1", 1, caller_id=OUTSIDER)
    assert outsider.new_snapshot == {
        "nome": "Ana",
        "telefone": "(11) *****-88",
        "renda_mensal": "85**.0",
    }
    viewer = await services.history.get_version("c1", 1, caller_id=VIEWER)
    assert viewer.new_snapshot == record
