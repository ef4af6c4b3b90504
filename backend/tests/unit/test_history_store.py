"""Tests for the in-memory version store and the demo fallback."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from functools import partial

import pytest

from app.core.crypto.hash_chain import GENESIS_HASH
from app.core.crypto.verification import verify_hash_chain
from app.modules.history.demo import DEMO_ACTOR_ID, demo_entries
from app.modules.history.errors import (
    InvalidMutationError,
    InvalidVersionError,
    NotFoundError,
    StoreUnavailableError,
)
from app.modules.history.models import ALL_FIELDS, Operation, VersionFilter
from app.modules.history.store import (
    FallbackVersionStore,
    InMemoryVersionStore,
    VersionStore,
    resolve_changed_fields,
)

TENANT = "default"


async def _seed_c1(store: VersionStore) -> None:
    await store.append("c1", Operation.CREATE, None, {"nome": "Ana"}, "u1", None, tenant_id=TENANT)
    await store.append(
        "c1",
        Operation.UPDATE,
        {"nome": "Ana"},
        {"nome": "Ana Silva"},
        "u2",
        "Correção de nome",
        tenant_id=TENANT,
    )


class TestResolveChangedFields:
    def test_create_is_all_fields(self) -> None:
        assert resolve_changed_fields(Operation.CREATE, None, {"nome": "Ana"}) == (ALL_FIELDS,)

    def test_update_uses_diff(self) -> None:
        result = resolve_changed_fields(Operation.UPDATE, {"a": 1, "b": 1}, {"a": 2, "b": 1})
        assert result == ("a",)

    def test_explicit_fields_are_sorted(self) -> None:
        result = resolve_changed_fields(Operation.UPDATE, {"a": 1}, {"a": 2}, ["z", "a", "z"])
        assert result == ("a", "z")

    def test_rejects_missing_snapshots(self) -> None:
        with pytest.raises(InvalidMutationError):
            resolve_changed_fields(Operation.UPDATE, None, None)

    @pytest.mark.parametrize(
        "operation,previous,new",
        [
            (Operation.CREATE, {"nome": "Ana"}, {"nome": "Bia"}),
            (Operation.UPDATE, None, {"nome": "Ana"}),
            (Operation.DELETE, {"nome": "Ana"}, {"nome": "Ana"}),
        ],
    )
    def test_rejects_inconsistent_operation(
        self, operation: Operation, previous: dict[str, str] | None, new: dict[str, str] | None
    ) -> None:
        with pytest.raises(InvalidMutationError):
            resolve_changed_fields(operation, previous, new)


class TestInMemoryVersionStore:
    @pytest.mark.asyncio
    async def test_versions_start_at_one_and_chain(self) -> None:
        store = InMemoryVersionStore()
        await _seed_c1(store)

        chain = await store.list_chain("c1")
        assert [entry.version for entry in chain] == [1, 2]
        assert chain[0].prev_entry_hash == GENESIS_HASH
        assert chain[1].prev_entry_hash == chain[0].entry_hash
        assert chain[0].changed_fields == (ALL_FIELDS,)
        assert chain[1].changed_fields == ("nome",)
        assert verify_hash_chain([entry.chain_dict() for entry in chain]).is_valid

    @pytest.mark.asyncio
    async def test_subjects_are_independent(self) -> None:
        store = InMemoryVersionStore()
        await _seed_c1(store)
        other = await store.append(
            "c2", Operation.CREATE, None, {"nome": "Bia"}, "u1", None, tenant_id=TENANT
        )
        assert other.version == 1
        assert other.prev_entry_hash == GENESIS_HASH

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_versions(self) -> None:
        store = InMemoryVersionStore()
        await store.append("c1", Operation.CREATE, None, {"n": 0}, None, None, tenant_id=TENANT)

        await asyncio.gather(
            *(
                store.append(
                    "c1", Operation.UPDATE, {"n": i}, {"n": i + 1}, None, None, tenant_id=TENANT
                )
                for i in range(20)
            )
        )

        chain = await store.list_chain("c1")
        assert [entry.version for entry in chain] == list(range(1, 22))
        assert verify_hash_chain([entry.chain_dict() for entry in chain]).is_valid

    @pytest.mark.asyncio
    async def test_idle_subject_locks_are_released(self) -> None:
        store = InMemoryVersionStore()

        for subject_id in ("c1", "c2", "c3"):
            await store.append(
                subject_id, Operation.CREATE, None, {"nome": "Ana"}, None, None, tenant_id=TENANT
            )

        assert len(store._locks) == 0  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_list_versions_newest_first_with_filters(self) -> None:
        store = InMemoryVersionStore()
        await _seed_c1(store)

        entries = await store.list_versions("c1")
        assert [entry.version for entry in entries] == [2, 1]

        by_actor = await store.list_versions("c1", VersionFilter(actor_id="u1"))
        assert [entry.version for entry in by_actor] == [1]

        by_search = await store.list_versions("c1", VersionFilter(search="correção"))
        assert [entry.version for entry in by_search] == [2]

        by_field = await store.list_versions("c1", VersionFilter(changed_fields=frozenset({"nome"})))
        assert [entry.version for entry in by_field] == [2, 1]

        paged = await store.list_versions("c1", VersionFilter(limit=1, offset=1))
        assert [entry.version for entry in paged] == [1]

        assert await store.count_versions("c1", VersionFilter(operation=Operation.UPDATE)) == 1

    @pytest.mark.asyncio
    async def test_get_version_errors(self) -> None:
        store = InMemoryVersionStore()
        with pytest.raises(NotFoundError):
            await store.get_version("nobody", 1)

        await _seed_c1(store)
        assert (await store.get_version("c1", 2)).new_snapshot == {"nome": "Ana Silva"}
        with pytest.raises(InvalidVersionError):
            await store.get_version("c1", 0)
        with pytest.raises(InvalidVersionError):
            await store.get_version("c1", 3)

    @pytest.mark.asyncio
    async def test_versions_never_reused_after_trim(self) -> None:
        store = InMemoryVersionStore()
        await _seed_c1(store)

        assert await store.trim_to_max_versions(1) == 1
        with pytest.raises(NotFoundError):
            await store.get_version("c1", 1)

        entry = await store.append(
            "c1",
            Operation.UPDATE,
            {"nome": "Ana Silva"},
            {"nome": "Ana S."},
            None,
            None,
            tenant_id=TENANT,
        )
        assert entry.version == 3
        assert await store.latest_version("c1") == 3
        chain = await store.list_chain("c1")
        assert verify_hash_chain([item.chain_dict() for item in chain]).is_valid

    @pytest.mark.asyncio
    async def test_purge_older_than(self) -> None:
        store = InMemoryVersionStore()
        await _seed_c1(store)
        later = datetime.now(UTC) + timedelta(days=400)

        assert await store.purge_older_than(365, tenant_id="other", now=later) == 0
        assert await store.purge_older_than(365, tenant_id=TENANT, now=later) == 2
        assert await store.list_chain("c1") == []
        assert await store.latest_version("c1") == 2


class _UnavailableStore(InMemoryVersionStore):
    async def list_versions(self, subject_id, filters=None):  # type: ignore[no-untyped-def]
        raise StoreUnavailableError("down")

    async def count_versions(self, subject_id, filters=None):  # type: ignore[no-untyped-def]
        raise StoreUnavailableError("down")

    async def get_version(self, subject_id, version):  # type: ignore[no-untyped-def]
        raise StoreUnavailableError("down")

    async def append(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise StoreUnavailableError("down")


class TestFallbackVersionStore:
    @pytest.mark.asyncio
    async def test_reads_fall_back_to_demo_data(self) -> None:
        store = FallbackVersionStore(_UnavailableStore(), partial(demo_entries, tenant_id=TENANT))

        entries = await store.list_versions("c9")
        assert [entry.version for entry in entries] == [3, 2, 1]
        assert all(entry.actor_id == DEMO_ACTOR_ID for entry in entries)
        assert await store.count_versions("c9") == 3
        assert (await store.get_version("c9", 2)).changed_fields == ("telefone",)

    @pytest.mark.asyncio
    async def test_writes_propagate_failure(self) -> None:
        store = FallbackVersionStore(_UnavailableStore(), demo_entries)
        with pytest.raises(StoreUnavailableError):
            await store.append(
                "c9", Operation.CREATE, None, {"nome": "X"}, None, None, tenant_id=TENANT
            )

    @pytest.mark.asyncio
    async def test_healthy_primary_is_used(self) -> None:
        primary = InMemoryVersionStore()
        await _seed_c1(primary)
        store = FallbackVersionStore(primary, demo_entries)
        assert [entry.version for entry in await store.list_versions("c1")] == [2, 1]


def test_demo_entries_form_a_valid_chain() -> None:
    entries = demo_entries("c9")
    assert [entry.operation for entry in entries] == [
        Operation.CREATE,
        Operation.UPDATE,
        Operation.UPDATE,
    ]
    assert verify_hash_chain([entry.chain_dict() for entry in entries]).is_valid
    assert demo_entries("c9")[0].id == entries[0].id
