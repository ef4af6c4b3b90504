"""Fixed seed dataset served when the primary history store is unreachable."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import NAMESPACE_URL, uuid5

from app.core.crypto.hash_chain import GENESIS_HASH
from app.modules.history.models import ALL_FIELDS, Operation, VersionEntry, utcnow
from app.modules.history.store import build_entry

DEMO_ACTOR_ID = "demo-user"

_DEMO_CUSTOMER = {
    "nome": "Cliente Demo",
    "cpf": "12345678901",
    "email": "cliente@demo.com",
    "telefone": "11888888888",
    "limite_credito": 3000,
}


def demo_entries(
    subject_id: str,
    *,
    tenant_id: str = "default",
    now: datetime | None = None,
) -> list[VersionEntry]:
    """Three-version history (create, phone update, limit increase), ascending."""
    now = now or utcnow()
    v1_snapshot = dict(_DEMO_CUSTOMER)
    v2_snapshot = {**v1_snapshot, "telefone": "11999999999"}
    v3_snapshot = {**v2_snapshot, "limite_credito": 5000}

    steps = [
        (Operation.CREATE, None, v1_snapshot, (ALL_FIELDS,), "Cadastro inicial do cliente", 3),
        (Operation.UPDATE, v1_snapshot, v2_snapshot, ("telefone",), "Atualização de dados de contato", 2),
        (
            Operation.UPDATE,
            v2_snapshot,
            v3_snapshot,
            ("limite_credito",),
            "Aumento de limite solicitado pelo cliente",
            1,
        ),
    ]

    entries: list[VersionEntry] = []
    prev_hash = GENESIS_HASH
    for version, (operation, previous, new, changed, reason, days_ago) in enumerate(steps, start=1):
        entry = build_entry(
            tenant_id=tenant_id,
            subject_id=subject_id,
            version=version,
            operation=operation,
            previous=previous,
            new=new,
            changed_fields=changed,
            actor_id=DEMO_ACTOR_ID,
            reason=reason,
            prev_entry_hash=prev_hash,
            occurred_at=now - timedelta(days=days_ago),
            entry_id=uuid5(NAMESPACE_URL, f"demo-history:{subject_id}:{version}"),
        )
        entries.append(entry)
        prev_hash = entry.entry_hash
    return entries
