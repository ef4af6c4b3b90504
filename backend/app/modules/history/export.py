"""JSON and CSV renderings of a subject's (already revealed) version list."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Sequence
from typing import Literal

from app.core.masking import DisplayType, ValueCodec
from app.modules.history.models import Operation, VersionEntry

ExportFormat = Literal["json", "csv"]

CSV_HEADER = ("Data/Hora", "Versão", "Operação", "Usuário", "Campos Alterados", "Motivo")

OPERATION_LABELS: dict[Operation, str] = {
    Operation.CREATE: "Criação",
    Operation.UPDATE: "Atualização",
    Operation.DELETE: "Exclusão",
}

SYSTEM_ACTOR = "Sistema"


def export_json(entries: Sequence[VersionEntry]) -> str:
    return json.dumps([entry.to_dict() for entry in entries], indent=2, ensure_ascii=False)


def export_csv(entries: Sequence[VersionEntry], codec: ValueCodec) -> str:
    """Fully quoted CSV; timestamps are rendered in the codec's timezone."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow(
            [
                codec.format(DisplayType.DATETIME, entry.occurred_at),
                str(entry.version),
                OPERATION_LABELS[entry.operation],
                entry.actor_id or SYSTEM_ACTOR,
                ", ".join(entry.changed_fields),
                entry.reason or "",
            ]
        )
    return buffer.getvalue().rstrip("\n")
