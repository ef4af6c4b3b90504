"""Email templates for customer history notifications."""

from collections.abc import Sequence
from dataclasses import dataclass

_OPERATION_LABELS = {
    "create": "criado",
    "update": "atualizado",
    "delete": "excluído",
}


@dataclass(slots=True)
class EmailTemplate:
    """Rendered email payload."""

    subject: str
    text_body: str
    html_body: str | None = None


def build_history_change_email(
    *,
    tenant_id: str,
    subject_id: str,
    version: int,
    operation: str,
    changed_fields: Sequence[str],
    actor_id: str | None,
) -> EmailTemplate:
    """Change alert listing field names only; values never leave the service."""
    action = _OPERATION_LABELS.get(operation, operation)
    if list(changed_fields) == ["*"]:
        fields_text = "todos os campos"
    else:
        fields_text = ", ".join(changed_fields) or "nenhum campo"
    subject = f"Cliente {subject_id} {action} (versão {version})"
    text = (
        f"O registro do cliente '{subject_id}' no tenant '{tenant_id}' foi {action}.\n\n"
        f"Versão: {version}\n"
        f"Campos alterados: {fields_text}\n"
        f"Usuário: {actor_id or 'Sistema'}\n\n"
        "Consulte o histórico do cliente para ver os detalhes."
    )
    return EmailTemplate(subject=subject, text_body=text)
