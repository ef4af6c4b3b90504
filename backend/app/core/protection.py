"""
Field-level protection of customer snapshots.

``protect`` replaces sensitive values with encrypted markers before they are
stored. ``reveal`` turns markers back into either plaintext (permitted caller)
or the masked preview (everyone else, and any failed decryption), recording
one access event per revealed field.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from app.core.audit import (
    AccessAction,
    AccessEvent,
    AccessLogUnavailableError,
    AccessOutcome,
    AuditLog,
)
from app.core.encryption import DecryptionError, EncryptionService, ProtectedValue
from app.core.logging import get_logger
from app.core.masking import MaskedValue, MaskType, ValueCodec, as_mask_type

logger = get_logger(__name__)

WILDCARD_VIEWER = "*"

# Objects and lists are never partially revealed.
STRUCTURED_PREVIEW = "********"


def field_aad(field_name: str) -> str:
    """Associated data binding a ciphertext to the field it was stored under."""
    return f"field:{field_name}"


def as_text(value: Any) -> tuple[str, bool]:
    """Text form of a field value and whether it had to be JSON-encoded."""
    if isinstance(value, str):
        return value, False
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str), True


class ProtectionGateway:
    """Applies encryption and masking to snapshots according to caller permission."""

    def __init__(
        self,
        encryption: EncryptionService,
        codec: ValueCodec,
        audit_log: AuditLog,
        *,
        allowed_viewers: Iterable[str] = (),
        sensitive_fields: Mapping[str, MaskType | str] | None = None,
    ) -> None:
        self._encryption = encryption
        self._codec = codec
        self._audit_log = audit_log
        self._allowed_viewers = frozenset(allowed_viewers)
        self._sensitive_fields = {
            name: as_mask_type(field_type) for name, field_type in (sensitive_fields or {}).items()
        }

    @property
    def sensitive_fields(self) -> dict[str, MaskType]:
        return dict(self._sensitive_fields)

    def has_view_permission(self, caller_id: str | None) -> bool:
        if WILDCARD_VIEWER in self._allowed_viewers:
            return True
        return caller_id is not None and caller_id in self._allowed_viewers

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def protect(
        self,
        record: Mapping[str, Any] | None,
        sensitive_fields: Mapping[str, MaskType | str] | None = None,
    ) -> dict[str, Any] | None:
        """Copy of ``record`` with each present sensitive value encrypted.

        Only ``None`` and ``""`` are left as they are. Numbers, booleans and
        structured values are JSON-encoded first so they are restored with
        their original type on decryption.
        """
        if record is None:
            return None
        specs = self._sensitive_fields if sensitive_fields is None else sensitive_fields
        protected = dict(record)
        for name, field_type in specs.items():
            value = protected.get(name)
            if value is None or value == "" or ProtectedValue.is_marker(value):
                continue
            text, json_encoded = as_text(value)
            sealed = self._encryption.encrypt(text, aad=field_aad(name))
            if json_encoded:
                # 123 and "123" must not share a fingerprint.
                sealed = replace(
                    sealed,
                    json_encoded=True,
                    fingerprint=self._encryption.fingerprint(f"json:{text}"),
                )
            protected[name] = replace(
                sealed,
                masked_preview=self._mask(field_type, value),
                field_type=as_mask_type(field_type).value,
            ).to_marker()
        return protected

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def reveal(
        self,
        record: Mapping[str, Any] | None,
        fields: Iterable[str] | None = None,
        *,
        caller_id: str,
        has_permission: bool,
        subject_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Resolve protected fields for one caller.

        Without permission no decryption is attempted. A failed decryption
        yields the same masked preview a caller without permission would see;
        only the access event's outcome tells the two apart.
        """
        if record is None:
            return None
        if fields is None:
            markers = [name for name, value in record.items() if ProtectedValue.is_marker(value)]
            names = list(dict.fromkeys([*self._sensitive_fields, *markers]))
        else:
            names = list(fields)
        revealed = dict(record)
        for name in names:
            value = revealed.get(name)
            if ProtectedValue.is_marker(value):
                revealed[name] = await self._reveal_marker(
                    name,
                    value,
                    caller_id=caller_id,
                    has_permission=has_permission,
                    subject_id=subject_id,
                )
            elif value is not None and value != "":
                # Stored before protection was enabled for this field.
                if has_permission:
                    outcome = AccessOutcome.PLAIN
                else:
                    revealed[name] = self._mask(self._mask_type(name), value)
                    outcome = AccessOutcome.MASKED
                await self._record(caller_id, name, subject_id, AccessAction.VIEW, outcome)
        return revealed

    async def _reveal_marker(
        self,
        name: str,
        marker: dict[str, Any],
        *,
        caller_id: str,
        has_permission: bool,
        subject_id: str | None,
    ) -> Any:
        preview = str(marker.get("_enc_masked") or "")
        if not has_permission:
            await self._record(caller_id, name, subject_id, AccessAction.VIEW, AccessOutcome.MASKED)
            return preview

        try:
            sealed = ProtectedValue.from_marker(marker)
            plaintext = self._encryption.decrypt(sealed, aad=field_aad(name))
            value = json.loads(plaintext) if sealed.json_encoded else plaintext
        except (DecryptionError, ValueError) as exc:
            logger.warning(
                "protected_field_decryption_failed",
                field=name,
                subject_id=subject_id,
                key_version=marker.get("_enc_kv"),
                error=str(exc),
            )
            await self._record(
                caller_id, name, subject_id, AccessAction.DECRYPT, AccessOutcome.DECRYPTION_FAILED
            )
            return preview

        await self._record(caller_id, name, subject_id, AccessAction.DECRYPT, AccessOutcome.DECRYPTED)
        return value

    async def _record(
        self,
        caller_id: str,
        data_type: str,
        subject_id: str | None,
        action: AccessAction,
        outcome: AccessOutcome,
    ) -> None:
        """Record one access event. An unreachable access log does not block the read."""
        try:
            await self._audit_log.record(
                AccessEvent(
                    user_id=caller_id,
                    data_type=data_type,
                    action=action,
                    subject_id=subject_id,
                    outcome=outcome,
                )
            )
        except AccessLogUnavailableError as exc:
            logger.warning(
                "access_event_not_recorded",
                user_id=caller_id,
                data_type=data_type,
                subject_id=subject_id,
                action=action.value,
                outcome=outcome.value,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def preview(self, name: str, value: Any) -> MaskedValue:
        """Masked preview of a stored value without decrypting anything."""
        if ProtectedValue.is_marker(value):
            return MaskedValue(
                masked=str(value.get("_enc_masked") or ""),
                mask_type=self._mask_type(name),
            )
        mask_type = self._mask_type(name)
        if value is None or isinstance(value, str):
            return self._codec.describe(mask_type, value)
        return MaskedValue(masked=self._mask(mask_type, value), mask_type=mask_type)

    def _mask(self, field_type: MaskType | str, value: Any) -> str:
        if isinstance(value, (dict, list)):
            return STRUCTURED_PREVIEW
        return self._codec.mask(field_type, as_text(value)[0])

    def is_sensitive(self, name: str) -> bool:
        return name in self._sensitive_fields

    def _mask_type(self, name: str) -> MaskType:
        return self._sensitive_fields.get(name, MaskType.GENERIC)
