"""
Field-level diffs between two snapshots of a subject.

Everything here is pure and total: any JSON-like input produces a result.
Protected markers are compared by their keyed fingerprint, so snapshots that
are encrypted at rest can be diffed without decryption.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.core.encryption import ProtectedValue
from app.modules.history.models import ALL_FIELDS, ChangeKind, FieldChange, Operation


@dataclass(slots=True, frozen=True)
class DiffResult:
    operation: Operation
    changed_fields: tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return not self.changed_fields


def normalize(value: Any) -> Any:
    """Reduce a field value to a hashable form with the comparison semantics.

    ``None`` stays ``None``; numbers compare numerically (``1 == 1.0``) while
    booleans stay distinct from numbers; mappings drop ``None`` members so a
    null member equals a missing one.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, int | float):
        if isinstance(value, float) and math.isnan(value):
            return ("num", "nan")
        return ("num", value)
    if isinstance(value, str):
        return ("str", value)
    if ProtectedValue.is_marker(value):
        return ("protected", value.get("_enc_fp") or value.get("_enc_ct"))
    if isinstance(value, Mapping):
        members = sorted(
            ((str(key), normalize(item)) for key, item in value.items() if item is not None),
            key=lambda pair: pair[0],
        )
        return ("map", tuple(members))
    if isinstance(value, list | tuple):
        return ("list", tuple(normalize(item) for item in value))
    return ("other", repr(value))


def _changed_keys(previous: Mapping[str, Any], new: Mapping[str, Any]) -> list[str]:
    keys = {str(key) for key in previous} | {str(key) for key in new}
    return sorted(key for key in keys if normalize(previous.get(key)) != normalize(new.get(key)))


def diff(previous: Mapping[str, Any] | None, new: Mapping[str, Any] | None) -> DiffResult:
    """Operation kind and changed-field set for a mutation.

    An update with no differing field yields an empty set; suppressing such
    entries is the caller's decision.
    """
    if previous is None:
        return DiffResult(operation=Operation.CREATE, changed_fields=(ALL_FIELDS,))
    if new is None:
        return DiffResult(operation=Operation.DELETE, changed_fields=(ALL_FIELDS,))
    return DiffResult(operation=Operation.UPDATE, changed_fields=tuple(_changed_keys(previous, new)))


def compare_snapshots(
    old: Mapping[str, Any] | None,
    new: Mapping[str, Any] | None,
) -> list[FieldChange]:
    """Per-field changes between two snapshots, ordered by field name."""
    old = old or {}
    new = new or {}
    changes: list[FieldChange] = []
    for key in _changed_keys(old, new):
        old_value = old.get(key)
        new_value = new.get(key)
        if old_value is None:
            kind = ChangeKind.ADDED
        elif new_value is None:
            kind = ChangeKind.REMOVED
        else:
            kind = ChangeKind.CHANGED
        changes.append(
            FieldChange(field=key, old_value=old_value, new_value=new_value, change_kind=kind)
        )
    return changes
