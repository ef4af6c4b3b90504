"""
Hash chain verification for stored history entries.

Pure functions over dicts, decoupled from the storage layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.core.crypto.hash_chain import GENESIS_HASH, compute_entry_hash

_CHAIN_FIELDS = frozenset({"entry_hash", "prev_entry_hash"})


@dataclass
class ChainVerificationResult:
    """Result of verifying a hash chain.

    Attributes
    ----------
    is_valid:
        ``True`` if the entire chain is intact.
    verified_count:
        Number of entries successfully verified.
    first_break_at:
        Version number where the chain first broke, or ``None``.
    errors:
        Human-readable descriptions of integrity violations.
    """

    is_valid: bool = True
    verified_count: int = 0
    first_break_at: int | None = None
    errors: list[str] = field(default_factory=list)


def _extract_entry_data(entry: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in _CHAIN_FIELDS}


def verify_entry(entry: dict[str, Any], prev_hash: str | None) -> bool:
    """Verify a single entry's stored hash against its claimed predecessor."""
    stored_hash = entry.get("entry_hash")
    if stored_hash is None:
        return False
    effective_prev = prev_hash if prev_hash is not None else GENESIS_HASH
    return bool(stored_hash == compute_entry_hash(_extract_entry_data(entry), effective_prev))


def verify_hash_chain(entries: list[dict[str, Any]]) -> ChainVerificationResult:
    """Verify a subject's entries ordered by ascending version.

    The first entry is anchored on its own ``prev_entry_hash`` when it is not
    version 1, so a chain whose oldest entries were removed by retention still
    verifies.
    """
    result = ChainVerificationResult()
    if not entries:
        return result

    first = entries[0]
    expected_prev = (
        GENESIS_HASH
        if first.get("version") == 1
        else str(first.get("prev_entry_hash") or GENESIS_HASH)
    )

    for entry in entries:
        version = entry.get("version")
        stored_hash = entry.get("entry_hash")
        stored_prev = entry.get("prev_entry_hash")

        if stored_hash is None:
            result.is_valid = False
            result.first_break_at = version
            result.errors.append(f"Version {version}: missing entry_hash")
            break

        if stored_prev != expected_prev:
            result.is_valid = False
            result.first_break_at = version
            result.errors.append(
                f"Version {version}: prev_entry_hash mismatch "
                f"(stored={stored_prev!r}, expected={expected_prev!r})"
            )
            break

        recomputed = compute_entry_hash(_extract_entry_data(entry), expected_prev)
        if recomputed != stored_hash:
            result.is_valid = False
            result.first_break_at = version
            result.errors.append(
                f"Version {version}: hash mismatch "
                f"(stored={stored_hash!r}, recomputed={recomputed!r})"
            )
            break

        result.verified_count += 1
        expected_prev = stored_hash

    return result
