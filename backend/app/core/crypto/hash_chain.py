"""
SHA-256 hash chaining for per-subject version entries.

Each entry hash is ``SHA256(rfc8785(entry_data) + prev_hash)``. Changing any
stored field of an entry invalidates its hash and every later link.
"""

from __future__ import annotations

import hashlib
from typing import Any

from app.core.crypto.canonicalization import SHA256_ALGORITHM, canonicalize_jcs_bytes

HASH_ALGORITHM_SHA256 = SHA256_ALGORITHM

# Previous hash of the first entry of every subject.
GENESIS_HASH: str = "0" * 64


def compute_entry_hash(
    entry_data: dict[str, Any],
    prev_hash: str,
    *,
    hash_algorithm: str = HASH_ALGORITHM_SHA256,
) -> str:
    """Compute the chained hash for one history entry.

    Parameters
    ----------
    entry_data:
        JSON-compatible dict of the entry's hashed fields.
    prev_hash:
        Hex digest of the previous entry of the same subject, or
        ``GENESIS_HASH`` for version 1.

    Returns
    -------
    str
        Hex-encoded SHA-256 digest.
    """
    if hash_algorithm != HASH_ALGORITHM_SHA256:
        raise ValueError(f"Unsupported hash algorithm: {hash_algorithm}")
    hasher = hashlib.sha256()
    hasher.update(canonicalize_jcs_bytes(entry_data))
    hasher.update(prev_hash.encode("utf-8"))
    return hasher.hexdigest()
