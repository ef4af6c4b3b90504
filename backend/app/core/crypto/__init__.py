"""
Tamper-evidence primitives for the version log.

- **canonicalization**: RFC 8785 canonical bytes for stable hashing
- **hash_chain**: SHA-256 chaining of consecutive history entries
- **verification**: recomputation of a stored chain
"""

from app.core.crypto.canonicalization import (
    CANONICALIZATION_RFC8785,
    SHA256_ALGORITHM,
    canonicalize_jcs_bytes,
    sha256_hex_jcs,
)
from app.core.crypto.hash_chain import GENESIS_HASH, compute_entry_hash
from app.core.crypto.verification import (
    ChainVerificationResult,
    verify_entry,
    verify_hash_chain,
)

__all__ = [
    "canonicalize_jcs_bytes",
    "sha256_hex_jcs",
    "CANONICALIZATION_RFC8785",
    "SHA256_ALGORITHM",
    "GENESIS_HASH",
    "compute_entry_hash",
    "ChainVerificationResult",
    "verify_entry",
    "verify_hash_chain",
]
