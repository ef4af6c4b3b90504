"""Encryption primitives for field-level confidentiality of customer history."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.core.config import Settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ALGORITHM_AES_256_GCM = "AES-256-GCM"

_KEY_BYTES = 32
_NONCE_BYTES = 12
_TAG_BYTES = 16
_MARKER_VERSION = "history:v1"
_FINGERPRINT_INFO = b"history-fingerprint:v1"


class EncryptionError(Exception):
    """Raised when encryption fails or key material is misconfigured."""


class DecryptionError(EncryptionError):
    """Raised when a protected value cannot be decrypted.

    Covers unknown or expired key versions, authentication tag failures and
    corrupted payloads. Callers are expected to fall back to the masked preview.
    """


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str, *, error_context: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(error_context) from exc


def _to_aad_bytes(aad: str | bytes | None) -> bytes | None:
    if aad is None:
        return None
    if isinstance(aad, bytes):
        return aad
    return aad.encode("utf-8")


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Data types
# =============================================================================


@dataclass(slots=True)
class EncryptionKey:
    """Versioned key material. ``material`` never leaves the key store."""

    version: int
    material: bytes = field(repr=False)
    algorithm: str = ALGORITHM_AES_256_GCM
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime | None = None
    is_active: bool = False

    @property
    def id(self) -> str:
        return f"key-v{self.version}"

    def info(self) -> dict[str, Any]:
        """Key metadata without the key material."""
        return {
            "id": self.id,
            "version": self.version,
            "algorithm": self.algorithm,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
        }


@dataclass(slots=True, frozen=True)
class ProtectedValue:
    """Wire/storage representation of a sensitive field value."""

    cipher_text: bytes
    iv: bytes
    auth_tag: bytes | None
    key_version: int
    algorithm: str = ALGORITHM_AES_256_GCM
    masked_preview: str = ""
    field_type: str = "generic"
    fingerprint: str = ""
    json_encoded: bool = False

    def to_marker(self) -> dict[str, Any]:
        """Serialize into the JSON marker stored in place of the plain value."""
        return {
            "_enc_ct": _b64encode(self.cipher_text),
            "_enc_iv": _b64encode(self.iv),
            "_enc_tag": _b64encode(self.auth_tag) if self.auth_tag is not None else None,
            "_enc_kv": self.key_version,
            "_enc_alg": self.algorithm,
            "_enc_masked": self.masked_preview,
            "_enc_type": self.field_type,
            "_enc_fp": self.fingerprint,
            "_enc_json": self.json_encoded,
            "_enc_ver": _MARKER_VERSION,
        }

    @classmethod
    def from_marker(cls, marker: dict[str, Any]) -> ProtectedValue:
        """Parse a stored marker. Malformed markers raise ``DecryptionError``."""
        if not cls.is_marker(marker):
            raise DecryptionError("value is not a protected marker")
        key_version = marker.get("_enc_kv")
        if not isinstance(key_version, int) or isinstance(key_version, bool):
            raise DecryptionError("protected marker has no valid key version")
        tag_b64 = marker.get("_enc_tag")
        return cls(
            cipher_text=_b64decode(
                str(marker["_enc_ct"]), error_context="corrupted protected value (bad base64)"
            ),
            iv=_b64decode(
                str(marker.get("_enc_iv", "")), error_context="corrupted protected value (bad iv)"
            ),
            auth_tag=(
                _b64decode(str(tag_b64), error_context="corrupted protected value (bad tag)")
                if tag_b64
                else None
            ),
            key_version=key_version,
            algorithm=str(marker.get("_enc_alg", ALGORITHM_AES_256_GCM)),
            masked_preview=str(marker.get("_enc_masked", "")),
            field_type=str(marker.get("_enc_type", "generic")),
            fingerprint=str(marker.get("_enc_fp", "")),
            json_encoded=marker.get("_enc_json") is True,
        )

    @staticmethod
    def is_marker(value: Any) -> bool:
        return isinstance(value, dict) and isinstance(value.get("_enc_ct"), str)


@dataclass(slots=True)
class KeyHealth:
    """Outcome of a key-store health check."""

    status: Literal["healthy", "warning", "critical"]
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


# =============================================================================
# Key store
# =============================================================================


class InMemoryKeyStore:
    """Process-local key store holding every key version ever registered.

    Keys are never deleted: retired versions stay available so historical
    values remain decryptable.
    """

    def __init__(
        self,
        keys: dict[int, bytes],
        *,
        active_version: int | None = None,
        fingerprint_key: bytes | None = None,
    ) -> None:
        if not keys:
            raise EncryptionError("encryption keyring is empty")
        self._lock = threading.Lock()
        self._keys: dict[int, EncryptionKey] = {}
        for version, material in sorted(keys.items()):
            if version < 1:
                raise EncryptionError(f"key version must be positive, got {version}")
            if len(material) != _KEY_BYTES:
                raise EncryptionError(
                    f"encryption key v{version} must be 256 bits (32 bytes), got {len(material)}"
                )
            self._keys[version] = EncryptionKey(version=version, material=material)

        active = active_version if active_version in self._keys else max(self._keys)
        self._keys[active].is_active = True

        if fingerprint_key is None:
            fingerprint_key = HKDF(
                algorithm=hashes.SHA256(),
                length=_KEY_BYTES,
                salt=None,
                info=_FINGERPRINT_INFO,
            ).derive(self._keys[min(self._keys)].material)
        self._fingerprint_key = fingerprint_key

    @classmethod
    def from_settings(cls, settings: Settings) -> InMemoryKeyStore:
        """Build the keyring from ``ENCRYPTION_KEYRING_JSON`` / ``ENCRYPTION_MASTER_KEY``."""
        try:
            keyring = settings.parse_keyring()
        except ValueError as exc:
            raise EncryptionError(str(exc)) from exc

        keys: dict[int, bytes] = {}
        for version, key_b64 in keyring.items():
            try:
                keys[version] = base64.b64decode(key_b64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise EncryptionError(f"encryption key v{version} is not valid base64") from exc

        if not keys:
            if settings.environment not in ("development", "test"):
                raise EncryptionError(
                    "encryption keyring is empty (set ENCRYPTION_KEYRING_JSON or "
                    "ENCRYPTION_MASTER_KEY)"
                )
            logger.warning("encryption_ephemeral_key_generated", environment=settings.environment)
            keys[1] = os.urandom(_KEY_BYTES)

        fingerprint_key: bytes | None = None
        if settings.encryption_fingerprint_key.strip():
            try:
                fingerprint_key = base64.b64decode(
                    settings.encryption_fingerprint_key.strip(), validate=True
                )
            except (binascii.Error, ValueError) as exc:
                raise EncryptionError("encryption_fingerprint_key is not valid base64") from exc

        return cls(
            keys,
            active_version=settings.encryption_active_key_version,
            fingerprint_key=fingerprint_key,
        )

    def get_active_key(self) -> EncryptionKey:
        for key in self._keys.values():
            if key.is_active:
                return key
        raise EncryptionError("no active encryption key")

    def get_key(self, version: int) -> EncryptionKey | None:
        return self._keys.get(version)

    def list_keys(self) -> list[EncryptionKey]:
        return [self._keys[version] for version in sorted(self._keys)]

    def fingerprint_key(self) -> bytes:
        return self._fingerprint_key

    def activate_new_key(
        self,
        material: bytes,
        *,
        retire_previous_at: datetime | None = None,
    ) -> EncryptionKey:
        """Register the next key version and make it the only active key."""
        if len(material) != _KEY_BYTES:
            raise EncryptionError("new encryption key must be 256 bits (32 bytes)")
        with self._lock:
            for key in self._keys.values():
                if key.is_active:
                    key.is_active = False
                    key.expires_at = retire_previous_at
            new_key = EncryptionKey(
                version=max(self._keys) + 1,
                material=material,
                is_active=True,
            )
            self._keys[new_key.version] = new_key
        return new_key


# =============================================================================
# Encryption service
# =============================================================================


class EncryptionService:
    """AES-256-GCM encryption of individual values with versioned keys."""

    def __init__(
        self,
        key_store: InMemoryKeyStore,
        *,
        decrypt_grace_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._key_store = key_store
        self._grace = timedelta(days=decrypt_grace_days)
        self._clock = clock

    @property
    def active_key_version(self) -> int:
        return self._key_store.get_active_key().version

    def encrypt(self, plaintext: str, *, aad: str | bytes | None = None) -> ProtectedValue:
        """Encrypt with the active key and a fresh random nonce."""
        if not isinstance(plaintext, str) or not plaintext:
            raise EncryptionError("plaintext must be a non-empty string")
        key = self._key_store.get_active_key()
        nonce = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(key.material).encrypt(nonce, plaintext.encode("utf-8"), _to_aad_bytes(aad))
        return ProtectedValue(
            cipher_text=sealed[:-_TAG_BYTES],
            iv=nonce,
            auth_tag=sealed[-_TAG_BYTES:],
            key_version=key.version,
            algorithm=key.algorithm,
            fingerprint=self.fingerprint(plaintext),
        )

    def decrypt(self, protected: ProtectedValue, *, aad: str | bytes | None = None) -> str:
        """Decrypt with the key version recorded on the value."""
        key = self._key_store.get_key(protected.key_version)
        if key is None:
            raise DecryptionError(f"unknown encryption key version {protected.key_version}")
        if key.expires_at is not None and self._clock() > key.expires_at + self._grace:
            raise DecryptionError(f"encryption key version {key.version} has expired")
        if protected.algorithm != key.algorithm:
            raise DecryptionError(f"unsupported algorithm {protected.algorithm!r}")
        if len(protected.iv) != _NONCE_BYTES or protected.auth_tag is None:
            raise DecryptionError("corrupted protected value (bad iv or missing tag)")

        try:
            plaintext_bytes = AESGCM(key.material).decrypt(
                protected.iv,
                protected.cipher_text + protected.auth_tag,
                _to_aad_bytes(aad),
            )
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(
                "decryption failed (key or AAD mismatch, or corrupted ciphertext)"
            ) from exc
        try:
            return plaintext_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted payload is not valid UTF-8") from exc

    def fingerprint(self, plaintext: str) -> str:
        """Keyed digest used to compare protected values without decrypting them."""
        return hmac.new(
            self._key_store.fingerprint_key(),
            plaintext.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def rotate_key(
        self,
        *,
        material: bytes | None = None,
        retire_after_days: int | None = None,
    ) -> EncryptionKey:
        """Activate a new key version; the previous one only decrypts from now on."""
        previous = self._key_store.get_active_key().version
        retire_at = (
            self._clock() + timedelta(days=retire_after_days)
            if retire_after_days is not None
            else None
        )
        new_key = self._key_store.activate_new_key(
            material if material is not None else os.urandom(_KEY_BYTES),
            retire_previous_at=retire_at,
        )
        logger.info(
            "encryption_key_rotated",
            previous_version=previous,
            active_version=new_key.version,
        )
        return new_key

    def key_info(self) -> list[dict[str, Any]]:
        return [key.info() for key in self._key_store.list_keys()]

    def should_rotate(self, rotation_days: int) -> bool:
        """True when there is no active key or it is older than ``rotation_days``."""
        try:
            active = self._key_store.get_active_key()
        except EncryptionError:
            return True
        return self._clock() - active.created_at > timedelta(days=rotation_days)

    def check_key_health(self, rotation_days: int) -> KeyHealth:
        now = self._clock()
        keys = self._key_store.list_keys()
        active_keys = [key for key in keys if key.is_active]
        issues: list[str] = []
        recommendations: list[str] = []

        if not active_keys:
            issues.append("no active key found")
        elif len(active_keys) > 1:
            issues.append("multiple active keys found")

        threshold = timedelta(days=rotation_days)
        for key in active_keys:
            age = now - key.created_at
            if age > threshold:
                issues.append(f"key {key.id} is overdue for rotation ({age.days} days old)")
            elif age > threshold * 0.8:
                recommendations.append(f"key {key.id} should be rotated soon")

        expired = [
            key for key in keys if key.expires_at is not None and key.expires_at + self._grace < now
        ]
        if expired:
            recommendations.append(
                f"{len(expired)} retired key(s) are past their decryption grace period"
            )

        if issues:
            status: Literal["healthy", "warning", "critical"] = (
                "critical" if not active_keys else "warning"
            )
        elif recommendations:
            status = "warning"
        else:
            status = "healthy"
        return KeyHealth(status=status, issues=issues, recommendations=recommendations)
