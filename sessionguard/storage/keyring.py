from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from typing import Optional

from argon2.low_level import Type, hash_secret_raw

from sessionguard.logging import get_logger
from sessionguard.storage.backends import DurableStorage
from sessionguard.storage.errors import StorageUnavailable

logger = get_logger(__name__)

DEVICE_KEY_NAME = "sessionguard.device_key"
DEVICE_SECRET_BYTES = 32
SALT_BYTES = 16


@dataclass(frozen=True)
class KdfParams:
    time_cost: int = 2
    memory_cost: int = 19456
    parallelism: int = 1


@dataclass(frozen=True)
class DerivedKeys:
    """Independent halves of one Argon2id derivation."""

    cipher_key: bytes  # urlsafe-base64, ready for Fernet
    mac_key: bytes


def new_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def derive_keys(secret: bytes, salt: bytes, params: KdfParams) -> DerivedKeys:
    raw = hash_secret_raw(
        secret=secret,
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=64,
        type=Type.ID,
    )
    return DerivedKeys(
        cipher_key=base64.urlsafe_b64encode(raw[:32]),
        mac_key=raw[32:],
    )


class DeviceKeyring:
    """Holds the device-bound secret that credential encryption keys derive from.

    An explicitly configured secret wins; otherwise a random secret is created
    once and persisted beside the state it protects. The access token is never
    used as key material.
    """

    def __init__(
        self, backend: DurableStorage, *, explicit_secret: Optional[str] = None
    ) -> None:
        self.backend = backend
        self._explicit = explicit_secret.encode() if explicit_secret else None

    def load(self) -> Optional[bytes]:
        """Return the device secret, or None when it is missing or unreadable."""
        if self._explicit:
            return self._explicit
        try:
            stored = self.backend.get(DEVICE_KEY_NAME)
        except StorageUnavailable as exc:
            logger.warning("device_key_unavailable", error=str(exc))
            return None
        if not stored:
            return None
        try:
            secret = base64.urlsafe_b64decode(stored.strip().encode())
        except ValueError:
            logger.error("device_key_corrupt")
            return None
        if len(secret) < DEVICE_SECRET_BYTES:
            logger.error("device_key_too_short", length=len(secret))
            return None
        return secret

    def ensure(self) -> bytes:
        """Return the device secret, creating and persisting it if needed."""
        existing = self.load()
        if existing:
            return existing
        generated = secrets.token_bytes(DEVICE_SECRET_BYTES)
        self.backend.set(DEVICE_KEY_NAME, base64.urlsafe_b64encode(generated).decode())
        logger.info("device_key_generated")
        return generated

    def discard(self) -> None:
        if self._explicit:
            return
        self.backend.delete(DEVICE_KEY_NAME)
