from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import threading
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from sessionguard.logging import get_logger
from sessionguard.service.errors import StorageIntegrityError, TokenExpiredError
from sessionguard.service.events import EventBus, Topic
from sessionguard.storage.backends import DurableStorage
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.keyring import DerivedKeys, DeviceKeyring, KdfParams, derive_keys, new_salt
from sessionguard.storage.models import CustomerData, TokenBundle, utc_now

logger = get_logger(__name__)

TOKEN_BLOB_KEY = "sessionguard.tokens"
BLOB_VERSION = 1
_REQUIRED_FIELDS = ("version", "salt", "refresh_token", "stored_at", "integrity_tag")

# Outcomes of reading the persisted blob
_ABSENT = "absent"
_OK = "ok"
_NO_KEY = "no_key"
_TAMPERED = "tampered"

IntegrityHook = Callable[[str], None]


def _serialize_customer(customer: CustomerData) -> dict:
    data = asdict(customer)
    if customer.last_login_at is not None:
        data["last_login_at"] = customer.last_login_at.isoformat()
    return data


def _deserialize_customer(data: dict) -> CustomerData:
    raw_login = data.get("last_login_at")
    return CustomerData(
        id=str(data["id"]),
        email=data.get("email", ""),
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
        phone=data.get("phone"),
        is_email_verified=bool(data.get("is_email_verified", False)),
        last_login_at=datetime.fromisoformat(raw_login) if raw_login else None,
    )


class SecureTokenStore:
    """Access token in process memory, refresh token encrypted at rest.

    The persisted blob carries an HMAC tag computed over its encrypted
    payload. A tag that fails to verify is treated as storage compromise:
    integrity hooks run first (so the audit trail records it), then every
    stored credential is wiped. Read paths never raise; failures degrade to
    "no token", which forces a fresh login.
    """

    def __init__(
        self,
        backend: DurableStorage,
        keyring: DeviceKeyring,
        *,
        kdf: Optional[KdfParams] = None,
        refresh_token_max_age: timedelta = timedelta(hours=24),
        refresh_window: timedelta = timedelta(minutes=5),
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.keyring = keyring
        self.kdf = kdf or KdfParams()
        self.refresh_token_max_age = refresh_token_max_age
        self.refresh_window = refresh_window
        self.bus = bus
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._token_type: str = "Bearer"
        self._customer: Optional[CustomerData] = None
        self._integrity_hooks: List[IntegrityHook] = []
        self._key_cache: Optional[Tuple[bytes, bytes, DerivedKeys]] = None

    # ------------------------------------------------------------------ hooks

    def add_integrity_hook(self, hook: IntegrityHook) -> Callable[[], None]:
        """Register a callback run (before clearing) when tampering is detected."""
        self._integrity_hooks.append(hook)

        def _remove() -> None:
            if hook in self._integrity_hooks:
                self._integrity_hooks.remove(hook)

        return _remove

    # ------------------------------------------------------------------ write

    def store_tokens(
        self,
        bundle: TokenBundle,
        customer_data: Optional[CustomerData] = None,
        *,
        fingerprint_id: Optional[str] = None,
    ) -> None:
        """Persist a freshly issued bundle.

        ``customer_data`` may be omitted on refresh, in which case the profile
        already held (in memory or in the previous blob) is carried over.
        """
        with self._lock:
            customer = customer_data or self._customer
            if customer is None:
                customer = self.get_customer_data()
            secret = self.keyring.ensure()
            salt = new_salt()
            keys = self._keys_for(secret, salt)
            cipher = Fernet(keys.cipher_key)
            payload: Dict[str, Any] = {
                "version": BLOB_VERSION,
                "salt": base64.urlsafe_b64encode(salt).decode(),
                "token_type": bundle.token_type,
                "stored_at": self._clock().isoformat(),
                "fingerprint_id": fingerprint_id,
                "refresh_token": cipher.encrypt(bundle.refresh_token.encode()).decode(),
                "customer_data": (
                    cipher.encrypt(json.dumps(_serialize_customer(customer)).encode()).decode()
                    if customer is not None
                    else None
                ),
            }
            payload["integrity_tag"] = self._integrity_tag(keys.mac_key, payload)
            # Persist first so a failed write leaves memory untouched
            self.backend.set(TOKEN_BLOB_KEY, json.dumps(payload, sort_keys=True))

            self._access_token = bundle.access_token
            self._expires_at = bundle.expires_at
            self._token_type = bundle.token_type or "Bearer"
            self._customer = customer

        logger.info(
            "tokens_stored",
            token_type=bundle.token_type,
            expires_at=bundle.expires_at.isoformat(),
            has_customer=customer is not None,
        )
        self._publish(Topic.TOKENS_UPDATED, {"expires_at": bundle.expires_at})

    def clear_tokens(self, *, durable: bool = True) -> None:
        """Wipe memory and durable storage. Idempotent.

        With ``durable=False`` only this process forgets its credentials;
        the persisted blob is left for whichever session now owns it.
        """
        with self._lock:
            had_state = self._access_token is not None or self._customer is not None
            self._access_token = None
            self._expires_at = None
            self._customer = None
            self._key_cache = None
            try:
                if durable and self.backend.get(TOKEN_BLOB_KEY) is not None:
                    had_state = True
                    self.backend.delete(TOKEN_BLOB_KEY)
            except StorageUnavailable as exc:
                logger.error("token_clear_storage_failed", error=str(exc))
        if had_state:
            logger.info("tokens_cleared")
            self._publish(Topic.TOKENS_CLEARED, None)

    # ------------------------------------------------------------------ read

    def get_access_token(self) -> Optional[str]:
        with self._lock:
            if self._access_token is None or self.is_token_expired():
                return None
            return self._access_token

    def authorization_header(self) -> Optional[str]:
        """``"<type> <token>"`` for the current access token, if any."""
        with self._lock:
            token = self.get_access_token()
            if token is None:
                return None
            return f"{self._token_type} {token}"

    def require_access_token(self) -> str:
        token = self.get_access_token()
        if token is None:
            raise TokenExpiredError("access token missing or expired")
        return token

    def get_refresh_token(self) -> Optional[str]:
        """Decrypt-on-read; fails closed to None."""
        status, payload, keys = self._read_verified()
        if status == _TAMPERED:
            self._handle_compromise("integrity_tag_mismatch")
            return None
        if status != _OK:
            return None

        stored_at = datetime.fromisoformat(payload["stored_at"])
        if self._clock() - stored_at > self.refresh_token_max_age:
            logger.warning("refresh_token_expired", stored_at=stored_at.isoformat())
            self.clear_tokens()
            return None

        try:
            return Fernet(keys.cipher_key).decrypt(payload["refresh_token"].encode()).decode()
        except (InvalidToken, ValueError) as exc:
            logger.error("refresh_token_decrypt_failed", error_type=type(exc).__name__)
            self._handle_compromise("refresh_token_undecryptable")
            return None

    def get_customer_data(self) -> Optional[CustomerData]:
        with self._lock:
            if self._customer is not None:
                return self._customer
        status, payload, keys = self._read_verified()
        if status == _TAMPERED:
            self._handle_compromise("integrity_tag_mismatch")
            return None
        if status != _OK or not payload.get("customer_data"):
            return None
        try:
            raw = Fernet(keys.cipher_key).decrypt(payload["customer_data"].encode())
            customer = _deserialize_customer(json.loads(raw))
        except (InvalidToken, ValueError, KeyError) as exc:
            logger.error("customer_data_decrypt_failed", error_type=type(exc).__name__)
            return None
        with self._lock:
            self._customer = customer
        return customer

    def token_expiration(self) -> Optional[datetime]:
        return self._expires_at

    def is_token_expired(self) -> bool:
        expires_at = self._expires_at
        if expires_at is None:
            return True
        return self._clock() >= expires_at

    def is_token_expiring_soon(self, window: Optional[timedelta] = None) -> bool:
        expires_at = self._expires_at
        if expires_at is None:
            return True
        return expires_at - self._clock() < (window if window is not None else self.refresh_window)

    def is_authenticated(self) -> bool:
        """A live access token backed by a blob that passes verification."""
        return self.get_access_token() is not None and self.validate_token_integrity()

    def has_device_key(self) -> bool:
        return self.keyring.load() is not None

    def has_stored_tokens(self) -> bool:
        try:
            return self.backend.get(TOKEN_BLOB_KEY) is not None
        except StorageUnavailable:
            return False

    def validate_token_integrity(self) -> bool:
        """Recompute the tag over the stored blob; a mismatch wipes everything."""
        return self._check_integrity() == _OK

    def require_integrity(self) -> None:
        """Raise :class:`StorageIntegrityError` if a stored blob fails verification.

        Nothing stored, or a missing device key, is not an integrity failure.
        """
        if self._check_integrity() == _TAMPERED:
            raise StorageIntegrityError("stored credentials failed integrity verification")

    def _check_integrity(self) -> str:
        status, _, _ = self._read_verified()
        if status == _TAMPERED:
            self._handle_compromise("integrity_tag_mismatch")
        return status

    # --------------------------------------------------------------- internals

    def _keys_for(self, secret: bytes, salt: bytes) -> DerivedKeys:
        cached = self._key_cache
        if cached is not None and cached[0] == secret and cached[1] == salt:
            return cached[2]
        keys = derive_keys(secret, salt, self.kdf)
        self._key_cache = (secret, salt, keys)
        return keys

    @staticmethod
    def _integrity_tag(mac_key: bytes, payload: Dict[str, Any]) -> str:
        body = {k: v for k, v in payload.items() if k != "integrity_tag"}
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(mac_key, canonical.encode(), hashlib.sha256).hexdigest()

    def _read_verified(self) -> Tuple[str, Optional[dict], Optional[DerivedKeys]]:
        try:
            raw = self.backend.get(TOKEN_BLOB_KEY)
        except StorageUnavailable as exc:
            logger.error("token_blob_unreadable", error=str(exc))
            return _NO_KEY, None, None
        if raw is None:
            return _ABSENT, None, None

        try:
            payload = json.loads(raw)
        except ValueError:
            logger.error("token_blob_corrupt")
            return _TAMPERED, None, None
        if not isinstance(payload, dict) or any(f not in payload for f in _REQUIRED_FIELDS):
            logger.error("token_blob_malformed")
            return _TAMPERED, None, None
        if payload.get("version") != BLOB_VERSION:
            logger.error("token_blob_version_unknown", version=payload.get("version"))
            return _TAMPERED, None, None

        secret = self.keyring.load()
        if secret is None:
            logger.warning("token_blob_key_missing")
            return _NO_KEY, None, None

        try:
            salt = base64.urlsafe_b64decode(str(payload["salt"]).encode())
        except (binascii.Error, ValueError):
            return _TAMPERED, None, None
        with self._lock:
            keys = self._keys_for(secret, salt)
        expected = self._integrity_tag(keys.mac_key, payload)
        if not hmac.compare_digest(expected, str(payload["integrity_tag"])):
            return _TAMPERED, None, None
        return _OK, payload, keys

    def _handle_compromise(self, reason: str) -> None:
        logger.error("token_storage_compromised", reason=reason)
        for hook in list(self._integrity_hooks):
            try:
                hook(reason)
            except Exception as exc:
                logger.error(
                    "integrity_hook_failed", error=str(exc), error_type=type(exc).__name__
                )
        self.clear_tokens()

    def _publish(self, topic: Topic, payload: Any) -> None:
        if self.bus is not None:
            self.bus.publish(topic, payload)
