from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import httpx

from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.coordinator import TokenRefreshCoordinator
from sessionguard.service.event_log import SecurityEventLog
from sessionguard.service.events import EventBus
from sessionguard.service.fingerprint import DeviceFingerprinter
from sessionguard.service.issuer import HttpMFAVerifier, IdentityClient
from sessionguard.service.session import SessionManager
from sessionguard.service.token_store import SecureTokenStore
from sessionguard.storage.backends import DurableStorage, build_backend
from sessionguard.storage.keyring import DeviceKeyring, KdfParams
from sessionguard.storage.models import ValidationResult, utc_now

logger = get_logger(__name__)


class Runtime:
    """Wires every service together from one :class:`Settings` instance.

    There are no module-level singletons: construct one Runtime per
    application and call :meth:`shutdown` when done.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[DurableStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fingerprinter: Optional[DeviceFingerprinter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        clock = clock or utc_now
        logger.info(
            "runtime_init_started",
            storage_backend=self.settings.storage_backend.value,
            api_base_url=self.settings.api_base_url,
        )

        try:
            self.backend = backend if backend is not None else build_backend(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_backend_init_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise

        self.bus = EventBus()
        self.keyring = DeviceKeyring(self.backend, explicit_secret=self.settings.device_secret)
        self.fingerprinter = fingerprinter or DeviceFingerprinter(
            partial_match_threshold=self.settings.fingerprint_partial_match_threshold,
            clock=clock,
        )
        self.token_store = SecureTokenStore(
            self.backend,
            self.keyring,
            kdf=KdfParams(
                time_cost=self.settings.kdf_time_cost,
                memory_cost=self.settings.kdf_memory_cost,
                parallelism=self.settings.kdf_parallelism,
            ),
            refresh_token_max_age=self.settings.refresh_token_max_age,
            refresh_window=self.settings.token_refresh_window,
            bus=self.bus,
            clock=clock,
        )
        self.event_log = SecurityEventLog(
            self.backend,
            bus=self.bus,
            max_events=self.settings.max_security_events,
            clock=clock,
        )
        self.session_manager = SessionManager(
            self.token_store,
            self.fingerprinter,
            self.event_log,
            self.backend,
            bus=self.bus,
            max_inactivity=self.settings.default_max_inactivity,
            expiring_soon=self.settings.session_expiring_soon,
            validation_interval=self.settings.validation_interval_seconds,
            countdown_interval=self.settings.countdown_interval_seconds,
            high_risk_window=self.settings.high_risk_window,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            known_device_max_age=self.settings.known_device_max_age,
            fingerprint_validation_enabled=self.settings.fingerprint_validation_enabled,
            clock=clock,
        )
        self.identity_client = IdentityClient(
            self.settings.api_base_url,
            login_path=self.settings.login_path,
            refresh_path=self.settings.refresh_path,
            timeout=self.settings.request_timeout_seconds,
            client=http_client,
            clock=clock,
        )
        self.mfa_verifier = HttpMFAVerifier(
            self.settings.api_base_url,
            verify_path=self.settings.mfa_verify_path,
            client=http_client,
            timeout=self.settings.request_timeout_seconds,
        )
        self.coordinator = TokenRefreshCoordinator(
            self.token_store,
            self.session_manager,
            self.identity_client,
            client=http_client,
            excluded_endpoints=self.settings.excluded_endpoints,
            refresh_network_retries=self.settings.refresh_network_retries,
            refresh_retry_delay=self.settings.refresh_retry_delay_seconds,
            request_max_retries=self.settings.request_max_retries,
            request_retry_delay=self.settings.request_retry_delay_seconds,
            default_timeout=self.settings.request_timeout_seconds,
        )
        logger.info("runtime_init_completed")

    async def start(self) -> Optional[ValidationResult]:
        """Resume a session restored from storage and start its timers.

        Returns the validation result, or None when nothing was restored.
        """
        return await self.session_manager.resume()

    async def login(self, credentials, *, mfa_code: Optional[str] = None):
        """Log in through the configured issuer; MFA is checked when a code is given."""
        return await self.session_manager.login(
            self.identity_client,
            credentials,
            mfa_code=mfa_code,
            mfa_verifier=self.mfa_verifier if mfa_code else None,
        )

    async def shutdown(self) -> None:
        await self.coordinator.aclose()
        await self.session_manager.shutdown()
        await self.identity_client.aclose()
        await self.mfa_verifier.aclose()
        self.bus.close()
        logger.info("runtime_shutdown_completed")
