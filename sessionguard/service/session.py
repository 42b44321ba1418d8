from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sessionguard.logging import get_logger, mask_identifier
from sessionguard.service.errors import (
    AuthenticationError,
    AuthenticationRequiredError,
    DeviceMismatchError,
    RefreshFailedError,
    StorageIntegrityError,
)
from sessionguard.service.event_log import SecurityEventLog
from sessionguard.service.events import EventBus, Topic
from sessionguard.service.fingerprint import DeviceFingerprinter, ensure_consistent
from sessionguard.service.issuer import IdentityClient, MFAVerifier
from sessionguard.service.scheduler import PeriodicTask
from sessionguard.service.token_store import SecureTokenStore
from sessionguard.storage.backends import DurableStorage
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.models import (
    CustomerData,
    DeviceFingerprint,
    LoginDetails,
    LogoutDetails,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    SecurityStatus,
    SecurityWarningDetails,
    Session,
    SessionCreatedDetails,
    SessionState,
    SessionValidatedDetails,
    SuspiciousActivityDetails,
    TokenBundle,
    ValidationResult,
    max_risk,
    utc_now,
)

logger = get_logger(__name__)

SESSION_KEY = "sessionguard.session"
KNOWN_DEVICE_KEY = "sessionguard.known_device"
SESSION_REGISTRY_KEY = "sessionguard.sessions"


def _fingerprint_to_dict(fp: DeviceFingerprint) -> dict:
    return {
        "id": fp.id,
        "signals": [list(pair) for pair in fp.raw_signals],
        "generated_at": fp.generated_at.isoformat(),
        "confidence": fp.confidence.value,
    }


def _fingerprint_from_dict(data: Mapping[str, Any]) -> DeviceFingerprint:
    return DeviceFingerprint(
        id=str(data["id"]),
        raw_signals=tuple((str(name), str(value)) for name, value in data["signals"]),
        generated_at=datetime.fromisoformat(data["generated_at"]),
        confidence=RiskLevel(data.get("confidence", RiskLevel.HIGH.value)),
    )


class SessionManager:
    """Single authority over the active session.

    Owns the session record, recomputes risk on validation, and is the only
    writer of the token bundle (login, refresh, terminate). Two periodic
    tasks run while a session is live: a full validation every
    ``validation_interval`` and a countdown tick every ``countdown_interval``
    that surfaces the expiring-soon condition to subscribers.
    """

    def __init__(
        self,
        token_store: SecureTokenStore,
        fingerprinter: DeviceFingerprinter,
        event_log: SecurityEventLog,
        backend: DurableStorage,
        *,
        bus: Optional[EventBus] = None,
        max_inactivity: timedelta = timedelta(minutes=30),
        expiring_soon: timedelta = timedelta(minutes=5),
        validation_interval: float = 300.0,
        countdown_interval: float = 30.0,
        high_risk_window: timedelta = timedelta(hours=24),
        max_concurrent_sessions: int = 3,
        known_device_max_age: timedelta = timedelta(days=30),
        fingerprint_validation_enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.token_store = token_store
        self.fingerprinter = fingerprinter
        self.event_log = event_log
        self.backend = backend
        self.bus = bus
        self.max_inactivity = max_inactivity
        self.expiring_soon = expiring_soon
        self.high_risk_window = high_risk_window
        self.max_concurrent_sessions = max(1, max_concurrent_sessions)
        self.known_device_max_age = known_device_max_age
        self.fingerprint_validation_enabled = fingerprint_validation_enabled
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._reference: Optional[DeviceFingerprint] = None
        self._baseline_risk = RiskLevel.LOW
        self._expiring_notified = False
        self._last_mismatch_id: Optional[str] = None
        # Bumped whenever the active session is created or torn down
        self._generation = 0
        self._validation_task = PeriodicTask(
            "session-validation", validation_interval, self._validation_tick
        )
        self._countdown_task = PeriodicTask(
            "session-countdown", countdown_interval, self._countdown_tick
        )
        self._remove_integrity_hook = token_store.add_integrity_hook(self._on_integrity_failure)
        self._restore_session()

    # ------------------------------------------------------------- properties

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> Optional[SessionState]:
        session = self._session
        return session.state if session is not None else None

    @property
    def timers_running(self) -> bool:
        return self._validation_task.running or self._countdown_task.running

    # ---------------------------------------------------------------- create

    async def create_session(
        self,
        user_id: str,
        *,
        max_inactivity: Optional[timedelta] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> Session:
        now = self._clock()
        current = self.fingerprinter.generate_fingerprint()
        known = self._load_known_device()
        validation = self.fingerprinter.validate_device_for_auth(current, known)

        baseline = RiskLevel(risk_level) if risk_level is not None else RiskLevel.LOW
        initial_risk = baseline
        if self.fingerprint_validation_enabled:
            initial_risk = max_risk(baseline, validation.risk_contribution)

        await self._stop_timers()
        session = Session.new(
            user_id,
            current.id,
            max_inactivity=max_inactivity or self.max_inactivity,
            risk_level=initial_risk,
            now=now,
        )
        with self._lock:
            previous = self._session
            if previous is not None and not previous.state.is_live:
                previous = None
            if previous is not None:
                previous.state = SessionState.TERMINATED
            self._session = session
            self._reference = current
            self._baseline_risk = baseline
            self._expiring_notified = False
            self._last_mismatch_id = None
            self._generation += 1
            self._persist_session()
            evicted = self._admit_session(session, previous)
        if previous is not None:
            self._record(
                SecurityEventType.SECURITY_WARNING,
                "Active session replaced by a new session",
                SecurityWarningDetails(reason="session_replaced", session_id=previous.session_id),
                risk_level=RiskLevel.LOW,
            )
            logger.info(
                "session_replaced",
                previous_session_id=mask_identifier(previous.session_id),
            )
        for entry in evicted:
            self._record(
                SecurityEventType.SECURITY_WARNING,
                "Oldest session evicted: concurrent session limit reached",
                SecurityWarningDetails(
                    reason="concurrent_session_limit", session_id=entry["session_id"]
                ),
                risk_level=RiskLevel.MEDIUM,
            )
            logger.warning(
                "concurrent_session_evicted",
                session_id=mask_identifier(entry["session_id"]),
                limit=self.max_concurrent_sessions,
            )
        self._save_known_device(current)

        if self.fingerprint_validation_enabled and validation.risk_contribution == RiskLevel.HIGH:
            self._record(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                "Session created from a device that does not match the known device",
                SuspiciousActivityDetails(
                    reason="unrecognized_device",
                    session_id=session.session_id,
                    fingerprint_id=current.id,
                    similarity=validation.similarity,
                ),
                risk_level=RiskLevel.HIGH,
            )
        self._record(
            SecurityEventType.SESSION_CREATED,
            "Session created",
            SessionCreatedDetails(
                session_id=session.session_id,
                user_id=user_id,
                fingerprint_id=current.id,
                is_new_device=validation.is_new_device,
            ),
            risk_level=initial_risk,
        )
        logger.info(
            "session_created",
            session_id=mask_identifier(session.session_id),
            user_id=mask_identifier(user_id),
            risk_level=initial_risk.value,
            is_new_device=validation.is_new_device,
        )
        self._start_timers()
        return session

    async def login(
        self,
        identity_client: IdentityClient,
        credentials: Mapping[str, Any],
        *,
        mfa_code: Optional[str] = None,
        mfa_verifier: Optional[MFAVerifier] = None,
        customer_data: Optional[CustomerData] = None,
        max_inactivity: Optional[timedelta] = None,
    ) -> Session:
        """Authenticate against the issuer, verify MFA when configured, open a session.

        Tokens are only stored once every factor has been verified.
        """
        login_id = str(credentials.get("email") or credentials.get("username") or "")
        try:
            result = await identity_client.login(credentials)
        except AuthenticationError:
            self._record(
                SecurityEventType.SECURITY_WARNING,
                "Login rejected by identity issuer",
                SecurityWarningDetails(reason="login_rejected"),
                risk_level=RiskLevel.MEDIUM,
            )
            raise

        bundle = result.bundle
        customer = customer_data or result.customer
        user_id = customer.id if customer is not None else login_id

        mfa_verified = False
        if mfa_verifier is not None:
            if not mfa_code:
                raise AuthenticationError(
                    "multi-factor code required", error_code="mfa_required"
                )
            result = await mfa_verifier.verify_code(user_id, mfa_code)
            if not result.is_valid:
                self._record(
                    SecurityEventType.SECURITY_WARNING,
                    "Multi-factor verification failed",
                    SecurityWarningDetails(reason="mfa_verification_failed"),
                    risk_level=RiskLevel.MEDIUM,
                )
                raise AuthenticationError(
                    "multi-factor verification failed", error_code="mfa_failed"
                )
            mfa_verified = True

        session = await self.create_session(user_id, max_inactivity=max_inactivity)
        with self._lock:
            # A new login never inherits the previous credentials or profile
            self.token_store.clear_tokens()
            self.token_store.store_tokens(bundle, customer, fingerprint_id=session.fingerprint_id)
        self._record(
            SecurityEventType.LOGIN,
            "User logged in",
            LoginDetails(
                user_id=user_id, session_id=session.session_id, mfa_verified=mfa_verified
            ),
            risk_level=session.risk_level,
        )
        return session

    # -------------------------------------------------------------- validate

    async def validate_current_session(self) -> ValidationResult:
        """Recompute validity and risk for the active session.

        Never raises for validation failures: an invalid result tears the
        session down and the caller must re-authenticate.
        """
        now = self._clock()
        with self._lock:
            session = self._session
            live = session is not None and session.state.is_live

        if not live:
            self._record(
                SecurityEventType.SECURITY_WARNING,
                "Session validation requested without an active session",
                SecurityWarningDetails(
                    reason="no_active_session",
                    session_id=session.session_id if session is not None else None,
                ),
                risk_level=RiskLevel.MEDIUM,
            )
            return ValidationResult(
                is_valid=False,
                risk_level=RiskLevel.MEDIUM,
                reasons=("no_active_session",),
                state=session.state if session is not None else None,
                requires_reauth=True,
            )

        if session.inactive_for(now) >= session.max_inactivity:
            return await self._expire(session, now)

        if not self._is_registered(session):
            await self.terminate_session("concurrent_session_evicted", voluntary=False)
            return ValidationResult(
                is_valid=False,
                risk_level=RiskLevel.MEDIUM,
                reasons=("concurrent_session_evicted",),
                state=SessionState.TERMINATED,
                requires_reauth=True,
            )

        try:
            self.token_store.require_integrity()
        except StorageIntegrityError:
            await self.terminate_session("storage_integrity_failure", voluntary=False)
            return ValidationResult(
                is_valid=False,
                risk_level=RiskLevel.HIGH,
                reasons=("storage_integrity_failure",),
                state=SessionState.TERMINATED,
                requires_reauth=True,
            )

        reasons = []
        device_risk, device_changed = self._device_risk(session)
        if device_changed:
            reasons.append("device_changed")
        history_risk = RiskLevel.LOW
        if self.event_log.has_risk_since(RiskLevel.HIGH, self.high_risk_window):
            history_risk = RiskLevel.MEDIUM
            reasons.append("recent_high_risk_event")
        expiring = session.time_remaining(now) < self.expiring_soon
        if expiring:
            reasons.append("expiring_soon")
        risk = max_risk(
            self._baseline_risk,
            device_risk,
            history_risk,
            RiskLevel.MEDIUM if expiring else RiskLevel.LOW,
        )

        with self._lock:
            previous_risk = session.risk_level
            session.risk_level = risk
            session.state = SessionState.EXPIRING_SOON if expiring else SessionState.VALID
            self._persist_session()

        if risk != previous_risk:
            self._record(
                SecurityEventType.SESSION_VALIDATED,
                f"Session risk changed from {previous_risk.value} to {risk.value}",
                SessionValidatedDetails(
                    session_id=session.session_id, previous_risk=previous_risk
                ),
                risk_level=risk,
            )
        self._start_timers()
        return ValidationResult(
            is_valid=True,
            risk_level=risk,
            reasons=tuple(reasons),
            state=session.state,
            device_changed=device_changed,
        )

    def _device_risk(self, session: Session) -> Tuple[RiskLevel, bool]:
        if not self.fingerprint_validation_enabled:
            return RiskLevel.LOW, False
        current = self.fingerprinter.generate_fingerprint()
        validation = self.fingerprinter.validate_device_for_auth(current, self._reference)
        changed = current.id != session.fingerprint_id
        try:
            ensure_consistent(validation)
        except DeviceMismatchError:
            # Non-fatal: escalates risk, recorded once per distinct foreign fingerprint
            if self._last_mismatch_id != current.id:
                self._last_mismatch_id = current.id
                self._record(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    "Device fingerprint no longer matches the session device",
                    SuspiciousActivityDetails(
                        reason="device_mismatch",
                        session_id=session.session_id,
                        fingerprint_id=current.id,
                        similarity=validation.similarity,
                    ),
                    risk_level=RiskLevel.HIGH,
                )
            logger.warning(
                "session_device_mismatch",
                session_id=mask_identifier(session.session_id),
                similarity=round(validation.similarity, 3),
            )
        return validation.risk_contribution, changed

    async def _expire(self, session: Session, now: datetime) -> ValidationResult:
        idle = session.inactive_for(now)
        self._record(
            SecurityEventType.SECURITY_WARNING,
            "Session expired after inactivity",
            SecurityWarningDetails(reason="inactivity_timeout", session_id=session.session_id),
            risk_level=RiskLevel.MEDIUM,
        )
        await self._teardown(session, SessionState.EXPIRED, "inactivity_timeout", voluntary=False)
        logger.info(
            "session_expired",
            session_id=mask_identifier(session.session_id),
            idle_seconds=idle.total_seconds(),
        )
        return ValidationResult(
            is_valid=False,
            risk_level=max_risk(session.risk_level, RiskLevel.MEDIUM),
            reasons=("inactivity_timeout",),
            state=SessionState.EXPIRED,
            requires_reauth=True,
        )

    # ------------------------------------------------------------- terminate

    async def terminate_session(self, reason: str = "user_logout", *, voluntary: bool = True) -> None:
        """End the session and wipe credentials. Safe to call repeatedly."""
        with self._lock:
            session = self._session
            live = session is not None and session.state.is_live
        if not live:
            self.token_store.clear_tokens()
            await self._stop_timers()
            return

        if voluntary:
            self._record(
                SecurityEventType.LOGOUT,
                "User logged out",
                LogoutDetails(session_id=session.session_id, reason=reason),
                risk_level=RiskLevel.LOW,
            )
        else:
            self._record(
                SecurityEventType.SECURITY_WARNING,
                f"Session terminated: {reason}",
                SecurityWarningDetails(reason=reason, session_id=session.session_id),
                risk_level=RiskLevel.MEDIUM,
            )
        await self._teardown(session, SessionState.TERMINATED, reason, voluntary=voluntary)
        logger.info(
            "session_terminated",
            session_id=mask_identifier(session.session_id),
            reason=reason,
            voluntary=voluntary,
        )

    async def _teardown(
        self, session: Session, state: SessionState, reason: str, *, voluntary: bool
    ) -> None:
        with self._lock:
            owns_state = self._owns_durable_state(session)
            self.token_store.clear_tokens(durable=owns_state)
            session.state = state
            self._expiring_notified = False
            self._generation += 1
            self._unregister_session(session)
            if owns_state:
                try:
                    self.backend.delete(SESSION_KEY)
                except StorageUnavailable as exc:
                    logger.error("session_delete_failed", error=str(exc))
        await self._stop_timers()
        if self.bus is not None:
            self.bus.publish(
                Topic.SESSION_TERMINATED,
                {
                    "session_id": session.session_id,
                    "reason": reason,
                    "state": state.value,
                    "voluntary": voluntary,
                },
            )

    # -------------------------------------------------------------- activity

    def update_last_activity(self) -> None:
        """Bump ``last_activity``. Risk is not recomputed here."""
        now = self._clock()
        with self._lock:
            session = self._session
            if session is None or not session.state.is_live:
                return
            session.last_activity = now
            if session.time_remaining(now) >= self.expiring_soon:
                self._expiring_notified = False
                if session.state == SessionState.EXPIRING_SOON:
                    session.state = SessionState.VALID
            self._persist_session()
            self._touch_registry(session)

    def time_remaining(self) -> timedelta:
        session = self._session
        if session is None or not session.state.is_live:
            return timedelta(0)
        return session.time_remaining(self._clock())

    def is_expiring_soon(self) -> bool:
        session = self._session
        if session is None or not session.state.is_live:
            return False
        return self.time_remaining() < self.expiring_soon

    # --------------------------------------------------------------- refresh

    async def refresh_tokens(self, identity_client: IdentityClient) -> TokenBundle:
        """Rotate the token bundle. Called by the refresh coordinator only.

        A bundle that arrives after the session it was requested for has
        ended or been replaced is discarded and
        :class:`AuthenticationRequiredError` is raised instead.
        """
        with self._lock:
            session = self._session
            generation = self._generation
        refresh_token = self.token_store.get_refresh_token()
        if refresh_token is None:
            raise RefreshFailedError("no usable refresh token")
        bundle = await identity_client.refresh(refresh_token)

        with self._lock:
            ended = self._generation != generation or (
                session is not None and not session.state.is_live
            )
            if not ended:
                fingerprint = session.fingerprint_id if session is not None else None
                self.token_store.store_tokens(bundle, fingerprint_id=fingerprint)
        if ended:
            logger.info(
                "token_refresh_discarded",
                session_id=mask_identifier(session.session_id) if session else None,
            )
            raise AuthenticationRequiredError(
                "session ended while tokens were being refreshed",
                detail={"reason": "session_ended"},
            )
        if session is not None:
            self._record(
                SecurityEventType.SESSION_VALIDATED,
                "Tokens refreshed",
                SessionValidatedDetails(session_id=session.session_id, trigger="refresh"),
                risk_level=session.risk_level,
            )
        else:
            logger.info("tokens_refreshed_without_session")
        return bundle

    # ---------------------------------------------------------------- timers

    def _start_timers(self) -> None:
        self._validation_task.start()
        self._countdown_task.start()

    async def _stop_timers(self) -> None:
        await self._validation_task.stop()
        await self._countdown_task.stop()

    async def _validation_tick(self) -> None:
        await self.validate_current_session()

    async def _countdown_tick(self) -> None:
        with self._lock:
            session = self._session
            if session is None or not session.state.is_live:
                return
        remaining = self.time_remaining()
        if remaining <= timedelta(0):
            await self.validate_current_session()
            return
        if remaining >= self.expiring_soon:
            return
        with self._lock:
            if self._expiring_notified:
                return
            self._expiring_notified = True
            session.state = SessionState.EXPIRING_SOON
            self._persist_session()
        logger.info(
            "session_expiring_soon",
            session_id=mask_identifier(session.session_id),
            remaining_seconds=remaining.total_seconds(),
        )
        if self.bus is not None:
            self.bus.publish(
                Topic.SESSION_EXPIRING_SOON,
                {"session_id": session.session_id, "remaining": remaining},
            )

    async def resume(self) -> Optional[ValidationResult]:
        """Validate a session restored from storage, starting its timers if it survives."""
        with self._lock:
            session = self._session
            live = session is not None and session.state.is_live
        if not live:
            return None
        logger.info("session_resuming", session_id=mask_identifier(session.session_id))
        return await self.validate_current_session()

    def security_status(self) -> SecurityStatus:
        """Aggregate report on credentials, device trust and session health.

        Reads fail closed like every other token-store query, so a tampered
        blob is wiped as a side effect of asking.
        """
        recommendations: List[str] = []
        risk = RiskLevel.LOW

        is_authenticated = self.token_store.is_authenticated()
        token_valid = self.token_store.validate_token_integrity()

        device_trusted = True
        if self.fingerprint_validation_enabled and self._reference is not None:
            current = self.fingerprinter.generate_fingerprint()
            validation = self.fingerprinter.validate_device_for_auth(current, self._reference)
            device_trusted = validation.consistent
        if not device_trusted:
            risk = RiskLevel.HIGH
            recommendations.append("Device fingerprint changed; re-authentication advised")

        if self.token_store.is_token_expiring_soon():
            risk = max_risk(risk, RiskLevel.MEDIUM)
            recommendations.append("Access token expiring soon; refresh recommended")

        if self.token_store.has_stored_tokens() and not self.token_store.has_device_key():
            risk = RiskLevel.HIGH
            recommendations.append("Device key missing; stored credentials cannot be read")

        customer = self.token_store.get_customer_data()
        if customer is not None and customer.last_login_at is not None:
            if self._clock() - customer.last_login_at > self.token_store.refresh_token_max_age:
                risk = max_risk(risk, RiskLevel.MEDIUM)
                recommendations.append("Last login is older than the refresh token lifetime")

        if self.token_store.get_refresh_token() is None:
            risk = RiskLevel.HIGH
            recommendations.append("Refresh token missing; re-authentication required")

        return SecurityStatus(
            is_authenticated=is_authenticated,
            token_valid=token_valid,
            device_trusted=device_trusted,
            risk_level=risk,
            checked_at=self._clock(),
            recommendations=tuple(recommendations),
        )

    async def shutdown(self) -> None:
        """Stop background work. The session itself survives for the next run."""
        await self._stop_timers()
        self._remove_integrity_hook()

    # ----------------------------------------------------------- persistence

    def _record(
        self,
        event_type: SecurityEventType,
        message: str,
        details,
        *,
        risk_level: RiskLevel,
    ) -> SecurityEvent:
        event = SecurityEvent.new(
            event_type, message, details, risk_level=risk_level, timestamp=self._clock()
        )
        return self.event_log.record(event)

    def _on_integrity_failure(self, reason: str) -> None:
        session = self._session
        self._record(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            "Stored credentials failed integrity verification",
            SuspiciousActivityDetails(
                reason=f"token_storage_{reason}",
                session_id=session.session_id if session is not None else None,
                fingerprint_id=session.fingerprint_id if session is not None else None,
            ),
            risk_level=RiskLevel.HIGH,
        )

    def _persist_session(self) -> None:
        session = self._session
        if session is None:
            return
        record = {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "created_at": session.created_at.isoformat(),
            "last_activity": session.last_activity.isoformat(),
            "max_inactivity_seconds": session.max_inactivity.total_seconds(),
            "risk_level": session.risk_level.value,
            "baseline_risk": self._baseline_risk.value,
            "fingerprint_id": session.fingerprint_id,
            "state": session.state.value,
            "fingerprint": _fingerprint_to_dict(self._reference) if self._reference else None,
        }
        try:
            self.backend.set(SESSION_KEY, json.dumps(record))
        except StorageUnavailable as exc:
            logger.error("session_persist_failed", error=str(exc))

    def _restore_session(self) -> None:
        try:
            raw = self.backend.get(SESSION_KEY)
        except StorageUnavailable as exc:
            logger.error("session_restore_unreadable", error=str(exc))
            return
        if not raw:
            return
        try:
            record = json.loads(raw)
            session = Session(
                session_id=str(record["session_id"]),
                user_id=str(record["user_id"]),
                created_at=datetime.fromisoformat(record["created_at"]),
                last_activity=datetime.fromisoformat(record["last_activity"]),
                max_inactivity=timedelta(seconds=float(record["max_inactivity_seconds"])),
                risk_level=RiskLevel(record["risk_level"]),
                fingerprint_id=str(record["fingerprint_id"]),
                state=SessionState(record["state"]),
            )
            reference = (
                _fingerprint_from_dict(record["fingerprint"]) if record.get("fingerprint") else None
            )
            baseline = RiskLevel(record.get("baseline_risk", RiskLevel.LOW.value))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("session_restore_corrupt", error_type=type(exc).__name__)
            self.backend.delete(SESSION_KEY)
            return
        if not session.state.is_live:
            self.backend.delete(SESSION_KEY)
            return
        self._session = session
        self._reference = reference
        self._baseline_risk = baseline
        logger.info("session_restored", session_id=mask_identifier(session.session_id))

    def _owns_durable_state(self, session: Session) -> bool:
        """True unless the persisted session record belongs to another session."""
        try:
            raw = self.backend.get(SESSION_KEY)
            if not raw:
                return True
            return json.loads(raw).get("session_id") == session.session_id
        except (StorageUnavailable, ValueError, AttributeError):
            return True

    # Registry of live sessions sharing this backend, one entry per session

    def _load_registry(self) -> Optional[List[Dict[str, Any]]]:
        try:
            raw = self.backend.get(SESSION_REGISTRY_KEY)
        except StorageUnavailable as exc:
            logger.warning("session_registry_unreadable", error=str(exc))
            return None
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except ValueError:
            logger.warning("session_registry_corrupt")
            return None
        if not isinstance(entries, list):
            logger.warning("session_registry_corrupt")
            return None
        return [e for e in entries if isinstance(e, dict) and e.get("session_id")]

    def _save_registry(self, entries: List[Dict[str, Any]]) -> None:
        try:
            self.backend.set(SESSION_REGISTRY_KEY, json.dumps(entries))
        except StorageUnavailable as exc:
            logger.error("session_registry_persist_failed", error=str(exc))

    @staticmethod
    def _registry_entry(session: Session) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "fingerprint_id": session.fingerprint_id,
            "last_activity": session.last_activity.isoformat(),
        }

    def _admit_session(
        self, session: Session, previous: Optional[Session]
    ) -> List[Dict[str, Any]]:
        """Register ``session``; return the entries evicted to respect the cap."""
        entries = self._load_registry() or []
        if previous is not None:
            entries = [e for e in entries if e["session_id"] != previous.session_id]
        same_user = sorted(
            (e for e in entries if e.get("user_id") == session.user_id),
            key=lambda e: str(e.get("last_activity", "")),
        )
        evicted = []
        while len(same_user) >= self.max_concurrent_sessions:
            oldest = same_user.pop(0)
            entries.remove(oldest)
            evicted.append(oldest)
        entries.append(self._registry_entry(session))
        self._save_registry(entries)
        return evicted

    def _is_registered(self, session: Session) -> bool:
        entries = self._load_registry()
        if entries is None:
            # Unreadable registry: do not end sessions on a storage fault
            return True
        return any(e["session_id"] == session.session_id for e in entries)

    def _touch_registry(self, session: Session) -> None:
        entries = self._load_registry()
        if not entries:
            return
        for entry in entries:
            if entry["session_id"] == session.session_id:
                entry["last_activity"] = session.last_activity.isoformat()
                self._save_registry(entries)
                return

    def _unregister_session(self, session: Session) -> None:
        entries = self._load_registry()
        if not entries:
            return
        remaining = [e for e in entries if e["session_id"] != session.session_id]
        if len(remaining) != len(entries):
            self._save_registry(remaining)

    def _load_known_device(self) -> Optional[DeviceFingerprint]:
        try:
            raw = self.backend.get(KNOWN_DEVICE_KEY)
        except StorageUnavailable as exc:
            logger.warning("known_device_unreadable", error=str(exc))
            return None
        if not raw:
            return None
        try:
            record = json.loads(raw)
            recorded_at = datetime.fromisoformat(record["recorded_at"])
            fingerprint = _fingerprint_from_dict(record["fingerprint"])
        except (ValueError, KeyError, TypeError):
            logger.warning("known_device_corrupt")
            return None
        if self._clock() - recorded_at > self.known_device_max_age:
            logger.info("known_device_stale", recorded_at=recorded_at.isoformat())
            return None
        return fingerprint

    def _save_known_device(self, fingerprint: DeviceFingerprint) -> None:
        record = {
            "fingerprint": _fingerprint_to_dict(fingerprint),
            "recorded_at": self._clock().isoformat(),
        }
        try:
            self.backend.set(KNOWN_DEVICE_KEY, json.dumps(record))
        except StorageUnavailable as exc:
            logger.warning("known_device_persist_failed", error=str(exc))
