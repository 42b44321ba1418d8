from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple, Union


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class RiskLevel(str, Enum):
    """Coarse trust classification of a session/device pairing."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def max_risk(*levels: Optional[RiskLevel]) -> RiskLevel:
    """Return the worst of the given risk levels (``None`` entries are ignored)."""
    present = [RiskLevel(level) for level in levels if level is not None]
    if not present:
        return RiskLevel.LOW
    return max(present, key=lambda level: level.rank)


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    issued_at: Optional[datetime] = None

    @classmethod
    def from_ttl(
        cls,
        access_token: str,
        refresh_token: str,
        ttl_seconds: float,
        *,
        token_type: str = "Bearer",
        issued_at: Optional[datetime] = None,
    ) -> "TokenBundle":
        issued = issued_at or utc_now()
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            token_type=token_type or "Bearer",
            issued_at=issued,
        )


@dataclass
class CustomerData:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    is_email_verified: bool = False
    last_login_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeviceFingerprint:
    id: str
    raw_signals: Tuple[Tuple[str, str], ...]
    generated_at: datetime
    confidence: RiskLevel = RiskLevel.HIGH

    def signal_map(self) -> Dict[str, str]:
        return dict(self.raw_signals)


@dataclass(frozen=True)
class DeviceValidation:
    consistent: bool
    risk_contribution: RiskLevel
    similarity: float
    is_new_device: bool = False


class SessionState(str, Enum):
    CREATED = "created"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    TERMINATED = "terminated"

    @property
    def is_live(self) -> bool:
        return self in (SessionState.CREATED, SessionState.VALID, SessionState.EXPIRING_SOON)


@dataclass
class Session:
    session_id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    max_inactivity: timedelta
    risk_level: RiskLevel
    fingerprint_id: str
    state: SessionState = SessionState.CREATED

    @classmethod
    def new(
        cls,
        user_id: str,
        fingerprint_id: str,
        *,
        max_inactivity: timedelta,
        risk_level: RiskLevel = RiskLevel.LOW,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utc_now()
        return cls(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=created,
            last_activity=created,
            max_inactivity=max_inactivity,
            risk_level=risk_level,
            fingerprint_id=fingerprint_id,
        )

    def inactive_for(self, now: datetime) -> timedelta:
        return now - self.last_activity

    def time_remaining(self, now: datetime) -> timedelta:
        remaining = self.max_inactivity - self.inactive_for(now)
        return max(remaining, timedelta(0))


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    risk_level: RiskLevel
    reasons: Tuple[str, ...] = ()
    state: Optional[SessionState] = None
    requires_reauth: bool = False
    device_changed: bool = False


class SecurityEventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    SESSION_CREATED = "session_created"
    SESSION_VALIDATED = "session_validated"
    SECURITY_WARNING = "security_warning"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


@dataclass(frozen=True)
class LoginDetails:
    user_id: str
    session_id: Optional[str] = None
    mfa_verified: bool = False


@dataclass(frozen=True)
class LogoutDetails:
    session_id: str
    reason: str


@dataclass(frozen=True)
class SessionCreatedDetails:
    session_id: str
    user_id: str
    fingerprint_id: str
    is_new_device: bool = False


@dataclass(frozen=True)
class SessionValidatedDetails:
    session_id: str
    trigger: str = "validation"
    previous_risk: Optional[RiskLevel] = None


@dataclass(frozen=True)
class SecurityWarningDetails:
    reason: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class SuspiciousActivityDetails:
    reason: str
    session_id: Optional[str] = None
    fingerprint_id: Optional[str] = None
    similarity: Optional[float] = None


EventDetails = Union[
    LoginDetails,
    LogoutDetails,
    SessionCreatedDetails,
    SessionValidatedDetails,
    SecurityWarningDetails,
    SuspiciousActivityDetails,
]

EVENT_DETAIL_TYPES: Dict[SecurityEventType, type] = {
    SecurityEventType.LOGIN: LoginDetails,
    SecurityEventType.LOGOUT: LogoutDetails,
    SecurityEventType.SESSION_CREATED: SessionCreatedDetails,
    SecurityEventType.SESSION_VALIDATED: SessionValidatedDetails,
    SecurityEventType.SECURITY_WARNING: SecurityWarningDetails,
    SecurityEventType.SUSPICIOUS_ACTIVITY: SuspiciousActivityDetails,
}


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    type: SecurityEventType
    message: str
    timestamp: datetime
    risk_level: RiskLevel
    details: EventDetails

    def __post_init__(self) -> None:
        expected = EVENT_DETAIL_TYPES[SecurityEventType(self.type)]
        if not isinstance(self.details, expected):
            raise TypeError(
                f"{self.type} events require {expected.__name__} details, "
                f"got {type(self.details).__name__}"
            )

    @classmethod
    def new(
        cls,
        type: SecurityEventType,
        message: str,
        details: EventDetails,
        *,
        risk_level: RiskLevel = RiskLevel.LOW,
        timestamp: Optional[datetime] = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            type=SecurityEventType(type),
            message=message,
            timestamp=timestamp or utc_now(),
            risk_level=RiskLevel(risk_level),
            details=details,
        )


@dataclass(frozen=True)
class LoginResult:
    """What a successful credential exchange yields."""

    bundle: TokenBundle
    customer: Optional[CustomerData] = None


@dataclass(frozen=True)
class SecurityStatus:
    """Point-in-time security report for the current credentials and device."""

    is_authenticated: bool
    token_valid: bool
    device_trusted: bool
    risk_level: RiskLevel
    checked_at: datetime
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MFAVerification:
    is_valid: bool
    method: str = "totp"


@dataclass(frozen=True)
class CoordinatorStatus:
    active: bool
    token_present: bool
    refreshing: bool = False
    waiters: int = 0
    refresh_count: int = field(default=0, compare=False)
