from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.events import EventBus, Topic
from sessionguard.storage.backends import DurableStorage
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.models import (
    EVENT_DETAIL_TYPES,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    SessionValidatedDetails,
    utc_now,
)

logger = get_logger(__name__)

EVENTS_KEY = "sessionguard.security_events"


def serialize_event(event: SecurityEvent) -> dict:
    details = asdict(event.details)
    if isinstance(event.details, SessionValidatedDetails) and event.details.previous_risk:
        details["previous_risk"] = event.details.previous_risk.value
    return {
        "id": event.id,
        "type": event.type.value,
        "message": event.message,
        "timestamp": event.timestamp.isoformat(),
        "risk_level": event.risk_level.value,
        "details": details,
    }


def deserialize_event(data: dict) -> SecurityEvent:
    event_type = SecurityEventType(data["type"])
    details_cls = EVENT_DETAIL_TYPES[event_type]
    raw_details = dict(data.get("details") or {})
    if details_cls is SessionValidatedDetails and raw_details.get("previous_risk"):
        raw_details["previous_risk"] = RiskLevel(raw_details["previous_risk"])
    return SecurityEvent(
        id=str(data["id"]),
        type=event_type,
        message=str(data.get("message", "")),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
        details=details_cls(**raw_details),
    )


class SecurityEventLog:
    """Bounded, persisted, append-only audit trail.

    Entries are never mutated. Once ``max_events`` is reached the oldest
    entry is evicted. The list is written through on every append so the
    trail survives a crash immediately after a security-relevant action.
    """

    def __init__(
        self,
        backend: DurableStorage,
        *,
        bus: Optional[EventBus] = None,
        max_events: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self.backend = backend
        self.bus = bus
        self.max_events = max_events
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._events: List[SecurityEvent] = self._load()

    def _load(self) -> List[SecurityEvent]:
        try:
            raw = self.backend.get(EVENTS_KEY)
        except StorageUnavailable as exc:
            logger.error("security_events_unreadable", error=str(exc))
            return []
        if not raw:
            return []
        try:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("security event list is not a list")
            events = [deserialize_event(item) for item in items]
        except (ValueError, KeyError, TypeError) as exc:
            logger.error(
                "security_events_corrupt", error=str(exc), error_type=type(exc).__name__
            )
            return []
        return events[-self.max_events :]

    def _persist(self) -> None:
        payload = json.dumps([serialize_event(e) for e in self._events])
        try:
            self.backend.set(EVENTS_KEY, payload)
        except StorageUnavailable as exc:
            # The in-memory trail stays authoritative for this process
            logger.error("security_events_persist_failed", error=str(exc))

    def record(self, event: SecurityEvent) -> SecurityEvent:
        with self._lock:
            self._events.append(event)
            overflow = len(self._events) - self.max_events
            if overflow > 0:
                del self._events[:overflow]
            self._persist()

        log_kwargs = {
            "event_type": event.type.value,
            "risk_level": event.risk_level.value,
            "event_id": event.id,
        }
        if event.risk_level == RiskLevel.HIGH:
            logger.warning("security_event_high_risk", message=event.message, **log_kwargs)
        else:
            logger.info("security_event_recorded", **log_kwargs)
        if self.bus is not None:
            self.bus.publish(Topic.SECURITY_EVENT_RECORDED, event)
        return event

    def list(
        self, window: Optional[timedelta] = None, limit: Optional[int] = None
    ) -> List[SecurityEvent]:
        """Events newest first, optionally restricted to the trailing ``window``."""
        with self._lock:
            events = list(reversed(self._events))
        if window is not None:
            cutoff = self._clock() - window
            events = [e for e in events if e.timestamp >= cutoff]
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

    def has_risk_since(self, level: RiskLevel, window: timedelta) -> bool:
        cutoff = self._clock() - window
        with self._lock:
            return any(
                e.timestamp >= cutoff and e.risk_level.at_least(level) for e in self._events
            )

    def clear(self) -> None:
        with self._lock:
            count = len(self._events)
            self._events = []
            try:
                self.backend.delete(EVENTS_KEY)
            except StorageUnavailable as exc:
                logger.error("security_events_clear_failed", error=str(exc))
        logger.info("security_events_cleared", count=count)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
