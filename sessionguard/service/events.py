from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class Topic(str, Enum):
    SECURITY_EVENT_RECORDED = "security-event-recorded"
    SESSION_EXPIRING_SOON = "session-expiring-soon"
    SESSION_TERMINATED = "session-terminated"
    TOKENS_UPDATED = "tokens-updated"
    TOKENS_CLEARED = "tokens-cleared"


Listener = Callable[[Topic, Any], None]


@dataclass
class Subscription:
    """Revocable handle returned by :meth:`EventBus.subscribe`."""

    topic: Topic
    listener: Listener
    _bus: "EventBus" = field(repr=False)
    active: bool = True

    def revoke(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Synchronous publish/subscribe channel for UI-facing notifications.

    Listener failures are logged and isolated so one broken subscriber can
    never interrupt a security-critical code path.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[Topic, List[Subscription]] = {}

    def subscribe(self, topic: Topic, listener: Listener) -> Subscription:
        topic = Topic(topic)
        sub = Subscription(topic=topic, listener=listener, _bus=self)
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)

    def publish(self, topic: Topic, payload: Any = None) -> int:
        topic = Topic(topic)
        with self._lock:
            subs = list(self._subscriptions.get(topic, []))
        delivered = 0
        for sub in subs:
            try:
                sub.listener(topic, payload)
                delivered += 1
            except Exception as exc:
                logger.error(
                    "event_listener_failed",
                    topic=topic.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return delivered

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscriptions.get(Topic(topic), []))

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group]
            self._subscriptions.clear()
        for sub in subs:
            sub.active = False
