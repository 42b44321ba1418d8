"""Device fingerprinting.

The fingerprint summarizes stable characteristics of the execution
environment. It is a risk signal, never an authentication factor: a changed
fingerprint raises the session risk level, it does not by itself log anyone
out.
"""

from __future__ import annotations

import hashlib
import locale
import os
import platform
import socket
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

from sessionguard.logging import get_logger, mask_identifier
from sessionguard.service.errors import DeviceMismatchError
from sessionguard.storage.models import (
    DeviceFingerprint,
    DeviceValidation,
    RiskLevel,
    utc_now,
)

logger = get_logger(__name__)

SENTINEL = "unavailable"
CORE_SIGNALS = ("platform", "timezone")
MIN_SIGNALS = 6

SignalSource = Callable[[], object]


def _timezone_signal() -> str:
    # Standard-time names and offset only, so DST transitions keep the value stable
    return f"{'/'.join(time.tzname)}|{-time.timezone}"


def _locale_signal() -> str:
    lang, encoding = locale.getlocale()
    return f"{lang or ''}.{encoding or ''}"


def _home_dir_signal() -> str:
    # Hash so the raw path (usually containing the username) never lands in logs
    return hashlib.sha256(str(Path.home()).encode()).hexdigest()[:16]


DEFAULT_SIGNAL_SOURCES: Dict[str, SignalSource] = {
    "platform": platform.system,
    "os_release": platform.release,
    "machine": platform.machine,
    "hostname": socket.gethostname,
    "timezone": _timezone_signal,
    "locale": _locale_signal,
    "cpu_count": os.cpu_count,
    "python_implementation": platform.python_implementation,
    "home_dir_hash": _home_dir_signal,
}


def fingerprint_id(signals: Mapping[str, str]) -> str:
    """Order-independent hash over ``name=value`` pairs."""
    digest = hashlib.sha256()
    for name in sorted(signals):
        digest.update(f"{name}={signals[name]}".encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


def fingerprint_similarity(a: DeviceFingerprint, b: DeviceFingerprint) -> float:
    """Fraction of signals (over the union of names) with identical values."""
    if a.id == b.id:
        return 1.0
    left, right = a.signal_map(), b.signal_map()
    names = set(left) | set(right)
    if not names:
        return 0.0
    matches = sum(
        1
        for name in names
        if name in left and name in right and left[name] == right[name] and left[name] != SENTINEL
    )
    return matches / len(names)


def _confidence(unavailable: int, total: int) -> RiskLevel:
    # Reported with RiskLevel's scale: HIGH means high confidence here
    if unavailable == 0:
        return RiskLevel.HIGH
    if total - unavailable >= MIN_SIGNALS:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def ensure_consistent(validation: DeviceValidation) -> DeviceValidation:
    """Raise :class:`DeviceMismatchError` for an inconsistent device."""
    if not validation.consistent:
        raise DeviceMismatchError(
            "device fingerprint does not match the session device",
            detail={"similarity": validation.similarity},
        )
    return validation


class DeviceFingerprinter:
    def __init__(
        self,
        signal_sources: Optional[Mapping[str, SignalSource]] = None,
        *,
        partial_match_threshold: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.signal_sources: Dict[str, SignalSource] = dict(
            signal_sources if signal_sources is not None else DEFAULT_SIGNAL_SOURCES
        )
        if len(self.signal_sources) < MIN_SIGNALS:
            logger.warning(
                "fingerprint_few_signals",
                count=len(self.signal_sources),
                minimum=MIN_SIGNALS,
            )
        self.partial_match_threshold = partial_match_threshold
        self._clock = clock or utc_now

    def _collect(self) -> Tuple[Tuple[str, str], ...]:
        signals = []
        for name in sorted(self.signal_sources):
            try:
                value = self.signal_sources[name]()
            except Exception as exc:
                logger.debug("fingerprint_signal_failed", signal=name, error=str(exc))
                value = None
            text = str(value).strip() if value is not None else ""
            signals.append((name, text or SENTINEL))
        return tuple(signals)

    def generate_fingerprint(self) -> DeviceFingerprint:
        """Collect the signal set and hash it. Never raises."""
        signals = self._collect()
        unavailable = sum(1 for _, value in signals if value == SENTINEL)
        fp = DeviceFingerprint(
            id=fingerprint_id(dict(signals)),
            raw_signals=signals,
            generated_at=self._clock(),
            confidence=_confidence(unavailable, len(signals)),
        )
        if unavailable:
            logger.info(
                "fingerprint_partial_signals",
                unavailable=unavailable,
                total=len(signals),
                fingerprint_id=mask_identifier(fp.id),
            )
        return fp

    def validate_device_for_auth(
        self,
        current: DeviceFingerprint,
        reference: Optional[DeviceFingerprint],
    ) -> DeviceValidation:
        """Compare ``current`` with the fingerprint bound to the session.

        Pure: no storage, no logging of its own.
        """
        if reference is None:
            return DeviceValidation(
                consistent=True,
                risk_contribution=RiskLevel.MEDIUM,
                similarity=0.0,
                is_new_device=True,
            )
        if current.id == reference.id:
            return DeviceValidation(
                consistent=True, risk_contribution=RiskLevel.LOW, similarity=1.0
            )

        similarity = fingerprint_similarity(current, reference)
        now_signals, ref_signals = current.signal_map(), reference.signal_map()
        core_match = all(
            now_signals.get(name) == ref_signals.get(name)
            and now_signals.get(name) not in (None, SENTINEL)
            for name in CORE_SIGNALS
        )
        if core_match and similarity >= self.partial_match_threshold:
            return DeviceValidation(
                consistent=True,
                risk_contribution=RiskLevel.MEDIUM,
                similarity=similarity,
            )
        return DeviceValidation(
            consistent=False,
            risk_contribution=RiskLevel.HIGH,
            similarity=similarity,
        )
