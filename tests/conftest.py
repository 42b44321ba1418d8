import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SESSIONGUARD_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Keep Argon2 cheap in tests
os.environ.setdefault("KDF_TIME_COST", "1")
os.environ.setdefault("KDF_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import reset_settings_cache  # noqa: E402
from sessionguard.service.event_log import SecurityEventLog  # noqa: E402
from sessionguard.service.events import EventBus  # noqa: E402
from sessionguard.service.fingerprint import DeviceFingerprinter  # noqa: E402
from sessionguard.service.session import SessionManager  # noqa: E402
from sessionguard.service.token_store import SecureTokenStore  # noqa: E402
from sessionguard.storage.backends import MemoryBackend  # noqa: E402
from sessionguard.storage.keyring import DeviceKeyring, KdfParams  # noqa: E402

TEST_KDF = KdfParams(time_cost=1, memory_cost=1024, parallelism=1)

STATIC_SIGNALS = {
    "platform": "Linux",
    "os_release": "6.1.0",
    "machine": "x86_64",
    "hostname": "workstation-01",
    "timezone": "UTC/UTC|0",
    "locale": "en_US.UTF-8",
    "cpu_count": "8",
    "python_implementation": "CPython",
    "home_dir_hash": "3f2a9c1d4e5b6a70",
}


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def device_signals():
    """Mutable signal values; edit entries to simulate a device change."""
    return dict(STATIC_SIGNALS)


@pytest.fixture
def fingerprinter(device_signals, clock):
    sources = {name: (lambda name=name: device_signals[name]) for name in device_signals}
    return DeviceFingerprinter(sources, clock=clock)


@pytest.fixture
def token_store(backend, bus, clock):
    return SecureTokenStore(
        backend,
        DeviceKeyring(backend),
        kdf=TEST_KDF,
        bus=bus,
        clock=clock,
    )


@pytest.fixture
def event_log(backend, bus, clock):
    return SecurityEventLog(backend, bus=bus, clock=clock)


@pytest.fixture
def session_manager(token_store, fingerprinter, event_log, backend, bus, clock):
    # Long intervals keep the periodic tasks idle unless a test drives them
    return SessionManager(
        token_store,
        fingerprinter,
        event_log,
        backend,
        bus=bus,
        validation_interval=3600,
        countdown_interval=3600,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
