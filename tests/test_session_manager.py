"""Tests for the session manager state machine and risk aggregation."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from sessionguard.service.errors import (
    AuthenticationError,
    AuthenticationRequiredError,
    RefreshFailedError,
)
from sessionguard.service.events import Topic
from sessionguard.service.issuer import IdentityClient
from sessionguard.service.session import SESSION_KEY, SessionManager
from sessionguard.service.token_store import TOKEN_BLOB_KEY
from sessionguard.storage.models import (
    MFAVerification,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    SecurityWarningDetails,
    SessionState,
    TokenBundle,
)


def types_of(event_log):
    """Event types oldest first."""
    return [e.type for e in reversed(event_log.list())]


def login_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v1/auth/login":
        return httpx.Response(
            200,
            json={
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "expires_in": 3600,
                "customer": {"id": "cust-1", "email": "jane@example.com"},
            },
        )
    if request.url.path == "/api/v1/auth/refresh":
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "access_token": "access-2",
                    "refresh_token": "refresh-2",
                    "token_expiry": "2030-01-01T00:00:00Z",
                },
            },
        )
    return httpx.Response(404)


def make_issuer(clock, handler=login_handler) -> IdentityClient:
    return IdentityClient(
        "https://api.example.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=clock,
    )


class FakeMFA:
    def __init__(self, valid: bool):
        self.valid = valid
        self.calls = []

    async def verify_code(self, user_id, code):
        self.calls.append((user_id, code))
        return MFAVerification(is_valid=self.valid)


class TestCreateSession:
    async def test_create_records_event_and_starts_timers(self, session_manager, event_log):
        session = await session_manager.create_session("user-1")

        assert session_manager.state == SessionState.CREATED
        assert session_manager.timers_running
        assert types_of(event_log) == [SecurityEventType.SESSION_CREATED]
        assert event_log.list()[0].details.session_id == session.session_id

        await session_manager.shutdown()
        assert not session_manager.timers_running

    async def test_new_device_is_medium_then_known_device_low(self, session_manager):
        first = await session_manager.create_session("user-1")
        second = await session_manager.create_session("user-1")

        assert first.risk_level == RiskLevel.MEDIUM
        assert second.risk_level == RiskLevel.LOW
        assert first.session_id != second.session_id
        await session_manager.shutdown()

    async def test_known_device_expires_after_max_age(self, session_manager, clock):
        await session_manager.create_session("user-1")
        clock.advance(days=31)

        session = await session_manager.create_session("user-1")

        assert session.risk_level == RiskLevel.MEDIUM
        await session_manager.shutdown()

    async def test_requested_risk_level_is_a_floor(self, session_manager):
        await session_manager.create_session("user-1")
        session = await session_manager.create_session("user-1", risk_level=RiskLevel.HIGH)

        assert session.risk_level == RiskLevel.HIGH
        result = await session_manager.validate_current_session()
        assert result.risk_level == RiskLevel.HIGH
        await session_manager.shutdown()


class TestValidation:
    async def test_fresh_session_is_valid(self, session_manager):
        await session_manager.create_session("user-1")

        result = await session_manager.validate_current_session()

        assert result.is_valid
        assert session_manager.state == SessionState.VALID
        await session_manager.shutdown()

    async def test_inactivity_teardown(self, session_manager, event_log, clock):
        """A 1000 ms inactivity window is breached after 1001 ms."""
        await session_manager.create_session("user-1", max_inactivity=timedelta(milliseconds=1000))
        clock.advance(milliseconds=1001)

        result = await session_manager.validate_current_session()

        assert not result.is_valid
        assert result.requires_reauth
        assert session_manager.state == SessionState.EXPIRED
        assert types_of(event_log)[-1] == SecurityEventType.SECURITY_WARNING
        assert not session_manager.timers_running

    async def test_activity_keeps_session_alive(self, session_manager, clock):
        await session_manager.create_session("user-1", max_inactivity=timedelta(seconds=10))
        clock.advance(seconds=8)
        session_manager.update_last_activity()
        clock.advance(seconds=8)

        result = await session_manager.validate_current_session()

        assert result.is_valid
        await session_manager.shutdown()

    async def test_no_session_is_invalid(self, session_manager, event_log):
        result = await session_manager.validate_current_session()

        assert not result.is_valid
        assert result.reasons == ("no_active_session",)
        assert types_of(event_log) == [SecurityEventType.SECURITY_WARNING]

    async def test_recent_high_risk_event_raises_risk(self, session_manager, event_log, clock):
        await session_manager.create_session("user-1")
        await session_manager.create_session("user-1")
        event_log.record(
            SecurityEvent.new(
                SecurityEventType.SECURITY_WARNING,
                "earlier anomaly",
                SecurityWarningDetails(reason="test"),
                risk_level=RiskLevel.HIGH,
                timestamp=clock(),
            )
        )

        result = await session_manager.validate_current_session()

        assert result.risk_level.at_least(RiskLevel.MEDIUM)
        assert "recent_high_risk_event" in result.reasons
        await session_manager.shutdown()

    async def test_device_mismatch_escalates_without_teardown(
        self, session_manager, event_log, device_signals
    ):
        await session_manager.create_session("user-1")
        device_signals["platform"] = "Windows"

        result = await session_manager.validate_current_session()

        assert result.is_valid
        assert result.device_changed
        assert result.risk_level == RiskLevel.HIGH
        assert SecurityEventType.SUSPICIOUS_ACTIVITY in types_of(event_log)
        await session_manager.shutdown()

    async def test_device_mismatch_recorded_once(self, session_manager, event_log, device_signals):
        await session_manager.create_session("user-1")
        device_signals["platform"] = "Windows"

        await session_manager.validate_current_session()
        await session_manager.validate_current_session()

        suspicious = [t for t in types_of(event_log) if t == SecurityEventType.SUSPICIOUS_ACTIVITY]
        assert len(suspicious) == 1
        await session_manager.shutdown()

    async def test_expiring_soon_is_at_least_medium(self, session_manager, clock):
        await session_manager.create_session("user-1")
        await session_manager.create_session("user-1", max_inactivity=timedelta(minutes=10))
        clock.advance(minutes=6)

        result = await session_manager.validate_current_session()

        assert result.is_valid
        assert result.state == SessionState.EXPIRING_SOON
        assert result.risk_level.at_least(RiskLevel.MEDIUM)
        assert session_manager.is_expiring_soon()
        await session_manager.shutdown()

    async def test_risk_change_recorded_as_validated(self, session_manager, event_log, clock):
        await session_manager.create_session("user-1")
        await session_manager.create_session("user-1", max_inactivity=timedelta(minutes=10))
        clock.advance(minutes=6)

        await session_manager.validate_current_session()

        last = event_log.list()[0]
        assert last.type == SecurityEventType.SESSION_VALIDATED
        assert last.details.previous_risk == RiskLevel.LOW
        await session_manager.shutdown()

    async def test_integrity_failure_terminates(
        self, session_manager, token_store, event_log, backend, clock
    ):
        await session_manager.create_session("user-1")
        token_store.store_tokens(TokenBundle.from_ttl("a", "r", 3600, issued_at=clock()))
        backend.set(TOKEN_BLOB_KEY, backend.get(TOKEN_BLOB_KEY).replace('"integrity_tag": "', '"integrity_tag": "00'))

        result = await session_manager.validate_current_session()

        assert not result.is_valid
        assert session_manager.state == SessionState.TERMINATED
        recorded = types_of(event_log)
        # Anomaly is audited before the teardown
        assert recorded.index(SecurityEventType.SUSPICIOUS_ACTIVITY) < recorded.index(
            SecurityEventType.SECURITY_WARNING
        )


class TestTermination:
    async def test_voluntary_logout(self, session_manager, token_store, event_log, bus, clock):
        terminated = []
        bus.subscribe(Topic.SESSION_TERMINATED, lambda topic, payload: terminated.append(payload))
        await session_manager.create_session("user-1")
        token_store.store_tokens(TokenBundle.from_ttl("a", "r", 3600, issued_at=clock()))

        await session_manager.terminate_session("user_logout")

        assert session_manager.state == SessionState.TERMINATED
        assert token_store.get_access_token() is None
        assert token_store.get_refresh_token() is None
        assert types_of(event_log)[-1] == SecurityEventType.LOGOUT
        assert terminated[0]["voluntary"] is True
        assert not session_manager.timers_running

    async def test_forced_termination_records_warning(self, session_manager, event_log):
        await session_manager.create_session("user-1")

        await session_manager.terminate_session("refresh_failed", voluntary=False)

        last = event_log.list()[0]
        assert last.type == SecurityEventType.SECURITY_WARNING
        assert last.details.reason == "refresh_failed"

    async def test_terminate_twice_is_safe(self, session_manager, event_log):
        await session_manager.create_session("user-1")

        await session_manager.terminate_session()
        await session_manager.terminate_session()

        assert types_of(event_log).count(SecurityEventType.LOGOUT) == 1

    async def test_update_activity_after_termination_is_ignored(self, session_manager, clock):
        session = await session_manager.create_session("user-1")
        await session_manager.terminate_session()
        before = session.last_activity
        clock.advance(seconds=5)

        session_manager.update_last_activity()

        assert session.last_activity == before
        assert session_manager.time_remaining() == timedelta(0)


class TestCountdown:
    async def test_expiring_soon_published_once(self, session_manager, bus, clock):
        notices = []
        bus.subscribe(Topic.SESSION_EXPIRING_SOON, lambda topic, payload: notices.append(payload))
        await session_manager.create_session("user-1", max_inactivity=timedelta(minutes=10))
        clock.advance(minutes=6)

        await session_manager._countdown_tick()
        await session_manager._countdown_tick()

        assert len(notices) == 1
        assert session_manager.state == SessionState.EXPIRING_SOON

        session_manager.update_last_activity()
        assert session_manager.state == SessionState.VALID
        clock.advance(minutes=6)
        await session_manager._countdown_tick()
        assert len(notices) == 2
        await session_manager.shutdown()

    async def test_expiring_soon_state_is_persisted(self, session_manager, backend, clock):
        await session_manager.create_session("user-1", max_inactivity=timedelta(minutes=10))
        clock.advance(minutes=6)

        await session_manager._countdown_tick()

        assert json.loads(backend.get(SESSION_KEY))["state"] == SessionState.EXPIRING_SOON.value
        await session_manager.shutdown()

    async def test_countdown_expires_idle_session(self, session_manager, clock):
        await session_manager.create_session("user-1", max_inactivity=timedelta(minutes=1))
        clock.advance(minutes=2)

        await session_manager._countdown_tick()

        assert session_manager.state == SessionState.EXPIRED


class TestLoginAndRefresh:
    async def test_login_stores_tokens_and_records_events(
        self, session_manager, token_store, event_log, clock
    ):
        issuer = make_issuer(clock)

        session = await session_manager.login(
            issuer, {"email": "jane@example.com", "password": "pw"}
        )

        assert session.user_id == "cust-1"
        assert token_store.get_access_token() == "access-1"
        assert token_store.get_customer_data().email == "jane@example.com"
        assert types_of(event_log)[-2:] == [
            SecurityEventType.SESSION_CREATED,
            SecurityEventType.LOGIN,
        ]
        await session_manager.shutdown()
        await issuer.aclose()

    async def test_login_with_mfa(self, session_manager, event_log, clock):
        mfa = FakeMFA(valid=True)

        await session_manager.login(
            make_issuer(clock), {"email": "jane@example.com"}, mfa_code="123456", mfa_verifier=mfa
        )

        assert mfa.calls == [("cust-1", "123456")]
        assert event_log.list()[0].details.mfa_verified
        await session_manager.shutdown()

    async def test_failed_mfa_stores_nothing(self, session_manager, token_store, event_log, clock):
        with pytest.raises(AuthenticationError) as exc_info:
            await session_manager.login(
                make_issuer(clock),
                {"email": "jane@example.com"},
                mfa_code="000000",
                mfa_verifier=FakeMFA(valid=False),
            )

        assert exc_info.value.error_code == "mfa_failed"
        assert token_store.get_access_token() is None
        assert not token_store.has_stored_tokens()
        assert session_manager.current_session is None
        assert types_of(event_log) == [SecurityEventType.SECURITY_WARNING]

    async def test_rejected_login_records_warning(self, session_manager, event_log, clock):
        issuer = make_issuer(clock, lambda request: httpx.Response(401, json={}))

        with pytest.raises(AuthenticationError):
            await session_manager.login(issuer, {"email": "x@example.com", "password": "bad"})

        assert event_log.list()[0].details.reason == "login_rejected"

    async def test_refresh_rotates_bundle(self, session_manager, token_store, event_log, clock):
        issuer = make_issuer(clock)
        await session_manager.login(issuer, {"email": "jane@example.com"})

        bundle = await session_manager.refresh_tokens(issuer)

        assert bundle.access_token == "access-2"
        assert token_store.get_refresh_token() == "refresh-2"
        last = event_log.list()[0]
        assert last.type == SecurityEventType.SESSION_VALIDATED
        assert last.details.trigger == "refresh"
        await session_manager.shutdown()

    async def test_refresh_without_token_fails(self, session_manager, clock):
        with pytest.raises(RefreshFailedError):
            await session_manager.refresh_tokens(make_issuer(clock))


class TestRestore:
    async def test_session_restored_from_storage(
        self, session_manager, token_store, fingerprinter, event_log, backend, clock
    ):
        session = await session_manager.create_session("user-1")
        await session_manager.shutdown()

        restored = SessionManager(token_store, fingerprinter, event_log, backend, clock=clock)

        assert restored.current_session.session_id == session.session_id
        result = await restored.validate_current_session()
        assert result.is_valid
        await restored.shutdown()

    async def test_corrupt_session_record_is_dropped(
        self, token_store, fingerprinter, event_log, backend, clock
    ):
        backend.set(SESSION_KEY, "{broken")

        manager = SessionManager(token_store, fingerprinter, event_log, backend, clock=clock)

        assert manager.current_session is None
        assert backend.get(SESSION_KEY) is None


def make_manager(token_store, fingerprinter, event_log, backend, bus, clock, **kwargs):
    return SessionManager(
        token_store,
        fingerprinter,
        event_log,
        backend,
        bus=bus,
        validation_interval=3600,
        countdown_interval=3600,
        clock=clock,
        **kwargs,
    )


class TestRefreshRace:
    async def test_refresh_finishing_after_relogin_leaves_new_session_alone(
        self, session_manager, token_store, clock
    ):
        release = asyncio.Event()

        async def handler(request):
            if request.url.path == "/api/v1/auth/refresh":
                await release.wait()
            return login_handler(request)

        issuer = make_issuer(clock, handler)
        await session_manager.login(issuer, {"email": "jane@example.com"})
        pending = asyncio.ensure_future(session_manager.refresh_tokens(issuer))
        await asyncio.sleep(0.01)

        session = await session_manager.login(issuer, {"email": "jane@example.com"})
        release.set()
        with pytest.raises(AuthenticationRequiredError):
            await pending

        assert session_manager.current_session is session
        assert session.state.is_live
        assert token_store.get_access_token() == "access-1"
        assert token_store.get_refresh_token() == "refresh-1"
        await session_manager.shutdown()

    async def test_refresh_finishing_after_logout_stores_nothing(
        self, session_manager, token_store, clock
    ):
        release = asyncio.Event()

        async def handler(request):
            if request.url.path == "/api/v1/auth/refresh":
                await release.wait()
            return login_handler(request)

        issuer = make_issuer(clock, handler)
        await session_manager.login(issuer, {"email": "jane@example.com"})
        pending = asyncio.ensure_future(session_manager.refresh_tokens(issuer))
        await asyncio.sleep(0.01)

        await session_manager.terminate_session("user_logout")
        release.set()
        with pytest.raises(AuthenticationRequiredError):
            await pending

        assert token_store.get_access_token() is None
        assert token_store.get_refresh_token() is None
        assert not token_store.has_stored_tokens()


class TestConcurrentSessions:
    async def test_replacing_live_session_is_recorded(self, session_manager, event_log):
        first = await session_manager.create_session("user-1")
        await session_manager.create_session("user-1")

        replaced = [
            e for e in event_log.list() if e.type == SecurityEventType.SECURITY_WARNING
        ]
        assert replaced[0].details.reason == "session_replaced"
        assert replaced[0].details.session_id == first.session_id
        assert first.state == SessionState.TERMINATED
        await session_manager.shutdown()

    async def test_oldest_session_evicted_at_limit(
        self, token_store, fingerprinter, event_log, backend, bus, clock
    ):
        managers = [
            make_manager(
                token_store, fingerprinter, event_log, backend, bus, clock,
                max_concurrent_sessions=2,
            )
            for _ in range(3)
        ]
        sessions = []
        for manager in managers:
            sessions.append(await manager.create_session("user-1"))
            clock.advance(seconds=1)

        evictions = [
            e for e in event_log.list()
            if e.type == SecurityEventType.SECURITY_WARNING
            and e.details.reason == "concurrent_session_limit"
        ]
        assert [e.details.session_id for e in evictions] == [sessions[0].session_id]
        assert evictions[0].risk_level == RiskLevel.MEDIUM

        result = await managers[0].validate_current_session()

        assert not result.is_valid
        assert result.reasons == ("concurrent_session_evicted",)
        assert managers[0].state == SessionState.TERMINATED
        assert (await managers[2].validate_current_session()).is_valid
        assert json.loads(backend.get(SESSION_KEY))["session_id"] == sessions[2].session_id
        for manager in managers:
            await manager.shutdown()

    async def test_other_users_do_not_count_toward_limit(
        self, token_store, fingerprinter, event_log, backend, bus, clock
    ):
        managers = [
            make_manager(
                token_store, fingerprinter, event_log, backend, bus, clock,
                max_concurrent_sessions=1,
            )
            for _ in range(2)
        ]

        await managers[0].create_session("user-1")
        await managers[1].create_session("user-2")

        assert (await managers[0].validate_current_session()).is_valid
        for manager in managers:
            await manager.shutdown()


class TestSecurityStatus:
    async def test_healthy_login(self, session_manager, clock):
        await session_manager.login(make_issuer(clock), {"email": "jane@example.com"})

        status = session_manager.security_status()

        assert status.is_authenticated
        assert status.token_valid
        assert status.device_trusted
        assert status.risk_level == RiskLevel.LOW
        assert status.recommendations == ()
        assert status.checked_at == clock.now
        await session_manager.shutdown()

    async def test_device_change_is_untrusted(self, session_manager, device_signals, clock):
        await session_manager.login(make_issuer(clock), {"email": "jane@example.com"})
        device_signals["platform"] = "Windows"

        status = session_manager.security_status()

        assert not status.device_trusted
        assert status.risk_level == RiskLevel.HIGH
        assert any("fingerprint" in r for r in status.recommendations)
        await session_manager.shutdown()

    def test_nothing_stored(self, session_manager):
        status = session_manager.security_status()

        assert not status.is_authenticated
        assert not status.token_valid
        assert status.risk_level == RiskLevel.HIGH
        assert any("Refresh token missing" in r for r in status.recommendations)


class TestResume:
    async def test_resume_starts_timers_for_restored_session(
        self, session_manager, token_store, fingerprinter, event_log, backend, bus, clock
    ):
        await session_manager.create_session("user-1")
        await session_manager.shutdown()
        restored = make_manager(token_store, fingerprinter, event_log, backend, bus, clock)
        assert not restored.timers_running

        result = await restored.resume()

        assert result.is_valid
        assert restored.timers_running
        await restored.shutdown()

    async def test_resume_without_session(self, session_manager):
        assert await session_manager.resume() is None
        assert not session_manager.timers_running
