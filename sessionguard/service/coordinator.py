"""Single-flight token refresh around outbound API calls."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

import httpx

from sessionguard.logging import correlation_scope, get_logger
from sessionguard.service.errors import (
    AuthenticationRequiredError,
    NetworkError,
    RefreshFailedError,
    RequestTimeoutError,
    TokenExpiredError,
)
from sessionguard.service.issuer import IdentityClient
from sessionguard.service.session import SessionManager
from sessionguard.service.token_store import SecureTokenStore
from sessionguard.storage.models import CoordinatorStatus, TokenBundle

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class TokenRefreshCoordinator:
    """Wraps an :class:`httpx.AsyncClient` so that at most one refresh is in flight.

    Every caller that needs fresh credentials while a refresh is running
    attaches to the same task instead of starting its own. Waiters are
    shielded from each other: one caller's timeout cancels only its own wait.
    """

    def __init__(
        self,
        token_store: SecureTokenStore,
        session_manager: SessionManager,
        identity_client: IdentityClient,
        *,
        client: Optional[httpx.AsyncClient] = None,
        excluded_endpoints: Iterable[str] = (),
        refresh_network_retries: int = 1,
        refresh_retry_delay: float = 0.5,
        request_max_retries: int = 3,
        request_retry_delay: float = 1.0,
        default_timeout: Optional[float] = 30.0,
    ) -> None:
        self.token_store = token_store
        self.session_manager = session_manager
        self.identity_client = identity_client
        self._client = client
        self._owns_client = client is None
        self.excluded_endpoints = tuple(excluded_endpoints)
        self.refresh_network_retries = max(0, min(refresh_network_retries, 1))
        self.refresh_retry_delay = max(0.0, refresh_retry_delay)
        self.request_max_retries = max(0, request_max_retries)
        self.request_retry_delay = max(0.0, request_retry_delay)
        self.default_timeout = default_timeout
        self._inflight: Optional[asyncio.Task] = None
        self._waiters = 0
        self.refresh_count = 0
        self._closed = False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    # ----------------------------------------------------------------- status

    def get_status(self) -> CoordinatorStatus:
        inflight = self._inflight
        return CoordinatorStatus(
            active=not self._closed,
            token_present=self.token_store.get_access_token() is not None,
            refreshing=inflight is not None and not inflight.done(),
            waiters=self._waiters,
            refresh_count=self.refresh_count,
        )

    def is_excluded(self, url: str) -> bool:
        return any(fragment in url for fragment in self.excluded_endpoints)

    # ---------------------------------------------------------------- refresh

    def _ensure_refresh(self) -> asyncio.Task:
        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._run_refresh(), name="sessionguard:token-refresh"
            )
            task.add_done_callback(_consume_exception)
            self._inflight = task
            logger.debug("token_refresh_started")
        return task

    async def _run_refresh(self) -> TokenBundle:
        me = asyncio.current_task()
        try:
            attempts = 1 + self.refresh_network_retries
            for attempt in range(1, attempts + 1):
                try:
                    bundle = await self.session_manager.refresh_tokens(self.identity_client)
                except NetworkError as exc:
                    logger.warning(
                        "token_refresh_network_error", attempt=attempt, error=str(exc)
                    )
                    if attempt >= attempts:
                        raise
                    await asyncio.sleep(self.refresh_retry_delay)
                    continue
                except RefreshFailedError as exc:
                    logger.warning("token_refresh_rejected", error=str(exc))
                    await self.session_manager.terminate_session(
                        "refresh_failed", voluntary=False
                    )
                    raise AuthenticationRequiredError(
                        "session expired, please sign in again",
                        detail={"reason": "refresh_failed"},
                    ) from exc
                self.refresh_count += 1
                logger.info(
                    "token_refresh_completed",
                    attempt=attempt,
                    expires_at=bundle.expires_at.isoformat(),
                )
                return bundle
            raise NetworkError("token refresh failed")
        finally:
            if self._inflight is me:
                self._inflight = None

    async def _await_refresh(self, task: asyncio.Task, timeout: Optional[float]) -> TokenBundle:
        self._waiters += 1
        try:
            if timeout is None:
                return await asyncio.shield(task)
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("request_timed_out_waiting_for_refresh", timeout=timeout)
            raise RequestTimeoutError(
                "request timed out waiting for token refresh", detail={"timeout": timeout}
            ) from exc
        finally:
            self._waiters -= 1

    # ------------------------------------------------------------------ fetch

    async def enhanced_fetch(
        self, request: httpx.Request, *, timeout: Optional[float] = None
    ) -> httpx.Response:
        """Send ``request`` with the current access token, refreshing as needed.

        A 401 is retried exactly once after a refresh. A second 401 ends
        the session and raises :class:`AuthenticationRequiredError`.
        Transport failures of the request itself are retried up to
        ``request_max_retries`` times, ``request_retry_delay`` apart.
        Each call runs under one correlation ID, sent as ``X-Request-ID``.
        """
        if self._closed:
            raise RuntimeError("coordinator is closed")
        if timeout is None:
            timeout = self.default_timeout
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None

        with correlation_scope(request.headers.get(REQUEST_ID_HEADER)) as cid:
            request.headers[REQUEST_ID_HEADER] = cid
            return await self._fetch(request, deadline)

    async def _fetch(self, request: httpx.Request, deadline: Optional[float]) -> httpx.Response:
        if self.is_excluded(str(request.url)):
            return await self._send(request, deadline)

        caller_auth = "authorization" in request.headers
        if not caller_auth:
            await self._prepare_token(deadline)

        header_used = self._apply_auth(request, caller_auth)
        response = await self._send(request, deadline)
        if response.status_code != 401 or caller_auth:
            return response

        await response.aclose()
        current = self.token_store.authorization_header()
        if current is None or current == header_used:
            task = self._ensure_refresh()
            await self._await_refresh(task, _remaining(deadline))
        else:
            logger.debug("token_already_rotated_retrying")

        header_used = self._apply_auth(request, caller_auth)
        retry = await self._send(request, deadline)
        if retry.status_code == 401:
            await retry.aclose()
            logger.warning("request_unauthorized_after_refresh", url=str(request.url.path))
            await self.session_manager.terminate_session(
                "repeated_unauthorized", voluntary=False
            )
            raise AuthenticationRequiredError(
                "request rejected after token refresh",
                detail={"reason": "repeated_unauthorized"},
            )
        return retry

    async def _prepare_token(self, deadline: Optional[float]) -> None:
        try:
            self.token_store.require_access_token()
        except TokenExpiredError:
            pass
        else:
            if self.token_store.is_token_expiring_soon():
                # Proactive refresh; this request still uses the current token
                self._ensure_refresh()
            return
        if self._inflight is not None and not self._inflight.done():
            await self._await_refresh(self._inflight, _remaining(deadline))
            return
        if self.token_store.has_stored_tokens():
            await self._await_refresh(self._ensure_refresh(), _remaining(deadline))

    def _apply_auth(self, request: httpx.Request, caller_auth: bool) -> Optional[str]:
        if caller_auth:
            return request.headers.get("authorization")
        header = self.token_store.authorization_header()
        if header is not None:
            request.headers["Authorization"] = header
        elif "authorization" in request.headers:
            del request.headers["authorization"]
        return header

    async def _send(self, request: httpx.Request, deadline: Optional[float]) -> httpx.Response:
        retries = self.request_max_retries
        while True:
            try:
                return await self._send_once(request, deadline)
            except RequestTimeoutError:
                raise
            except NetworkError as exc:
                if retries <= 0:
                    raise
                remaining = _remaining(deadline)
                if remaining is not None and remaining <= self.request_retry_delay:
                    raise
                retries -= 1
                logger.warning(
                    "request_network_error_retrying",
                    url=str(request.url.path),
                    retries_left=retries,
                    error=str(exc),
                )
                await asyncio.sleep(self.request_retry_delay)

    async def _send_once(
        self, request: httpx.Request, deadline: Optional[float]
    ) -> httpx.Response:
        remaining = _remaining(deadline)
        try:
            if remaining is None:
                return await self._get_client().send(request)
            return await asyncio.wait_for(self._get_client().send(request), remaining)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError("request timed out", detail={"timeout": remaining}) from exc
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError("request timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError("request failed", detail={"error": str(exc)}) from exc

    # ------------------------------------------------------------------ close

    async def aclose(self) -> None:
        self._closed = True
        task = self._inflight
        self._inflight = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("token_refresh_cancelled_with_error", error=str(exc))
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise RequestTimeoutError("request deadline exceeded")
    return remaining


def _consume_exception(task: asyncio.Task) -> None:
    # Fire-and-forget refreshes have no awaiter to retrieve their exception
    if not task.cancelled():
        task.exception()
