"""HTTP clients for the remote identity issuer and MFA oracle."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx

from sessionguard.logging import get_logger, mask_identifier
from sessionguard.service.errors import AuthenticationError, NetworkError, RefreshFailedError
from sessionguard.storage.models import (
    CustomerData,
    LoginResult,
    MFAVerification,
    TokenBundle,
    utc_now,
)

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600
_REJECTED_STATUSES = (400, 401, 403)


def _parse_expiry(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_token_response(body: Any, *, issued_at: Optional[datetime] = None) -> TokenBundle:
    """Build a :class:`TokenBundle` from either issuer response shape.

    Accepts the flat ``{access_token, refresh_token, expires_in, token_type}``
    form and the wrapped ``{success, data: {access_token, refresh_token,
    token_expiry}}`` form. Expiry always comes from the server.
    """
    if not isinstance(body, Mapping):
        raise ValueError("token response must be an object")
    if "data" in body and isinstance(body.get("data"), Mapping):
        if body.get("success") is False:
            raise ValueError(str(body.get("message") or "issuer reported failure"))
        body = body["data"]

    access = body.get("access_token")
    refresh = body.get("refresh_token")
    if not access or not refresh:
        raise ValueError("token response missing access_token or refresh_token")
    token_type = str(body.get("token_type") or "Bearer")
    issued = issued_at or utc_now()

    if body.get("token_expiry") is not None:
        return TokenBundle(
            access_token=str(access),
            refresh_token=str(refresh),
            expires_at=_parse_expiry(body["token_expiry"]),
            token_type=token_type,
            issued_at=issued,
        )
    ttl = body.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS)
    return TokenBundle.from_ttl(
        str(access), str(refresh), float(ttl), token_type=token_type, issued_at=issued
    )


def parse_customer(body: Any, *, now: Optional[datetime] = None) -> Optional[CustomerData]:
    if not isinstance(body, Mapping):
        return None
    if isinstance(body.get("data"), Mapping):
        body = body["data"]
    raw = body.get("customer") or body.get("user")
    if not isinstance(raw, Mapping) or not raw.get("id"):
        return None
    return CustomerData(
        id=str(raw["id"]),
        email=str(raw.get("email") or ""),
        first_name=str(raw.get("first_name") or ""),
        last_name=str(raw.get("last_name") or ""),
        phone=raw.get("phone"),
        is_email_verified=bool(raw.get("is_email_verified", False)),
        last_login_at=now or utc_now(),
    )


class IdentityClient:
    """Thin async client for the login and refresh endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        login_path: str = "/api/v1/auth/login",
        refresh_path: str = "/api/v1/auth/refresh",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._clock = clock or utc_now
        self.login_path = login_path
        self.refresh_path = refresh_path
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                follow_redirects=False,
            )
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._get_client().post(self._url(path), **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("issuer_timeout", path=path, error=str(exc))
            raise NetworkError("identity issuer timed out", detail={"path": path}) from exc
        except httpx.HTTPError as exc:
            logger.error("issuer_transport_error", path=path, error=str(exc))
            raise NetworkError(
                "identity issuer unreachable", detail={"path": path}
            ) from exc

    async def login(self, credentials: Mapping[str, Any]) -> LoginResult:
        """Exchange credentials for a bundle plus any customer profile returned."""
        response = await self._post(self.login_path, json=dict(credentials))
        if response.status_code in _REJECTED_STATUSES:
            logger.warning("issuer_login_rejected", status_code=response.status_code)
            raise AuthenticationError(
                "invalid credentials", detail={"status_code": response.status_code}
            )
        if response.status_code >= 400:
            logger.error("issuer_login_failed", status_code=response.status_code)
            raise NetworkError(
                "login failed", detail={"status_code": response.status_code}
            )
        try:
            body = response.json()
            bundle = parse_token_response(body, issued_at=self._clock())
        except ValueError as exc:
            raise AuthenticationError("malformed login response") from exc
        customer = parse_customer(body, now=self._clock())
        logger.info("issuer_login_success", expires_at=bundle.expires_at.isoformat())
        return LoginResult(bundle=bundle, customer=customer)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        response = await self._post(
            self.refresh_path,
            json={"refresh_token": refresh_token},
            headers={"Authorization": f"Bearer {refresh_token}"},
        )
        if response.status_code in _REJECTED_STATUSES:
            logger.warning("issuer_refresh_rejected", status_code=response.status_code)
            raise RefreshFailedError(
                "refresh token rejected", detail={"status_code": response.status_code}
            )
        if response.status_code >= 500:
            raise NetworkError(
                "issuer error during refresh", detail={"status_code": response.status_code}
            )
        if response.status_code >= 400:
            raise RefreshFailedError(
                "refresh failed", detail={"status_code": response.status_code}
            )
        try:
            bundle = parse_token_response(response.json(), issued_at=self._clock())
        except ValueError as exc:
            raise RefreshFailedError("malformed refresh response") from exc
        logger.info("issuer_refresh_success", expires_at=bundle.expires_at.isoformat())
        return bundle

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class MFAVerifier(Protocol):
    async def verify_code(self, user_id: str, code: str) -> MFAVerification: ...


class HttpMFAVerifier:
    """MFA oracle backed by the issuer's verification endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        verify_path: str = "/api/v1/auth/mfa/verify",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.verify_path = verify_path
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    async def verify_code(self, user_id: str, code: str) -> MFAVerification:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._client.post(
                f"{self.base_url}{self.verify_path}",
                json={"user_id": user_id, "code": code},
            )
        except httpx.HTTPError as exc:
            logger.error("mfa_verify_transport_error", error=str(exc))
            raise NetworkError("MFA oracle unreachable") from exc
        if response.status_code >= 500:
            raise NetworkError(
                "MFA oracle error", detail={"status_code": response.status_code}
            )
        if response.status_code >= 400:
            logger.info("mfa_verify_rejected", user_id=mask_identifier(user_id))
            return MFAVerification(is_valid=False)
        try:
            body = response.json()
        except ValueError:
            return MFAVerification(is_valid=False)
        data = body.get("data", body) if isinstance(body, Mapping) else {}
        return MFAVerification(
            is_valid=bool(data.get("is_valid", data.get("valid", False))),
            method=str(data.get("method") or "totp"),
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
