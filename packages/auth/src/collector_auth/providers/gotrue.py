"""Identity provider adapter for a GoTrue (Supabase Auth) REST endpoint.

Every request carries the project ``apikey`` header. Calls that act on
behalf of the user (logout, factor management) send the current session's
access token as a bearer token; the session is adopted on sign-in, sign-up
and successful factor verification, or explicitly with :meth:`set_session`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    ProviderUnavailableError,
    UnexpectedResponseError,
    ValidationError,
)
from ..models import FactorStatus, MFAChallenge, MFAFactor, SessionCredential, utc_now
from ..ports import FactorEnrollment, FactorVerification, IIdentityProvider

if TYPE_CHECKING:
    from ..config import AuthGateSettings

logger = logging.getLogger(__name__)

_MFA_ERROR_CODES = frozenset(
    {"mfa_verification_failed", "mfa_challenge_expired", "mfa_verification_rejected"}
)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, error code) from a GoTrue error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    if not isinstance(body, dict):
        return f"HTTP {response.status_code}", None
    message = (
        body.get("msg")
        or body.get("error_description")
        or body.get("message")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    code = body.get("error_code") or body.get("error")
    return str(message), str(code) if code is not None else None


class GoTrueIdentityProvider(IIdentityProvider):
    """GoTrue REST client implementing :class:`IIdentityProvider`.

    Error mapping:
        - transport failures, 5xx and 429: ProviderUnavailableError
        - rejected password sign-in (400/401/422): InvalidCredentialsError
        - rejected verification code: InvalidMfaCodeError
        - other 401/403: AuthenticationError
        - other 4xx: ValidationError
        - unreadable bodies: UnexpectedResponseError

    Example:
        ```python
        async with GoTrueIdentityProvider(
            "https://project.supabase.co", api_key=anon_key
        ) as provider:
            session = await provider.sign_in_with_password(email, password)
            factors = await provider.list_factors()
        ```
    """

    name = "gotrue"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        issuer: str | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            base_url: Project URL (``/auth/v1`` is appended).
            api_key: Project API key sent as the ``apikey`` header.
            timeout: Request timeout in seconds.
            issuer: Issuer name shown in authenticator apps.
            client: Pre-configured client (its base URL is ignored).
            transport: Transport for the internally created client.
        """
        self.api_key = api_key
        self.issuer = issuer
        self._base = base_url.rstrip("/") + "/auth/v1"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
        )
        self._session: SessionCredential | None = None

    @classmethod
    def from_settings(
        cls,
        settings: AuthGateSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GoTrueIdentityProvider:
        if settings.provider_url is None or settings.provider_api_key is None:
            raise ValueError("provider_url and provider_api_key are required")
        return cls(
            settings.provider_url,
            settings.provider_api_key,
            timeout=settings.provider_timeout_seconds,
            issuer=settings.mfa.issuer,
            transport=transport,
        )

    @property
    def session(self) -> SessionCredential | None:
        return self._session

    def set_session(self, session: SessionCredential | None) -> None:
        self._session = session

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> GoTrueIdentityProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ═══════════════════════════════════════════════════════════════
    # HTTP
    # ═══════════════════════════════════════════════════════════════

    def _bearer(self, session: SessionCredential | None = None) -> str:
        current = session or self._session
        if current is None:
            raise AuthenticationError("No active session", user_message="Please sign in again.")
        return current.access_token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {token or self.api_key}"}
        try:
            response = await self._client.request(
                method, self._base + path, headers=headers, json=json, params=params
            )
        except httpx.TransportError as e:
            logger.warning("Identity provider unreachable: %s %s", method, path)
            raise ProviderUnavailableError(f"Identity provider unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("Identity provider returned %d for %s", response.status_code, path)
            raise ProviderUnavailableError(
                f"Identity provider returned HTTP {response.status_code}"
            )
        return response

    def _client_error(self, response: httpx.Response) -> Exception:
        message, code = _error_details(response)
        if code in _MFA_ERROR_CODES:
            return InvalidMfaCodeError(message)
        if response.status_code in (401, 403):
            return AuthenticationError(message)
        return ValidationError(message, user_message=message)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedResponseError("Identity provider returned invalid JSON") from e

    def _parse_session(self, data: Any) -> SessionCredential:
        try:
            user = data["user"]
            expires_at = _parse_timestamp(data.get("expires_at"))
            if expires_at is None and data.get("expires_in") is not None:
                expires_at = utc_now() + timedelta(seconds=int(data["expires_in"]))
            return SessionCredential(
                access_token=str(data["access_token"]),
                user_id=str(user["id"]),
                refresh_token=data.get("refresh_token"),
                expires_at=expires_at,
                email=user.get("email"),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Unreadable session payload from identity provider")
            raise UnexpectedResponseError("Identity provider returned an unreadable session") from e

    # ═══════════════════════════════════════════════════════════════
    # CREDENTIALS
    # ═══════════════════════════════════════════════════════════════

    async def sign_in_with_password(
        self, identifier: str, password: str
    ) -> SessionCredential:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": identifier, "password": password},
        )
        if response.status_code in (400, 401, 422):
            message, _ = _error_details(response)
            raise InvalidCredentialsError(message)
        if response.is_error:
            raise self._client_error(response)

        session = self._parse_session(self._json(response))
        self._session = session
        return session

    async def sign_up(self, identifier: str, password: str) -> SessionCredential | None:
        response = await self._request(
            "POST", "/signup", json={"email": identifier, "password": password}
        )
        if response.is_error:
            raise self._client_error(response)

        data = self._json(response)
        if not isinstance(data, dict) or "access_token" not in data:
            # Email confirmation pending: GoTrue returns the bare user.
            return None
        session = self._parse_session(data)
        self._session = session
        return session

    async def sign_out(self, session: SessionCredential | None = None) -> None:
        current = session or self._session
        if current is None:
            return
        response = await self._request("POST", "/logout", token=current.access_token)
        # 401/403/404: the session is already gone.
        if response.is_error and response.status_code not in (401, 403, 404):
            raise self._client_error(response)
        if self._session is not None and self._session.access_token == current.access_token:
            self._session = None

    # ═══════════════════════════════════════════════════════════════
    # FACTORS
    # ═══════════════════════════════════════════════════════════════

    async def enroll_factor(self) -> FactorEnrollment:
        body: dict[str, Any] = {"factor_type": "totp"}
        if self.issuer:
            body["issuer"] = self.issuer
        response = await self._request("POST", "/factors", token=self._bearer(), json=body)
        if response.is_error:
            raise self._client_error(response)

        data = self._json(response)
        try:
            totp = data["totp"]
            return FactorEnrollment(
                factor_id=str(data["id"]),
                qr_payload=totp.get("qr_code") or totp["uri"],
                shared_secret=totp["secret"],
            )
        except (KeyError, TypeError) as e:
            raise UnexpectedResponseError("Unreadable factor enrollment response") from e

    async def challenge_factor(self, factor_id: str) -> MFAChallenge:
        response = await self._request(
            "POST", f"/factors/{factor_id}/challenge", token=self._bearer()
        )
        if response.is_error:
            raise self._client_error(response)

        data = self._json(response)
        try:
            return MFAChallenge(
                challenge_id=str(data["id"]),
                factor_id=factor_id,
                expires_at=_parse_timestamp(data.get("expires_at")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise UnexpectedResponseError("Unreadable challenge response") from e

    async def verify_factor(
        self, factor_id: str, challenge_id: str, code: str
    ) -> FactorVerification:
        response = await self._request(
            "POST",
            f"/factors/{factor_id}/verify",
            token=self._bearer(),
            json={"challenge_id": challenge_id, "code": code},
        )
        if response.status_code in (400, 422):
            return FactorVerification(verified=False)
        if response.is_error:
            raise self._client_error(response)

        session = self._parse_session(self._json(response))
        self._session = session
        return FactorVerification(verified=True, session=session)

    async def list_factors(self) -> list[MFAFactor]:
        response = await self._request("GET", "/user", token=self._bearer())
        if response.is_error:
            raise self._client_error(response)

        data = self._json(response)
        try:
            factors = []
            for item in data.get("factors") or []:
                if item.get("factor_type", "totp") != "totp":
                    continue
                factors.append(
                    MFAFactor(
                        factor_id=str(item["id"]),
                        status=FactorStatus(item["status"]),
                        enrolled_at=_parse_timestamp(item.get("created_at")) or utc_now(),
                        friendly_name=item.get("friendly_name"),
                    )
                )
            return factors
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise UnexpectedResponseError("Unreadable factor list") from e

    async def unenroll_factor(self, factor_id: str) -> None:
        response = await self._request("DELETE", f"/factors/{factor_id}", token=self._bearer())
        if response.is_error:
            raise self._client_error(response)


__all__: list[str] = ["GoTrueIdentityProvider"]
