from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from tripauth.config import Settings
from tripauth.logging import get_logger
from tripauth.service.errors import ExchangeFailed, ProfileFetchFailed

logger = get_logger(__name__)

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": " ".join(
        [
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ]
    ),
}


def new_oauth_state() -> str:
    """Random anti-forgery value for the ``state`` query parameter."""
    return secrets.token_urlsafe(24)


@dataclass(frozen=True)
class ExternalTokens:
    access_token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class ExternalProfile:
    external_id: str
    email: str
    email_verified: bool
    given_name: str = ""
    family_name: str = ""
    name: str = ""
    picture_url: Optional[str] = None


class IdentityExchange(Protocol):
    """Turns a provider authorization code into a verified external identity."""

    def authorization_url(self, state: str) -> str:
        ...

    async def exchange_code(self, code: str) -> ExternalTokens:
        ...

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        ...

    async def refresh_external_token(self, refresh_token: str) -> ExternalTokens:
        ...


class GoogleIdentityExchange:
    """Google OAuth 2.0 adapter built on ``httpx.AsyncClient``.

    Failures are never retried here. Every transport or provider error is
    logged and re-raised as ``ExchangeFailed``/``ProfileFetchFailed`` with the
    original exception chained.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.timeout = timeout
        self._transport = transport
        self.logger = logger
        if not self.configured:
            self.logger.warning("oauth_not_configured", provider="google")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleIdentityExchange":
        return cls(
            settings.google_client_id or "",
            settings.google_client_secret or "",
            settings.google_redirect_url or "",
            timeout=settings.identity_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_url)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ExchangeFailed("Google OAuth is not configured")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            raise ValueError("Google OAuth is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_url,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            # offline + consent makes Google return a refresh token every time
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}"

    async def _request_tokens(self, data: dict[str, str], event: str) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_OAUTH["token_url"], data=data, headers=headers
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                f"{event}_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise ExchangeFailed("identity provider rejected the token request") from exc
        except httpx.HTTPError as exc:
            self.logger.error(f"{event}_transport_error", error=str(exc))
            raise ExchangeFailed("identity provider unreachable") from exc
        except ValueError as exc:
            self.logger.error(f"{event}_parse_error", error=str(exc))
            raise ExchangeFailed("identity provider returned invalid JSON") from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            self.logger.error(f"{event}_no_access_token")
            raise ExchangeFailed("identity provider returned no access token")
        return payload

    async def exchange_code(self, code: str) -> ExternalTokens:
        self._require_configured()
        if not code:
            raise ExchangeFailed("authorization code is empty")
        payload = await self._request_tokens(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_url,
                "grant_type": "authorization_code",
            },
            "oauth_exchange",
        )
        return ExternalTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
        )

    async def refresh_external_token(self, refresh_token: str) -> ExternalTokens:
        """Trade a stored provider refresh token for a fresh provider access token."""
        self._require_configured()
        if not refresh_token:
            raise ExchangeFailed("no provider refresh token available")
        payload = await self._request_tokens(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            "oauth_refresh",
        )
        # Google omits the refresh token when it is unchanged
        return ExternalTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or refresh_token,
        )

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self._client() as client:
                response = await client.get(GOOGLE_OAUTH["userinfo_url"], headers=headers)
                response.raise_for_status()
                userinfo = response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_userinfo_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise ProfileFetchFailed("identity provider rejected the profile request") from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_userinfo_transport_error", error=str(exc))
            raise ProfileFetchFailed("identity provider unreachable") from exc
        except ValueError as exc:
            self.logger.error("oauth_userinfo_parse_error", error=str(exc))
            raise ProfileFetchFailed("identity provider returned invalid JSON") from exc

        if not isinstance(userinfo, dict):
            self.logger.error("oauth_userinfo_invalid_format", type=str(type(userinfo)))
            raise ProfileFetchFailed("identity provider returned an unexpected profile")
        return self._parse_userinfo(userinfo)

    def _parse_userinfo(self, userinfo: dict[str, Any]) -> ExternalProfile:
        external_id = userinfo.get("id")
        if not external_id:
            self.logger.error("oauth_identity_missing_uid")
            raise ProfileFetchFailed("identity provider profile has no id")
        return ExternalProfile(
            external_id=str(external_id),
            email=userinfo.get("email") or "",
            email_verified=userinfo.get("verified_email") is True,
            given_name=userinfo.get("given_name") or "",
            family_name=userinfo.get("family_name") or "",
            name=userinfo.get("name") or "",
            picture_url=userinfo.get("picture") or None,
        )
