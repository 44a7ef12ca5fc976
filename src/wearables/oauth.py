"""Fitbit OAuth 2.0 authorization-code flow with PKCE.

Fitbit registers this app as a "Server" client, so the token endpoint is
called with HTTP Basic client authentication and the body carries
``grant_type``, ``code``, ``code_verifier`` and ``redirect_uri`` but not the
client id.

Endpoints used:
    https://www.fitbit.com/oauth2/authorize   user consent
    https://api.fitbit.com/oauth2/token       code exchange + refresh
    https://api.fitbit.com/oauth2/revoke      disconnect
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from src.config import Settings
from src.wearables.base import OAuthTokens, PKCEChallenge, utc_now
from src.wearables.errors import TokenExchangeError, TokenRefreshError

logger = logging.getLogger("healthhub.wearables.oauth")

FITBIT_AUTH_URL = "https://www.fitbit.com/oauth2/authorize"
FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"
FITBIT_REVOKE_URL = "https://api.fitbit.com/oauth2/revoke"

# RFC 7636 §4.1 bounds the verifier to 43–128 characters
_VERIFIER_LENGTH = 64


@dataclass(frozen=True)
class FitbitOAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> FitbitOAuthConfig:
        return cls(
            client_id=settings.fitbit_client_id,
            client_secret=settings.fitbit_client_secret,
            redirect_uri=settings.fitbit_redirect_uri,
            scopes=list(settings.fitbit_scopes),
        )


def generate_pkce() -> PKCEChallenge:
    """Generate a PKCE verifier, its S256 challenge and a state nonce.

    Pure function: no I/O.  Both random values come from the OS CSPRNG.
    """
    code_verifier = generate_token(_VERIFIER_LENGTH)
    return PKCEChallenge(
        code_verifier=code_verifier,
        code_challenge=create_s256_code_challenge(code_verifier),
        state=secrets.token_hex(16),
    )


def build_authorization_url(config: FitbitOAuthConfig, pkce: PKCEChallenge) -> str:
    """Compose the Fitbit consent URL for a PKCE handshake."""
    params = {
        "client_id": config.client_id,
        "response_type": "code",
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": "S256",
        "redirect_uri": config.redirect_uri,
        "scope": " ".join(config.scopes),
        "state": pkce.state,
        # Forces re-consent so newly added scopes are granted
        "prompt": "login consent",
    }
    return f"{FITBIT_AUTH_URL}?{urlencode(params)}"


def expiration_from(expires_in: int | float, now: datetime | None = None) -> datetime:
    """Turn a relative ``expires_in`` (seconds) into an absolute instant."""
    return (now or utc_now()) + timedelta(seconds=int(expires_in))


def _error_message(response: httpx.Response) -> str:
    """Pull the provider's message out of a Fitbit error body."""
    try:
        body = response.json()
    except ValueError:
        return f"{response.status_code} - {response.text}"
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list) and errors[0].get("message"):
        return errors[0]["message"]
    return f"{response.status_code} - {response.text}"


class FitbitOAuthClient:
    """Token endpoint client: code exchange, refresh, revoke."""

    def __init__(
        self,
        config: FitbitOAuthConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client.

        Args:
            config:      OAuth credentials and redirect URI.
            http_client: Optional pre-configured httpx client (for testing).
            timeout:     Per-request timeout in seconds.
        """
        self._config = config
        self._http_client = http_client
        self._timeout = timeout

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: With the provider's status and message.
        """
        response = await self._post(
            FITBIT_TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": self._config.redirect_uri,
            },
        )
        if response.is_error:
            message = _error_message(response)
            logger.error(
                "Fitbit token exchange failed: status=%d message=%s",
                response.status_code,
                message,
            )
            raise TokenExchangeError(message, status_code=response.status_code)
        return self._parse_tokens(response.json())

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token.  Fitbit rotates the refresh token too.

        Raises:
            TokenRefreshError: If Fitbit rejects the refresh token.
        """
        response = await self._post(
            FITBIT_TOKEN_URL,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )
        if response.is_error:
            message = _error_message(response)
            logger.warning(
                "Fitbit token refresh failed: status=%d message=%s",
                response.status_code,
                message,
            )
            raise TokenRefreshError(message, status_code=response.status_code)
        return self._parse_tokens(response.json(), fallback_refresh=refresh_token)

    async def revoke(self, token: str) -> None:
        """Revoke an access or refresh token at Fitbit."""
        response = await self._post(FITBIT_REVOKE_URL, {"token": token})
        if response.is_error:
            raise TokenExchangeError(
                _error_message(response), status_code=response.status_code
            )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _parse_tokens(self, data: dict, fallback_refresh: str = "") -> OAuthTokens:
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=expiration_from(data.get("expires_in", 28800)),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
            provider_user_id=data.get("user_id"),
        )

    async def _post(self, url: str, form: dict[str, str]) -> httpx.Response:
        auth = httpx.BasicAuth(self._config.client_id, self._config.client_secret)
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self._http_client:
            return await self._http_client.post(
                url, data=form, auth=auth, headers=headers, timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, data=form, auth=auth, headers=headers)
