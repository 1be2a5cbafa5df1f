"""OAuth 2.0 refresh-token grant (RFC 6749 section 6) over httpx."""

from datetime import datetime, timezone
from typing import Any

import httpx

from teamguard.config import get_settings
from teamguard.core.integration_credentials import TokenSet


class TokenRefreshError(Exception):
    """Provider rejected or failed a refresh request.

    Carries only status and OAuth error code, never response bodies.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OAuth2TokenRefresher:
    """Exchanges a refresh token for new tokens.

    Reads token_url, client_id and scope from the provider config and
    client_secret from the decrypted static credentials. Pass a transport
    to stub the provider.
    """

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        if timeout is None:
            timeout = get_settings().credential_refresh_timeout_seconds
        self.timeout = timeout
        self.transport = transport

    async def __call__(
        self,
        refresh_token: str,
        config: dict[str, Any],
        credentials: dict[str, Any] | None = None,
    ) -> TokenSet:
        token_url = config.get("token_url")
        if not token_url:
            raise TokenRefreshError("Provider config has no token_url")

        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if client_id := config.get("client_id"):
            data["client_id"] = client_id
        if client_secret := (credentials or {}).get("client_secret"):
            data["client_secret"] = client_secret
        if scope := config.get("scope"):
            data["scope"] = scope

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(
                    token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
            except httpx.TimeoutException:
                raise TokenRefreshError("Token endpoint timed out")
            except httpx.HTTPError as e:
                raise TokenRefreshError(f"Token endpoint unreachable: {type(e).__name__}")

        if response.status_code != 200:
            error_code = _oauth_error_code(response)
            raise TokenRefreshError(
                f"Token endpoint returned {response.status_code}"
                + (f" ({error_code})" if error_code else ""),
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            raise TokenRefreshError("Token endpoint returned a non-JSON body", response.status_code)

        return parse_token_response(payload)


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def parse_token_response(payload: dict[str, Any]) -> TokenSet:
    """Build a TokenSet from a token endpoint response.

    Accepts the standard snake_case fields and the camelCase variants
    some providers use.
    """
    if not isinstance(payload, dict):
        raise TokenRefreshError("Token response is not an object")

    access_token = payload.get("access_token") or payload.get("accessToken") or payload.get("idToken")
    if not access_token:
        raise TokenRefreshError("Token response has no access token")

    expires_in = payload.get("expires_in", payload.get("expiresIn"))
    refresh_expires_in = payload.get("refresh_expires_in", payload.get("refreshExpiresIn"))
    expires_at = payload.get("expires_at", payload.get("expiresAt"))

    return TokenSet(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or payload.get("refreshToken"),
        expires_in=int(expires_in) if expires_in is not None else None,
        expires_at=_parse_timestamp(expires_at),
        refresh_expires_in=int(refresh_expires_in) if refresh_expires_in is not None else None,
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise TokenRefreshError("Token response has an unreadable expiry")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
