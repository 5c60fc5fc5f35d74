"""
relay_oauth.py — OAuth 2.0 authorization-code client for the key relay.

Talks to a single third-party provider:
  authorize_url(state)  — consent-page URL the user is redirected to
  exchange(code)        — server-to-server code → access token exchange

The token exchange runs on httpx with a bounded timeout. Any transport
error, non-2xx status, provider error payload or body without an
access_token is reported as ExchangeFailed.
"""

import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger("relay-oauth")

DEFAULT_TIMEOUT = 10.0  # seconds
AUTH_STYLES = ("params", "header")


class ExchangeFailed(Exception):
    """The provider rejected the code or could not be reached."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class ProviderConfig:
    client_id: str
    client_secret: str
    redirect_url: str
    auth_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)
    timeout: float = DEFAULT_TIMEOUT
    auth_style: str = "params"


class OAuthToken(BaseModel):
    """Token endpoint response (RFC 6749 §5.1); unknown fields are ignored.

    Only access_token is relayed, so the other fields accept whatever the
    provider sends (null token_type, list-valued scope).
    """

    access_token: str
    token_type: str | None = None
    expires_in: Any = None
    refresh_token: Any = None
    scope: Any = None


class ProviderClient:
    """Authorization-code grant against one configured provider."""

    def __init__(self, config: ProviderConfig,
                 transport: httpx.AsyncBaseTransport | None = None):
        if config.auth_style not in AUTH_STYLES:
            raise ValueError(
                f"Invalid auth_style '{config.auth_style}'. "
                f"Valid options: {', '.join(AUTH_STYLES)}"
            )
        self.config = config
        self._transport = transport

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
        }
        if self.config.redirect_url:
            params["redirect_uri"] = self.config.redirect_url
        if self.config.scopes:
            params["scope"] = " ".join(self.config.scopes)
        if state:
            params["state"] = state
        query = urllib.parse.urlencode(sorted(params.items()))
        sep = "&" if "?" in self.config.auth_url else "?"
        return f"{self.config.auth_url}{sep}{query}"

    async def exchange(self, code: str) -> OAuthToken:
        data = {
            "grant_type": "authorization_code",
            "code": code,
        }
        if self.config.redirect_url:
            data["redirect_uri"] = self.config.redirect_url

        auth = None
        if self.config.auth_style == "header":
            auth = httpx.BasicAuth(self.config.client_id, self.config.client_secret)
        else:
            data["client_id"] = self.config.client_id
            data["client_secret"] = self.config.client_secret

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout,
                                         transport=self._transport) as client:
                response = await client.post(
                    self.config.token_url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise ExchangeFailed(f"token request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ExchangeFailed(f"token request failed: {e}") from e

        body = _parse_token_body(response)
        if not response.is_success:
            detail = body.get("error_description") or body.get("error") or response.text[:200]
            raise ExchangeFailed(f"token endpoint returned {response.status_code}: {detail}")
        if body.get("error"):
            detail = body.get("error_description") or body["error"]
            raise ExchangeFailed(f"token endpoint returned error: {detail}")

        try:
            token = OAuthToken.model_validate(body)
        except ValidationError as e:
            raise ExchangeFailed(f"malformed token response: {e.error_count()} invalid field(s)") from e
        if not token.access_token:
            raise ExchangeFailed("server response missing access_token")

        logger.info("exchange: ok token=%s... type=%s", token.access_token[:8],
                    token.token_type or "none")
        return token


def _parse_token_body(response: httpx.Response) -> dict:
    """Decode a token endpoint body, JSON or form-encoded."""
    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in ("application/x-www-form-urlencoded", "text/plain"):
        parsed = urllib.parse.parse_qs(response.text, keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items()}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
