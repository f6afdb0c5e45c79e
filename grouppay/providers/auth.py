"""
OAuth client-credentials token exchange for the Tourism Bank gateway.

A fresh token is fetched per call unless the cache is enabled. The bank's
token endpoint takes a form body and scopes the token to a branch through
the client_claims field.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from grouppay.engine.retry import AuthError
from grouppay.providers.base import GatewayCredentials

logger = logging.getLogger("grouppay.auth")

EXPIRY_MARGIN = timedelta(seconds=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccessToken:
    access_token: str
    token_type: str = "bearer"
    expires_in: int = 0  # Seconds
    obtained_at: datetime = field(default_factory=_utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return now < self.obtained_at + timedelta(seconds=self.expires_in) - EXPIRY_MARGIN


class TokenCache:
    """Keeps tokens per (client id, branch) until shortly before they expire."""

    def __init__(self):
        self._tokens: dict[tuple[str, str], AccessToken] = {}

    def get(self, credentials: GatewayCredentials) -> Optional[AccessToken]:
        token = self._tokens.get((credentials.client_id, credentials.branch_code))
        if token is not None and token.is_valid():
            return token
        return None

    def put(self, credentials: GatewayCredentials, token: AccessToken) -> None:
        self._tokens[(credentials.client_id, credentials.branch_code)] = token

    def clear(self) -> None:
        self._tokens.clear()


def build_token_form(credentials: GatewayCredentials) -> dict[str, str]:
    credentials.require_client_credentials()
    return {
        "grant_type": "client_credentials",
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
        "client_claims": json.dumps({"branch_code": credentials.branch_code}),
    }


async def fetch_access_token(
    client: httpx.AsyncClient,
    token_url: str,
    credentials: GatewayCredentials,
    cache: Optional[TokenCache] = None,
) -> AccessToken:
    """
    Exchange client credentials for an access token.

    Raises:
        ConfigurationError: Client id or secret missing from gateway metadata.
        AuthError: Network failure, non-2xx response, or no token in the body.
    """
    if cache is not None:
        cached = cache.get(credentials)
        if cached is not None:
            return cached

    form = build_token_form(credentials)

    try:
        response = await client.post(token_url, data=form)
    except httpx.HTTPError as e:
        logger.warning("Token request failed: %s", e)
        raise AuthError(f"Token request failed: {e}", status_code=None) from e

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if response.status_code < 200 or response.status_code >= 300:
        detail = body.get("error_description") or body.get("error") or response.text
        logger.warning("Token endpoint returned %d: %s", response.status_code, detail)
        raise AuthError(f"Token request rejected: {detail}", status_code=response.status_code)

    access_token = body.get("access_token")
    if not access_token:
        raise AuthError("Token response did not contain an access token", status_code=response.status_code)

    token = AccessToken(
        access_token=access_token,
        token_type=body.get("token_type") or "bearer",
        expires_in=int(body.get("expires_in") or 0),
    )
    if cache is not None:
        cache.put(credentials, token)
    return token
