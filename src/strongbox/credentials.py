"""Service-account credentials — RS256 JWT assertion exchanged for an access token."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import load_pem_private_key

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"

_ASSERTION_LIFETIME_SECS = 3600
# Refresh this long before the token's stated expiry.
_EXPIRY_MARGIN_SECS = 60


class CredentialsError(Exception):
    """Raised when a service-account key is unusable or the token exchange fails."""


def normalize_private_key(raw: str) -> str:
    """Accept a PEM key whose newlines were escaped for an env var.

    ``FIREBASE_PRIVATE_KEY`` is commonly stored as a single line with
    literal ``\\n`` sequences.
    """
    return raw.strip().replace("\\n", "\n")


def load_private_key(raw: str) -> RSAPrivateKey:
    try:
        key = load_pem_private_key(normalize_private_key(raw).encode(), password=None)
    except (ValueError, TypeError) as e:
        raise CredentialsError(f"Invalid service account private key: {e}") from e
    if not isinstance(key, RSAPrivateKey):
        raise CredentialsError("Service account private key must be an RSA key.")
    return key


class ServiceAccountCredentials:
    """Mints and caches OAuth2 access tokens for a service account.

    The assertion is a self-signed RS256 JWT; the token endpoint trades it
    for a bearer token which is reused until shortly before it expires.
    """

    def __init__(
        self,
        client_email: str,
        private_key: str,
        *,
        token_uri: str = TOKEN_URI,
        scope: str = DATASTORE_SCOPE,
    ) -> None:
        self.client_email = client_email
        self._private_key = load_private_key(private_key)
        self._token_uri = token_uri
        self._scope = scope
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0),
        )
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def build_assertion(self, now: float | None = None) -> str:
        issued = int(now if now is not None else time.time())
        claims: dict[str, Any] = {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": self._token_uri,
            "scope": self._scope,
            "iat": issued,
            "exp": issued + _ASSERTION_LIFETIME_SECS,
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    async def access_token(self) -> str:
        """Return a valid bearer token, refreshing it when near expiry."""
        async with self._lock:
            if self._token and time.time() < self._expires_at - _EXPIRY_MARGIN_SECS:
                return self._token
            await self._refresh()
            assert self._token is not None
            return self._token

    async def _refresh(self) -> None:
        try:
            response = await self._client.post(
                self._token_uri,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": self.build_assertion(),
                },
            )
        except httpx.HTTPError as e:
            raise CredentialsError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            raise CredentialsError(
                f"Token exchange rejected ({response.status_code}): {response.text}"
            )
        body = response.json()
        token = body.get("access_token")
        if not token:
            raise CredentialsError("Token exchange response missing access_token.")
        self._token = token
        self._expires_at = time.time() + float(body.get("expires_in", _ASSERTION_LIFETIME_SECS))
        logger.info("Refreshed access token for %s.", self.client_email)

    async def close(self) -> None:
        await self._client.aclose()
