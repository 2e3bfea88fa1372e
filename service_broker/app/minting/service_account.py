"""
Service-account access token minting.

Signs a short JWT assertion with the service account's private key and
exchanges it at the provider's token endpoint (RFC 7523 JWT bearer grant)
for a scoped access token.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from jose import jwk, jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shared.errors import ConfigurationError, ExternalServiceError
from shared.logging import get_logger


GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

ASSERTION_LIFETIME = 3600
# Reported when the provider gives no expiry.
DEFAULT_LIFETIME = 3600
# Cached tokens are replaced this many seconds before they expire.
EXPIRY_DELTA = 10


class ServiceAccountCredentials(BaseModel):
    """The parts of a service-account key file used for minting."""

    model_config = ConfigDict(extra="ignore")

    type: str = "service_account"
    client_email: str = Field(min_length=1)
    private_key: str = Field(min_length=1, repr=False)
    private_key_id: Optional[str] = None
    token_uri: str = GOOGLE_TOKEN_URI

    @field_validator("token_uri", mode="before")
    @classmethod
    def _default_token_uri(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return GOOGLE_TOKEN_URI
        return value

    @classmethod
    def from_json(cls, raw: str) -> "ServiceAccountCredentials":
        """Parse key-file JSON. Error details name fields only, never values."""
        try:
            credentials = cls.model_validate_json(raw)
        except ValidationError as exc:
            fields = [".".join(str(part) for part in error["loc"]) or error["type"] for error in exc.errors()]
            raise ConfigurationError(
                "Invalid service account credentials",
                details={"fields": fields},
            ) from None
        if credentials.type != "service_account":
            raise ConfigurationError(
                "Unsupported credentials type",
                details={"type": credentials.type},
            )
        return credentials


@dataclass(frozen=True)
class MintedAccessToken:
    """A provider access token and its absolute expiry (None when unknown)."""

    access_token: str = field(repr=False)
    token_type: str
    expiry: Optional[datetime]


def remaining_lifetime(expiry: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole seconds until ``expiry``, never negative.

    Call this when the response is built, not when the token is minted.
    """
    if expiry is None:
        return DEFAULT_LIFETIME
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = (expiry - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds)


class ServiceAccountTokenMinter:
    """Mints scoped access tokens from a service-account credential.

    The last token is reused until shortly before it expires; mints are
    serialized so concurrent requests share a single exchange.
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        scope: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.scope = scope
        self.logger = get_logger("broker.minting")

        try:
            jwk.construct(credentials.private_key, "RS256")
        except JOSEError as exc:
            raise ConfigurationError(
                "Service account private key is not a usable RS256 key",
                details={"client_email": credentials.client_email},
            ) from exc

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=http_timeout)
        self._clock = clock
        self._cached: Optional[MintedAccessToken] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_json(cls, raw: str, scope: str, **kwargs: Any) -> "ServiceAccountTokenMinter":
        """Build a minter from key-file JSON. Raises ConfigurationError."""
        return cls(ServiceAccountCredentials.from_json(raw), scope, **kwargs)

    async def close(self) -> None:
        """Close the underlying HTTP client if this minter created it."""
        if self._owns_client:
            await self._client.aclose()

    async def mint(self) -> MintedAccessToken:
        """Return a valid access token, exchanging the credential if needed."""
        async with self._lock:
            cached = self._cached
            if cached is not None and self._is_fresh(cached):
                return cached
            token = await self._exchange()
            self._cached = token
            return token

    def _is_fresh(self, token: MintedAccessToken) -> bool:
        if token.expiry is None:
            return False
        return token.expiry.timestamp() - EXPIRY_DELTA > self._clock()

    def _assertion(self, issued_at: int) -> str:
        claims = {
            "iss": self.credentials.client_email,
            "scope": self.scope,
            "aud": self.credentials.token_uri,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME,
        }
        headers = {"kid": self.credentials.private_key_id} if self.credentials.private_key_id else None
        return jwt.encode(claims, self.credentials.private_key, algorithm="RS256", headers=headers)

    async def _exchange(self) -> MintedAccessToken:
        token_uri = self.credentials.token_uri
        assertion = self._assertion(int(self._clock()))

        try:
            response = await self._client.post(
                token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                "token-endpoint",
                "request failed",
                details={"token_uri": token_uri, "error": f"{type(exc).__name__}: {exc}"},
            ) from exc
        received_at = self._clock()

        if not response.is_success:
            raise ExternalServiceError(
                "token-endpoint",
                "credential exchange rejected",
                details={"token_uri": token_uri, "status_code": response.status_code, **_oauth_error(response)},
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError(
                "token-endpoint",
                "malformed token response",
                details={"token_uri": token_uri},
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise ExternalServiceError(
                "token-endpoint",
                "token response missing access_token",
                details={"token_uri": token_uri},
            )

        expires_in = _seconds(payload.get("expires_in"))
        expiry = None
        if expires_in:
            expiry = datetime.fromtimestamp(received_at + expires_in, tz=timezone.utc)

        token = MintedAccessToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expiry=expiry,
        )
        self.logger.info(
            "Access token minted",
            client_email=self.credentials.client_email,
            token_type=token.token_type,
            expires_in=expires_in,
        )
        return token


def _seconds(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _oauth_error(response: httpx.Response) -> Dict[str, Any]:
    """Pull the OAuth error code/description out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    return {
        key: body[key]
        for key in ("error", "error_description")
        if isinstance(body.get(key), str)
    }
