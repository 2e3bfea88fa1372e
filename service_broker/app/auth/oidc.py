"""
OpenID Connect ID token verification for the broker.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from shared.errors import AuthenticationError, ConfigurationError
from shared.logging import get_logger


GOOGLE_ISSUER = "https://accounts.google.com"

# Google signs some ID tokens with the scheme-less issuer.
ISSUER_ALIASES: Dict[str, Tuple[str, ...]] = {
    GOOGLE_ISSUER: ("accounts.google.com",),
}


def _optional_str(payload: Dict[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass(frozen=True)
class IdentityClaims:
    """Claims extracted from a verified ID token."""

    subject: str
    issuer: str
    audience: str
    expires_at: int
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    hosted_domain: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], audience: str) -> "IdentityClaims":
        """Build claims from a verified payload. Profile fields are best-effort."""
        subject = payload.get("sub")
        aud = payload.get("aud")
        exp = payload.get("exp")
        return cls(
            subject=subject if isinstance(subject, str) else "",
            issuer=str(payload.get("iss", "")),
            # multi-audience tokens were already checked to contain ours
            audience=aud if isinstance(aud, str) else audience,
            expires_at=int(exp) if isinstance(exp, (int, float)) else 0,
            email=_optional_str(payload, "email"),
            name=_optional_str(payload, "name"),
            picture=_optional_str(payload, "picture"),
            hosted_domain=_optional_str(payload, "hd"),
        )

    def to_response(self) -> Dict[str, Any]:
        """Shape the claims for the identity-inspection response."""
        body = {
            "sub": self.subject,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
            "hd": self.hosted_domain,
            "iss": self.issuer,
            "aud": self.audience,
            "exp": self.expires_at,
        }
        return {key: value for key, value in body.items() if value is not None}


class OIDCVerifier:
    """Verifies ID tokens from one issuer for one audience.

    Key material is discovered once at startup and cached. A token signed
    with an unknown key id triggers one JWKS re-fetch, at most once per
    ``key_refresh_cooldown`` seconds.
    """

    def __init__(
        self,
        issuer: str,
        client_id: str,
        jwks_uri: str,
        keys: Sequence[Dict[str, Any]],
        *,
        client: httpx.AsyncClient,
        owns_client: bool = False,
        algorithms: Sequence[str] = ("RS256",),
        leeway: int = 60,
        key_refresh_cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.issuer = issuer
        self.client_id = client_id
        self.jwks_uri = jwks_uri
        self.algorithms = list(algorithms)
        self.leeway = leeway
        self.key_refresh_cooldown = key_refresh_cooldown
        self.accepted_issuers = (issuer,) + ISSUER_ALIASES.get(issuer, ())
        self.logger = get_logger("broker.auth.oidc")

        self._keys: List[Dict[str, Any]] = list(keys)
        self._client = client
        self._owns_client = owns_client
        self._clock = clock
        self._last_refresh = clock()
        self._lock = asyncio.Lock()

    @classmethod
    async def discover(
        cls,
        issuer: str,
        client_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 10.0,
        **kwargs: Any,
    ) -> "OIDCVerifier":
        """Fetch the provider's discovery document and signing keys.

        Raises ConfigurationError; the broker cannot serve without a trust anchor.
        """
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(timeout=http_timeout)

        discovery_url = issuer.rstrip("/") + "/.well-known/openid-configuration"
        try:
            document = await _get_json(client, discovery_url)
            if document.get("issuer") != issuer:
                raise ConfigurationError(
                    "OIDC issuer mismatch",
                    details={"expected": issuer, "discovered": document.get("issuer")},
                )
            jwks_uri = document.get("jwks_uri")
            if not isinstance(jwks_uri, str) or not jwks_uri:
                raise ConfigurationError("OIDC discovery document missing 'jwks_uri'")
            keys = _extract_keys(await _get_json(client, jwks_uri))
        except ConfigurationError:
            if owns_client:
                await client.aclose()
            raise
        except (httpx.HTTPError, ValueError) as exc:
            if owns_client:
                await client.aclose()
            raise ConfigurationError(
                "OIDC discovery failed",
                details={"url": discovery_url, "error": str(exc)},
            ) from exc

        algorithms = document.get("id_token_signing_alg_values_supported") or ["RS256"]
        verifier = cls(
            issuer,
            client_id,
            jwks_uri,
            keys,
            client=client,
            owns_client=owns_client,
            algorithms=algorithms,
            **kwargs,
        )
        verifier.logger.info(
            "OIDC provider discovered",
            issuer=issuer,
            jwks_uri=jwks_uri,
            keys_count=len(keys),
        )
        return verifier

    async def close(self) -> None:
        """Close the underlying HTTP client if this verifier created it."""
        if self._owns_client:
            await self._client.aclose()

    async def verify(self, raw_token: str) -> IdentityClaims:
        """Verify signature, issuer, audience and expiry; return the claims."""
        try:
            header = jwt.get_unverified_header(raw_token)
        except JOSEError as exc:
            raise AuthenticationError("Malformed ID token", details={"error": str(exc)}) from exc

        kid = header.get("kid")
        keys = await self._signing_keys(kid if isinstance(kid, str) else None)

        try:
            payload = jwt.decode(
                raw_token,
                {"keys": keys},
                algorithms=self.algorithms,
                audience=self.client_id,
                options={
                    "leeway": self.leeway,
                    "require_aud": True,
                    "require_exp": True,
                    "require_iss": True,
                    # no access token accompanies the ID token here
                    "verify_at_hash": False,
                },
            )
        except JOSEError as exc:
            raise AuthenticationError("ID token verification failed", details={"error": str(exc)}) from exc

        if payload.get("iss") not in self.accepted_issuers:
            raise AuthenticationError("ID token issuer mismatch", details={"iss": payload.get("iss")})

        return IdentityClaims.from_payload(payload, self.client_id)

    async def _signing_keys(self, kid: Optional[str]) -> List[Dict[str, Any]]:
        keys = self._match_keys(kid)
        if keys:
            return keys

        if kid is not None and self._clock() - self._last_refresh >= self.key_refresh_cooldown:
            await self._refresh_keys()
            keys = self._match_keys(kid)
        if not keys:
            raise AuthenticationError("Signing key not found for token", details={"kid": kid})
        return keys

    def _match_keys(self, kid: Optional[str]) -> List[Dict[str, Any]]:
        usable = [key for key in self._keys if key.get("use", "sig") == "sig"]
        if kid is None:
            return usable
        return [key for key in usable if key.get("kid") == kid]

    async def _refresh_keys(self) -> None:
        async with self._lock:
            # Another request may have refreshed while we waited.
            if self._clock() - self._last_refresh < self.key_refresh_cooldown:
                return
            try:
                keys = _extract_keys(await _get_json(self._client, self.jwks_uri))
            except (httpx.HTTPError, ValueError, ConfigurationError) as exc:
                self.logger.warning("JWKS refresh failed", jwks_uri=self.jwks_uri, error=str(exc))
                raise AuthenticationError("Signing keys unavailable", details={"error": str(exc)}) from exc
            self._keys = keys
            self._last_refresh = self._clock()
            self.logger.info("JWKS refreshed", keys_count=len(keys))


async def _get_json(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    response = await client.get(url)
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object from {url}")
    return payload


def _extract_keys(jwks: Dict[str, Any]) -> List[Dict[str, Any]]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ConfigurationError("JWKS response missing 'keys' array")
    return [key for key in keys if isinstance(key, dict)]
