"""
ID token to access token exchange.

Both broker endpoints run the same gates in the same order:

1. origin rate limit (``ip:<addr>``), before any verification work
2. ``Authorization: Bearer`` extraction
3. ID token verification
4. non-empty subject
5. identity rate limit (``user:<sub>``)

The exchange path then applies the optional hosted-domain allowlist and
mints. The domain check runs after the identity rate limit so that callers
from other domains still spend their own budget.

Every failure is raised as an ``AccessLayerException`` carrying a fixed
public message; the base service renders it as exactly one response.
"""

import math
from typing import Optional, Protocol

from fastapi import Request

from shared.errors import (
    AccessLayerException,
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ServiceError,
)
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..auth.oidc import IdentityClaims
from ..minting.service_account import MintedAccessToken
from ..ratelimit.registry import LimiterRegistry


class IdentityVerifier(Protocol):
    async def verify(self, raw_token: str) -> IdentityClaims: ...


class TokenMinter(Protocol):
    async def mint(self) -> MintedAccessToken: ...


def client_ip(request: Request) -> str:
    """Caller origin: first X-Forwarded-For hop, else the peer address."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    if request.client and request.client.host:
        host = request.client.host
        # ASGI servers give the bare host; tolerate "host:port" anyway.
        if host.count(":") == 1:
            host = host.split(":", 1)[0]
        return host
    return "unknown"


def bearer_token(authorization: Optional[str]) -> str:
    """Return the token from ``Bearer <token>`` (scheme is case-insensitive)."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing or invalid Authorization header")
    token = authorization[len("bearer "):].strip()
    if not token:
        raise AuthenticationError("missing or invalid Authorization header")
    return token


def retry_after_seconds(delay: float) -> int:
    """Whole seconds to advertise in Retry-After, at least 1."""
    return max(1, math.ceil(delay))


class TokenExchange:
    """Runs the gate sequence for identity inspection and token exchange."""

    def __init__(
        self,
        verifier: IdentityVerifier,
        minter: TokenMinter,
        user_limiter: LimiterRegistry,
        ip_limiter: LimiterRegistry,
        *,
        allowed_domain: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.verifier = verifier
        self.minter = minter
        self.user_limiter = user_limiter
        self.ip_limiter = ip_limiter
        self.allowed_domain = allowed_domain.strip().lower() if allowed_domain and allowed_domain.strip() else None
        self.metrics = metrics
        self.logger = get_logger("broker.exchange")

    async def whoami(self, request: Request) -> IdentityClaims:
        """Verify the caller and return their claims."""
        return await self._authenticate(request)

    async def exchange(self, request: Request) -> MintedAccessToken:
        """Verify the caller and mint a provider access token for them."""
        claims = await self._authenticate(request)
        self._check_domain(claims)

        try:
            token = await self.minter.mint()
        except AccessLayerException as exc:
            self._count("tokens_minted_total", status="error")
            self.logger.error("Token mint failed", subject=claims.subject, error=exc.message, details=exc.details)
            raise ServiceError("token mint failed") from exc
        except Exception as exc:
            self._count("tokens_minted_total", status="error")
            self.logger.error("Token mint failed", subject=claims.subject, error=f"{type(exc).__name__}: {exc}")
            raise ServiceError("token mint failed") from exc

        self._count("tokens_minted_total", status="ok")
        self.logger.info("Access token issued", subject=claims.subject)
        return token

    async def _authenticate(self, request: Request) -> IdentityClaims:
        ip = client_ip(request)
        self._enforce(self.ip_limiter, f"ip:{ip}", "ip")

        raw = bearer_token(request.headers.get("Authorization"))

        try:
            claims = await self.verifier.verify(raw)
        except AuthenticationError as exc:
            self._count("token_verifications_total", status="invalid")
            self.logger.info("ID token rejected", client_ip=ip, reason=exc.message)
            raise AuthenticationError("invalid id token") from exc
        except Exception as exc:
            self._count("token_verifications_total", status="error")
            self.logger.warning("ID token verification error", client_ip=ip, error=f"{type(exc).__name__}: {exc}")
            raise AuthenticationError("invalid id token") from exc

        if not claims.subject:
            self._count("token_verifications_total", status="no_subject")
            raise AuthenticationError("no subject")
        self._count("token_verifications_total", status="ok")
        set_user_context(user_id=claims.subject)

        self._enforce(self.user_limiter, f"user:{claims.subject}", "user")
        return claims

    def _check_domain(self, claims: IdentityClaims) -> None:
        if self.allowed_domain is None:
            return
        domain = (claims.hosted_domain or "").strip().lower()
        if domain != self.allowed_domain:
            self.logger.info("Hosted domain rejected", subject=claims.subject, hd=claims.hosted_domain)
            raise AuthorizationError("forbidden: wrong domain")

    def _enforce(self, limiter: LimiterRegistry, key: str, axis: str) -> None:
        allowed, delay = limiter.allow(key)
        if allowed:
            return
        retry_after = retry_after_seconds(delay)
        self._count("rate_limit_denials_total", axis=axis)
        self.logger.warning("Rate limit exceeded", axis=axis, key=key, retry_after=retry_after)
        raise RateLimitError(f"rate limit ({axis})", retry_after=retry_after)

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)
