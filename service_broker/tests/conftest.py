"""
Fixtures and fakes shared by the broker tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from shared.errors import AuthenticationError
from shared.test_helpers import create_signing_key, generate_private_key_pem
from service_broker.app.auth.oidc import IdentityClaims
from service_broker.app.minting.service_account import MintedAccessToken


class StaticVerifier:
    """Identity verifier returning fixed claims, or raising a fixed error."""

    def __init__(self, claims: Optional[IdentityClaims] = None, error: Optional[Exception] = None):
        self.claims = claims
        self.error = error
        self.calls: List[str] = []

    async def verify(self, raw_token: str) -> IdentityClaims:
        self.calls.append(raw_token)
        if self.error is not None:
            raise self.error
        if self.claims is None:
            raise AuthenticationError("ID token verification failed")
        return self.claims

    async def close(self) -> None:
        return None


class StaticMinter:
    """Token minter whose tokens expire ``expires_in`` seconds after each mint."""

    def __init__(
        self,
        access_token: str = "ya29.test-access-token",
        expires_in: Optional[float] = 600,
        token_type: str = "Bearer",
        error: Optional[Exception] = None,
    ):
        self.access_token = access_token
        self.expires_in = expires_in
        self.token_type = token_type
        self.error = error
        self.calls = 0

    async def mint(self) -> MintedAccessToken:
        self.calls += 1
        if self.error is not None:
            raise self.error
        expiry = None
        if self.expires_in is not None:
            expiry = datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)
        return MintedAccessToken(self.access_token, self.token_type, expiry)

    async def close(self) -> None:
        return None


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_claims(subject: str = "user-1", hosted_domain: Optional[str] = None, **overrides) -> IdentityClaims:
    values = {
        "subject": subject,
        "issuer": "https://accounts.google.com",
        "audience": "broker-client.apps.test",
        "expires_at": 1900000000,
        "email": "alice@example.com",
        "name": "Alice Example",
        "picture": None,
        "hosted_domain": hosted_domain,
    }
    values.update(overrides)
    return IdentityClaims(**values)


@pytest.fixture(scope="session")
def signing_key():
    """ID token signing key, generated once per session."""
    return create_signing_key("idp-key-1")


@pytest.fixture(scope="session")
def service_account_pem():
    """Service-account private key, generated once per session."""
    return generate_private_key_pem()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def claims_factory():
    return make_claims


@pytest.fixture
def verifier():
    """Verifier accepting every token as ``user-1``."""
    return StaticVerifier(make_claims())


@pytest.fixture
def minter():
    return StaticMinter()
