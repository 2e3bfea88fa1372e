"""
End-to-end tests: broker against the mock OpenID provider.

Both applications run in-process over httpx's ASGI transport, so discovery,
ID token verification and the JWT-bearer exchange all go through real HTTP
handling without opening sockets.
"""

import httpx
import pytest
import pytest_asyncio

from mocks.oidc_provider.server import JWT_BEARER_GRANT, MockOIDCProvider
from service_broker.app.auth.oidc import OIDCVerifier
from service_broker.app.main import BrokerService
from service_broker.app.minting.service_account import ServiceAccountTokenMinter
from shared.config import DEFAULT_SCOPE
from shared.errors import ConfigurationError
from shared.test_helpers import (
    TEST_CLIENT_ID,
    TEST_SERVICE_ACCOUNT,
    create_id_token_claims,
    create_service_account_json,
    create_signing_key,
    create_test_config,
    generate_private_key_pem,
)


ISSUER = "http://oidc.test"


@pytest.fixture(scope="module")
def service_account_pem():
    return generate_private_key_pem()


@pytest.fixture
def provider(service_account_pem):
    provider = MockOIDCProvider(issuer=ISSUER, client_id=TEST_CLIENT_ID)
    provider.register_service_account(TEST_SERVICE_ACCOUNT, service_account_pem)
    return provider


@pytest_asyncio.fixture
async def provider_client(provider):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=provider.app)) as client:
        yield client


async def build_broker(provider_client, service_account_pem, **overrides):
    """Discover the mock provider and wire a broker around it."""
    verifier = await OIDCVerifier.discover(
        ISSUER,
        TEST_CLIENT_ID,
        client=provider_client,
        key_refresh_cooldown=0,
    )
    minter = ServiceAccountTokenMinter.from_json(
        create_service_account_json(service_account_pem, token_uri=f"{ISSUER}/token"),
        DEFAULT_SCOPE,
        client=provider_client,
    )
    config = create_test_config(oidc_issuer=ISSUER, **overrides)
    return BrokerService(config, verifier=verifier, minter=minter)


@pytest_asyncio.fixture
async def broker(provider_client, service_account_pem):
    return await build_broker(provider_client, service_account_pem)


@pytest_asyncio.fixture
async def broker_client(broker):
    transport = httpx.ASGITransport(app=broker.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://broker.test") as client:
        yield client


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestExchangeFlow:
    """End-to-end exchange scenarios."""

    @pytest.mark.asyncio
    async def test_whoami(self, provider, broker_client):
        response = await broker_client.get("/whoami", headers=bearer(provider.issue_id_token("user1")))

        assert response.status_code == 200
        body = response.json()
        assert body["sub"] == "user1"
        assert body["email"] == "john.doe@example.com"
        assert body["hd"] == "example.com"
        assert body["iss"] == ISSUER
        assert body["aud"] == TEST_CLIENT_ID

    @pytest.mark.asyncio
    async def test_token_exchange(self, provider, broker_client):
        """Test that a verified caller receives a token minted by the provider."""
        response = await broker_client.get("/token", headers=bearer(provider.issue_id_token("user1")))

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-store"
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert 3580 <= body["expires_in"] <= 3599
        assert provider.issued_tokens[body["access_token"]] == {
            "client_email": TEST_SERVICE_ACCOUNT,
            "scope": DEFAULT_SCOPE,
        }

    @pytest.mark.asyncio
    async def test_repeat_exchange_reuses_token(self, provider, broker_client):
        token = provider.issue_id_token("user1")

        first = (await broker_client.get("/token", headers=bearer(token))).json()
        second = (await broker_client.get("/token", headers=bearer(token))).json()

        assert first["access_token"] == second["access_token"]
        assert len(provider.issued_tokens) == 1

    @pytest.mark.asyncio
    async def test_token_for_other_audience(self, provider, broker_client):
        token = provider.issue_id_token("user1", audience="someone-else")

        response = await broker_client.get("/token", headers=bearer(token))

        assert response.status_code == 401
        assert response.text == "invalid id token"
        assert provider.issued_tokens == {}

    @pytest.mark.asyncio
    async def test_forged_signature_rejected_on_both_endpoints(self, provider, broker_client):
        """Test that a token signed outside the provider leaks nothing back."""
        forger = create_signing_key(provider.signing_key.kid)
        token = forger.sign(create_id_token_claims("user1", issuer=ISSUER, audience=TEST_CLIENT_ID))

        for path in ("/whoami", "/token"):
            response = await broker_client.get(path, headers=bearer(token))

            assert response.status_code == 401
            assert response.text == "invalid id token"
        assert provider.issued_tokens == {}

    @pytest.mark.asyncio
    async def test_expired_token(self, provider, broker_client):
        token = provider.issue_id_token("user1", expires_in=-600)

        response = await broker_client.get("/whoami", headers=bearer(token))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signing_key_rotation(self, provider, broker_client):
        """Test that tokens signed with a newly published key are accepted."""
        provider.rotate_signing_key("mock-key-2")

        response = await broker_client.get("/whoami", headers=bearer(provider.issue_id_token("user2")))

        assert response.status_code == 200
        assert response.json()["sub"] == "user2"

    @pytest.mark.asyncio
    async def test_unregistered_service_account(self, provider, broker_client):
        provider.service_accounts.clear()

        response = await broker_client.get("/token", headers=bearer(provider.issue_id_token("user1")))

        assert response.status_code == 500
        assert response.text == "token mint failed"


class TestDomainRestrictedFlow:
    """End-to-end hosted-domain allowlist scenarios."""

    @pytest_asyncio.fixture
    async def broker_client(self, provider_client, service_account_pem):
        broker = await build_broker(provider_client, service_account_pem, allowed_hd="example.com")
        transport = httpx.ASGITransport(app=broker.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://broker.test") as client:
            yield client

    @pytest.mark.asyncio
    async def test_allowed_domain(self, provider, broker_client):
        response = await broker_client.get("/token", headers=bearer(provider.issue_id_token("user1")))

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_other_domain(self, provider, broker_client):
        response = await broker_client.get("/token", headers=bearer(provider.issue_id_token("user2")))

        assert response.status_code == 403
        assert response.text == "forbidden: wrong domain"
        assert provider.issued_tokens == {}

    @pytest.mark.asyncio
    async def test_no_domain(self, provider, broker_client):
        response = await broker_client.get("/token", headers=bearer(provider.issue_id_token("gmail")))

        assert response.status_code == 403


class TestDiscovery:
    """Startup discovery against the mock provider."""

    @pytest.mark.asyncio
    async def test_issuer_mismatch_is_fatal(self, provider_client):
        with pytest.raises(ConfigurationError):
            await OIDCVerifier.discover("http://other.test", TEST_CLIENT_ID, client=provider_client)

    @pytest.mark.asyncio
    async def test_dev_issue_endpoint(self, provider_client, provider):
        response = await provider_client.get(f"{ISSUER}/issue", params={"user": "user2"})

        assert response.status_code == 200
        verifier = await OIDCVerifier.discover(ISSUER, TEST_CLIENT_ID, client=provider_client)
        claims = await verifier.verify(response.json()["id_token"])
        assert claims.subject == "user2"
        assert claims.hosted_domain == "partner.test"

    @pytest.mark.asyncio
    async def test_unknown_grant_type(self, provider_client):
        response = await provider_client.post(f"{ISSUER}/token", data={"grant_type": "client_credentials"})

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    @pytest.mark.asyncio
    async def test_missing_assertion(self, provider_client):
        response = await provider_client.post(f"{ISSUER}/token", data={"grant_type": JWT_BEARER_GRANT})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
