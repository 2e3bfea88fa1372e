"""
Mock OpenID provider serving discovery, signing keys, dev ID tokens and a
JWT-bearer token endpoint.
"""

import time
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Form, HTTPException, Query
from fastapi.responses import JSONResponse
from jose import jwk, jwt
from jose.exceptions import JOSEError

from shared.logging import get_logger
from shared.test_helpers import create_discovery_document, create_jwks, create_signing_key


JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    """OAuth 2.0 error response body."""
    return JSONResponse({"error": error, "error_description": description}, status_code=status_code)


class MockOIDCProvider:
    """Mock OpenID provider implementation."""

    def __init__(
        self,
        issuer: Optional[str] = None,
        client_id: str = "broker-client.apps.test",
        port: int = 8080,
    ):
        self.port = port
        self.issuer = issuer or f"http://localhost:{port}"
        self.client_id = client_id
        self.logger = get_logger("mock.oidc")
        self.app = FastAPI(title="Mock OIDC Provider", version="1.0.0")

        self.users = {
            "user1": {
                "sub": "user1",
                "email": "john.doe@example.com",
                "name": "John Doe",
                "hd": "example.com",
            },
            "user2": {
                "sub": "user2",
                "email": "jane.smith@partner.test",
                "name": "Jane Smith",
                "hd": "partner.test",
            },
            "gmail": {
                "sub": "gmail",
                "email": "someone@gmail.test",
                "name": "Someone",
            },
        }

        self.signing_key = create_signing_key("mock-key-1")
        # client_email -> public key used to check JWT-bearer assertions
        self.service_accounts: Dict[str, Dict[str, Any]] = {}
        self.issued_tokens: Dict[str, Dict[str, Any]] = {}

        self._setup_routes()

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/token"

    def register_service_account(self, client_email: str, private_pem: str) -> None:
        """Trust assertions signed by ``private_pem`` for ``client_email``."""
        self.service_accounts[client_email] = jwk.construct(private_pem, "RS256").public_key().to_dict()

    def rotate_signing_key(self, kid: str) -> None:
        """Replace the ID token signing key."""
        self.signing_key = create_signing_key(kid)

    def issue_id_token(
        self,
        user_id: str,
        audience: Optional[str] = None,
        expires_in: int = 3600,
    ) -> str:
        """Sign an ID token for a known user."""
        if user_id not in self.users:
            raise KeyError(user_id)
        now = int(time.time())
        claims = {
            "iss": self.issuer,
            "aud": audience or self.client_id,
            "iat": now,
            "exp": now + expires_in,
            "email_verified": True,
            **self.users[user_id],
        }
        return self.signing_key.sign(claims)

    def _setup_routes(self):
        """Set up mock provider routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-oidc",
                "message": "Mock OpenID provider for the Access Token Broker",
                "version": "1.0.0",
                "issuer": self.issuer,
            }

        @self.app.get("/.well-known/openid-configuration")
        async def openid_configuration():
            """OpenID Connect configuration."""
            return create_discovery_document(self.issuer)

        @self.app.get("/certs")
        async def jwks_endpoint():
            """JWKS endpoint."""
            return create_jwks(self.signing_key)

        @self.app.get("/issue")
        async def issue(
            user: str = Query("user1"),
            audience: Optional[str] = Query(None),
            expires_in: int = Query(3600),
        ):
            """Issue a signed ID token for a mock user."""
            try:
                id_token = self.issue_id_token(user, audience, expires_in)
            except KeyError:
                raise HTTPException(status_code=404, detail="User not found")
            return {"id_token": id_token}

        @self.app.post("/token")
        async def token_endpoint(
            grant_type: Optional[str] = Form(None),
            assertion: Optional[str] = Form(None),
        ):
            """JWT-bearer grant token endpoint."""
            if grant_type != JWT_BEARER_GRANT:
                return oauth_error("unsupported_grant_type", "Only the JWT bearer grant is supported")

            if not assertion:
                return oauth_error("invalid_request", "Missing assertion")

            return self._handle_jwt_bearer(assertion)

    def _handle_jwt_bearer(self, assertion: str):
        """Check the assertion and issue an opaque access token."""
        try:
            unverified = jwt.get_unverified_claims(assertion)
        except JOSEError:
            return oauth_error("invalid_grant", "Malformed assertion")

        client_email = unverified.get("iss")
        public_key = self.service_accounts.get(client_email)
        if public_key is None:
            return oauth_error("invalid_grant", "Unknown service account")

        try:
            claims = jwt.decode(
                assertion,
                public_key,
                algorithms=["RS256"],
                audience=self.token_endpoint,
                options={"require_exp": True, "require_iat": True},
            )
        except JOSEError as exc:
            self.logger.info("Assertion rejected", client_email=client_email, error=str(exc))
            return oauth_error("invalid_grant", "Invalid JWT Signature.")

        scope = claims.get("scope")
        if not scope:
            return oauth_error("invalid_scope", "Empty or missing scope not allowed.")

        access_token = f"mock.{uuid.uuid4().hex}"
        self.issued_tokens[access_token] = {"client_email": client_email, "scope": scope}
        self.logger.info("Access token issued", client_email=client_email, scope=scope)

        return {
            "access_token": access_token,
            "expires_in": 3599,
            "token_type": "Bearer",
        }


def create_app():
    """Create mock OIDC provider application."""
    provider = MockOIDCProvider()
    return provider.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8080)
