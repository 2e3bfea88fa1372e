"""
Broker service package for the Access Token Broker.

This package exposes the FastAPI application that turns a caller's OIDC ID
token into a short-lived, scoped provider access token:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.ratelimit: In-process token bucket registries (per identity, per origin).
- app.auth: OIDC discovery and ID token verification.
- app.minting: Service-account access token minting.
- app.exchange: The gate sequence shared by /whoami and /token.

Design notes:
- Package import must not perform network calls. Discovery happens in the
  application lifespan; credential parsing happens when the service is built.
- Use the shared/ utilities for logging, metrics, configuration and errors.
- Limiter state is per process and is never persisted.
"""
