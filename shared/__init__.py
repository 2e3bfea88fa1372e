"""
Shared utilities for the Access Token Broker.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/user correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types, each carrying its HTTP rendering
- base_service: FastAPI application skeleton (lifespan, CORS, handlers)
- test_helpers: Key material and token factories for tests

Do not import from service packages into shared/.
"""
