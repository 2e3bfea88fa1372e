"""
Access token broker service.

Exchanges a caller's OIDC ID token for a short-lived provider access token.
"""

import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .auth.oidc import OIDCVerifier
from .exchange.orchestrator import IdentityVerifier, TokenExchange, TokenMinter
from .minting.service_account import ServiceAccountTokenMinter, remaining_lifetime
from .ratelimit.registry import LimiterRegistry


NO_STORE = {"Cache-Control": "no-store"}


class BrokerService(BaseService):
    """Broker service implementation.

    ``verifier`` and ``minter`` may be injected (tests); otherwise the minter
    is built from configuration here and the verifier is discovered at startup.
    Both failures are fatal.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        verifier: Optional[IdentityVerifier] = None,
        minter: Optional[TokenMinter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("broker", config)

        self._owns_verifier = verifier is None
        self._owns_minter = minter is None
        self.verifier = verifier
        self.minter = minter or ServiceAccountTokenMinter.from_json(
            self.config.google_sa_json,
            self.config.token_scope,
        )

        self.user_limiter = LimiterRegistry(
            self.config.rate_per_min,
            self.config.rate_burst,
            self.config.rate_cleanup_mins,
            name="user",
            clock=clock,
            on_sweep=lambda size: self.metrics.set_gauge("limiter_entries", size, axis="user"),
        )
        self.ip_limiter = LimiterRegistry(
            self.config.ip_rate_per_min,
            self.config.ip_burst,
            self.config.rate_cleanup_mins,
            name="ip",
            clock=clock,
            on_sweep=lambda size: self.metrics.set_gauge("limiter_entries", size, axis="ip"),
        )

        self.exchange = TokenExchange(
            self.verifier,
            self.minter,
            self.user_limiter,
            self.ip_limiter,
            allowed_domain=self.config.allowed_hd,
            metrics=self.metrics,
        )

        self._setup_broker_routes()
        self.app.state.broker_service = self

    async def _on_startup(self) -> None:
        if self.verifier is None:
            self.verifier = await OIDCVerifier.discover(
                self.config.oidc_issuer,
                self.config.oidc_client_id,
            )
            self.exchange.verifier = self.verifier

        self.user_limiter.start()
        self.ip_limiter.start()
        self.logger.info(
            "Broker ready",
            issuer=self.config.oidc_issuer,
            audience=self.config.oidc_client_id,
            scope=self.config.token_scope,
            allowed_hd=self.config.allowed_hd,
            user_rate_per_min=self.config.rate_per_min,
            user_burst=self.config.rate_burst,
            ip_rate_per_min=self.config.ip_rate_per_min,
            ip_burst=self.config.ip_burst,
            cleanup_mins=self.config.rate_cleanup_mins,
        )

    async def _on_shutdown(self) -> None:
        await self.user_limiter.stop()
        await self.ip_limiter.stop()
        if self._owns_verifier and self.verifier is not None:
            await self.verifier.close()
        if self._owns_minter:
            await self.minter.close()

    def _setup_broker_routes(self):
        """Set up broker routes."""

        @self.app.get("/whoami")
        async def whoami(request: Request):
            """Return the verified claims of the caller's ID token."""
            claims = await self.exchange.whoami(request)
            return JSONResponse(claims.to_response(), headers=NO_STORE)

        @self.app.get("/token")
        async def token(request: Request):
            """Exchange the caller's ID token for a provider access token."""
            minted = await self.exchange.exchange(request)
            return JSONResponse(
                {
                    "access_token": minted.access_token,
                    "token_type": minted.token_type,
                    "expires_in": remaining_lifetime(minted.expiry),
                },
                headers=NO_STORE,
            )


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = BrokerService(config, **kwargs)
    return service.app


def main():
    """Run the broker with configuration from the environment."""
    service = BrokerService()
    service.run()


if __name__ == "__main__":
    main()
