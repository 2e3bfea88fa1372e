"""
Base service class for Access Token Broker services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from contextlib import asynccontextmanager
from typing import Optional
import time

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import AccessLayerException


CORS_ALLOW_HEADERS = "authorization, content-type"
CORS_ALLOW_METHODS = "GET, OPTIONS"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.config = config or get_config(service_name)
        self.port = self.config.port
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            try:
                await self._on_startup()
                yield
            finally:
                await self._on_shutdown()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Access Token Broker - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            openapi_url="/openapi.json" if self.config.env == "local" else None,
            lifespan=lifespan,
        )

    async def _on_startup(self) -> None:
        """Acquire long-lived resources. Override in subclasses."""

    async def _on_shutdown(self) -> None:
        """Release long-lived resources. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        # Request timing middleware
        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()
            try:
                response = await call_next(request)
                duration = time.time() - start_time

                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration=duration
                )

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                return response
            finally:
                clear_context()

        # Cross-origin headers go on every response, preflights end here.
        @self.app.middleware("http")
        async def add_cors_headers(request: Request, call_next):
            if request.method == "OPTIONS":
                response = Response(status_code=204)
            else:
                try:
                    response = await call_next(request)
                except Exception as exc:
                    response = self._internal_error(exc)
            response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin
            response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
            response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/healthz", response_class=PlainTextResponse)
        async def healthz():
            """Liveness endpoint."""
            return "ok"

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        # Error handlers
        @self.app.exception_handler(AccessLayerException)
        async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
            """Render an AccessLayerException as a plain-text response."""
            self.logger.warning(
                "Request rejected",
                path=request.url.path,
                error=exc.to_response().model_dump()
            )
            self.metrics.record_error(exc.code)
            return PlainTextResponse(
                exc.message,
                status_code=exc.status_code,
                headers=exc.headers
            )

    def _internal_error(self, exc: Exception) -> Response:
        """Render an unhandled exception without leaking its details."""
        self.logger.error("Unhandled exception", error=str(exc), exc_info=exc)
        self.metrics.record_error("INTERNAL_ERROR")
        return PlainTextResponse("internal server error", status_code=500)

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
