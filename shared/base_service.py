"""
FastAPI scaffolding for the access gating service.

Provides the lifespan hooks, request timing and correlation middleware,
``/health`` and ``/metrics``, and the JSON error shape every route returns.
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import GatingConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.tracing import configure_tracing
from shared.errors import AccessLayerException, ValidationError

HealthCheck = Callable[[], Awaitable[bool]]


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, config: Optional[GatingConfig] = None):
        self.config = config or get_config()
        self.service_name = self.config.service_name
        self.logger = get_logger(self.service_name)
        self.metrics = get_metrics_collector(self.service_name)
        self._start_time = time.time()

        configure_logging(self.service_name, self.config.log_level)

        self.app = self._create_app()
        if self.config.enable_tracing:
            configure_tracing(self.service_name, self.config.otel_exporter, app=self.app)

        self._setup_middleware()
        self._setup_routes()
        self._setup_error_handlers()

    def _create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        local = self.config.env == "local"
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description="LMS - Content Access Gating Service",
            version="1.0.0",
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            request_id = set_request_id(request.headers.get("x-request-id"))
            start_time = time.time()
            try:
                response = await call_next(request)
            finally:
                duration = time.time() - start_time

            # Route templates keep user and resource ids out of metric labels
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            self.metrics.record_http_request(request.method, endpoint, response.status_code, duration)

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )
            clear_context()

            response.headers["x-request-id"] = request_id
            return response

    def _setup_routes(self):
        @self.app.get("/health")
        async def health_check():
            """Liveness plus the state of every upstream dependency."""
            dependencies = await self._check_dependencies()
            status = "ok" if all(v == "ok" for v in dependencies.values()) else "degraded"
            self.metrics.record_health_check(status)
            return {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": time.time() - self._start_time,
                "dependencies": dependencies,
                "version": "1.0.0",
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    def _setup_error_handlers(self):
        @self.app.exception_handler(AccessLayerException)
        async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
            self.logger.warning("Request rejected", code=exc.code, message=exc.message, details=exc.details)
            self.metrics.record_error(exc.code)
            return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            error = ValidationError("Invalid request", {"errors": jsonable_encoder(exc.errors())})
            self.metrics.record_error("REQUEST_VALIDATION_ERROR")
            return JSONResponse(status_code=422, content=error.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}}
            )

    def _dependency_checks(self) -> Dict[str, HealthCheck]:
        """Named dependency health checks. Override in subclasses."""
        return {}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Run every dependency check, each bounded by the upstream timeout."""
        dependencies = {}
        for name, check in self._dependency_checks().items():
            try:
                healthy = await asyncio.wait_for(check(), timeout=self.config.upstream_timeout_seconds)
            except Exception as e:
                self.logger.warning("Dependency health check failed", dependency=name, error=str(e))
                healthy = False
            dependencies[name] = "ok" if healthy else "error"
        return dependencies

    async def start(self):
        """Start service components. Override in subclasses."""

    async def stop(self):
        """Stop service components. Override in subclasses."""

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
