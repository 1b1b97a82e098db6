"""
Shared utilities for the LMS content access gating service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for idempotent upstream reads
- circuit_breaker: Resilient external call protection
- tracing: OpenTelemetry setup and tracers
- base_service: FastAPI application scaffolding (health, metrics, errors)

Any cross-cutting logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
