"""
Shared utilities for the Catchment Cache service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Bounded and never-give-up retry helpers
- base_service: FastAPI service shell

Do not import from service_* packages into shared/.
"""
