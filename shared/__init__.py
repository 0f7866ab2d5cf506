"""
Shared utilities for the Business Rule Engine.

This package aggregates common building blocks consumed by the services:

- base_service: FastAPI service skeleton (health, metrics, error handlers)
- config: Service configuration via pydantic-settings
- logging: Structured logging with event/rule correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for external calls
- circuit_breaker: Resilient external call protection

Do not import from service packages into shared/.
"""
