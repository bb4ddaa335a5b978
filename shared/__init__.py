"""
Shared utilities for the cache pipeline layer.

This package aggregates the ambient building blocks used by the cache
components:

- config: Cache settings via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics on an explicitly owned registry
- errors: Canonical cache-layer error types and responses
- circuit_breaker: Backend failure isolation for the cache store

Do not import from cache_pipeline into shared/.
"""
