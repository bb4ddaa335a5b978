"""
HTTP endpoints exposing cache effectiveness, breaker health and metrics.

Mount the router on the host service's FastAPI app::

    app.include_router(create_cache_router(components.tracker, components.metrics, components.breaker))
"""

from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from shared.circuit_breaker import CircuitBreaker
from shared.errors import CacheLayerException
from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .effectiveness import EffectivenessTracker, EntityCacheStats


class EntityStatsResponse(BaseModel):
    entity_type: str
    hits: int
    misses: int
    total_requests: int
    hit_rate: float

    @classmethod
    def from_stats(cls, stats: EntityCacheStats) -> "EntityStatsResponse":
        return cls(
            entity_type=stats.entity_type,
            hits=stats.hits,
            misses=stats.misses,
            total_requests=stats.total_requests,
            hit_rate=stats.hit_rate,
        )


class CacheStatsResponse(BaseModel):
    entities: List[EntityStatsResponse]
    total_hits: int
    total_misses: int
    overall_hit_rate: float


class CacheHealthResponse(BaseModel):
    status: str
    circuit_breaker: Optional[dict] = None


def create_cache_router(
    tracker: EffectivenessTracker,
    metrics: Optional[CacheMetrics] = None,
    breaker: Optional[CircuitBreaker] = None,
) -> APIRouter:
    """Build the cache observability router."""
    router = APIRouter()

    @router.get("/cache/stats", response_model=CacheStatsResponse)
    async def cache_stats():
        """Effectiveness counters for every entity type seen so far."""
        all_stats = tracker.get_all_stats()
        hits = sum(s.hits for s in all_stats)
        misses = sum(s.misses for s in all_stats)
        total = hits + misses
        return CacheStatsResponse(
            entities=[EntityStatsResponse.from_stats(s) for s in all_stats],
            total_hits=hits,
            total_misses=misses,
            overall_hit_rate=hits / total if total else 0.0,
        )

    @router.get("/cache/stats/{entity_type}", response_model=EntityStatsResponse)
    async def entity_stats(entity_type: str):
        """Effectiveness counters for one entity type (zeros when unseen)."""
        return EntityStatsResponse.from_stats(tracker.get_stats(entity_type))

    @router.get("/cache/health", response_model=CacheHealthResponse)
    async def cache_health():
        """Cache backend health as seen by the circuit breaker."""
        if breaker is None:
            return CacheHealthResponse(status="ok")
        state = breaker.get_state()
        return CacheHealthResponse(
            status="degraded" if breaker.is_open() else "ok",
            circuit_breaker=state,
        )

    @router.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        content = metrics.export() if metrics is not None else b""
        return Response(content=content, media_type=CONTENT_TYPE_LATEST)

    return router


def register_exception_handlers(app: FastAPI) -> None:
    """Render cache-layer exceptions escaping a route as ``ErrorResponse`` bodies."""
    logger = get_logger("cache.api")

    @app.exception_handler(CacheLayerException)
    async def cache_layer_exception_handler(request: Request, exc: CacheLayerException):
        logger.error(
            "Cache layer error",
            code=exc.code,
            message=exc.message,
            details=exc.details
        )
        return JSONResponse(
            status_code=503,
            content=exc.to_response().model_dump()
        )
