"""
Startup cache warm-up.

Strategies pre-load frequently read entries (reference data, hot lookups)
before an instance takes traffic. A failing strategy is logged and reported in
the summary; the others still run and startup continues.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from shared.logging import get_logger
from .keys import KeyScope
from .stores.base import CacheStore


class CacheWarmupStrategy:
    """Populates the cache with one group of entries."""

    @property
    def name(self) -> str:
        return type(self).__name__

    async def warmup(self, store: CacheStore, scope: KeyScope) -> int:
        """Write entries to ``store``; returns how many were written."""
        raise NotImplementedError


class LoaderWarmupStrategy(CacheWarmupStrategy):
    """Loads one logical key from an async loader.

    ``LoaderWarmupStrategy("Countries", repo.all_countries, timedelta(hours=24))``
    """

    def __init__(
        self,
        logical_key: str,
        loader: Callable[[], Awaitable[Any]],
        duration: timedelta,
        name: Optional[str] = None,
    ):
        self.logical_key = logical_key
        self.loader = loader
        self.duration = duration
        self._name = name

    @property
    def name(self) -> str:
        return self._name or f"{type(self).__name__}({self.logical_key})"

    async def warmup(self, store: CacheStore, scope: KeyScope) -> int:
        value = await self.loader()
        if value is None:
            return 0
        await store.set(scope.scope(self.logical_key), value, self.duration)
        return 1


class CacheWarmupService:
    """Runs warm-up strategies concurrently and summarises the outcome."""

    def __init__(
        self,
        store: CacheStore,
        scope: KeyScope,
        strategies: Iterable[CacheWarmupStrategy] = (),
        concurrency: int = 5,
    ):
        self.store = store
        self.scope = scope
        self.strategies: List[CacheWarmupStrategy] = list(strategies)
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self.logger = get_logger("cache.warmup")

    async def run(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "planned": len(self.strategies),
            "completed": 0,
            "entries": 0,
            "errors": [],
        }
        if not self.strategies:
            self.logger.info("No cache warm-up strategies registered; skipped")
            return summary

        self.logger.info("Cache warm-up starting", strategies=len(self.strategies))
        results = await asyncio.gather(
            *(self._run_strategy(strategy) for strategy in self.strategies),
            return_exceptions=True
        )

        for strategy, outcome in zip(self.strategies, results):
            if isinstance(outcome, Exception):
                self.logger.error("Warm-up strategy failed", strategy=strategy.name, error=str(outcome))
                summary["errors"].append(f"{strategy.name}: {outcome}")
                continue
            summary["completed"] += 1
            summary["entries"] += outcome or 0

        self.logger.info(
            "Cache warm-up completed",
            completed=summary["completed"],
            entries=summary["entries"],
            errors=len(summary["errors"])
        )
        return summary

    async def _run_strategy(self, strategy: CacheWarmupStrategy) -> int:
        async with self._semaphore:
            start = time.perf_counter()
            written = await strategy.warmup(self.store, self.scope)
            self.logger.debug(
                "Warm-up strategy finished",
                strategy=strategy.name,
                entries=written,
                duration_ms=round((time.perf_counter() - start) * 1000, 2)
            )
            return written
