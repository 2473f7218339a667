from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any

import redis.asyncio as redis_async

from app.core.config import Settings, get_settings
from app.services.contact_store import ContactStore, InMemoryContactStore, PostgresContactStore
from app.services.cost_ledger import CostLedger, CostLedgerConfig, build_notifiers
from app.services.materializer import ContactImporter
from app.services.orchestrator import OrchestratorConfig, SearchOrchestrator
from app.services.progress import ProgressChannel
from app.services.providers.base import SearchProvider
from app.services.providers.exa import ExaConfig, ExaProvider
from app.services.rate_limiter import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
    build_rate_limiters,
)
from app.services.resilience import CircuitBreakerConfig, CircuitBreakerRegistry, RetryPolicy

logger = logging.getLogger(__name__)

FINISHED_JOB_RETENTION = timedelta(hours=6)


@dataclass(slots=True)
class ServiceContainer:
    settings: Settings
    rate_limit_store: RateLimitStore
    rate_limiters: dict[str, RateLimiter]
    breakers: CircuitBreakerRegistry
    ledger: CostLedger
    channel: ProgressChannel
    contact_store: ContactStore
    importer: ContactImporter
    orchestrator: SearchOrchestrator
    redis: Any | None = None

    def sweep_once(self) -> None:
        store = self.rate_limit_store
        memory = store.fallback if isinstance(store, RedisRateLimitStore) else store
        expired = memory.sweep() if isinstance(memory, MemoryRateLimitStore) else 0
        pruned = self.orchestrator.prune_finished(FINISHED_JOB_RETENTION)
        if expired or pruned:
            logger.debug("sweep removed rate_limit_entries=%s finished_jobs=%s", expired, pruned)

    async def run_sweeper(self) -> None:
        interval = self.settings.rate_limit_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.sweep_once()

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.ledger.drain()
        self.channel.close_all()
        await self.contact_store.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_providers(settings: Settings) -> list[SearchProvider]:
    if not settings.exa_api_key:
        logger.warning("MC_EXA_API_KEY not set; no search providers configured")
        return []
    return [ExaProvider(ExaConfig.from_settings(settings))]


def build_contact_store(settings: Settings) -> ContactStore:
    if not settings.database_url:
        return InMemoryContactStore()
    return PostgresContactStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


def build_container(
    settings: Settings,
    *,
    providers: Sequence[SearchProvider] | None = None,
    contact_store: ContactStore | None = None,
    rate_limit_store: RateLimitStore | None = None,
) -> ServiceContainer:
    redis_client = None
    if rate_limit_store is None:
        if settings.redis_url:
            redis_client = redis_async.from_url(settings.redis_url, decode_responses=True)
            rate_limit_store = RedisRateLimitStore(redis_client)
        else:
            rate_limit_store = MemoryRateLimitStore()

    rate_limiters = build_rate_limiters(settings, rate_limit_store)
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig.from_settings(settings))
    ledger = CostLedger(CostLedgerConfig.from_settings(settings), notifiers=build_notifiers(settings))
    channel = ProgressChannel()
    store = contact_store if contact_store is not None else build_contact_store(settings)
    importer = ContactImporter(
        store,
        batch_size=settings.import_batch_size,
        max_concurrent_batches=settings.import_max_concurrent_batches,
    )
    orchestrator = SearchOrchestrator(
        providers=list(providers) if providers is not None else build_providers(settings),
        rate_limiters=rate_limiters,
        breakers=breakers,
        retry_policy=RetryPolicy.from_settings(settings),
        ledger=ledger,
        channel=channel,
        importer=importer,
        config=OrchestratorConfig.from_settings(settings),
    )
    return ServiceContainer(
        settings=settings,
        rate_limit_store=rate_limit_store,
        rate_limiters=rate_limiters,
        breakers=breakers,
        ledger=ledger,
        channel=channel,
        contact_store=store,
        importer=importer,
        orchestrator=orchestrator,
        redis=redis_client,
    )


@lru_cache
def get_container() -> ServiceContainer:
    return build_container(get_settings())
