"""Wire the context services together from configuration."""

from __future__ import annotations

import logging
from datetime import timedelta

from ctxgraph.cache.context_cache import ContextCache
from ctxgraph.cache.tiers import CacheTier, MemoryCache, RedisSharedCache
from ctxgraph.cache.worker import BackgroundWorker
from ctxgraph.config import BudgetConfig, CacheConfig, ProjectConfig
from ctxgraph.context.engine import ContextOrchestrator
from ctxgraph.context.scoring import ScoringEngine
from ctxgraph.exceptions import ConfigError
from ctxgraph.facts.aggregator import FactAggregationService
from ctxgraph.graph.entity import EntityGraphService
from ctxgraph.store.base import ContextStore
from ctxgraph.temporal.timeline import TimelineService

logger = logging.getLogger("ctxgraph.context")

SHARE_TOLERANCE = 0.01


def validate_budget(budget: BudgetConfig) -> None:
    """Raise ConfigError for a negative budget or shares that don't fit in it."""
    if budget.token_budget < 0:
        raise ConfigError(f"Token budget must be non-negative, got {budget.token_budget}")
    shares = {
        "related_share": budget.related_share,
        "entity_share": budget.entity_share,
        "timeline_share": budget.timeline_share,
        "facts_share": budget.facts_share,
    }
    for name, value in shares.items():
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"Budget share '{name}' must be in [0, 1], got {value}")
    total = sum(shares.values())
    if total > 1.0 + SHARE_TOLERANCE:
        raise ConfigError(f"Budget shares must not exceed 1.0, got {total:.3f}")


def create_shared_tier(config: CacheConfig) -> CacheTier | None:
    """Redis when a URL is configured, otherwise no shared tier."""
    url = config.resolved_redis_url
    if not url:
        return None
    return RedisSharedCache(redis_url=url, prefix=config.key_prefix)


def create_cache(
    store: ContextStore,
    config: CacheConfig,
    shared: CacheTier | None = None,
) -> ContextCache:
    if shared is None:
        shared = create_shared_tier(config)
    return ContextCache(
        durable=store,
        shared=shared,
        local=MemoryCache(max_entries=config.local_max_entries),
        worker=BackgroundWorker(max_workers=config.worker_threads) if shared else None,
        shared_ttl=timedelta(hours=config.shared_ttl_hours),
        durable_ttl=timedelta(days=config.durable_ttl_days),
        local_ttl=timedelta(seconds=config.local_ttl_seconds),
    )


def create_orchestrator(
    store: ContextStore,
    config: ProjectConfig | None = None,
    shared_cache: CacheTier | None = None,
) -> ContextOrchestrator:
    """Create a fully wired orchestrator over a store implementing every capability.

    Args:
        store: Data access for similarity, entities, time, facts and cache rows.
        config: Project configuration; defaults apply when omitted.
        shared_cache: Overrides the shared tier built from `config.cache`.

    Raises:
        ConfigError: If scoring weights or budget shares are invalid.
    """
    config = config or ProjectConfig()
    weights = config.scoring.to_weights()
    weights.validate()
    validate_budget(config.budget)

    cache = create_cache(store, config.cache, shared_cache) if config.cache.enabled else None
    logger.debug(
        "Orchestrator wired: cache=%s shared=%s",
        "on" if cache else "off",
        type(cache.shared).__name__ if cache and cache.shared else "none",
    )
    return ContextOrchestrator(
        scoring=ScoringEngine(weights),
        similarity=store,
        entities=store,
        temporal=store,
        entity_graph=EntityGraphService(store, get_artifact=store.get_artifact),
        timeline=TimelineService(store),
        facts=FactAggregationService(store),
        cache=cache,
        budget=config.budget,
        stage_timeout=config.orchestrator.stage_timeout_seconds,
    )
