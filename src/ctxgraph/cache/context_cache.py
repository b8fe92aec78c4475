"""Three-tier cache for assembled enriched contexts.

Read order is process-local, then shared (Redis or in-memory), then the
durable store. Writes go to every tier independently; a failing tier is
logged and skipped, never raised to the caller. Backends may raise their own
exception types, so every tier call is guarded with a broad except.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import ValidationError

from ctxgraph.cache.tiers import CacheTier, MemoryCache
from ctxgraph.cache.worker import BackgroundWorker
from ctxgraph.context.models import (
    CacheStats,
    ContextCacheEntry,
    EnrichedContext,
    utcnow,
)
from ctxgraph.store.base import CacheStorage

logger = logging.getLogger("ctxgraph.cache")

CACHE_VERSION = 1

INVALIDATING_EVENTS = frozenset({
    "artifact.uploaded",
    "artifact.reprocessed",
    "artifact.deleted",
    "stakeholder.merged",
    "program.config.updated",
    "program.taxonomy.updated",
    "risk.created",
    "risk.updated",
})


class ContextCache:
    """Multi-tier cache keyed by target artifact id.

    Args:
        durable: Persistent row storage with expiry timestamps.
        shared: Shared TTL tier (e.g. RedisSharedCache). Optional.
        local: Process-local tier. Defaults to a MemoryCache.
        worker: Runs shared-tier repopulation after a durable hit.
        clock: Wall-clock source for durable expiry, injectable for tests.
    """

    def __init__(
        self,
        durable: CacheStorage | None = None,
        shared: CacheTier | None = None,
        local: CacheTier | None = None,
        worker: BackgroundWorker | None = None,
        shared_ttl: timedelta = timedelta(hours=24),
        durable_ttl: timedelta = timedelta(days=7),
        local_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.durable = durable
        self.shared = shared
        self.local = local if local is not None else MemoryCache()
        self.worker = worker
        self.shared_ttl = shared_ttl
        self.durable_ttl = durable_ttl
        self.local_ttl = local_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, artifact_id: str) -> EnrichedContext | None:
        """The cached context, or None on a miss at every tier."""
        try:
            data = self.local.get(artifact_id)
        except Exception as e:
            logger.warning("Local cache read failed for %s: %s", artifact_id, e)
            data = None
        if data is not None:
            context = self._decode(artifact_id, data, "local")
            if context is not None:
                logger.debug("Local cache hit for %s", artifact_id)
                return context

        if self.shared is not None:
            try:
                data = self.shared.get(artifact_id)
            except Exception as e:
                logger.warning("Shared cache read failed for %s: %s", artifact_id, e)
                data = None
            if data is not None:
                context = self._decode(artifact_id, data, "shared")
                if context is not None:
                    logger.debug("Shared cache hit for %s", artifact_id)
                    self._set_tier(
                        self.local, artifact_id, data,
                        min(self.local_ttl.total_seconds(), self.durable_ttl.total_seconds()),
                    )
                    return context

        return self._get_durable(artifact_id)

    def _get_durable(self, artifact_id: str) -> EnrichedContext | None:
        if self.durable is None:
            return None
        try:
            entry = self.durable.get_cache_entry(artifact_id)
        except Exception as e:
            logger.warning("Durable cache read failed for %s: %s", artifact_id, e)
            return None
        if entry is None:
            logger.debug("Cache miss for %s", artifact_id)
            return None

        now = self._clock()
        if entry.expires_at <= now:
            logger.debug("Durable cache entry for %s expired at %s", artifact_id, entry.expires_at)
            self._delete_durable(artifact_id)
            return None

        context = self._decode(artifact_id, entry.context_data, "durable")
        if context is None:
            return None

        # Upper tiers must not outlive the durable row
        remaining = (entry.expires_at - now).total_seconds()
        self._set_tier(
            self.local, artifact_id, entry.context_data,
            min(self.local_ttl.total_seconds(), remaining),
        )
        if self.shared is not None:
            ttl = min(self.shared_ttl.total_seconds(), remaining)
            if self.worker is not None:
                self.worker.submit(
                    self.shared.set, artifact_id, entry.context_data, ttl,
                    label=f"repopulate:{artifact_id}",
                )
            else:
                self._set_tier(self.shared, artifact_id, entry.context_data, ttl)
        logger.debug("Durable cache hit for %s", artifact_id)
        return context

    def _decode(self, artifact_id: str, data: str, tier: str) -> EnrichedContext | None:
        try:
            return EnrichedContext.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Discarding unreadable %s cache entry for %s: %s", tier, artifact_id, e)
            self.invalidate(artifact_id)
            return None

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put(self, artifact_id: str, context: EnrichedContext, program_id: str = "") -> None:
        """Write to every tier. Never raises on tier failure."""
        data = context.model_dump_json()
        # Upper tiers must not outlive the durable row
        lifetime = self.durable_ttl.total_seconds()
        self._set_tier(self.local, artifact_id, data, min(self.local_ttl.total_seconds(), lifetime))
        if self.shared is not None:
            self._set_tier(
                self.shared, artifact_id, data, min(self.shared_ttl.total_seconds(), lifetime)
            )
        if self.durable is not None:
            now = self._clock()
            entry = ContextCacheEntry(
                cache_id=str(uuid.uuid4()),
                artifact_id=artifact_id,
                program_id=program_id,
                context_data=data,
                token_count=context.estimated_tokens,
                artifacts_included=[a.artifact_id for a in context.related_artifacts],
                cache_version=CACHE_VERSION,
                created_at=now,
                expires_at=now + self.durable_ttl,
            )
            try:
                self.durable.upsert_cache_entry(entry)
            except Exception as e:
                logger.warning("Durable cache write failed for %s: %s", artifact_id, e)

    @staticmethod
    def _set_tier(tier: CacheTier, artifact_id: str, data: str, ttl: float) -> None:
        try:
            tier.set(artifact_id, data, ttl)
        except Exception as e:
            logger.warning("%s cache write failed for %s: %s", tier.name, artifact_id, e)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, artifact_id: str) -> None:
        self._delete_upper(artifact_id)
        self._delete_durable(artifact_id)

    def _delete_upper(self, artifact_id: str) -> None:
        for tier in (self.local, self.shared):
            if tier is None:
                continue
            try:
                tier.delete(artifact_id)
            except Exception as e:
                logger.warning("%s cache delete failed for %s: %s", tier.name, artifact_id, e)

    def _delete_durable(self, artifact_id: str) -> None:
        if self.durable is None:
            return
        try:
            self.durable.delete_cache_entry(artifact_id)
        except Exception as e:
            logger.warning("Durable cache delete failed for %s: %s", artifact_id, e)

    def invalidate_for_program(self, program_id: str) -> int:
        """Drop every cached context in a program. Returns how many ids were cleared."""
        if self.durable is None:
            return 0
        try:
            artifact_ids = self.durable.artifact_ids_for_program(program_id)
        except Exception as e:
            logger.error("Could not enumerate artifacts for program %s: %s", program_id, e)
            return 0

        for artifact_id in artifact_ids:
            self._delete_upper(artifact_id)
        try:
            removed = self.durable.delete_cache_entries(artifact_ids)
        except Exception as e:
            logger.error("Batch cache delete failed for program %s: %s", program_id, e)
            removed = 0
        logger.info(
            "Invalidated %d artifacts in program %s (%d durable rows)",
            len(artifact_ids), program_id, removed,
        )
        return len(artifact_ids)

    def sweep(self) -> int:
        """Delete expired durable rows. Returns the number removed."""
        if isinstance(self.local, MemoryCache):
            self.local.purge_expired()
        if self.durable is None:
            return 0
        try:
            removed = self.durable.cleanup_expired_cache(self._clock())
        except Exception as e:
            logger.error("Cache sweep failed: %s", e)
            return 0
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        return removed

    @staticmethod
    def should_invalidate(event_type: str) -> bool:
        return event_type in INVALIDATING_EVENTS

    def handle_event(
        self,
        event_type: str,
        artifact_id: str | None = None,
        program_id: str | None = None,
    ) -> int:
        """React to an upstream lifecycle event. Returns how many ids were cleared.

        Program-scoped invalidation wins when a program id is given, since a
        new or changed artifact alters the related context of its neighbours.
        """
        if not self.should_invalidate(event_type):
            return 0
        if program_id:
            return self.invalidate_for_program(program_id)
        if artifact_id:
            self.invalidate(artifact_id)
            return 1
        logger.warning("Event %s carried neither artifact nor program id", event_type)
        return 0

    def close(self) -> None:
        """Finish pending repopulation jobs and stop the worker."""
        if self.worker is not None:
            self.worker.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        stats = CacheStats()
        if self.durable is not None:
            try:
                stats = self.durable.cache_stats(self._clock())
            except Exception as e:
                logger.warning("Durable cache stats unavailable: %s", e)
        stats.local_entries = self.local.size() or 0
        if self.shared is not None:
            try:
                stats.shared_entries = self.shared.size()
            except Exception as e:
                logger.warning("Shared cache size unavailable: %s", e)
        if self.worker is not None:
            stats.repopulation_failures = self.worker.failures
        return stats
