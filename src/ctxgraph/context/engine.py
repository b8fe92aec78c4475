"""Enriched context orchestration.

Pipeline for one target artifact and a token budget B:

  1. Cache check (local, shared, durable tiers)
  2. Split B into shares: related 50%, entity graph 25%, timeline 15%,
     facts 10%
  3. Run the stages concurrently:
       related   semantic / shared-entity / temporal discovery, merged by
                 id (first source wins), then scored and first-fit selected
       entity    profiles of the people in the target
       timeline  neighbouring artifacts within +/- 90 days
       facts     aggregation over target + selected related artifacts
                 (waits for the related stage)
  4. Sum per-component token estimates; flag (but keep) an over-budget result
  5. Cache write

Every stage is bounded by a timeout. A stage that fails or times out is
logged and contributes nothing; the bundle is always returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import TypeVar

from ctxgraph.cache.context_cache import ContextCache
from ctxgraph.config import BudgetConfig
from ctxgraph.context.models import (
    AggregatedFactsContext,
    Artifact,
    ArtifactCandidate,
    ContextComponent,
    EnrichedContext,
    EntityGraphContext,
    TimelineContext,
)
from ctxgraph.context.scoring import ScoringEngine
from ctxgraph.facts.aggregator import FactAggregationService
from ctxgraph.graph.entity import EntityGraphService
from ctxgraph.store.base import EntityQueries, SimilaritySearch, TemporalQueries
from ctxgraph.temporal.timeline import TimelineService

logger = logging.getLogger("ctxgraph.context")

T = TypeVar("T")


class ContextOrchestrator:
    """Composes scoring, entity, timeline and fact services into one bundle.

    Usage:
        orchestrator = create_orchestrator(store, config)
        context = await orchestrator.build(artifact, token_budget=4000)
        prompt_section = context.render()
    """

    def __init__(
        self,
        scoring: ScoringEngine,
        similarity: SimilaritySearch,
        entities: EntityQueries,
        temporal: TemporalQueries,
        entity_graph: EntityGraphService | None = None,
        timeline: TimelineService | None = None,
        facts: FactAggregationService | None = None,
        cache: ContextCache | None = None,
        budget: BudgetConfig | None = None,
        stage_timeout: float = 30.0,
    ) -> None:
        self.scoring = scoring
        self.similarity = similarity
        self.entities = entities
        self.temporal = temporal
        self.entity_graph = entity_graph
        self.timeline = timeline
        self.facts = facts
        self.cache = cache
        self.budget = budget or BudgetConfig()
        self.stage_timeout = stage_timeout

    # -------------------------------------------------------------------
    # Main entry point
    # -------------------------------------------------------------------

    async def build(
        self,
        target: Artifact,
        token_budget: int | None = None,
        use_cache: bool = True,
    ) -> EnrichedContext:
        """Build (or fetch from cache) the enriched context for `target`.

        Args:
            target: The artifact being analyzed.
            token_budget: Total budget; defaults to the configured budget.
            use_cache: Skip both cache read and cache write when False.
        """
        start_time = time.time()
        budget = token_budget if token_budget is not None else self.budget.token_budget

        # Phase 1: Cache check
        if use_cache and self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, target.artifact_id)
            if cached is not None:
                logger.info("Context cache hit for artifact %s", target.artifact_id)
                return cached

        # Phase 2: Budget allocation
        shares = self.budget.allocate(budget)

        # Phase 3: Concurrent stages
        related_task = asyncio.ensure_future(
            self._stage(
                ContextComponent.RELATED_ARTIFACTS,
                self._find_related(target, shares[ContextComponent.RELATED_ARTIFACTS.value]),
            )
        )
        related, entity_graph, timeline, facts = await asyncio.gather(
            related_task,
            self._stage(
                ContextComponent.ENTITY_GRAPH,
                self._entity_context(target, shares[ContextComponent.ENTITY_GRAPH.value]),
            ),
            self._stage(ContextComponent.TIMELINE, self._timeline_context(target)),
            self._facts_after(target, related_task),
        )

        # Phase 4: Budget check
        context = EnrichedContext(
            target_artifact_id=target.artifact_id,
            related_artifacts=related or [],
            entity_graph=entity_graph,
            timeline=timeline,
            aggregated_facts=facts,
            token_budget=budget,
        )
        context.component_breakdown = {
            ContextComponent.RELATED_ARTIFACTS.value: sum(
                a.estimated_tokens for a in context.related_artifacts
            ),
            ContextComponent.ENTITY_GRAPH.value: entity_graph.estimated_tokens if entity_graph else 0,
            ContextComponent.TIMELINE.value: timeline.estimated_tokens if timeline else 0,
            ContextComponent.FACTS.value: facts.estimated_tokens if facts else 0,
        }
        context.estimated_tokens = sum(context.component_breakdown.values())
        if context.estimated_tokens > budget:
            context.was_truncated = True
            logger.warning(
                "Context for artifact %s exceeded budget (%d > %d)",
                target.artifact_id, context.estimated_tokens, budget,
            )
        context.build_time_ms = round((time.time() - start_time) * 1000, 1)

        # Phase 5: Cache write
        if use_cache and self.cache is not None:
            await asyncio.to_thread(self.cache.put, target.artifact_id, context, target.program_id)

        logger.info(
            "Built context for artifact %s: %d related, ~%d tokens in %.1fms",
            target.artifact_id, len(context.related_artifacts),
            context.estimated_tokens, context.build_time_ms,
        )
        return context

    def build_sync(
        self,
        target: Artifact,
        token_budget: int | None = None,
        use_cache: bool = True,
    ) -> EnrichedContext:
        """Blocking wrapper around `build` for callers without an event loop."""
        return asyncio.run(self.build(target, token_budget, use_cache))

    async def warm(
        self,
        program_id: str,
        limit: int = 20,
        token_budget: int | None = None,
    ) -> int:
        """Pre-build contexts for the newest uncached artifacts in a program."""
        if self.cache is None:
            return 0
        artifacts = await asyncio.to_thread(self.temporal.artifacts_for_program, program_id)
        pending: list[Artifact] = []
        for artifact in reversed(artifacts):
            if len(pending) >= limit:
                break
            if await asyncio.to_thread(self.cache.get, artifact.artifact_id) is None:
                pending.append(artifact)

        results = await asyncio.gather(
            *(self.build(a, token_budget) for a in pending), return_exceptions=True
        )
        warmed = 0
        for artifact, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.warning("Cache warm-up failed for %s: %s", artifact.artifact_id, result)
            else:
                warmed += 1
        logger.info("Warmed cache for %d artifacts in program %s", warmed, program_id)
        return warmed

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()

    # -------------------------------------------------------------------
    # Stage runner
    # -------------------------------------------------------------------

    async def _stage(self, component: ContextComponent, work: Awaitable[T]) -> T | None:
        """Await one stage under the timeout; failures become None."""
        try:
            return await asyncio.wait_for(work, timeout=self.stage_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Stage %s timed out after %.1fs", component.value, self.stage_timeout
            )
        except Exception as e:
            logger.warning("Stage %s failed: %s", component.value, e, exc_info=True)
        return None

    # -------------------------------------------------------------------
    # Stage: related artifacts
    # -------------------------------------------------------------------

    async def _find_related(self, target: Artifact, token_budget: int) -> list[ArtifactCandidate]:
        target_people = await asyncio.to_thread(
            self.entities.person_ids_for_artifact, target.artifact_id
        )
        limit = self.budget.candidate_limit

        semantic, shared, temporal = await asyncio.gather(
            self._source(
                "semantic",
                target.processing_status == "completed",
                self.similarity.find_similar,
                target.artifact_id, target.program_id, limit, self.budget.min_similarity,
            ),
            self._source(
                "shared-entity",
                bool(target_people),
                self.entities.find_shared_entity_candidates,
                target.artifact_id, target.program_id, target_people, limit,
                self.budget.min_shared_people,
            ),
            self._source(
                "temporal",
                True,
                self.temporal.find_temporal_candidates,
                target.artifact_id, target.program_id, target.uploaded_at, limit,
            ),
        )

        merged: dict[str, ArtifactCandidate] = {}
        for cand in (*semantic, *shared, *temporal):
            if cand.artifact_id != target.artifact_id:
                merged.setdefault(cand.artifact_id, cand)
        if not merged:
            return []

        return self.scoring.score_and_select(
            list(merged.values()), target, target_people, token_budget
        )

    async def _source(self, name: str, enabled: bool, fn, *args) -> list[ArtifactCandidate]:
        """One discovery source; a failing source contributes no candidates."""
        if not enabled:
            return []
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.warning("%s candidate search failed: %s", name, e)
            return []

    # -------------------------------------------------------------------
    # Stages: entity graph, timeline, facts
    # -------------------------------------------------------------------

    async def _entity_context(self, target: Artifact, token_budget: int) -> EntityGraphContext:
        if self.entity_graph is None:
            return EntityGraphContext()
        return await asyncio.to_thread(self.entity_graph.build_context, target, token_budget)

    async def _timeline_context(self, target: Artifact) -> TimelineContext:
        if self.timeline is None:
            return TimelineContext()
        return await asyncio.to_thread(self.timeline.build_timeline, target.program_id, target)

    async def _facts_after(
        self,
        target: Artifact,
        related_task: Awaitable[list[ArtifactCandidate] | None],
    ) -> AggregatedFactsContext | None:
        """Aggregate facts once the related artifacts are known."""
        related = await related_task
        if not related or self.facts is None:
            return None
        related_ids = [a.artifact_id for a in related]
        return await self._stage(
            ContextComponent.FACTS,
            asyncio.to_thread(self.facts.aggregate, target.artifact_id, related_ids),
        )
