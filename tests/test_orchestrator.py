"""Tests for enriched context orchestration."""

from __future__ import annotations

import asyncio
import time

import pytest

from conftest import FakeRedis, disconnect_durable_cache
from ctxgraph.config import BudgetConfig, ProjectConfig
from ctxgraph.context.engine import ContextOrchestrator
from ctxgraph.context.factory import create_orchestrator, validate_budget
from ctxgraph.context.models import ContextComponent, EnrichedContext
from ctxgraph.exceptions import ConfigError
from ctxgraph.graph.entity import EntityGraphService
from ctxgraph.store.sqlite import SQLiteContextStore
from ctxgraph.temporal.timeline import TimelineService


def _config(cache: bool = False, **budget) -> ProjectConfig:
    config = ProjectConfig()
    config.cache.enabled = cache
    for key, value in budget.items():
        setattr(config.budget, key, value)
    return config


@pytest.fixture
def orchestrator(store: SQLiteContextStore) -> ContextOrchestrator:
    orch = create_orchestrator(store, _config())
    yield orch
    orch.close()


class BrokenEntityGraph(EntityGraphService):
    def build_context(self, artifact, token_budget):
        raise RuntimeError("graph offline")


class SlowTimeline(TimelineService):
    def build_timeline(self, program_id, target):
        time.sleep(1.0)
        return super().build_timeline(program_id, target)


class TestBuild:
    def test_related_artifacts(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a1"), token_budget=4000)
        ids = [a.artifact_id for a in ctx.related_artifacts]
        assert ids[0] == "a2"
        assert set(ids) == {"a2", "a3", "a4", "a5"}
        assert all(a.total_score > 0 for a in ctx.related_artifacts)
        assert all(a.estimated_tokens > 0 for a in ctx.related_artifacts)

    def test_excludes_target_other_programs_and_unprocessed(
        self, orchestrator: ContextOrchestrator, store
    ):
        ctx = orchestrator.build_sync(store.get_artifact("a1"))
        ids = {a.artifact_id for a in ctx.related_artifacts}
        assert not ids & {"a1", "a6", "a7", "a8"}

    def test_all_sections(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a1"))
        assert [p.name for p in ctx.entity_graph.key_people] == ["Alice", "Bob", "Carol"]
        assert [e.artifact_id for e in ctx.timeline.following] == ["a2"]
        assert ctx.aggregated_facts.conflicts[0].fact_key == "total_value"

    def test_token_accounting(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a1"), token_budget=4000)
        assert set(ctx.component_breakdown) == {c.value for c in ContextComponent}
        assert ctx.estimated_tokens == sum(ctx.component_breakdown.values())
        assert ctx.component_breakdown["entity_graph"] == 150
        assert ctx.component_breakdown["timeline"] == 320
        assert ctx.token_budget == 4000
        assert not ctx.was_truncated
        assert ctx.build_time_ms >= 0

    def test_default_budget_from_config(self, store):
        orch = create_orchestrator(store, _config(token_budget=1234))
        ctx = orch.build_sync(store.get_artifact("a1"))
        assert ctx.token_budget == 1234

    def test_related_respects_share(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a1"), token_budget=200)
        assert ctx.component_breakdown["related_artifacts"] <= 100

    def test_tiny_budget_flags_overrun(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a1"), token_budget=10)
        assert ctx.related_artifacts == []
        assert ctx.aggregated_facts is None  # nothing related to aggregate over
        assert ctx.entity_graph.key_people == []
        assert ctx.timeline.following  # the timeline ignores its share
        assert ctx.was_truncated
        assert ctx.estimated_tokens > ctx.token_budget

    def test_isolated_artifact(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a7"))
        assert ctx.related_artifacts == []
        assert ctx.aggregated_facts is None
        assert ctx.render().startswith("## Key People")

    def test_unprocessed_target_skips_semantic(self, orchestrator: ContextOrchestrator, store):
        ctx = orchestrator.build_sync(store.get_artifact("a8"))
        assert all(a.semantic_score == 0.0 for a in ctx.related_artifacts)

    def test_render(self, orchestrator: ContextOrchestrator, store):
        text = orchestrator.build_sync(store.get_artifact("a1")).render()
        assert text.index("## Related Artifacts") < text.index("## Key People")
        assert text.index("## Key People") < text.index("## Document Timeline")
        assert "CONFLICTS DETECTED" in text
        assert "invoice-01.pdf" in text


class TestPartialFailure:
    def test_failing_stage(self, orchestrator: ContextOrchestrator, store):
        orchestrator.entity_graph = BrokenEntityGraph(store)
        ctx = orchestrator.build_sync(store.get_artifact("a1"))
        assert ctx.entity_graph is None
        assert ctx.component_breakdown["entity_graph"] == 0
        assert ctx.related_artifacts
        assert ctx.timeline is not None

    def test_failing_source(self, orchestrator: ContextOrchestrator, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("vector index down")

        monkeypatch.setattr(store, "find_similar", broken)
        ctx = orchestrator.build_sync(store.get_artifact("a1"))
        assert {a.artifact_id for a in ctx.related_artifacts} == {"a2", "a3", "a4", "a5"}
        assert all(a.semantic_score == 0.0 for a in ctx.related_artifacts)

    def test_stage_timeout(self, orchestrator: ContextOrchestrator, store):
        orchestrator.timeline = SlowTimeline(store)
        orchestrator.stage_timeout = 0.3
        ctx = orchestrator.build_sync(store.get_artifact("a1"))
        assert ctx.timeline is None
        assert ctx.component_breakdown["timeline"] == 0
        assert ctx.entity_graph is not None


class TestCaching:
    def test_second_build_hits_cache(self, store):
        orch = create_orchestrator(store, _config(cache=True))
        first = orch.build_sync(store.get_artifact("a1"))
        second = orch.build_sync(store.get_artifact("a1"))
        assert second.model_dump() == first.model_dump()
        assert orch.cache.stats().durable_entries == 1
        orch.close()

    def test_rebuild_after_invalidation(self, store, monkeypatch):
        orch = create_orchestrator(store, _config(cache=True))
        orch.build_sync(store.get_artifact("a1"))
        orch.cache.handle_event("artifact.uploaded", program_id="p1")

        calls = []
        original = orch.timeline.build_timeline
        monkeypatch.setattr(
            orch.timeline, "build_timeline", lambda *a: calls.append(a) or original(*a)
        )
        orch.build_sync(store.get_artifact("a1"))
        assert len(calls) == 1
        orch.close()

    def test_no_cache_flag(self, store):
        orch = create_orchestrator(store, _config(cache=True))
        orch.build_sync(store.get_artifact("a1"), use_cache=False)
        assert orch.cache.get("a1") is None
        orch.close()

    def test_shared_tier(self, store, fake_redis: FakeRedis):
        from ctxgraph.cache.tiers import RedisSharedCache

        orch = create_orchestrator(
            store, _config(cache=True), shared_cache=RedisSharedCache(client=fake_redis)
        )
        orch.build_sync(store.get_artifact("a1"))
        assert "artifact:context:a1" in fake_redis.data
        assert orch.cache.worker is not None
        orch.close()

    def test_warm(self, store):
        orch = create_orchestrator(store, _config(cache=True))
        assert asyncio.run(orch.warm("p1")) == 6
        assert asyncio.run(orch.warm("p1")) == 0
        assert isinstance(orch.cache.get("a3"), EnrichedContext)
        orch.close()

    def test_warm_limit(self, store):
        orch = create_orchestrator(store, _config(cache=True))
        assert asyncio.run(orch.warm("p1", limit=2)) == 2
        # Newest first
        assert orch.cache.get("a2") is not None
        assert orch.cache.get("a1") is not None
        assert orch.cache.get("a6") is None
        orch.close()

    def test_warm_without_cache(self, orchestrator: ContextOrchestrator):
        assert asyncio.run(orchestrator.warm("p1")) == 0

    def test_durable_backend_down(self, store, monkeypatch):
        orch = create_orchestrator(store, _config(cache=True))
        disconnect_durable_cache(store, monkeypatch)
        context = orch.build_sync(store.get_artifact("a1"), token_budget=2000)
        assert context.target_artifact_id == "a1"
        assert len(context.related_artifacts) > 0
        orch.close()


class TestFactory:
    def test_bad_weights(self, store):
        config = ProjectConfig()
        config.scoring.semantic = 0.9
        with pytest.raises(ConfigError):
            create_orchestrator(store, config)

    def test_budget_shares_over_one(self):
        with pytest.raises(ConfigError):
            validate_budget(BudgetConfig(related_share=0.9))

    def test_negative_budget(self):
        with pytest.raises(ConfigError):
            validate_budget(BudgetConfig(token_budget=-1))

    def test_share_out_of_range(self):
        with pytest.raises(ConfigError):
            validate_budget(BudgetConfig(facts_share=-0.1))

    def test_cache_disabled(self, orchestrator: ContextOrchestrator):
        assert orchestrator.cache is None

    def test_no_worker_without_shared_tier(self, store):
        orch = create_orchestrator(store, _config(cache=True))
        assert orch.cache.shared is None
        assert orch.cache.worker is None
