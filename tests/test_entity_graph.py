"""Tests for the people co-occurrence graph."""

from __future__ import annotations

import pytest

from conftest import T0
from ctxgraph.context.models import Artifact, Classification
from ctxgraph.graph.entity import EntityGraphService, overlap_score
from ctxgraph.store.sqlite import SQLiteContextStore


@pytest.fixture
def graph(store: SQLiteContextStore) -> EntityGraphService:
    return EntityGraphService(store, get_artifact=store.get_artifact)


def _edge(store: SQLiteContextStore, p1: str, p2: str, program_id: str = "p1"):
    for rel in store.program_edges(program_id):
        if {rel.person1_id, rel.person2_id} == {p1, p2}:
            return rel
    return None


class TestEdges:
    def test_new_edge(self, empty_store: SQLiteContextStore):
        rel = empty_store.upsert_entity_edge("p1", "x", "y", "a1")
        assert rel.co_occurrences == 1
        assert rel.strength == 0.5
        assert rel.shared_artifacts == ["a1"]

    def test_pair_is_canonical(self, empty_store: SQLiteContextStore):
        rel = empty_store.upsert_entity_edge("p1", "y", "x", "a1")
        assert (rel.person1_id, rel.person2_id) == ("x", "y")
        again = empty_store.upsert_entity_edge("p1", "x", "y", "a2")
        assert again.co_occurrences == 2
        assert len(empty_store.program_edges("p1")) == 1

    def test_strength_grows_with_count(self, empty_store: SQLiteContextStore):
        for i in range(12):
            rel = empty_store.upsert_entity_edge("p1", "x", "y", f"a{i}")
        assert rel.co_occurrences == 12
        assert rel.strength == 1.0

    def test_same_artifact_is_noop(self, empty_store: SQLiteContextStore):
        empty_store.upsert_entity_edge("p1", "x", "y", "a1")
        rel = empty_store.upsert_entity_edge("p1", "x", "y", "a1")
        assert rel.co_occurrences == 1
        assert rel.shared_artifacts == ["a1"]

    def test_self_edge_rejected(self, empty_store: SQLiteContextStore):
        with pytest.raises(ValueError):
            empty_store.upsert_entity_edge("p1", "x", "x", "a1")

    def test_edges_scoped_to_program(self, store: SQLiteContextStore):
        assert _edge(store, "alice", "bob", "p1").co_occurrences == 2
        assert _edge(store, "alice", "bob", "p2").co_occurrences == 1


class TestUpdateGraph:
    def test_seeded_edges(self, store: SQLiteContextStore):
        pairs = {(r.person1_id, r.person2_id) for r in store.program_edges("p1")}
        assert pairs == {("alice", "bob"), ("alice", "carol"), ("bob", "carol"), ("carol", "dave")}

    def test_update_is_idempotent(self, graph: EntityGraphService, store: SQLiteContextStore):
        before = [r.model_dump() for r in store.program_edges("p1")]
        assert graph.update_graph("a1") == 3
        after = [r.model_dump() for r in store.program_edges("p1")]
        assert [(r["person1_id"], r["co_occurrences"]) for r in after] == [
            (r["person1_id"], r["co_occurrences"]) for r in before
        ]

    def test_single_person_artifact(self, graph: EntityGraphService):
        assert graph.update_graph("a4") == 0

    def test_program_lookup_required(self, store: SQLiteContextStore):
        graph = EntityGraphService(store)
        with pytest.raises(ValueError):
            graph.update_graph("a1")
        assert graph.update_graph("a1", program_id="p1") == 3


class TestQueries:
    def test_overlap_score(self):
        assert overlap_score(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert overlap_score([], ["a"]) == 0.0
        assert EntityGraphService.overlap_score(["a"], ["a"]) == 1.0

    def test_co_occurrences(self, graph: EntityGraphService):
        rels = graph.co_occurrences("carol", "p1")
        partners = {r.other("carol")[1] for r in rels}
        assert partners == {"Alice", "Bob", "Dave"}

    def test_key_people_order(self, graph: EntityGraphService):
        people = graph.key_people("p1", limit=2)
        assert [p.name for p in people] == ["Alice", "Carol"]
        assert people[0].artifact_count == 3
        assert people[0].classification == Classification.INTERNAL
        assert "Bob" in people[0].co_occurs_with

    def test_program_graph(self, graph: EntityGraphService):
        g = graph.program_graph("p1")
        assert set(g.nodes) == {"alice", "bob", "carol", "dave"}
        assert g.number_of_edges() == 4
        assert g["alice"]["bob"]["co_occurrences"] == 2
        assert g.nodes["alice"]["name"] == "Alice"

    def test_program_graph_threshold(self, graph: EntityGraphService):
        g = graph.program_graph("p1", min_co_occurrences=2)
        assert g.number_of_edges() == 1

    def test_entity_stats(self, graph: EntityGraphService):
        stats = graph.entity_stats("p1")
        assert stats.total_people == 4
        assert stats.total_relationships == 4
        assert stats.avg_co_occurrences == 1.25
        assert stats.most_connected_person == "Carol"
        assert stats.most_connected_relationships == 3

    def test_entity_stats_empty_program(self, graph: EntityGraphService):
        stats = graph.entity_stats("nope")
        assert stats.total_people == 0
        assert stats.most_connected_person == ""


class TestBuildContext:
    def test_all_people_fit(self, graph: EntityGraphService, store: SQLiteContextStore):
        ctx = graph.build_context(store.get_artifact("a1"), token_budget=1000)
        assert [p.name for p in ctx.key_people] == ["Alice", "Bob", "Carol"]
        assert ctx.estimated_tokens == 150
        assert ctx.total_relationships == 4

    def test_budget_limits_people(self, graph: EntityGraphService, store: SQLiteContextStore):
        ctx = graph.build_context(store.get_artifact("a1"), token_budget=120)
        assert len(ctx.key_people) == 2
        assert ctx.estimated_tokens == 100

    def test_zero_budget(self, graph: EntityGraphService, store: SQLiteContextStore):
        ctx = graph.build_context(store.get_artifact("a1"), token_budget=0)
        assert ctx.key_people == []
        assert ctx.estimated_tokens == 0

    def test_profile_fields(self, graph: EntityGraphService, store: SQLiteContextStore):
        ctx = graph.build_context(store.get_artifact("a1"), token_budget=1000)
        alice = ctx.key_people[0]
        assert alice.role == "Program Manager"
        assert alice.mention_count == 3
        assert alice.recent_context == "Alice approved the final scope."
        assert len(alice.co_occurs_with) <= 3

    def test_artifact_without_people(self, graph: EntityGraphService):
        artifact = Artifact(artifact_id="a5", program_id="p1", filename="x", uploaded_at=T0)
        ctx = graph.build_context(artifact, token_budget=1000)
        assert ctx.key_people == []
        assert ctx.total_relationships == 0
