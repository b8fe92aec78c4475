"""Co-occurrence graph over people mentioned across artifacts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from itertools import combinations

import networkx as nx

from ctxgraph.context.models import (
    Artifact,
    EntityGraphContext,
    EntityStats,
    PersonContext,
    PersonRelationship,
    truncate,
)
from ctxgraph.store.base import EntityQueries

logger = logging.getLogger("ctxgraph.graph")

TOKENS_PER_PERSON = 50
MAX_CO_OCCURRING = 3
SNIPPET_CHARS = 150


def overlap_score(ids_a: list[str], ids_b: list[str]) -> float:
    """Jaccard similarity of two person-id sets."""
    set_a, set_b = set(ids_a), set(ids_b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


class EntityGraphService:
    """Maintains and queries person co-occurrence edges.

    Args:
        entities: Person and edge storage.
        get_artifact: Resolves an artifact id, used to find the program
            when `update_graph` is called without one.
    """

    def __init__(
        self,
        entities: EntityQueries,
        get_artifact: Callable[[str], Artifact] | None = None,
    ) -> None:
        self.entities = entities
        self._get_artifact = get_artifact

    overlap_score = staticmethod(overlap_score)

    def co_occurrences(self, person_id: str, program_id: str) -> list[PersonRelationship]:
        """People who appear alongside `person_id`, strongest edge first."""
        return self.entities.relationships_for_person(person_id, program_id)

    def update_graph(self, artifact_id: str, program_id: str | None = None) -> int:
        """Upsert an edge for every pair of people in the artifact.

        Returns the number of pairs visited. Running it twice for the same
        artifact leaves every edge unchanged the second time.
        """
        person_ids = sorted(set(self.entities.person_ids_for_artifact(artifact_id)))
        if len(person_ids) < 2:
            return 0
        if program_id is None:
            if self._get_artifact is None:
                raise ValueError("program_id is required when no artifact lookup is configured")
            program_id = self._get_artifact(artifact_id).program_id

        pairs = 0
        for p1, p2 in combinations(person_ids, 2):
            self.entities.upsert_entity_edge(program_id, p1, p2, artifact_id)
            pairs += 1
        logger.debug("Updated %d entity edges for artifact %s", pairs, artifact_id)
        return pairs

    def program_graph(self, program_id: str, min_co_occurrences: int = 1) -> nx.Graph:
        """The program's people as an undirected weighted graph."""
        graph = nx.Graph()
        for profile in self.entities.key_people(program_id, limit=None):
            graph.add_node(
                profile.person_id,
                name=profile.name,
                role=profile.role,
                organization=profile.organization,
                mentions=profile.mention_count,
            )
        for edge in self.entities.program_edges(program_id, min_co_occurrences):
            graph.add_edge(
                edge.person1_id,
                edge.person2_id,
                weight=edge.strength,
                co_occurrences=edge.co_occurrences,
                artifacts=list(edge.shared_artifacts),
            )
        return graph

    def key_people(self, program_id: str, limit: int = 10) -> list[PersonContext]:
        """Most widely mentioned people in a program with their frequent partners."""
        return [
            self._person_context(
                profile.person_id,
                profile.name,
                program_id,
                role=profile.role,
                organization=profile.organization,
                classification=profile.classification,
                mention_count=profile.mention_count,
                artifact_count=profile.artifact_count,
                recent=profile.recent_snippet,
            )
            for profile in self.entities.key_people(program_id, limit=limit)
        ]

    def entity_stats(self, program_id: str) -> EntityStats:
        graph = self.program_graph(program_id)
        stats = EntityStats(total_people=graph.number_of_nodes())
        if graph.number_of_edges() == 0:
            return stats

        stats.total_relationships = graph.number_of_edges()
        counts = [data["co_occurrences"] for _, _, data in graph.edges(data=True)]
        stats.avg_co_occurrences = round(sum(counts) / len(counts), 2)
        # Ties go to the earlier node; nodes are added most-mentioned first
        order = {n: i for i, n in enumerate(graph.nodes)}
        node, degree = max(graph.degree, key=lambda nd: (nd[1], -order[nd[0]]))
        stats.most_connected_person = graph.nodes[node].get("name", node)
        stats.most_connected_relationships = degree
        return stats

    def build_context(self, artifact: Artifact, token_budget: int) -> EntityGraphContext:
        """Profiles of the people in `artifact`, as many as fit the budget."""
        result = EntityGraphContext()
        seen_edges: set[tuple[str, str]] = set()
        for mention in self.entities.persons_for_artifact(artifact.artifact_id):
            if result.estimated_tokens + TOKENS_PER_PERSON > token_budget:
                break
            profile = self.entities.person_profile(mention.person_id, artifact.program_id)
            person = self._person_context(
                mention.person_id,
                mention.name,
                artifact.program_id,
                role=mention.role,
                organization=mention.organization,
                classification=mention.classification,
                mention_count=profile.mention_count if profile else mention.mention_count,
                artifact_count=profile.artifact_count if profile else 1,
                recent=mention.snippet or (profile.recent_snippet if profile else ""),
                seen_edges=seen_edges,
            )
            result.key_people.append(person)
            result.estimated_tokens += TOKENS_PER_PERSON
        result.total_relationships = len(seen_edges)
        return result

    def _person_context(
        self,
        person_id: str,
        name: str,
        program_id: str,
        recent: str = "",
        seen_edges: set[tuple[str, str]] | None = None,
        **fields,
    ) -> PersonContext:
        relationships = self.co_occurrences(person_id, program_id)
        if seen_edges is not None:
            seen_edges.update((r.person1_id, r.person2_id) for r in relationships)
        partners = [r.other(person_id)[1] for r in relationships[:MAX_CO_OCCURRING]]
        return PersonContext(
            person_id=person_id,
            name=name,
            co_occurs_with=[p for p in partners if p],
            recent_context=truncate(recent, SNIPPET_CHARS) if recent else "",
            **fields,
        )
