"""Data-access capabilities consumed by the context services.

Each service depends only on the capability it needs. A concrete store
(see ``ctxgraph.store.sqlite``) may implement all of them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ctxgraph.context.models import (
    Artifact,
    ArtifactCandidate,
    ArtifactSequence,
    CacheStats,
    ContextCacheEntry,
    Fact,
    PersonMention,
    PersonProfile,
    PersonRelationship,
)

TEMPORAL_WINDOW_DAYS = 90


class SimilaritySearch(ABC):
    """Vector-similarity candidate lookup."""

    @abstractmethod
    def find_similar(
        self,
        artifact_id: str,
        program_id: str,
        limit: int = 10,
        min_similarity: float = 0.6,
    ) -> list[ArtifactCandidate]:
        """Artifacts in the same program ordered by similarity, with semantic_score set."""
        ...


class EntityQueries(ABC):
    """Person lookups and co-occurrence edge storage."""

    @abstractmethod
    def person_ids_for_artifact(self, artifact_id: str) -> list[str]:
        ...

    @abstractmethod
    def persons_for_artifact(self, artifact_id: str) -> list[PersonMention]:
        """People mentioned in an artifact, most-mentioned first."""
        ...

    @abstractmethod
    def find_shared_entity_candidates(
        self,
        artifact_id: str,
        program_id: str,
        person_ids: list[str],
        limit: int = 10,
        min_shared: int = 2,
    ) -> list[ArtifactCandidate]:
        """Other artifacts mentioning at least `min_shared` of the given people."""
        ...

    @abstractmethod
    def upsert_entity_edge(
        self,
        program_id: str,
        person1_id: str,
        person2_id: str,
        artifact_id: str,
    ) -> PersonRelationship:
        """Create or strengthen the edge for a canonical (person1 < person2) pair."""
        ...

    @abstractmethod
    def relationships_for_person(
        self, person_id: str, program_id: str
    ) -> list[PersonRelationship]:
        """Edges touching a person, strongest first."""
        ...

    @abstractmethod
    def program_edges(
        self, program_id: str, min_co_occurrences: int = 1
    ) -> list[PersonRelationship]:
        ...

    @abstractmethod
    def person_profile(self, person_id: str, program_id: str) -> PersonProfile | None:
        ...

    @abstractmethod
    def key_people(self, program_id: str, limit: int | None = 20) -> list[PersonProfile]:
        """People in a program ordered by how many artifacts mention them. None means all."""
        ...


class TemporalQueries(ABC):
    """Time-window artifact lookups and sequence storage."""

    @abstractmethod
    def find_temporal_candidates(
        self,
        artifact_id: str,
        program_id: str,
        moment: datetime,
        limit: int = 10,
        window_days: int = TEMPORAL_WINDOW_DAYS,
    ) -> list[ArtifactCandidate]:
        """Artifacts closest in time to `moment`, excluding the artifact itself."""
        ...

    @abstractmethod
    def artifacts_in_range(
        self, program_id: str, start: datetime, end: datetime
    ) -> list[Artifact]:
        """Completed artifacts uploaded within [start, end], oldest first."""
        ...

    @abstractmethod
    def artifacts_for_program(self, program_id: str) -> list[Artifact]:
        """All completed artifacts in a program, oldest first."""
        ...

    @abstractmethod
    def save_sequence(self, sequence: ArtifactSequence) -> None:
        ...

    @abstractmethod
    def sequences_for_program(self, program_id: str) -> list[ArtifactSequence]:
        ...


class FactQueries(ABC):
    """Structured fact lookups."""

    @abstractmethod
    def facts_for_artifacts(self, artifact_ids: list[str]) -> list[Fact]:
        ...

    @abstractmethod
    def filenames_for_artifacts(self, artifact_ids: list[str]) -> dict[str, str]:
        ...

    @abstractmethod
    def facts_by_key(self, program_id: str, fact_key: str) -> list[Fact]:
        ...

    @abstractmethod
    def facts_for_program(self, program_id: str) -> list[Fact]:
        ...


class CacheStorage(ABC):
    """Durable cache rows with TTL semantics.

    Implementations may raise their own exception types; ContextCache logs
    any failure and treats it as a miss or a skipped write.
    """

    @abstractmethod
    def get_cache_entry(self, artifact_id: str) -> ContextCacheEntry | None:
        """The stored row, expired or not. Callers check expires_at."""
        ...

    @abstractmethod
    def upsert_cache_entry(self, entry: ContextCacheEntry) -> None:
        ...

    @abstractmethod
    def delete_cache_entry(self, artifact_id: str) -> bool:
        ...

    @abstractmethod
    def delete_cache_entries(self, artifact_ids: list[str]) -> int:
        """Batch delete; returns the number of rows removed."""
        ...

    @abstractmethod
    def cleanup_expired_cache(self, now: datetime | None = None) -> int:
        ...

    @abstractmethod
    def artifact_ids_for_program(self, program_id: str) -> list[str]:
        ...

    @abstractmethod
    def cache_stats(self, now: datetime | None = None) -> CacheStats:
        """Durable-tier fields of CacheStats; the other tiers stay at defaults."""
        ...


class ContextStore(SimilaritySearch, EntityQueries, TemporalQueries, FactQueries, CacheStorage):
    """A store implementing every capability, plus artifact lookup."""

    @abstractmethod
    def get_artifact(self, artifact_id: str) -> Artifact:
        """Raises ArtifactNotFoundError for an unknown id."""
        ...

    def close(self) -> None:
        pass
