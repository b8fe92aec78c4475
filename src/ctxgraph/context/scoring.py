"""Multi-signal relevance scoring and token-budgeted selection.

Each candidate artifact is scored against the target on five signals:

    semantic    similarity supplied by the vector search
    entity      share of people the two artifacts have in common
    temporal    exponential decay over the upload-time gap
    type_match  exact or related document category
    density     how many structured facts the candidate carries

The weighted sum lies in [0, 1]. Selection then walks candidates in
descending score order and stops at the first one that does not fit the
remaining token budget.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime

from ctxgraph.context.models import (
    Artifact,
    ArtifactCandidate,
    ComponentScore,
    ScoreBreakdown,
)
from ctxgraph.exceptions import ConfigError

WEIGHT_TOLERANCE = 0.01
TEMPORAL_DECAY_DAYS = 90.0
DENSITY_CAP = 20

# Token cost of one related-artifact entry
BASE_TOKENS = 20
FILENAME_TOKENS = 10
METADATA_TOKENS = 15
TOKENS_PER_PERSON = 8
TOKENS_PER_TOPIC = 3

_RELATED_PAIRS = [
    ("contract", "invoice"),
    ("contract", "change_order"),
    ("contract", "amendment"),
    ("invoice", "purchase_order"),
    ("report", "meeting_notes"),
    ("report", "status_report"),
    ("email", "meeting_notes"),
    ("email", "memo"),
    ("amendment", "change_order"),
]
RELATED_CATEGORIES: frozenset[frozenset[str]] = frozenset(
    frozenset(pair) for pair in _RELATED_PAIRS
)


@dataclass
class ScoringWeights:
    """Weights for the five scoring signals."""

    semantic: float = 0.40
    entity: float = 0.25
    temporal: float = 0.20
    type_match: float = 0.10
    density: float = 0.05

    def validate(self) -> None:
        """Raise ConfigError unless every weight is in [0, 1] and they sum to 1."""
        for name, value in asdict(self).items():
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"Scoring weight '{name}' must be in [0, 1], got {value}")
        total = sum(asdict(self).values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigError(f"Scoring weights must sum to 1.0, got {total:.3f}")

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Individual signals
# ---------------------------------------------------------------------------


def entity_overlap(candidate_ids: list[str], target_ids: list[str]) -> float:
    """Shared people divided by the larger of the two person sets."""
    candidate_set = set(candidate_ids)
    target_set = set(target_ids)
    if not candidate_set or not target_set:
        return 0.0
    shared = candidate_set & target_set
    return len(shared) / max(len(candidate_set), len(target_set))


def temporal_proximity(a: datetime, b: datetime) -> float:
    days = abs((a - b).total_seconds()) / 86400.0
    return math.exp(-days / TEMPORAL_DECAY_DAYS)


def type_match(candidate_category: str, target_category: str) -> float:
    if not candidate_category or not target_category:
        return 0.0
    if candidate_category == target_category:
        return 1.0
    if frozenset((candidate_category, target_category)) in RELATED_CATEGORIES:
        return 0.5
    return 0.0


def fact_density(fact_count: int) -> float:
    return min(max(fact_count, 0), DENSITY_CAP) / DENSITY_CAP


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ScoringEngine:
    """Scores candidate artifacts and packs them into a token budget."""

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or ScoringWeights()
        self.weights.validate()

    def score(
        self,
        candidate: ArtifactCandidate,
        target: Artifact,
        target_people: list[str],
    ) -> float:
        """Compute all sub-scores on the candidate and return its total."""
        candidate.semantic_score = _clamp(candidate.semantic_score)
        candidate.entity_score = entity_overlap(candidate.person_ids, target_people)
        candidate.temporal_score = temporal_proximity(candidate.uploaded_at, target.uploaded_at)
        candidate.type_score = type_match(candidate.category, target.category)
        candidate.density_score = fact_density(candidate.fact_count)

        shared = set(candidate.person_ids) & set(target_people)
        candidate.shared_person_ids = sorted(shared)

        w = self.weights
        total = (
            w.semantic * candidate.semantic_score
            + w.entity * candidate.entity_score
            + w.temporal * candidate.temporal_score
            + w.type_match * candidate.type_score
            + w.density * candidate.density_score
        )
        candidate.total_score = _clamp(total)
        return candidate.total_score

    @staticmethod
    def estimate_tokens(candidate: ArtifactCandidate) -> int:
        """Approximate prompt cost of including one candidate."""
        return (
            BASE_TOKENS
            + FILENAME_TOKENS
            + METADATA_TOKENS
            + len(candidate.summary) // 4
            + TOKENS_PER_PERSON * len(candidate.mentioned_people)
            + TOKENS_PER_TOPIC * len(candidate.topics)
        )

    def select_top_n(
        self, candidates: list[ArtifactCandidate], token_budget: int
    ) -> list[ArtifactCandidate]:
        """Highest-scoring candidates that fit the budget.

        Strict first-fit: the scan stops at the first candidate that would
        overflow, even if a later, cheaper one would still fit. The input
        list is not modified; selected candidates are copies with their
        token estimate filled in.
        """
        ordered = sorted(candidates, key=lambda c: (-c.total_score, c.artifact_id))
        selected: list[ArtifactCandidate] = []
        used = 0
        for cand in ordered:
            cost = self.estimate_tokens(cand)
            if used + cost > token_budget:
                break
            selected.append(cand.model_copy(update={"estimated_tokens": cost}, deep=True))
            used += cost
        return selected

    def score_and_select(
        self,
        candidates: list[ArtifactCandidate],
        target: Artifact,
        target_people: list[str],
        token_budget: int,
    ) -> list[ArtifactCandidate]:
        for cand in candidates:
            self.score(cand, target, target_people)
        return self.select_top_n(candidates, token_budget)

    def breakdown(self, candidate: ArtifactCandidate) -> ScoreBreakdown:
        """Explain a scored candidate component by component."""
        w = self.weights

        def part(score: float, weight: float) -> ComponentScore:
            return ComponentScore(score=score, weight=weight, contribution=score * weight)

        return ScoreBreakdown(
            artifact_id=candidate.artifact_id,
            total_score=candidate.total_score,
            semantic=part(candidate.semantic_score, w.semantic),
            entity=part(candidate.entity_score, w.entity),
            temporal=part(candidate.temporal_score, w.temporal),
            type_match=part(candidate.type_score, w.type_match),
            density=part(candidate.density_score, w.density),
            estimated_tokens=candidate.estimated_tokens or self.estimate_tokens(candidate),
        )
