"""Cross-document fact aggregation and conflict detection."""

from __future__ import annotations

import logging
from collections import Counter

import numpy as np

from ctxgraph.context.models import (
    AggregatedFact,
    AggregatedFactsContext,
    ConflictingValue,
    ConflictSeverity,
    Fact,
    FactCategory,
    FactConflict,
    FactStats,
    NumericStats,
)
from ctxgraph.store.base import FactQueries

logger = logging.getLogger("ctxgraph.facts")

TOKENS_PER_FACT = 30
TOKENS_PER_CONFLICT = 50
MAX_FACTS_PER_CATEGORY = 20
OUTLIER_SIGMA = 2.0
MIN_OUTLIER_SAMPLE = 3

FACT_CATEGORIES: dict[str, FactCategory] = {
    "amount": FactCategory.FINANCIAL,
    "currency": FactCategory.FINANCIAL,
    "financial": FactCategory.FINANCIAL,
    "date": FactCategory.DATE,
    "deadline": FactCategory.DATE,
    "milestone": FactCategory.DATE,
    "metric": FactCategory.METRIC,
    "count": FactCategory.METRIC,
    "percentage": FactCategory.METRIC,
}


def categorize(fact_type: str) -> FactCategory:
    return FACT_CATEGORIES.get(fact_type.lower(), FactCategory.OTHER)


def _mean_confidence(facts: list[Fact]) -> float:
    scores = [f.confidence for f in facts if f.confidence is not None]
    return sum(scores) / len(scores) if scores else 0.0


def _group(facts: list[Fact]) -> dict[FactCategory, dict[str, list[Fact]]]:
    """category -> fact key -> facts, in first-seen order."""
    grouped: dict[FactCategory, dict[str, list[Fact]]] = {c: {} for c in FactCategory}
    for fact in facts:
        grouped[categorize(fact.fact_type)].setdefault(fact.fact_key, []).append(fact)
    return grouped


def conflict_severity(facts: list[Fact], category: FactCategory) -> ConflictSeverity:
    """Major when values scatter widely, disagree confidently, or involve money."""
    distinct = len({f.fact_value for f in facts})
    if distinct > 3:
        return ConflictSeverity.MAJOR
    if distinct > 2 and _mean_confidence(facts) > 0.8:
        return ConflictSeverity.MAJOR
    if category == FactCategory.FINANCIAL:
        return ConflictSeverity.MAJOR
    return ConflictSeverity.MINOR


def numeric_stats(values: list[float]) -> NumericStats | None:
    """Population statistics plus outliers.

    A value is an outlier when its distance from the mean of the *other*
    values exceeds two standard deviations of the whole set. Measuring from
    the overall mean instead would never flag a single extreme among four
    points, since the largest attainable z-score for n points is
    (n-1)/sqrt(n). The leave-one-out mean is chosen deliberately over the
    plain "more than 2 sigma from the mean" reading so that [10, 10, 10, 100]
    flags 100 while [1, 2, 3] flags nothing.
    """
    if not values:
        return None
    arr = np.asarray(values, dtype=float)
    std = float(arr.std())
    outliers: list[float] = []
    if len(arr) >= MIN_OUTLIER_SAMPLE:
        for i, value in enumerate(arr):
            rest_mean = np.delete(arr, i).mean()
            if abs(value - rest_mean) > OUTLIER_SIGMA * std:
                outliers.append(float(value))
    return NumericStats(
        count=len(arr),
        mean=float(arr.mean()),
        std_dev=std,
        min=float(arr.min()),
        max=float(arr.max()),
        outliers=outliers,
    )


class FactAggregationService:
    """Merges facts across a document set into consensus values and conflicts."""

    def __init__(self, facts: FactQueries) -> None:
        self.facts = facts

    def aggregate(self, target_id: str, related_ids: list[str]) -> AggregatedFactsContext:
        artifact_ids = [target_id] + [a for a in dict.fromkeys(related_ids) if a != target_id]
        facts = self.facts.facts_for_artifacts(artifact_ids)
        filenames = self.facts.filenames_for_artifacts(artifact_ids)

        grouped = _group(facts)
        result = AggregatedFactsContext(
            financial_facts=self._consensus(grouped[FactCategory.FINANCIAL], filenames),
            date_facts=self._consensus(grouped[FactCategory.DATE], filenames),
            metric_facts=self._consensus(grouped[FactCategory.METRIC], filenames),
            conflicts=self._conflicts(grouped, filenames),
        )
        n_facts = len(result.financial_facts) + len(result.date_facts) + len(result.metric_facts)
        result.estimated_tokens = (
            n_facts * TOKENS_PER_FACT + len(result.conflicts) * TOKENS_PER_CONFLICT
        )
        logger.debug(
            "Aggregated %d facts from %d artifacts: %d consensus, %d conflicts",
            len(facts), len(artifact_ids), n_facts, len(result.conflicts),
        )
        return result

    def detect_conflicts(
        self, facts: list[Fact], filenames: dict[str, str] | None = None
    ) -> list[FactConflict]:
        """Conflicts among `facts`, looking up source filenames when not given."""
        if filenames is None:
            ids = list(dict.fromkeys(f.artifact_id for f in facts))
            filenames = self.facts.filenames_for_artifacts(ids)
        return self._conflicts(_group(facts), filenames)

    @staticmethod
    def stats(values: list[float]) -> NumericStats | None:
        return numeric_stats(values)

    def facts_for_key(self, program_id: str, fact_key: str) -> list[Fact]:
        return self.facts.facts_by_key(program_id, fact_key)

    def key_stats(self, program_id: str, fact_key: str) -> NumericStats | None:
        """Numeric statistics over every value recorded for one key."""
        values = [
            f.numeric_value
            for f in self.facts.facts_by_key(program_id, fact_key)
            if f.numeric_value is not None
        ]
        return numeric_stats(values)

    def fact_stats(self, program_id: str) -> FactStats:
        facts = self.facts.facts_for_program(program_id)
        by_type = Counter(f.fact_type for f in facts)
        conflicts = self.detect_conflicts(facts)
        return FactStats(
            total_facts=len(facts),
            facts_by_type=dict(sorted(by_type.items())),
            total_conflicts=len(conflicts),
            major_conflicts=sum(1 for c in conflicts if c.severity == ConflictSeverity.MAJOR),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _consensus(
        groups: dict[str, list[Fact]], filenames: dict[str, str]
    ) -> list[AggregatedFact]:
        aggregated = []
        for key, group in groups.items():
            values = Counter(f.fact_value for f in group)
            if len(values) != 1:
                continue
            sources = [filenames[f.artifact_id] for f in group if f.artifact_id in filenames]
            aggregated.append(
                AggregatedFact(
                    fact_key=key,
                    fact_value=values.most_common(1)[0][0],
                    fact_type=group[0].fact_type,
                    source_artifacts=list(dict.fromkeys(sources)),
                    occurrence_count=len(group),
                    confidence=_mean_confidence(group),
                )
            )
        aggregated.sort(key=lambda a: (-a.occurrence_count, a.fact_key))
        return aggregated[:MAX_FACTS_PER_CATEGORY]

    @staticmethod
    def _conflicts(
        grouped: dict[FactCategory, dict[str, list[Fact]]], filenames: dict[str, str]
    ) -> list[FactConflict]:
        conflicts = []
        for category, groups in grouped.items():
            for key in sorted(groups):
                group = groups[key]
                if len({f.fact_value for f in group}) < 2:
                    continue
                values: list[ConflictingValue] = []
                seen: set[tuple[str, str]] = set()
                for fact in group:
                    if (fact.fact_value, fact.artifact_id) in seen:
                        continue
                    seen.add((fact.fact_value, fact.artifact_id))
                    values.append(
                        ConflictingValue(
                            value=fact.fact_value,
                            source_artifact_id=fact.artifact_id,
                            source_filename=filenames.get(fact.artifact_id, "Unknown"),
                            confidence=fact.confidence if fact.confidence is not None else 0.0,
                        )
                    )
                conflicts.append(
                    FactConflict(
                        fact_key=key,
                        category=category,
                        conflicting_values=values,
                        severity=conflict_severity(group, category),
                    )
                )
        return conflicts
