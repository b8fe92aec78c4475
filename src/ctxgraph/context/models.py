"""Data models for enriched artifact context."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def truncate(text: str, limit: int) -> str:
    """Cut text to `limit` characters, ending with '...' when shortened."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class ContextComponent(str, Enum):
    """The four budgeted sections of an enriched context."""

    RELATED_ARTIFACTS = "related_artifacts"
    ENTITY_GRAPH = "entity_graph"
    TIMELINE = "timeline"
    FACTS = "facts"


class Classification(str, Enum):
    """Whether a person belongs to the program's own organization."""

    INTERNAL = "internal"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


class TimelineRelation(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    SAME_DAY = "same_day"


class ConflictSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class FactCategory(str, Enum):
    """Buckets that fact types are folded into before aggregation."""

    FINANCIAL = "financial"
    DATE = "date"
    METRIC = "metric"
    OTHER = "other"


class SequenceType(str, Enum):
    DOCUMENT_TYPE_SERIES = "document_type_series"
    WEEKLY_SERIES = "weekly_series"
    MONTHLY_SERIES = "monthly_series"
    QUARTERLY_SERIES = "quarterly_series"


class DetectionMethod(str, Enum):
    CATEGORY = "category"  # same-category grouping
    INTERVAL = "interval"  # regular upload gaps


# ---------------------------------------------------------------------------
# Source records (as returned by the data-access layer)
# ---------------------------------------------------------------------------


class Artifact(BaseModel):
    """A source document known to the data-access layer."""

    artifact_id: str
    program_id: str
    filename: str
    category: str = ""
    subcategory: str = ""
    uploaded_at: datetime
    processing_status: str = "completed"
    summary: str = ""
    sentiment: str = ""


class PersonMention(BaseModel):
    """A person as mentioned in a single artifact."""

    person_id: str
    artifact_id: str
    name: str
    role: str = ""
    organization: str = ""
    classification: Classification = Classification.UNKNOWN
    mention_count: int = 1
    snippet: str = ""
    confidence: float | None = None


class Fact(BaseModel):
    """A structured fact extracted from an artifact."""

    fact_id: str
    artifact_id: str
    fact_type: str
    fact_key: str
    fact_value: str
    numeric_value: float | None = None
    unit: str = ""
    confidence: float | None = None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class ArtifactCandidate(BaseModel):
    """An artifact being considered for inclusion in the context."""

    artifact_id: str
    filename: str
    category: str = ""
    subcategory: str = ""
    uploaded_at: datetime
    summary: str = ""
    sentiment: str = ""

    mentioned_people: list[str] = Field(default_factory=list)
    person_ids: list[str] = Field(default_factory=list)
    shared_person_ids: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    fact_count: int = 0

    # Component scores, each in [0, 1]
    semantic_score: float = 0.0
    entity_score: float = 0.0
    temporal_score: float = 0.0
    type_score: float = 0.0
    density_score: float = 0.0

    total_score: float = 0.0
    estimated_tokens: int = 0


class ComponentScore(BaseModel):
    score: float
    weight: float
    contribution: float


class ScoreBreakdown(BaseModel):
    """Per-component explanation of a candidate's total score."""

    artifact_id: str
    total_score: float
    semantic: ComponentScore
    entity: ComponentScore
    temporal: ComponentScore
    type_match: ComponentScore
    density: ComponentScore
    estimated_tokens: int = 0


# ---------------------------------------------------------------------------
# Entity graph
# ---------------------------------------------------------------------------


class PersonRelationship(BaseModel):
    """Co-occurrence edge between two people. person1_id < person2_id."""

    person1_id: str
    person1_name: str = ""
    person2_id: str
    person2_name: str = ""
    co_occurrences: int = 0
    shared_artifacts: list[str] = Field(default_factory=list)
    strength: float = 0.0

    def other(self, person_id: str) -> tuple[str, str]:
        """(id, name) of the person on the other end of the edge."""
        if person_id == self.person1_id:
            return self.person2_id, self.person2_name
        return self.person1_id, self.person1_name


class PersonProfile(BaseModel):
    """Program-wide aggregate for one person."""

    person_id: str
    name: str
    role: str = ""
    organization: str = ""
    classification: Classification = Classification.UNKNOWN
    mention_count: int = 0
    artifact_count: int = 0
    recent_snippet: str = ""


class PersonContext(BaseModel):
    """A person's cross-document profile as included in the context."""

    person_id: str
    name: str
    role: str = ""
    organization: str = ""
    classification: Classification = Classification.UNKNOWN
    mention_count: int = 0
    artifact_count: int = 0
    co_occurs_with: list[str] = Field(default_factory=list)
    recent_context: str = ""


class EntityGraphContext(BaseModel):
    key_people: list[PersonContext] = Field(default_factory=list)
    estimated_tokens: int = 0
    total_relationships: int = 0


class EntityStats(BaseModel):
    total_people: int = 0
    total_relationships: int = 0
    avg_co_occurrences: float = 0.0
    most_connected_person: str = ""
    most_connected_relationships: int = 0


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


class TimelineEntry(BaseModel):
    artifact_id: str
    filename: str
    category: str = ""
    summary: str = ""
    uploaded_at: datetime
    relative_time: str
    relation: TimelineRelation


class TimelineContext(BaseModel):
    preceding: list[TimelineEntry] = Field(default_factory=list)
    following: list[TimelineEntry] = Field(default_factory=list)
    estimated_tokens: int = 0


class ArtifactSequence(BaseModel):
    """A detected recurring pattern of artifacts."""

    sequence_id: str
    program_id: str
    name: str
    sequence_type: SequenceType
    artifact_ids: list[str] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    detection_method: DetectionMethod
    confidence: float


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


class AggregatedFact(BaseModel):
    fact_key: str
    fact_value: str
    fact_type: str
    source_artifacts: list[str] = Field(default_factory=list)  # filenames
    occurrence_count: int = 0
    confidence: float = 0.0


class ConflictingValue(BaseModel):
    value: str
    source_artifact_id: str
    source_filename: str = "Unknown"
    confidence: float = 0.0


class FactConflict(BaseModel):
    fact_key: str
    category: FactCategory
    conflicting_values: list[ConflictingValue] = Field(default_factory=list)
    severity: ConflictSeverity


class AggregatedFactsContext(BaseModel):
    financial_facts: list[AggregatedFact] = Field(default_factory=list)
    date_facts: list[AggregatedFact] = Field(default_factory=list)
    metric_facts: list[AggregatedFact] = Field(default_factory=list)
    conflicts: list[FactConflict] = Field(default_factory=list)
    estimated_tokens: int = 0


class NumericStats(BaseModel):
    count: int
    mean: float
    std_dev: float
    min: float
    max: float
    outliers: list[float] = Field(default_factory=list)


class FactStats(BaseModel):
    total_facts: int = 0
    facts_by_type: dict[str, int] = Field(default_factory=dict)
    total_conflicts: int = 0
    major_conflicts: int = 0


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ContextCacheEntry(BaseModel):
    """A durable-tier cache row."""

    cache_id: str
    artifact_id: str
    program_id: str = ""
    context_data: str  # JSON-serialized EnrichedContext
    token_count: int = 0
    artifacts_included: list[str] = Field(default_factory=list)
    cache_version: int = 1
    created_at: datetime
    expires_at: datetime


class CacheStats(BaseModel):
    local_entries: int = 0
    shared_entries: int | None = None
    durable_entries: int = 0
    durable_expired: int = 0
    durable_avg_tokens: float = 0.0
    repopulation_failures: int = 0


# ---------------------------------------------------------------------------
# The bundle
# ---------------------------------------------------------------------------


class EnrichedContext(BaseModel):
    """The complete enriched context for one target artifact."""

    target_artifact_id: str
    related_artifacts: list[ArtifactCandidate] = Field(default_factory=list)
    entity_graph: EntityGraphContext | None = None
    timeline: TimelineContext | None = None
    aggregated_facts: AggregatedFactsContext | None = None
    estimated_tokens: int = 0
    token_budget: int = 0
    component_breakdown: dict[str, int] = Field(default_factory=dict)
    was_truncated: bool = False
    build_time_ms: float = 0.0

    @property
    def budget_used_pct(self) -> float:
        return round(self.estimated_tokens / max(self.token_budget, 1) * 100, 1)

    def render(self) -> str:
        """Render the context as prompt-ready sections.

        Sections appear in budget priority order: related artifacts, key
        people, timeline, aggregated facts. Empty sections are omitted.
        """
        sections: list[str] = []

        if self.related_artifacts:
            sections.append(_render_related(self.related_artifacts))
        if self.entity_graph and self.entity_graph.key_people:
            sections.append(_render_people(self.entity_graph))
        if self.timeline and (self.timeline.preceding or self.timeline.following):
            sections.append(_render_timeline(self.timeline))
        facts = self.aggregated_facts
        if facts and (
            facts.financial_facts or facts.date_facts or facts.metric_facts or facts.conflicts
        ):
            sections.append(_render_facts(facts))

        if not sections:
            return "No related context available."
        return "\n".join(sections)

    def summary(self) -> str:
        """Human-readable summary of what's in the context."""
        lines = [
            f"Enriched context for artifact {self.target_artifact_id}",
            f"Tokens: {self.estimated_tokens:,} / {self.token_budget:,} "
            f"({self.budget_used_pct:.0f}%)"
            + (" [over budget]" if self.was_truncated else ""),
        ]
        for component in ContextComponent:
            lines.append(
                f"  {component.value}: ~{self.component_breakdown.get(component.value, 0)} tokens"
            )
        lines.append(f"Related artifacts: {len(self.related_artifacts)}")
        for cand in self.related_artifacts:
            lines.append(
                f"  > {cand.filename} ({cand.category or 'uncategorized'}) "
                f"score={cand.total_score:.2f} ~{cand.estimated_tokens}tok"
            )
        return "\n".join(lines)


def _join_limited(values: list[str], limit: int) -> str:
    shown = ", ".join(values[:limit])
    if len(values) > limit:
        shown += f", +{len(values) - limit} more"
    return shown


def _render_related(candidates: list[ArtifactCandidate]) -> str:
    lines = ["## Related Artifacts", ""]
    for i, cand in enumerate(candidates, start=1):
        lines.append(
            f'[{i}] "{cand.filename}" ({cand.category or "uncategorized"}, '
            f"uploaded {cand.uploaded_at:%Y-%m-%d})"
        )
        if cand.summary:
            lines.append(f"    Summary: {truncate(cand.summary, 200)}")
        if cand.shared_person_ids and cand.mentioned_people:
            lines.append(f"    Shared People: {_join_limited(cand.mentioned_people, 3)}")
        if cand.topics:
            lines.append(f"    Topics: {_join_limited(cand.topics, 4)}")
        lines.append(f"    Relevance Score: {cand.total_score:.2f}")
        lines.append("")
    return "\n".join(lines)


def _render_people(entity_graph: EntityGraphContext) -> str:
    lines = ["## Key People", ""]
    for person in entity_graph.key_people:
        descriptor = ", ".join(p for p in (person.role, person.organization) if p)
        header = f"- {person.name}"
        if descriptor:
            header += f" ({descriptor})"
        if person.classification != Classification.UNKNOWN:
            header += f" [{person.classification.value}]"
        lines.append(header)
        lines.append(
            f"    Mentioned {person.mention_count} times across "
            f"{person.artifact_count} artifacts"
        )
        if person.co_occurs_with:
            lines.append(f"    Often appears with: {', '.join(person.co_occurs_with)}")
        if person.recent_context:
            lines.append(f"    Recent: {person.recent_context}")
    lines.append("")
    return "\n".join(lines)


def _render_timeline_entries(entries: list[TimelineEntry]) -> list[str]:
    lines = []
    for entry in entries:
        line = f"  [{entry.relative_time}] {entry.filename}"
        if entry.category:
            line += f" ({entry.category})"
        lines.append(line)
        if entry.summary:
            lines.append(f"    {entry.summary}")
    return lines


def _render_timeline(timeline: TimelineContext) -> str:
    lines = ["## Document Timeline", ""]
    if timeline.preceding:
        lines.append("Before Current Artifact:")
        lines.extend(_render_timeline_entries(timeline.preceding))
        lines.append("")
    lines.append("Current Artifact:")
    lines.append("  [ANALYZING THIS DOCUMENT]")
    lines.append("")
    if timeline.following:
        lines.append("After Current Artifact:")
        lines.extend(_render_timeline_entries(timeline.following))
        lines.append("")
    return "\n".join(lines)


def _render_facts(facts: AggregatedFactsContext) -> str:
    lines = ["## Aggregated Facts from Related Documents", ""]
    if facts.financial_facts:
        lines.append("Financial Facts:")
        for fact in facts.financial_facts:
            lines.append(
                f"- {fact.fact_key}: {fact.fact_value} "
                f"(from {_join_limited(fact.source_artifacts, 2)}, "
                f"confidence: {fact.confidence:.2f})"
            )
        lines.append("")
    if facts.date_facts:
        lines.append("Date Facts:")
        for fact in facts.date_facts:
            lines.append(
                f"- {fact.fact_key}: {fact.fact_value} "
                f"(mentioned {fact.occurrence_count} times)"
            )
        lines.append("")
    if facts.metric_facts:
        lines.append("Metric Facts:")
        for fact in facts.metric_facts:
            lines.append(
                f"- {fact.fact_key}: {fact.fact_value} (confidence: {fact.confidence:.2f})"
            )
        lines.append("")
    if facts.conflicts:
        lines.append("CONFLICTS DETECTED:")
        for conflict in facts.conflicts:
            lines.append(
                f'- "{conflict.fact_key}" has {len(conflict.conflicting_values)} '
                f"conflicting values ({conflict.severity.value}):"
            )
            for value in conflict.conflicting_values:
                lines.append(
                    f"  * {value.value} (from {value.source_filename}, "
                    f"confidence: {value.confidence:.2f})"
                )
        lines.append("")
    return "\n".join(lines)

