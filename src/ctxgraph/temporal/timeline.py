"""Document timelines and recurring-sequence detection."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

import numpy as np

from ctxgraph.context.models import (
    Artifact,
    ArtifactSequence,
    DetectionMethod,
    SequenceType,
    TimelineContext,
    TimelineEntry,
    TimelineRelation,
    truncate,
)
from ctxgraph.store.base import TEMPORAL_WINDOW_DAYS, TemporalQueries

logger = logging.getLogger("ctxgraph.temporal")

MAX_PRECEDING = 5
MAX_FOLLOWING = 3
SUMMARY_CHARS = 150
TOKENS_PER_ENTRY = 80

MIN_SEQUENCE_SIZE = 3
CATEGORY_CONFIDENCE = 0.7
INTERVAL_CONFIDENCE = 0.85
REGULARITY_RATIO = 0.3  # max std-dev of gaps relative to their mean

# (upper bound on mean gap in days, type, name prefix)
_INTERVAL_CLASSES = [
    (8, SequenceType.WEEKLY_SERIES, "Weekly"),
    (35, SequenceType.MONTHLY_SERIES, "Monthly"),
    (100, SequenceType.QUARTERLY_SERIES, "Quarterly"),
]


def relative_label(moment: datetime, reference: datetime) -> str:
    """Human-readable distance between two moments, direction-free."""
    seconds = abs((moment - reference).total_seconds())
    days = int(seconds // 86400)

    if seconds < 3600:
        minutes = int(seconds // 60)
        if minutes < 5:
            return "same time"
        return f"{minutes} minutes"
    if days == 0:
        hours = int(seconds // 3600)
        return "1 hour" if hours == 1 else f"{hours} hours"
    if days == 1:
        return "1 day"
    if days < 7:
        return f"{days} days"
    if days < 14:
        return "1 week"
    if days < 30:
        return f"{days // 7} weeks"
    if days < 60:
        return "1 month"
    return f"{days // 30} months"


class TimelineService:
    """Builds before/after timelines and finds recurring document series."""

    def __init__(self, temporal: TemporalQueries) -> None:
        self.temporal = temporal

    def build_timeline(self, program_id: str, target: Artifact) -> TimelineContext:
        window = timedelta(days=TEMPORAL_WINDOW_DAYS)
        artifacts = self.temporal.artifacts_in_range(
            program_id, target.uploaded_at - window, target.uploaded_at + window
        )

        preceding: list[TimelineEntry] = []
        following: list[TimelineEntry] = []
        for artifact in artifacts:
            if artifact.artifact_id == target.artifact_id:
                continue
            if artifact.uploaded_at < target.uploaded_at:
                relation = TimelineRelation.BEFORE
            elif artifact.uploaded_at > target.uploaded_at:
                relation = TimelineRelation.AFTER
            else:
                relation = TimelineRelation.SAME_DAY
            entry = TimelineEntry(
                artifact_id=artifact.artifact_id,
                filename=artifact.filename,
                category=artifact.category,
                summary=truncate(artifact.summary, SUMMARY_CHARS),
                uploaded_at=artifact.uploaded_at,
                relative_time=relative_label(artifact.uploaded_at, target.uploaded_at),
                relation=relation,
            )
            if relation == TimelineRelation.AFTER:
                following.append(entry)
            else:
                preceding.append(entry)

        preceding.sort(key=lambda e: (e.uploaded_at, e.artifact_id), reverse=True)
        following.sort(key=lambda e: (e.uploaded_at, e.artifact_id))
        preceding = preceding[:MAX_PRECEDING]
        following = following[:MAX_FOLLOWING]

        return TimelineContext(
            preceding=preceding,
            following=following,
            estimated_tokens=(len(preceding) + len(following)) * TOKENS_PER_ENTRY,
        )

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def detect_sequences(self, program_id: str) -> list[ArtifactSequence]:
        """Category series first, then any interval series, by category name."""
        artifacts = self.temporal.artifacts_for_program(program_id)
        if len(artifacts) < MIN_SEQUENCE_SIZE:
            return []

        groups: dict[str, list[Artifact]] = {}
        for artifact in sorted(artifacts, key=lambda a: (a.uploaded_at, a.artifact_id)):
            if artifact.category:
                groups.setdefault(artifact.category, []).append(artifact)

        category_series: list[ArtifactSequence] = []
        interval_series: list[ArtifactSequence] = []
        for category in sorted(groups):
            group = groups[category]
            if len(group) < MIN_SEQUENCE_SIZE:
                continue
            category_series.append(
                self._sequence(
                    program_id, group, f"{category} Documents",
                    SequenceType.DOCUMENT_TYPE_SERIES, DetectionMethod.CATEGORY,
                    CATEGORY_CONFIDENCE,
                )
            )
            interval = self._interval_sequence(program_id, category, group)
            if interval is not None:
                interval_series.append(interval)

        logger.debug(
            "Program %s: %d category series, %d interval series",
            program_id, len(category_series), len(interval_series),
        )
        return category_series + interval_series

    def _interval_sequence(
        self, program_id: str, category: str, group: list[Artifact]
    ) -> ArtifactSequence | None:
        gaps = np.array([
            (b.uploaded_at - a.uploaded_at).total_seconds() / 86400.0
            for a, b in zip(group, group[1:])
        ])
        mean_gap = float(gaps.mean())
        if mean_gap <= 0 or float(gaps.std()) >= REGULARITY_RATIO * mean_gap:
            return None
        for upper, seq_type, prefix in _INTERVAL_CLASSES:
            if mean_gap < upper:
                return self._sequence(
                    program_id, group, f"{prefix} {category} Reports",
                    seq_type, DetectionMethod.INTERVAL, INTERVAL_CONFIDENCE,
                )
        return None

    @staticmethod
    def _sequence(
        program_id: str,
        group: list[Artifact],
        name: str,
        seq_type: SequenceType,
        method: DetectionMethod,
        confidence: float,
    ) -> ArtifactSequence:
        # Stable id so re-detecting the same series overwrites it on save
        sequence_id = uuid.uuid5(uuid.NAMESPACE_URL, f"ctxgraph:{program_id}:{seq_type.value}:{name}")
        return ArtifactSequence(
            sequence_id=str(sequence_id),
            program_id=program_id,
            name=name,
            sequence_type=seq_type,
            artifact_ids=[a.artifact_id for a in group],
            start_date=group[0].uploaded_at,
            end_date=group[-1].uploaded_at,
            detection_method=method,
            confidence=confidence,
        )

    def save_sequence(self, sequence: ArtifactSequence) -> None:
        self.temporal.save_sequence(sequence)

    def sequences_for_program(self, program_id: str) -> list[ArtifactSequence]:
        return self.temporal.sequences_for_program(program_id)

    relative_label = staticmethod(relative_label)
