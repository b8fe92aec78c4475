"""SQLite-backed context store.

One database file holds artifacts, people, topics, facts, embeddings, the
co-occurrence edges, detected sequences and the durable context cache.
Timestamps are stored as fixed-width UTC strings so that range queries
can compare them as text.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import numpy as np

from ctxgraph.context.models import (
    Artifact,
    ArtifactCandidate,
    ArtifactSequence,
    CacheStats,
    Classification,
    ContextCacheEntry,
    DetectionMethod,
    Fact,
    PersonMention,
    PersonProfile,
    PersonRelationship,
    SequenceType,
    utcnow,
)
from ctxgraph.exceptions import ArtifactNotFoundError, StoreError
from ctxgraph.store.base import TEMPORAL_WINDOW_DAYS, ContextStore

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
NEW_EDGE_STRENGTH = 0.5
STRENGTH_SATURATION = 10
# Stays under SQLITE_MAX_VARIABLE_NUMBER on older builds (999)
DELETE_BATCH_SIZE = 500


def to_ts(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_ts(text: str) -> datetime:
    return datetime.strptime(text, TS_FORMAT).replace(tzinfo=timezone.utc)


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" * len(values))


class SQLiteContextStore(ContextStore):
    """Implements every store capability on a single SQLite file.

    The connection is shared across threads and guarded by a re-entrant
    lock, so the orchestrator can run stages in worker threads.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.db_path is None:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.row_factory = sqlite3.Row
            self._create_tables(self._conn)
        return self._conn

    @staticmethod
    def _create_tables(conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS artifacts (
                artifact_id TEXT PRIMARY KEY,
                program_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT '',
                subcategory TEXT NOT NULL DEFAULT '',
                uploaded_at TEXT NOT NULL,
                processing_status TEXT NOT NULL DEFAULT 'completed',
                summary TEXT NOT NULL DEFAULT '',
                sentiment TEXT NOT NULL DEFAULT ''
            );

            -- Stable cross-artifact identity for people
            CREATE TABLE IF NOT EXISTS persons (
                person_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT '',
                organization TEXT NOT NULL DEFAULT '',
                classification TEXT NOT NULL DEFAULT 'unknown'
            );

            CREATE TABLE IF NOT EXISTS artifact_persons (
                artifact_id TEXT NOT NULL REFERENCES artifacts(artifact_id),
                person_id TEXT NOT NULL REFERENCES persons(person_id),
                mention_count INTEGER NOT NULL DEFAULT 1,
                context_snippet TEXT NOT NULL DEFAULT '',
                confidence REAL,
                PRIMARY KEY (artifact_id, person_id)
            );

            CREATE TABLE IF NOT EXISTS topics (
                artifact_id TEXT NOT NULL REFERENCES artifacts(artifact_id),
                topic TEXT NOT NULL,
                PRIMARY KEY (artifact_id, topic)
            );

            CREATE TABLE IF NOT EXISTS facts (
                fact_id TEXT PRIMARY KEY,
                artifact_id TEXT NOT NULL REFERENCES artifacts(artifact_id),
                fact_type TEXT NOT NULL,
                fact_key TEXT NOT NULL,
                fact_value TEXT NOT NULL,
                numeric_value REAL,
                unit TEXT NOT NULL DEFAULT '',
                confidence REAL
            );

            -- JSON-encoded float vectors
            CREATE TABLE IF NOT EXISTS embeddings (
                artifact_id TEXT PRIMARY KEY REFERENCES artifacts(artifact_id),
                vector TEXT NOT NULL
            );

            -- person1_id < person2_id
            CREATE TABLE IF NOT EXISTS entity_edges (
                program_id TEXT NOT NULL,
                person1_id TEXT NOT NULL,
                person2_id TEXT NOT NULL,
                co_occurrence_count INTEGER NOT NULL,
                shared_artifacts TEXT NOT NULL,
                strength REAL NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (program_id, person1_id, person2_id)
            );

            CREATE TABLE IF NOT EXISTS temporal_sequences (
                sequence_id TEXT PRIMARY KEY,
                program_id TEXT NOT NULL,
                name TEXT NOT NULL,
                sequence_type TEXT NOT NULL,
                artifact_ids TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                detection_method TEXT NOT NULL,
                confidence REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS context_cache (
                artifact_id TEXT PRIMARY KEY,
                cache_id TEXT NOT NULL,
                program_id TEXT NOT NULL DEFAULT '',
                context_data TEXT NOT NULL,
                token_count INTEGER NOT NULL DEFAULT 0,
                artifacts_included TEXT NOT NULL DEFAULT '[]',
                cache_version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_artifacts_program ON artifacts(program_id, uploaded_at);
            CREATE INDEX IF NOT EXISTS idx_ap_person ON artifact_persons(person_id);
            CREATE INDEX IF NOT EXISTS idx_facts_artifact ON facts(artifact_id);
            CREATE INDEX IF NOT EXISTS idx_facts_key ON facts(fact_key);
            CREATE INDEX IF NOT EXISTS idx_edges_p1 ON entity_edges(program_id, person1_id);
            CREATE INDEX IF NOT EXISTS idx_edges_p2 ON entity_edges(program_id, person2_id);
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON context_cache(expires_at);
        """)
        conn.commit()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """Serialized access; commits on success, wraps sqlite errors."""
        with self._lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"SQLite error: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def add_artifact(self, artifact: Artifact) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO artifacts
                (artifact_id, program_id, filename, category, subcategory,
                 uploaded_at, processing_status, summary, sentiment)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    artifact.artifact_id, artifact.program_id, artifact.filename,
                    artifact.category, artifact.subcategory,
                    to_ts(artifact.uploaded_at), artifact.processing_status,
                    artifact.summary, artifact.sentiment,
                ),
            )

    def add_person_mention(self, mention: PersonMention) -> None:
        """Record a person (creating or refreshing their identity) in an artifact."""
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO persons (person_id, name, role, organization, classification)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(person_id) DO UPDATE SET
                    name = excluded.name,
                    role = CASE WHEN excluded.role != '' THEN excluded.role ELSE role END,
                    organization = CASE WHEN excluded.organization != ''
                        THEN excluded.organization ELSE organization END,
                    classification = CASE WHEN excluded.classification != 'unknown'
                        THEN excluded.classification ELSE classification END""",
                (
                    mention.person_id, mention.name, mention.role,
                    mention.organization, mention.classification.value,
                ),
            )
            conn.execute(
                """INSERT OR REPLACE INTO artifact_persons
                (artifact_id, person_id, mention_count, context_snippet, confidence)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    mention.artifact_id, mention.person_id, mention.mention_count,
                    mention.snippet, mention.confidence,
                ),
            )

    def add_topic(self, artifact_id: str, topic: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO topics (artifact_id, topic) VALUES (?, ?)",
                (artifact_id, topic),
            )

    def add_fact(self, fact: Fact) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO facts
                (fact_id, artifact_id, fact_type, fact_key, fact_value,
                 numeric_value, unit, confidence)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    fact.fact_id, fact.artifact_id, fact.fact_type, fact.fact_key,
                    fact.fact_value, fact.numeric_value, fact.unit, fact.confidence,
                ),
            )

    def set_embedding(self, artifact_id: str, vector: list[float]) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO embeddings (artifact_id, vector) VALUES (?, ?)",
                (artifact_id, json.dumps([float(v) for v in vector])),
            )

    def load_fixture(self, data: dict[str, Any]) -> list[str]:
        """Load a JSON export. Returns the ids of the artifacts it contained.

        Expected keys: ``artifacts`` (each may carry ``persons``, ``facts``,
        ``topics`` and ``embedding``).
        """
        loaded: list[str] = []
        for raw in data.get("artifacts", []):
            record = dict(raw)
            persons = record.pop("persons", [])
            facts = record.pop("facts", [])
            topics = record.pop("topics", [])
            embedding = record.pop("embedding", None)
            artifact = Artifact(**record)
            self.add_artifact(artifact)
            for person in persons:
                self.add_person_mention(
                    PersonMention(artifact_id=artifact.artifact_id, **person)
                )
            for i, fact in enumerate(facts):
                fact = dict(fact)
                fact.setdefault("fact_id", f"{artifact.artifact_id}:{i}")
                self.add_fact(Fact(artifact_id=artifact.artifact_id, **fact))
            for topic in topics:
                self.add_topic(artifact.artifact_id, topic)
            if embedding:
                self.set_embedding(artifact.artifact_id, embedding)
            loaded.append(artifact.artifact_id)
        return loaded

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> Artifact:
        return Artifact(
            artifact_id=row["artifact_id"],
            program_id=row["program_id"],
            filename=row["filename"],
            category=row["category"],
            subcategory=row["subcategory"],
            uploaded_at=from_ts(row["uploaded_at"]),
            processing_status=row["processing_status"],
            summary=row["summary"],
            sentiment=row["sentiment"],
        )

    def get_artifact(self, artifact_id: str) -> Artifact:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE artifact_id = ?", (artifact_id,)
            ).fetchone()
        if row is None:
            raise ArtifactNotFoundError(artifact_id)
        return self._row_to_artifact(row)

    def _candidates(
        self, artifact_ids: list[str], semantic: dict[str, float] | None = None
    ) -> list[ArtifactCandidate]:
        """Build candidates for the given ids, preserving their order."""
        if not artifact_ids:
            return []
        semantic = semantic or {}
        marks = _placeholders(artifact_ids)
        with self._tx() as conn:
            rows = {
                r["artifact_id"]: r
                for r in conn.execute(
                    f"SELECT * FROM artifacts WHERE artifact_id IN ({marks})", artifact_ids
                ).fetchall()
            }
            people: dict[str, list[tuple[str, str]]] = {}
            for r in conn.execute(
                f"""SELECT ap.artifact_id, p.person_id, p.name FROM artifact_persons ap
                JOIN persons p ON p.person_id = ap.person_id
                WHERE ap.artifact_id IN ({marks})
                ORDER BY ap.mention_count DESC, p.name""",
                artifact_ids,
            ).fetchall():
                people.setdefault(r["artifact_id"], []).append((r["person_id"], r["name"]))
            topics: dict[str, list[str]] = {}
            for r in conn.execute(
                f"SELECT artifact_id, topic FROM topics WHERE artifact_id IN ({marks}) "
                "ORDER BY topic",
                artifact_ids,
            ).fetchall():
                topics.setdefault(r["artifact_id"], []).append(r["topic"])
            fact_counts = {
                r["artifact_id"]: r["cnt"]
                for r in conn.execute(
                    f"SELECT artifact_id, COUNT(*) AS cnt FROM facts "
                    f"WHERE artifact_id IN ({marks}) GROUP BY artifact_id",
                    artifact_ids,
                ).fetchall()
            }

        result = []
        for aid in artifact_ids:
            row = rows.get(aid)
            if row is None:
                continue
            mentioned = people.get(aid, [])
            result.append(
                ArtifactCandidate(
                    artifact_id=aid,
                    filename=row["filename"],
                    category=row["category"],
                    subcategory=row["subcategory"],
                    uploaded_at=from_ts(row["uploaded_at"]),
                    summary=row["summary"],
                    sentiment=row["sentiment"],
                    mentioned_people=[name for _, name in mentioned],
                    person_ids=[pid for pid, _ in mentioned],
                    topics=topics.get(aid, []),
                    fact_count=fact_counts.get(aid, 0),
                    semantic_score=semantic.get(aid, 0.0),
                )
            )
        return result

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def find_similar(
        self,
        artifact_id: str,
        program_id: str,
        limit: int = 10,
        min_similarity: float = 0.6,
    ) -> list[ArtifactCandidate]:
        with self._tx() as conn:
            target = conn.execute(
                "SELECT vector FROM embeddings WHERE artifact_id = ?", (artifact_id,)
            ).fetchone()
            if target is None:
                return []
            rows = conn.execute(
                """SELECT e.artifact_id, e.vector FROM embeddings e
                JOIN artifacts a ON a.artifact_id = e.artifact_id
                WHERE a.program_id = ? AND a.artifact_id != ?
                  AND a.processing_status = 'completed'""",
                (program_id, artifact_id),
            ).fetchall()
        if not rows:
            return []

        query = np.asarray(json.loads(target["vector"]), dtype=float)
        ids = [r["artifact_id"] for r in rows]
        matrix = np.asarray([json.loads(r["vector"]) for r in rows], dtype=float)
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise StoreError("Embedding dimensions do not match")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / norms, 0.0)

        scored = [(float(s), aid) for s, aid in zip(sims, ids) if s >= min_similarity]
        scored.sort(key=lambda x: (-x[0], x[1]))
        scored = scored[:limit]
        return self._candidates([aid for _, aid in scored], {aid: s for s, aid in scored})

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def person_ids_for_artifact(self, artifact_id: str) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT person_id FROM artifact_persons WHERE artifact_id = ? "
                "ORDER BY person_id",
                (artifact_id,),
            ).fetchall()
        return [r["person_id"] for r in rows]

    def persons_for_artifact(self, artifact_id: str) -> list[PersonMention]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT p.*, ap.artifact_id, ap.mention_count, ap.context_snippet,
                          ap.confidence
                FROM artifact_persons ap JOIN persons p ON p.person_id = ap.person_id
                WHERE ap.artifact_id = ?
                ORDER BY ap.mention_count DESC, p.name""",
                (artifact_id,),
            ).fetchall()
        return [
            PersonMention(
                person_id=r["person_id"],
                artifact_id=r["artifact_id"],
                name=r["name"],
                role=r["role"],
                organization=r["organization"],
                classification=Classification(r["classification"]),
                mention_count=r["mention_count"],
                snippet=r["context_snippet"],
                confidence=r["confidence"],
            )
            for r in rows
        ]

    def find_shared_entity_candidates(
        self,
        artifact_id: str,
        program_id: str,
        person_ids: list[str],
        limit: int = 10,
        min_shared: int = 2,
    ) -> list[ArtifactCandidate]:
        person_ids = sorted(set(person_ids))
        if not person_ids:
            return []
        with self._tx() as conn:
            rows = conn.execute(
                f"""SELECT ap.artifact_id, COUNT(DISTINCT ap.person_id) AS shared
                FROM artifact_persons ap JOIN artifacts a ON a.artifact_id = ap.artifact_id
                WHERE a.program_id = ? AND a.artifact_id != ?
                  AND a.processing_status = 'completed'
                  AND ap.person_id IN ({_placeholders(person_ids)})
                GROUP BY ap.artifact_id
                HAVING shared >= ?
                ORDER BY shared DESC, a.uploaded_at DESC
                LIMIT ?""",
                (program_id, artifact_id, *person_ids, min_shared, limit),
            ).fetchall()
        return self._candidates([r["artifact_id"] for r in rows])

    def _names(self, conn: sqlite3.Connection, person_ids: set[str]) -> dict[str, str]:
        if not person_ids:
            return {}
        ids = sorted(person_ids)
        return {
            r["person_id"]: r["name"]
            for r in conn.execute(
                f"SELECT person_id, name FROM persons WHERE person_id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        }

    def _edges(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[PersonRelationship]:
        names = self._names(
            conn, {r["person1_id"] for r in rows} | {r["person2_id"] for r in rows}
        )
        return [
            PersonRelationship(
                person1_id=r["person1_id"],
                person1_name=names.get(r["person1_id"], ""),
                person2_id=r["person2_id"],
                person2_name=names.get(r["person2_id"], ""),
                co_occurrences=r["co_occurrence_count"],
                shared_artifacts=json.loads(r["shared_artifacts"]),
                strength=r["strength"],
            )
            for r in rows
        ]

    def upsert_entity_edge(
        self,
        program_id: str,
        person1_id: str,
        person2_id: str,
        artifact_id: str,
    ) -> PersonRelationship:
        if person1_id == person2_id:
            raise ValueError("An entity edge needs two distinct people")
        if person2_id < person1_id:
            person1_id, person2_id = person2_id, person1_id

        with self._tx() as conn:
            key = (program_id, person1_id, person2_id)
            row = conn.execute(
                """SELECT * FROM entity_edges
                WHERE program_id = ? AND person1_id = ? AND person2_id = ?""",
                key,
            ).fetchone()
            now = to_ts(utcnow())
            if row is None:
                conn.execute(
                    """INSERT INTO entity_edges
                    (program_id, person1_id, person2_id, co_occurrence_count,
                     shared_artifacts, strength, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?, ?)""",
                    (*key, json.dumps([artifact_id]), NEW_EDGE_STRENGTH, now),
                )
            else:
                shared = json.loads(row["shared_artifacts"])
                if artifact_id not in shared:
                    count = row["co_occurrence_count"] + 1
                    shared.append(artifact_id)
                    conn.execute(
                        """UPDATE entity_edges
                        SET co_occurrence_count = ?, shared_artifacts = ?,
                            strength = ?, updated_at = ?
                        WHERE program_id = ? AND person1_id = ? AND person2_id = ?""",
                        (
                            count, json.dumps(shared),
                            min(1.0, count / STRENGTH_SATURATION), now, *key,
                        ),
                    )
            row = conn.execute(
                """SELECT * FROM entity_edges
                WHERE program_id = ? AND person1_id = ? AND person2_id = ?""",
                key,
            ).fetchone()
            return self._edges(conn, [row])[0]

    def relationships_for_person(
        self, person_id: str, program_id: str
    ) -> list[PersonRelationship]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT * FROM entity_edges
                WHERE program_id = ? AND (person1_id = ? OR person2_id = ?)
                ORDER BY strength DESC, co_occurrence_count DESC, person1_id, person2_id""",
                (program_id, person_id, person_id),
            ).fetchall()
            return self._edges(conn, rows)

    def program_edges(
        self, program_id: str, min_co_occurrences: int = 1
    ) -> list[PersonRelationship]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT * FROM entity_edges
                WHERE program_id = ? AND co_occurrence_count >= ?
                ORDER BY co_occurrence_count DESC, person1_id, person2_id""",
                (program_id, min_co_occurrences),
            ).fetchall()
            return self._edges(conn, rows)

    _PROFILE_SQL = """
        SELECT p.person_id, p.name, p.role, p.organization, p.classification,
               SUM(ap.mention_count) AS mentions,
               COUNT(DISTINCT ap.artifact_id) AS artifact_count,
               (SELECT ap2.context_snippet FROM artifact_persons ap2
                JOIN artifacts a2 ON a2.artifact_id = ap2.artifact_id
                WHERE ap2.person_id = p.person_id AND a2.program_id = ?
                  AND ap2.context_snippet != ''
                ORDER BY a2.uploaded_at DESC LIMIT 1) AS recent_snippet
        FROM persons p
        JOIN artifact_persons ap ON ap.person_id = p.person_id
        JOIN artifacts a ON a.artifact_id = ap.artifact_id
        WHERE a.program_id = ? {where}
        GROUP BY p.person_id
    """

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> PersonProfile:
        return PersonProfile(
            person_id=row["person_id"],
            name=row["name"],
            role=row["role"],
            organization=row["organization"],
            classification=Classification(row["classification"]),
            mention_count=row["mentions"] or 0,
            artifact_count=row["artifact_count"] or 0,
            recent_snippet=row["recent_snippet"] or "",
        )

    def person_profile(self, person_id: str, program_id: str) -> PersonProfile | None:
        with self._tx() as conn:
            row = conn.execute(
                self._PROFILE_SQL.format(where="AND p.person_id = ?"),
                (program_id, program_id, person_id),
            ).fetchone()
        return self._row_to_profile(row) if row else None

    def key_people(self, program_id: str, limit: int | None = 20) -> list[PersonProfile]:
        with self._tx() as conn:
            rows = conn.execute(
                self._PROFILE_SQL.format(where="")
                + " ORDER BY artifact_count DESC, mentions DESC, p.name LIMIT ?",
                (program_id, program_id, -1 if limit is None else limit),
            ).fetchall()
        return [self._row_to_profile(r) for r in rows]

    # ------------------------------------------------------------------
    # Temporal
    # ------------------------------------------------------------------

    def find_temporal_candidates(
        self,
        artifact_id: str,
        program_id: str,
        moment: datetime,
        limit: int = 10,
        window_days: int = TEMPORAL_WINDOW_DAYS,
    ) -> list[ArtifactCandidate]:
        window = timedelta(days=window_days)
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT artifact_id, uploaded_at FROM artifacts
                WHERE program_id = ? AND artifact_id != ?
                  AND processing_status = 'completed'
                  AND uploaded_at BETWEEN ? AND ?""",
                (program_id, artifact_id, to_ts(moment - window), to_ts(moment + window)),
            ).fetchall()
        ranked = sorted(
            rows,
            key=lambda r: (abs((from_ts(r["uploaded_at"]) - moment).total_seconds()),
                           r["artifact_id"]),
        )
        return self._candidates([r["artifact_id"] for r in ranked[:limit]])

    def artifacts_in_range(
        self, program_id: str, start: datetime, end: datetime
    ) -> list[Artifact]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT * FROM artifacts
                WHERE program_id = ? AND processing_status = 'completed'
                  AND uploaded_at BETWEEN ? AND ?
                ORDER BY uploaded_at, artifact_id""",
                (program_id, to_ts(start), to_ts(end)),
            ).fetchall()
        return [self._row_to_artifact(r) for r in rows]

    def artifacts_for_program(self, program_id: str) -> list[Artifact]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT * FROM artifacts
                WHERE program_id = ? AND processing_status = 'completed'
                ORDER BY uploaded_at, artifact_id""",
                (program_id,),
            ).fetchall()
        return [self._row_to_artifact(r) for r in rows]

    def save_sequence(self, sequence: ArtifactSequence) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO temporal_sequences
                (sequence_id, program_id, name, sequence_type, artifact_ids,
                 start_date, end_date, detection_method, confidence)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    sequence.sequence_id, sequence.program_id, sequence.name,
                    sequence.sequence_type.value, json.dumps(sequence.artifact_ids),
                    to_ts(sequence.start_date), to_ts(sequence.end_date),
                    sequence.detection_method.value, sequence.confidence,
                ),
            )

    def sequences_for_program(self, program_id: str) -> list[ArtifactSequence]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM temporal_sequences WHERE program_id = ? "
                "ORDER BY start_date, sequence_id",
                (program_id,),
            ).fetchall()
        return [
            ArtifactSequence(
                sequence_id=r["sequence_id"],
                program_id=r["program_id"],
                name=r["name"],
                sequence_type=SequenceType(r["sequence_type"]),
                artifact_ids=json.loads(r["artifact_ids"]),
                start_date=from_ts(r["start_date"]),
                end_date=from_ts(r["end_date"]),
                detection_method=DetectionMethod(r["detection_method"]),
                confidence=r["confidence"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> Fact:
        return Fact(
            fact_id=row["fact_id"],
            artifact_id=row["artifact_id"],
            fact_type=row["fact_type"],
            fact_key=row["fact_key"],
            fact_value=row["fact_value"],
            numeric_value=row["numeric_value"],
            unit=row["unit"],
            confidence=row["confidence"],
        )

    def facts_for_artifacts(self, artifact_ids: list[str]) -> list[Fact]:
        if not artifact_ids:
            return []
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT * FROM facts WHERE artifact_id IN ({_placeholders(artifact_ids)}) "
                "ORDER BY rowid",
                artifact_ids,
            ).fetchall()
        return [self._row_to_fact(r) for r in rows]

    def filenames_for_artifacts(self, artifact_ids: list[str]) -> dict[str, str]:
        if not artifact_ids:
            return {}
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT artifact_id, filename FROM artifacts "
                f"WHERE artifact_id IN ({_placeholders(artifact_ids)})",
                artifact_ids,
            ).fetchall()
        return {r["artifact_id"]: r["filename"] for r in rows}

    def facts_by_key(self, program_id: str, fact_key: str) -> list[Fact]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT f.* FROM facts f JOIN artifacts a ON a.artifact_id = f.artifact_id
                WHERE a.program_id = ? AND f.fact_key = ?
                ORDER BY a.uploaded_at, f.rowid""",
                (program_id, fact_key),
            ).fetchall()
        return [self._row_to_fact(r) for r in rows]

    def facts_for_program(self, program_id: str) -> list[Fact]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT f.* FROM facts f JOIN artifacts a ON a.artifact_id = f.artifact_id
                WHERE a.program_id = ?
                ORDER BY a.uploaded_at, f.rowid""",
                (program_id,),
            ).fetchall()
        return [self._row_to_fact(r) for r in rows]

    # ------------------------------------------------------------------
    # Durable cache
    # ------------------------------------------------------------------

    def get_cache_entry(self, artifact_id: str) -> ContextCacheEntry | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM context_cache WHERE artifact_id = ?", (artifact_id,)
            ).fetchone()
        if row is None:
            return None
        return ContextCacheEntry(
            cache_id=row["cache_id"],
            artifact_id=row["artifact_id"],
            program_id=row["program_id"],
            context_data=row["context_data"],
            token_count=row["token_count"],
            artifacts_included=json.loads(row["artifacts_included"]),
            cache_version=row["cache_version"],
            created_at=from_ts(row["created_at"]),
            expires_at=from_ts(row["expires_at"]),
        )

    def upsert_cache_entry(self, entry: ContextCacheEntry) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO context_cache
                (artifact_id, cache_id, program_id, context_data, token_count,
                 artifacts_included, cache_version, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.artifact_id, entry.cache_id, entry.program_id,
                    entry.context_data, entry.token_count,
                    json.dumps(entry.artifacts_included), entry.cache_version,
                    to_ts(entry.created_at), to_ts(entry.expires_at),
                ),
            )

    def delete_cache_entry(self, artifact_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM context_cache WHERE artifact_id = ?", (artifact_id,))
        return cur.rowcount > 0

    def delete_cache_entries(self, artifact_ids: list[str]) -> int:
        if not artifact_ids:
            return 0
        removed = 0
        with self._tx() as conn:
            for i in range(0, len(artifact_ids), DELETE_BATCH_SIZE):
                batch = artifact_ids[i:i + DELETE_BATCH_SIZE]
                cur = conn.execute(
                    f"DELETE FROM context_cache WHERE artifact_id IN ({_placeholders(batch)})",
                    batch,
                )
                removed += cur.rowcount
        return removed

    def cleanup_expired_cache(self, now: datetime | None = None) -> int:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM context_cache WHERE expires_at <= ?", (to_ts(now or utcnow()),)
            )
        return cur.rowcount

    def artifact_ids_for_program(self, program_id: str) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT artifact_id FROM artifacts WHERE program_id = ?
                UNION
                SELECT artifact_id FROM context_cache WHERE program_id = ?
                ORDER BY artifact_id""",
                (program_id, program_id),
            ).fetchall()
        return [r["artifact_id"] for r in rows]

    def cache_stats(self, now: datetime | None = None) -> CacheStats:
        with self._tx() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired,
                          AVG(token_count) AS avg_tokens
                FROM context_cache""",
                (to_ts(now or utcnow()),),
            ).fetchone()
        return CacheStats(
            durable_entries=row["total"] or 0,
            durable_expired=row["expired"] or 0,
            durable_avg_tokens=round(row["avg_tokens"] or 0.0, 1),
        )
