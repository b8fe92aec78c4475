"""Shared test fixtures for ctxgraph."""

from __future__ import annotations

import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from ctxgraph.cache.tiers import CacheTier
from ctxgraph.exceptions import CacheError
from ctxgraph.graph.entity import EntityGraphService
from ctxgraph.store.sqlite import SQLiteContextStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _at(days: float) -> str:
    return (T0 + timedelta(days=days)).isoformat()


def _person(person_id: str, name: str, **extra: Any) -> dict[str, Any]:
    return {"person_id": person_id, "name": name, **extra}


ALICE = _person("alice", "Alice", role="Program Manager", organization="Acme",
                classification="internal", snippet="Alice approved the final scope.")
BOB = _person("bob", "Bob", role="Vendor Lead", organization="Globex",
              classification="external")
CAROL = _person("carol", "Carol", role="Analyst")
DAVE = _person("dave", "Dave")


def seed_data() -> dict[str, Any]:
    """A small program: a contract, an invoice, a weekly report series and noise.

    p1  a1  contract   T0        alice bob carol
        a2  invoice    T0+10d    alice bob
        a3  report     T0-21d    carol dave
        a4  report     T0-14d    carol
        a5  report     T0-7d
        a6  memo       T0-200d   alice        (outside the 90 day window)
        a8  contract   T0+1d                  (still processing)
    p2  a7  contract   T0        alice bob
    """
    return {
        "artifacts": [
            {
                "artifact_id": "a1", "program_id": "p1", "filename": "msa.pdf",
                "category": "contract", "uploaded_at": _at(0),
                "summary": "Master services agreement with Globex.",
                "persons": [ALICE, BOB, CAROL],
                "topics": ["scope", "pricing"],
                "facts": [
                    {"fact_type": "amount", "fact_key": "total_value",
                     "fact_value": "$1,000,000", "numeric_value": 1000000, "confidence": 0.9},
                    {"fact_type": "date", "fact_key": "start_date",
                     "fact_value": "2024-04-01", "confidence": 0.8},
                ],
                "embedding": [1.0, 0.0, 0.0],
            },
            {
                "artifact_id": "a2", "program_id": "p1", "filename": "invoice-01.pdf",
                "category": "invoice", "uploaded_at": _at(10),
                "summary": "First invoice.",
                "persons": [ALICE, BOB],
                "facts": [
                    {"fact_type": "amount", "fact_key": "total_value",
                     "fact_value": "$1,200,000", "numeric_value": 1200000, "confidence": 0.8},
                    {"fact_type": "count", "fact_key": "headcount",
                     "fact_value": "12", "numeric_value": 12, "confidence": 0.7},
                ],
                "embedding": [0.9, 0.1, 0.0],
            },
            {
                "artifact_id": "a3", "program_id": "p1", "filename": "status-wk1.docx",
                "category": "report", "uploaded_at": _at(-21),
                "summary": "Week 1 status.",
                "persons": [CAROL, DAVE],
                "facts": [
                    {"fact_type": "date", "fact_key": "start_date",
                     "fact_value": "2024-04-01", "confidence": 0.6},
                ],
                "embedding": [0.0, 1.0, 0.0],
            },
            {
                "artifact_id": "a4", "program_id": "p1", "filename": "status-wk2.docx",
                "category": "report", "uploaded_at": _at(-14),
                "summary": "Week 2 status.",
                "persons": [CAROL],
                "embedding": [0.8, 0.2, 0.0],
            },
            {
                "artifact_id": "a5", "program_id": "p1", "filename": "status-wk3.docx",
                "category": "report", "uploaded_at": _at(-7),
                "summary": "Week 3 status.",
            },
            {
                "artifact_id": "a6", "program_id": "p1", "filename": "old-memo.txt",
                "category": "memo", "uploaded_at": _at(-200),
                "persons": [ALICE],
            },
            {
                "artifact_id": "a7", "program_id": "p2", "filename": "other.pdf",
                "category": "contract", "uploaded_at": _at(0),
                "persons": [ALICE, BOB],
                "embedding": [1.0, 0.0, 0.0],
            },
            {
                "artifact_id": "a8", "program_id": "p1", "filename": "draft.pdf",
                "category": "contract", "uploaded_at": _at(1),
                "processing_status": "pending",
                "embedding": [1.0, 0.0, 0.0],
            },
        ]
    }


@pytest.fixture(autouse=True)
def no_redis_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off any real Redis configured in the environment."""
    monkeypatch.delenv("CTXGRAPH_REDIS_URL", raising=False)


@pytest.fixture
def store():
    """An in-memory store loaded with the seed program and its people graph."""
    s = SQLiteContextStore(":memory:")
    ids = s.load_fixture(seed_data())
    graph = EntityGraphService(s, get_artifact=s.get_artifact)
    for aid in ids:
        graph.update_graph(aid)
    yield s
    s.close()


@pytest.fixture
def empty_store():
    s = SQLiteContextStore(":memory:")
    yield s
    s.close()


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeRedis:
    """Just enough of redis-py's client for the shared tier."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def scan_iter(self, match: str = "*"):
        return (k for k in list(self.data) if fnmatch.fnmatch(k, match))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class FailingTier(CacheTier):
    """A tier whose backend is always down."""

    name = "failing"

    def get(self, key: str) -> str | None:
        raise CacheError("backend down")

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        raise CacheError("backend down")

    def delete(self, key: str) -> None:
        raise CacheError("backend down")


class DisconnectedTier(CacheTier):
    """A tier whose client raises its own connection errors."""

    name = "disconnected"

    def get(self, key: str) -> str | None:
        raise ConnectionError("connection refused")

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        raise ConnectionError("connection refused")

    def delete(self, key: str) -> None:
        raise ConnectionError("connection refused")

    def size(self) -> int | None:
        raise ConnectionError("connection refused")


def disconnect_durable_cache(store: SQLiteContextStore, monkeypatch: pytest.MonkeyPatch) -> None:
    """Make every durable cache call on `store` raise ConnectionError."""

    def down(*args: Any, **kwargs: Any) -> Any:
        raise ConnectionError("durable backend down")

    for method in (
        "get_cache_entry", "upsert_cache_entry", "delete_cache_entry",
        "delete_cache_entries", "cleanup_expired_cache", "artifact_ids_for_program",
        "cache_stats",
    ):
        monkeypatch.setattr(store, method, down)
