"""Data-access capabilities and the SQLite reference store."""

from ctxgraph.store.base import (
    CacheStorage,
    ContextStore,
    EntityQueries,
    FactQueries,
    SimilaritySearch,
    TemporalQueries,
)
from ctxgraph.store.sqlite import SQLiteContextStore

__all__ = [
    "CacheStorage",
    "ContextStore",
    "EntityQueries",
    "FactQueries",
    "SimilaritySearch",
    "SQLiteContextStore",
    "TemporalQueries",
]
