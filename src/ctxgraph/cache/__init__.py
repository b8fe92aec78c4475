"""Multi-tier caching of assembled contexts."""

from ctxgraph.cache.context_cache import ContextCache
from ctxgraph.cache.tiers import MemoryCache, RedisSharedCache
from ctxgraph.cache.worker import BackgroundWorker

__all__ = ["BackgroundWorker", "ContextCache", "MemoryCache", "RedisSharedCache"]
