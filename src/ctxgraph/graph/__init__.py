"""Person co-occurrence graph across artifacts."""

from ctxgraph.graph.entity import EntityGraphService, overlap_score

__all__ = ["EntityGraphService", "overlap_score"]
