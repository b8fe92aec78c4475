"""Cross-document fact aggregation."""

from ctxgraph.facts.aggregator import FactAggregationService, numeric_stats

__all__ = ["FactAggregationService", "numeric_stats"]
