"""ctxgraph - enriched cross-document context for artifact analysis."""

__version__ = "0.1.0"
