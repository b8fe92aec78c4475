"""Document timelines and recurring sequences."""

from ctxgraph.temporal.timeline import TimelineService, relative_label

__all__ = ["TimelineService", "relative_label"]
