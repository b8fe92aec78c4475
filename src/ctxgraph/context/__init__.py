"""Enriched context assembly.

Builds a token-budgeted bundle of related artifacts, key people, a
document timeline and aggregated facts around one target artifact.

Usage:
    from ctxgraph.context.factory import create_orchestrator

    orchestrator = create_orchestrator(store, config)
    context = orchestrator.build_sync(artifact, token_budget=4000)
    print(context.render())
"""

from ctxgraph.context.models import ArtifactCandidate, EnrichedContext
from ctxgraph.context.scoring import ScoringEngine, ScoringWeights

__all__ = ["ArtifactCandidate", "EnrichedContext", "ScoringEngine", "ScoringWeights"]
