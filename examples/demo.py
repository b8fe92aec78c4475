#!/usr/bin/env python3
"""Demo: Using ctxgraph as a Python library.

Loads a small program into an in-memory store and builds the enriched
context for one contract.
"""

from ctxgraph.config import ProjectConfig
from ctxgraph.context.factory import create_orchestrator
from ctxgraph.facts.aggregator import FactAggregationService
from ctxgraph.graph.entity import EntityGraphService
from ctxgraph.store.sqlite import SQLiteContextStore
from ctxgraph.temporal.timeline import TimelineService

PROGRAM = {
    "artifacts": [
        {
            "artifact_id": "msa", "program_id": "apollo", "filename": "msa.pdf",
            "category": "contract", "uploaded_at": "2024-03-01T09:00:00Z",
            "summary": "Master services agreement with Globex.",
            "persons": [
                {"person_id": "ana", "name": "Ana Ruiz", "role": "Program Manager"},
                {"person_id": "ben", "name": "Ben Ode", "organization": "Globex"},
            ],
            "facts": [{"fact_type": "amount", "fact_key": "contract_value",
                       "fact_value": "$2.4M", "numeric_value": 2400000, "confidence": 0.95}],
            "embedding": [0.9, 0.1, 0.0],
        },
        {
            "artifact_id": "inv1", "program_id": "apollo", "filename": "invoice-001.pdf",
            "category": "invoice", "uploaded_at": "2024-03-20T09:00:00Z",
            "summary": "First milestone invoice.",
            "persons": [
                {"person_id": "ana", "name": "Ana Ruiz"},
                {"person_id": "ben", "name": "Ben Ode"},
            ],
            "facts": [{"fact_type": "amount", "fact_key": "contract_value",
                       "fact_value": "$2.6M", "numeric_value": 2600000, "confidence": 0.7}],
            "embedding": [0.8, 0.2, 0.1],
        },
        *[
            {
                "artifact_id": f"status{week}", "program_id": "apollo",
                "filename": f"status-week{week}.docx", "category": "report",
                "uploaded_at": f"2024-02-{1 + 7 * week:02d}T09:00:00Z",
                "summary": f"Weekly status, week {week}.",
                "persons": [{"person_id": "ana", "name": "Ana Ruiz"}],
            }
            for week in range(4)
        ],
    ]
}


def main():
    store = SQLiteContextStore(":memory:")

    # 1. Load artifacts and build the people graph
    ids = store.load_fixture(PROGRAM)
    graph = EntityGraphService(store, get_artifact=store.get_artifact)
    for artifact_id in ids:
        graph.update_graph(artifact_id)
    print(f"Loaded {len(ids)} artifacts")

    # 2. Program-level views
    stats = graph.entity_stats("apollo")
    print(f"  People: {stats.total_people}, relationships: {stats.total_relationships}")
    for seq in TimelineService(store).detect_sequences("apollo"):
        print(f"  Sequence: {seq.name} ({len(seq.artifact_ids)} docs, {seq.confidence:.2f})")
    value_stats = FactAggregationService(store).key_stats("apollo", "contract_value")
    print(f"  contract_value mean: {value_stats.mean:,.0f}")

    # 3. Enriched context for the contract
    config = ProjectConfig()
    config.cache.enabled = False
    orchestrator = create_orchestrator(store, config)
    context = orchestrator.build_sync(store.get_artifact("msa"), token_budget=1500)

    print()
    print(context.summary())
    print()
    print(context.render())

    orchestrator.close()
    store.close()


if __name__ == "__main__":
    main()
