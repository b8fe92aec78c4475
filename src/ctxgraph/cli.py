"""Command-line interface for ctxgraph."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console as RichConsole
from rich.logging import RichHandler

from ctxgraph import __version__
from ctxgraph.config import (
    STORE_DB_FILE,
    ProjectConfig,
    find_project_root,
    get_ctxgraph_dir,
    load_config,
    save_config,
    set_config_value,
)
from ctxgraph.exceptions import ArtifactNotFoundError, ConfigError, CtxGraphError
from ctxgraph.store.sqlite import SQLiteContextStore
from ctxgraph.ui.console import Console

console = Console()


def _get_project_root(path: str | None = None) -> Path:
    """Find the project root or error."""
    if path:
        root = Path(path).resolve()
        if not root.exists():
            console.error(f"Path does not exist: {path}")
            sys.exit(1)
        return root

    root = find_project_root()
    if root is None:
        console.error(
            "No ctxgraph project found. Run 'ctxgraph init' first, "
            "or specify a path with --path."
        )
        sys.exit(1)
    return root


def _open_store(root: Path) -> SQLiteContextStore:
    return SQLiteContextStore(get_ctxgraph_dir(root) / STORE_DB_FILE)


def _orchestrator(store: SQLiteContextStore, config: ProjectConfig, no_cache: bool = False):
    from ctxgraph.context.factory import create_orchestrator

    if no_cache:
        config = config.model_copy(deep=True)
        config.cache.enabled = False
    try:
        return create_orchestrator(store, config)
    except ConfigError as e:
        console.error(f"Invalid configuration: {e}")
        sys.exit(1)


def _get_artifact(store: SQLiteContextStore, artifact_id: str):
    try:
        return store.get_artifact(artifact_id)
    except ArtifactNotFoundError as e:
        console.error(str(e))
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="ctxgraph")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def main(verbose: bool):
    """ctxgraph - enriched cross-document context for artifact analysis."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=RichConsole(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
def init(path: str | None):
    """Initialize a ctxgraph project and its context database."""
    root = Path(path or ".").resolve()
    if not root.exists():
        console.error(f"Path does not exist: {root}")
        sys.exit(1)

    console.banner()
    console.info(f"Initializing ctxgraph for: {root}")

    config = load_config(root)
    config.name = root.name
    config.root_path = str(root)
    save_config(root, config)
    console.success("Configuration saved")

    store = _open_store(root)
    store.cache_stats()  # creates the schema
    store.close()
    console.success(f"Context database ready at {get_ctxgraph_dir(root) / STORE_DB_FILE}")


# =========================================================================
# Ingest
# =========================================================================

@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--path", "-p", default=None, help="Path to the project root.")
def ingest(file: str, path: str | None):
    """Load artifacts, people, facts, topics and embeddings from a JSON export.

    Updates the people co-occurrence graph for every loaded artifact and
    invalidates cached contexts in the affected programs.
    """
    root = _get_project_root(path)
    config = load_config(root)
    store = _open_store(root)
    try:
        data = json.loads(Path(file).read_text())
        artifact_ids = store.load_fixture(data)

        from ctxgraph.graph.entity import EntityGraphService

        graph = EntityGraphService(store, get_artifact=store.get_artifact)
        edges = sum(graph.update_graph(aid) for aid in artifact_ids)

        orchestrator = _orchestrator(store, config)
        programs = {store.get_artifact(aid).program_id for aid in artifact_ids}
        if orchestrator.cache is not None:
            for program_id in sorted(programs):
                orchestrator.cache.handle_event("artifact.uploaded", program_id=program_id)
        orchestrator.close()
    except (ValueError, CtxGraphError) as e:
        console.error(f"Ingest failed: {e}")
        sys.exit(1)
    finally:
        store.close()

    console.success(
        f"Ingested {len(artifact_ids)} artifacts across {len(programs)} programs "
        f"({edges} co-occurrence pairs)"
    )


# =========================================================================
# Context build
# =========================================================================

@main.command()
@click.argument("artifact_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--budget", "-b", default=None, type=int, help="Token budget (default: from config).")
@click.option("--json", "as_json", is_flag=True, help="Print the context as JSON.")
@click.option("--no-cache", is_flag=True, help="Bypass the context cache.")
def build(artifact_id: str, path: str | None, budget: int | None, as_json: bool, no_cache: bool):
    """Build the enriched context for an artifact.

    Examples:

        ctxgraph build 3f2a... --budget 2000

        ctxgraph build 3f2a... --json --no-cache
    """
    root = _get_project_root(path)
    config = load_config(root)
    store = _open_store(root)
    try:
        artifact = _get_artifact(store, artifact_id)
        orchestrator = _orchestrator(store, config, no_cache=no_cache)
        try:
            context = orchestrator.build_sync(artifact, budget, use_cache=not no_cache)
        finally:
            orchestrator.close()
    finally:
        store.close()

    if as_json:
        console.console.print_json(context.model_dump_json())
    else:
        console.show_context(context)


@main.command()
@click.argument("program_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--limit", "-n", default=20, type=int, help="Maximum artifacts to build.")
def warm(program_id: str, path: str | None, limit: int):
    """Pre-build contexts for the newest uncached artifacts in a program."""
    root = _get_project_root(path)
    config = load_config(root)
    store = _open_store(root)
    try:
        orchestrator = _orchestrator(store, config)
        if orchestrator.cache is None:
            console.warning("Caching is disabled; nothing to warm.")
            return
        try:
            warmed = asyncio.run(orchestrator.warm(program_id, limit))
        finally:
            orchestrator.close()
    finally:
        store.close()
    console.success(f"Warmed {warmed} contexts")


# =========================================================================
# Program analysis
# =========================================================================

@main.command()
@click.argument("program_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--save", is_flag=True, help="Persist the detected sequences.")
def sequences(program_id: str, path: str | None, save: bool):
    """Detect recurring document series in a program."""
    from ctxgraph.temporal.timeline import TimelineService

    root = _get_project_root(path)
    store = _open_store(root)
    try:
        service = TimelineService(store)
        found = service.detect_sequences(program_id)
        if save:
            for seq in found:
                service.save_sequence(seq)
    finally:
        store.close()

    if not found:
        console.warning("No sequences detected (need 3+ artifacts of one category).")
        return
    console.show_sequences(found)
    if save:
        console.success(f"Saved {len(found)} sequences")


@main.command()
@click.argument("person_id")
@click.option("--program", "-P", "program_id", required=True, help="Program id.")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def people(person_id: str, program_id: str, path: str | None):
    """Show a person's profile and who they appear with."""
    from ctxgraph.graph.entity import EntityGraphService

    root = _get_project_root(path)
    store = _open_store(root)
    try:
        profile = store.person_profile(person_id, program_id)
        if profile is None:
            console.error(f"Person {person_id} is not mentioned in program {program_id}")
            sys.exit(1)
        relationships = EntityGraphService(store).co_occurrences(person_id, program_id)
    finally:
        store.close()
    console.show_person(profile, relationships)


@main.command()
@click.argument("program_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--top", default=5, type=int, help="Number of key people to list.")
def stats(program_id: str, path: str | None, top: int):
    """Show people-graph and fact statistics for a program."""
    from ctxgraph.facts.aggregator import FactAggregationService
    from ctxgraph.graph.entity import EntityGraphService

    root = _get_project_root(path)
    store = _open_store(root)
    try:
        graph = EntityGraphService(store)
        entity_stats = graph.entity_stats(program_id)
        key_people = graph.key_people(program_id, limit=top)
        fact_stats = FactAggregationService(store).fact_stats(program_id)
    finally:
        store.close()
    console.show_program_stats(entity_stats, fact_stats, key_people)


@main.command()
@click.argument("program_id")
@click.argument("fact_key")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def facts(program_id: str, fact_key: str, path: str | None):
    """List every recorded value of a fact key, with numeric statistics."""
    from ctxgraph.facts.aggregator import FactAggregationService

    root = _get_project_root(path)
    store = _open_store(root)
    try:
        service = FactAggregationService(store)
        found = service.facts_for_key(program_id, fact_key)
        numeric = service.key_stats(program_id, fact_key)
    finally:
        store.close()

    if not found:
        console.warning(f"No facts recorded for '{fact_key}'")
        return
    console.show_facts(fact_key, [f"{f.fact_value} ({f.artifact_id})" for f in found], numeric)


# =========================================================================
# Cache Management
# =========================================================================

@main.group()
def cache():
    """Inspect and maintain the context cache."""
    pass


def _cache_for(path: str | None):
    root = _get_project_root(path)
    config = load_config(root)
    store = _open_store(root)
    orchestrator = _orchestrator(store, config)
    if orchestrator.cache is None:
        store.close()
        console.error("Caching is disabled (cache.enabled = false)")
        sys.exit(1)
    return store, orchestrator


@cache.command("stats")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def cache_stats(path: str | None):
    """Show entry counts per cache tier."""
    store, orchestrator = _cache_for(path)
    try:
        result = orchestrator.cache.stats()
    finally:
        orchestrator.close()
        store.close()
    console.show_cache_stats(result)


@cache.command("sweep")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def cache_sweep(path: str | None):
    """Delete expired durable cache entries."""
    store, orchestrator = _cache_for(path)
    try:
        removed = orchestrator.cache.sweep()
    finally:
        orchestrator.close()
        store.close()
    console.success(f"Removed {removed} expired entries")


@cache.command("invalidate")
@click.argument("artifact_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def cache_invalidate(artifact_id: str, path: str | None):
    """Drop the cached context of one artifact."""
    store, orchestrator = _cache_for(path)
    try:
        orchestrator.cache.invalidate(artifact_id)
    finally:
        orchestrator.close()
        store.close()
    console.success(f"Invalidated {artifact_id}")


@cache.command("invalidate-program")
@click.argument("program_id")
@click.option("--path", "-p", default=None, help="Path to the project root.")
def cache_invalidate_program(program_id: str, path: str | None):
    """Drop every cached context in a program."""
    store, orchestrator = _cache_for(path)
    try:
        count = orchestrator.cache.invalidate_for_program(program_id)
    finally:
        orchestrator.close()
        store.close()
    console.success(f"Invalidated {count} artifacts in program {program_id}")


# =========================================================================
# Config Management
# =========================================================================

@main.command("config")
@click.argument("action", type=click.Choice(["set", "get", "show"]))
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--path", "-p", default=None, help="Path to the project root.")
def config_cmd(action: str, key: str | None, value: str | None, path: str | None):
    """Manage ctxgraph configuration."""
    root = _get_project_root(path)
    config = load_config(root)

    if action == "show":
        console.console.print_json(json.dumps(config.model_dump(), indent=2))
    elif action == "get":
        if not key:
            console.error("Usage: ctxgraph config get <key>")
            sys.exit(1)
        data = config.model_dump()
        for part in key.split("."):
            if isinstance(data, dict) and part in data:
                data = data[part]
            else:
                console.error(f"Unknown key: {key}")
                sys.exit(1)
        console.console.print(f"{key} = {data}")
    elif action == "set":
        if not key or value is None:
            console.error("Usage: ctxgraph config set <key> <value>")
            sys.exit(1)
        # Parse as JSON for non-string values
        try:
            parsed_value = json.loads(value)
        except json.JSONDecodeError:
            parsed_value = value
        try:
            config = set_config_value(config, key, parsed_value)
        except KeyError:
            console.error(f"Unknown config key: {key}")
            sys.exit(1)
        save_config(root, config)
        console.success(f"Set {key} = {parsed_value}")


if __name__ == "__main__":
    main()
