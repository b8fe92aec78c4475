"""Configuration management for ctxgraph."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CTXGRAPH_DIR = ".ctxgraph"
CONFIG_FILE = "config.json"
STORE_DB_FILE = "context.db"


class ScoringConfig(BaseModel):
    """Relevance scoring weights. Must sum to 1.0 (validated, never clamped)."""

    semantic: float = 0.40
    entity: float = 0.25
    temporal: float = 0.20
    type_match: float = 0.10
    density: float = 0.05

    def to_weights(self):
        from ctxgraph.context.scoring import ScoringWeights

        return ScoringWeights(
            semantic=self.semantic,
            entity=self.entity,
            temporal=self.temporal,
            type_match=self.type_match,
            density=self.density,
        )


class BudgetConfig(BaseModel):
    """Token budget and its split across the four context components."""

    token_budget: int = 4000
    related_share: float = 0.50
    entity_share: float = 0.25
    timeline_share: float = 0.15
    facts_share: float = 0.10
    candidate_limit: int = 10  # per discovery source
    min_shared_people: int = 2
    min_similarity: float = 0.6

    def allocate(self, total_budget: int) -> dict[str, int]:
        """Divide a budget into per-component shares (floored)."""
        return {
            "related_artifacts": int(total_budget * self.related_share),
            "entity_graph": int(total_budget * self.entity_share),
            "timeline": int(total_budget * self.timeline_share),
            "facts": int(total_budget * self.facts_share),
        }


class CacheConfig(BaseModel):
    """Multi-tier context cache configuration."""

    enabled: bool = True
    redis_url: str | None = None
    redis_url_env: str = "CTXGRAPH_REDIS_URL"
    key_prefix: str = "artifact:context:"
    shared_ttl_hours: float = 24.0
    durable_ttl_days: float = 7.0
    local_max_entries: int = 256
    local_ttl_seconds: float = 300.0
    worker_threads: int = 2

    @property
    def resolved_redis_url(self) -> str | None:
        if self.redis_url:
            return self.redis_url
        if self.redis_url_env:
            return os.environ.get(self.redis_url_env)
        return None


class OrchestratorConfig(BaseModel):
    """Context build behavior."""

    stage_timeout_seconds: float = 30.0


class ProjectConfig(BaseModel):
    """Full project configuration."""

    name: str = ""
    root_path: str = "."
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from `start` looking for a .ctxgraph directory."""
    current = (start or Path.cwd()).resolve()
    while current != current.parent:
        if (current / CTXGRAPH_DIR).is_dir():
            return current
        current = current.parent
    if (current / CTXGRAPH_DIR).is_dir():
        return current
    return None


def get_ctxgraph_dir(root: Path) -> Path:
    """Get the .ctxgraph directory for a project root."""
    return root / CTXGRAPH_DIR


def load_config(root: Path) -> ProjectConfig:
    """Load configuration from .ctxgraph/config.json."""
    config_path = get_ctxgraph_dir(root) / CONFIG_FILE
    if config_path.exists():
        data = json.loads(config_path.read_text())
        return ProjectConfig(**data)
    return ProjectConfig(name=root.name, root_path=str(root))


def save_config(root: Path, config: ProjectConfig) -> None:
    """Save configuration to .ctxgraph/config.json."""
    cg_dir = get_ctxgraph_dir(root)
    cg_dir.mkdir(parents=True, exist_ok=True)
    config_path = cg_dir / CONFIG_FILE
    config_path.write_text(json.dumps(config.model_dump(), indent=2))


def set_config_value(config: ProjectConfig, key: str, value: Any) -> ProjectConfig:
    """Set a nested config value using dot notation (e.g., 'scoring.semantic')."""
    parts = key.split(".")
    data = config.model_dump()
    target = data
    for part in parts[:-1]:
        if part not in target or not isinstance(target[part], dict):
            raise KeyError(f"Invalid config key: {key}")
        target = target[part]
    if parts[-1] not in target:
        raise KeyError(f"Invalid config key: {key}")
    target[parts[-1]] = value
    return ProjectConfig(**data)
