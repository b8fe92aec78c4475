"""Custom exceptions for ctxgraph."""


class CtxGraphError(Exception):
    """Base exception for all ctxgraph errors."""


class ConfigError(CtxGraphError):
    """Configuration-related errors (invalid weights, budget shares, ...)."""


class StoreError(CtxGraphError):
    """Data-access errors raised by a store implementation."""


class CacheError(CtxGraphError):
    """Cache tier errors. Always caught and logged inside the cache."""


class ArtifactNotFoundError(CtxGraphError):
    """Raised when an artifact identifier does not resolve."""

    def __init__(self, artifact_id: str):
        super().__init__(f"Artifact not found: {artifact_id}")
        self.artifact_id = artifact_id
