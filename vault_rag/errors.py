"""
Error taxonomy for the indexing/search engine.

Per-document and per-batch errors are recovered locally by the engine;
store initialisation failures switch it into fallback mode; query-time
errors always reach the caller.
"""

from __future__ import annotations


class VaultRAGError(Exception):
    """Base class for all vault-rag errors."""

    pass


class ExtractionError(VaultRAGError):
    """Raised when a document cannot be read or converted to text."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot extract text from {path}: {reason}")
        self.path = path
        self.reason = reason


class EmbeddingBatchError(VaultRAGError):
    """Raised when the embedding collaborator fails or times out for a batch."""

    def __init__(self, batch_size: int, reason: str, timed_out: bool = False) -> None:
        super().__init__(f"Embedding batch of {batch_size} texts failed: {reason}")
        self.batch_size = batch_size
        self.reason = reason
        self.timed_out = timed_out


class StoreInitializationError(VaultRAGError):
    """Raised when a vector store backend cannot be opened."""

    pass


class DimensionMismatchError(VaultRAGError):
    """Raised when a vector does not fit any supported index size."""

    def __init__(self, dimension: int, expected: int | None = None, chunk_id: str | None = None) -> None:
        if expected is not None:
            msg = f"Vector dimension {dimension} does not match expected {expected}"
        else:
            msg = f"Unsupported vector dimension {dimension}"
        if chunk_id:
            msg = f"{msg} (chunk {chunk_id})"
        super().__init__(msg)
        self.dimension = dimension
        self.expected = expected
        self.chunk_id = chunk_id


class ManifestConflictError(VaultRAGError):
    """Raised when the active embedding model changes while a pass is running."""

    pass


class SearchUnavailableError(VaultRAGError):
    """Raised when a query cannot be served because no store is usable."""

    pass
