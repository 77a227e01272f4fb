"""
Abstract vector store interface with a Chroma backend.

The store owns one similarity index per vector dimension and the metadata
joined to every vector. Indexes are created lazily the first time a vector
of that dimension is written, and a vector is only ever compared against
vectors of its own dimension.

Chroma operates in two modes:
- Embedded PersistentClient under ``<data_dir>/chroma``: no server needed
- HttpClient: connects to a Chroma server (set ``chroma_host``)

Chunk metadata, the document snapshot and the manifest live in SQLite
(``<data_dir>/index.db``), see storage/metadata_store.py.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from vault_rag.config import SUPPORTED_DIMENSIONS
from vault_rag.errors import DimensionMismatchError, StoreInitializationError
from vault_rag.storage.content_tracker import DocumentRef
from vault_rag.storage.metadata_store import SQLiteMetadataStore

LOG = logging.getLogger("rag.vector_store")


@dataclass
class EmbeddingRecord:
    """The persisted unit: one chunk's vector plus what is needed to show it."""

    chunk_id: str
    model_id: str
    dimension: int
    vector: List[float]
    path: str
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    text: str

    def metadata(self) -> Dict[str, Any]:
        """Everything but the vector."""
        return {
            "chunk_id": self.chunk_id,
            "model_id": self.model_id,
            "dimension": self.dimension,
            "path": self.path,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "text": self.text,
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.metadata()
        payload["vector"] = [float(v) for v in self.vector]
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any], vector: Optional[List[float]] = None) -> "EmbeddingRecord":
        return cls(
            chunk_id=data["chunk_id"],
            model_id=data["model_id"],
            dimension=int(data["dimension"]),
            vector=list(vector if vector is not None else data.get("vector", [])),
            path=data["path"],
            start_offset=int(data["start_offset"]),
            end_offset=int(data["end_offset"]),
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            text=data["text"],
        )


class ScoredChunk(NamedTuple):
    """A query hit: chunk identity and cosine similarity in [-1, 1]."""

    chunk_id: str
    score: float


@dataclass
class IndexManifest:
    """Which embedding model, dimension and chunking policy the stored records were built with."""

    model_id: str
    config_version: str
    dimension: Optional[int] = None
    chunking_version: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "config_version": self.config_version,
            "dimension": self.dimension,
            "chunking_version": self.chunking_version,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexManifest":
        dim = data.get("dimension")
        return cls(
            model_id=data["model_id"],
            config_version=data["config_version"],
            dimension=int(dim) if dim is not None else None,
            chunking_version=data.get("chunking_version", ""),
            extra=dict(data.get("extra") or {}),
        )


def check_dimension(dimension: int) -> None:
    """Raise DimensionMismatchError unless ``dimension`` has a supported index size."""
    if dimension not in SUPPORTED_DIMENSIONS:
        raise DimensionMismatchError(dimension)


def validate_record(record: EmbeddingRecord) -> None:
    """Reject a record whose vector cannot go into exactly one supported index."""
    if len(record.vector) != record.dimension:
        raise DimensionMismatchError(len(record.vector), expected=record.dimension, chunk_id=record.chunk_id)
    if record.dimension not in SUPPORTED_DIMENSIONS:
        raise DimensionMismatchError(record.dimension, chunk_id=record.chunk_id)


def rank(hits: List[ScoredChunk], top_k: int, similarity_threshold: Optional[float] = None) -> List[ScoredChunk]:
    """Order by descending score, ties broken by chunk id, then apply threshold and limit."""
    if similarity_threshold is not None:
        hits = [h for h in hits if h.score >= similarity_threshold]
    hits.sort(key=lambda h: (-h.score, h.chunk_id))
    return hits[:top_k]


class VectorStore(ABC):
    """
    Abstract interface for per-dimension vector storage and similarity search.

    Only the engine writes to a store. Writes are atomic per record: a query
    never sees a vector without its metadata or vice versa.
    """

    #: True for the non-indexed store used when the primary cannot start
    is_fallback: bool = False

    @abstractmethod
    def ensure_index(self, dimension: int) -> None:
        """Create the similarity index for ``dimension`` if missing (idempotent)."""

    @abstractmethod
    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        """Insert or replace records; returns how many were written."""

    @abstractmethod
    def delete_by_chunk_ids(self, chunk_ids: Sequence[str]) -> int:
        """Remove vectors and metadata by exact chunk id; returns how many existed."""

    @abstractmethod
    def query(
        self,
        dimension: int,
        vector: Sequence[float],
        top_k: int,
        similarity_threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Nearest neighbours of ``vector`` in the index for ``dimension``.

        Returns an empty list when no such index exists.
        """

    @abstractmethod
    def get_records(self, chunk_ids: Sequence[str], include_vectors: bool = False) -> Dict[str, EmbeddingRecord]:
        """Records for the ids that exist. Vectors are empty unless requested."""

    @abstractmethod
    def chunk_ids_for_path(self, path: str) -> List[str]:
        """Ids of every record belonging to a document."""

    @abstractmethod
    def all_chunk_ids(self) -> List[str]:
        """Every stored chunk id, sorted."""

    @abstractmethod
    def paths(self) -> List[str]:
        """Distinct document paths with at least one record, sorted."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored records."""

    @abstractmethod
    def dimensions(self) -> List[int]:
        """Dimensions that currently have an index, sorted."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every record, index, snapshot entry and the manifest."""

    @abstractmethod
    def get_document_snapshot(self) -> Dict[str, DocumentRef]:
        """Content tracker snapshot from the last successful pass."""

    @abstractmethod
    def set_document_snapshot(self, snapshot: Dict[str, DocumentRef]) -> None:
        """Replace the content tracker snapshot."""

    @abstractmethod
    def get_manifest(self) -> Optional[IndexManifest]:
        """The stored manifest, if any."""

    @abstractmethod
    def set_manifest(self, manifest: IndexManifest) -> None:
        """Persist the manifest."""

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class ChromaVectorStore(VectorStore):
    """
    Chroma-based vector store (primary backend).

    One collection per dimension, named ``<prefix>_<dimension>`` and
    configured for cosine distance. Chroma reports cosine *distance*, so the
    similarity score is ``1 - distance``.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        chroma_host: Optional[str] = None,
        chroma_port: int = 8000,
        collection_prefix: str = "embeddings",
    ) -> None:
        try:
            import chromadb
        except ImportError as exc:
            raise StoreInitializationError(
                "chromadb is required for ChromaVectorStore. Install with: pip install chromadb"
            ) from exc

        self._prefix = collection_prefix
        try:
            if chroma_host:
                self._client = chromadb.HttpClient(host=chroma_host, port=chroma_port)
                LOG.info("Chroma: connected to %s:%d", chroma_host, chroma_port)
            elif data_dir is not None:
                chroma_dir = Path(data_dir) / "chroma"
                chroma_dir.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(chroma_dir))
                LOG.info("Chroma: persistent at %s", chroma_dir)
            else:
                self._client = chromadb.EphemeralClient()
                LOG.info("Chroma: ephemeral (in-memory)")

            self._meta = SQLiteMetadataStore(Path(data_dir) / "index.db" if data_dir is not None else None)
            self._collections: Dict[int, Any] = {}
            for dim in self._meta.list_indexes():
                self._collections[dim] = self._open_collection(dim)
        except StoreInitializationError:
            raise
        except Exception as exc:
            raise StoreInitializationError(f"Cannot open Chroma store: {exc}") from exc

    def _collection_name(self, dimension: int) -> str:
        return f"{self._prefix}_{dimension}"

    def _open_collection(self, dimension: int) -> Any:
        return self._client.get_or_create_collection(
            name=self._collection_name(dimension),
            metadata={"hnsw:space": "cosine"},
        )

    def ensure_index(self, dimension: int) -> None:
        check_dimension(dimension)
        if dimension in self._collections:
            return
        self._collections[dimension] = self._open_collection(dimension)
        self._meta.register_index(dimension)
        LOG.info("Created similarity index for dimension %d", dimension)

    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        if not records:
            return 0
        for record in records:
            validate_record(record)

        # A chunk moving to another dimension must leave its old index
        previous = self._meta.dimensions_for([r.chunk_id for r in records])
        for record in records:
            old_dim = previous.get(record.chunk_id)
            if old_dim is not None and old_dim != record.dimension and old_dim in self._collections:
                self._collections[old_dim].delete(ids=[record.chunk_id])

        by_dim: Dict[int, List[EmbeddingRecord]] = {}
        for record in records:
            by_dim.setdefault(record.dimension, []).append(record)

        # Vectors first, metadata second: query hydration drops ids without metadata
        for dim, group in by_dim.items():
            self.ensure_index(dim)
            self._collections[dim].upsert(
                ids=[r.chunk_id for r in group],
                embeddings=[[float(v) for v in r.vector] for r in group],
                metadatas=[{"path": r.path, "model_id": r.model_id} for r in group],
            )
        self._meta.upsert_chunks([r.metadata() for r in records])
        return len(records)

    def delete_by_chunk_ids(self, chunk_ids: Sequence[str]) -> int:
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return 0
        dims = self._meta.dimensions_for(ids)
        # Metadata first so the vector is unreachable before it disappears
        deleted = self._meta.delete_chunks(ids)
        by_dim: Dict[int, List[str]] = {}
        for chunk_id, dim in dims.items():
            by_dim.setdefault(dim, []).append(chunk_id)
        for dim, group in by_dim.items():
            collection = self._collections.get(dim)
            if collection is not None:
                collection.delete(ids=group)
        return deleted

    def query(
        self,
        dimension: int,
        vector: Sequence[float],
        top_k: int,
        similarity_threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        collection = self._collections.get(dimension)
        if collection is None or top_k < 1:
            return []
        if len(vector) != dimension:
            raise DimensionMismatchError(len(vector), expected=dimension)

        n = min(top_k, collection.count())
        if n == 0:
            return []

        results = collection.query(
            query_embeddings=[[float(v) for v in vector]],
            n_results=n,
            include=["distances"],
        )
        ids = results["ids"][0] if results and results.get("ids") else []
        distances = results["distances"][0] if results.get("distances") else [0.0] * len(ids)

        known = self._meta.dimensions_for(list(ids))
        hits = [
            ScoredChunk(chunk_id, 1.0 - float(distance))
            for chunk_id, distance in zip(ids, distances)
            if chunk_id in known
        ]
        return rank(hits, top_k, similarity_threshold)

    def get_records(self, chunk_ids: Sequence[str], include_vectors: bool = False) -> Dict[str, EmbeddingRecord]:
        rows = self._meta.get_chunks(list(chunk_ids))
        vectors: Dict[str, List[float]] = {}
        if include_vectors and rows:
            by_dim: Dict[int, List[str]] = {}
            for chunk_id, row in rows.items():
                by_dim.setdefault(row["dimension"], []).append(chunk_id)
            for dim, group in by_dim.items():
                collection = self._collections.get(dim)
                if collection is None:
                    continue
                got = collection.get(ids=group, include=["embeddings"])
                for chunk_id, emb in zip(got["ids"], got["embeddings"]):
                    vectors[chunk_id] = [float(v) for v in emb]
        return {
            chunk_id: EmbeddingRecord.from_dict(row, vector=vectors.get(chunk_id, []))
            for chunk_id, row in rows.items()
        }

    def chunk_ids_for_path(self, path: str) -> List[str]:
        return self._meta.chunk_ids_for_path(path)

    def all_chunk_ids(self) -> List[str]:
        return self._meta.all_chunk_ids()

    def paths(self) -> List[str]:
        return self._meta.paths()

    def count(self) -> int:
        return self._meta.count()

    def dimensions(self) -> List[int]:
        return sorted(self._collections)

    def clear(self) -> None:
        for dim in list(self._collections):
            try:
                self._client.delete_collection(self._collection_name(dim))
            except Exception as exc:  # noqa: BLE001
                LOG.warning("Could not drop collection for dimension %d: %s", dim, exc)
        self._collections.clear()
        self._meta.clear()
        LOG.info("Cleared all embedding records and indexes")

    def get_document_snapshot(self) -> Dict[str, DocumentRef]:
        return {p: DocumentRef.from_dict(d) for p, d in self._meta.get_documents().items()}

    def set_document_snapshot(self, snapshot: Dict[str, DocumentRef]) -> None:
        self._meta.set_documents({p: ref.to_dict() for p, ref in snapshot.items()})

    def get_manifest(self) -> Optional[IndexManifest]:
        data = self._meta.get_manifest()
        return IndexManifest.from_dict(data) if data else None

    def set_manifest(self, manifest: IndexManifest) -> None:
        self._meta.set_manifest(manifest.to_dict())

    def close(self) -> None:
        self._meta.close()


def build_vector_store(
    backend: str = "chroma",
    **kwargs: Any,
) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "chroma" (primary) or "fallback" (flat file, linear scan)
        **kwargs: Backend-specific configuration (e.g. data_dir)

    Returns:
        VectorStore instance

    Raises:
        ValueError: Unknown backend
        StoreInitializationError: The backend could not be opened
    """
    if backend == "chroma":
        return ChromaVectorStore(**kwargs)
    elif backend == "fallback":
        from vault_rag.storage.fallback_store import FallbackVectorStore

        return FallbackVectorStore(**kwargs)
    else:
        raise ValueError(
            f"Unknown vector store backend: {backend!r}. "
            f"Supported: 'chroma', 'fallback'"
        )
