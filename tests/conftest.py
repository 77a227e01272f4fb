"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.chroma     : Requires chromadb importable
    @pytest.mark.embedding  : Requires sentence-transformers model downloadable

Run stringent tests:
    pytest -m chroma                  # only primary-store tests
    pytest -m embedding               # only embedding model tests
    pytest -m "not embedding"         # skip model downloads (fast CI)
"""

from __future__ import annotations

import hashlib
import math
import re
import time
from typing import Callable, Dict, List, Optional

import pytest

from vault_rag.config import AppConfig, ChunkingConfig, IndexConfig, SearchConfig, StorageConfig
from vault_rag.documents import DocumentEntry, InMemoryDocumentSource
from vault_rag.rag.embedding_provider import EmbeddingProvider
from vault_rag.rag.engine import RAGEngine
from vault_rag.storage.fallback_store import FallbackVectorStore


def _chroma_available() -> bool:
    try:
        import chromadb  # noqa: F401
    except Exception:
        return False
    return True


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer
        model = SentenceTransformer("all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


# Cache the checks at module level so they run once per session
_CHROMA_OK: Optional[bool] = None
_EMBEDDING_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "chroma: requires chromadb installed")
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _CHROMA_OK, _EMBEDDING_OK

    skip_chroma = pytest.mark.skip(reason="chromadb not installed")
    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")

    for item in items:
        if "chroma" in item.keywords:
            if _CHROMA_OK is None:
                _CHROMA_OK = _chroma_available()
            if not _CHROMA_OK:
                item.add_marker(skip_chroma)
        if "embedding" in item.keywords:
            if _EMBEDDING_OK is None:
                _EMBEDDING_OK = _embedding_model_available()
            if not _EMBEDDING_OK:
                item.add_marker(skip_embedding)


# ── Embedders ────────────────────────────────────────────────────────────────


FRUIT_WORDS = {"apple", "apples", "orange", "oranges", "fruit", "fruits", "pie"}
VEHICLE_WORDS = {"car", "cars", "engine", "engines"}


class ConceptEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedder with two concept axes.

    Axis 0 counts fruit words, axis 1 vehicle words; every other word is
    hashed into buckets 2..dim-1. Vectors are L2-normalised.
    """

    def __init__(self, dim: int = 128, model_id: str = "concept-test") -> None:
        self._dim = dim
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    def dimension(self) -> int:
        return self._dim

    def embed(self, texts: List[str]) -> List[List[float]]:
        return [self._vec(t) for t in texts]

    def _vec(self, text: str) -> List[float]:
        vec = [0.0] * self._dim
        for word in re.findall(r"[a-z]+", text.lower()):
            if word in FRUIT_WORDS:
                vec[0] += 1.0
            elif word in VEHICLE_WORDS:
                vec[1] += 1.0
            else:
                digest = hashlib.sha256(word.encode()).digest()
                vec[2 + int.from_bytes(digest[:4], "big") % (self._dim - 2)] += 1.0
        norm = math.sqrt(sum(x * x for x in vec))
        if norm == 0.0:
            vec[-1] = 1.0
            return vec
        return [x / norm for x in vec]


class CountingEmbeddingProvider(EmbeddingProvider):
    """
    Wraps another provider and records every batch.

    ``fail_calls`` holds 1-based call numbers that raise; ``delay`` makes
    every call sleep (for timeout tests); ``on_call`` runs before each call.
    """

    def __init__(
        self,
        inner: EmbeddingProvider,
        fail_calls: tuple[int, ...] = (),
        delay: float = 0.0,
        on_call: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.inner = inner
        self.fail_calls = set(fail_calls)
        self.delay = delay
        self.on_call = on_call
        self.calls = 0
        self.texts: List[str] = []

    @property
    def model_id(self) -> str:
        return self.inner.model_id

    def dimension(self) -> int:
        return self.inner.dimension()

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if self.calls in self.fail_calls:
            raise RuntimeError(f"embedding backend unavailable (call {self.calls})")
        self.texts.extend(texts)
        return self.inner.embed(texts)

    def reset(self) -> None:
        self.calls = 0
        self.texts = []


class ReversedDocumentSource(InMemoryDocumentSource):
    """Lists documents in reverse path order."""

    def list_documents(self) -> List[DocumentEntry]:
        return list(reversed(super().list_documents()))


# ── Fixtures ─────────────────────────────────────────────────────────────────


FRUIT_CORPUS: Dict[str, str] = {
    "A.md": "apples and oranges",
    "B.md": "car engines",
    "C.md": "apple pie recipe",
}


@pytest.fixture
def concept_embedder():
    return ConceptEmbeddingProvider()


@pytest.fixture
def counting_embedder(concept_embedder):
    return CountingEmbeddingProvider(concept_embedder)


@pytest.fixture
def fruit_source():
    return InMemoryDocumentSource({path: (text, 1.0) for path, text in FRUIT_CORPUS.items()})


def make_config(tmp_path=None, **index_kwargs) -> AppConfig:
    """Small-window config so multi-chunk documents are cheap to build."""
    return AppConfig(
        vault_root=str(tmp_path) if tmp_path else ".",
        chunking=ChunkingConfig(chunk_size=200, chunk_overlap=20),
        index=IndexConfig(**index_kwargs),
        search=SearchConfig(top_k=10, min_over_fetch=5, over_fetch_factor=2),
        storage=StorageConfig(backend="fallback", data_dir=str(tmp_path) if tmp_path else ".vault_rag"),
    )


@pytest.fixture
def make_engine():
    """Build an engine over an in-memory fallback store unless a factory is given."""
    def _make(source, embedder, config=None, store_factory=None, **kwargs) -> RAGEngine:
        return RAGEngine(
            source=source,
            embedder=embedder,
            config=config or make_config(),
            store_factory=store_factory or (lambda: FallbackVectorStore()),
            **kwargs,
        )

    return _make
