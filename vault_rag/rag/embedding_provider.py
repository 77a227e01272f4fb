"""
Embedding provider abstraction with local and HTTP backends.

Backends form a closed set selected once from EmbeddingConfig by
``build_embedding_provider`` and held for the engine's lifetime:

- local:  sentence-transformers, in process
- openai: any OpenAI-compatible ``/embeddings`` endpoint (httpx)
- ollama: Ollama's ``/api/embed`` endpoint (httpx)
- mock:   deterministic hashed bag-of-words vectors, for tests and demos
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from vault_rag.config import EmbeddingConfig

LOG = logging.getLogger("rag.embedding_provider")

try:
    import httpx
except ImportError:
    httpx = None  # type: ignore[assignment]


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier of the model producing the vectors."""

    @abstractmethod
    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Returns a list of float vectors, one per input text, in input order.
        Failures apply to the whole batch.
        """
        ...

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        ...

    def close(self) -> None:
        """Release resources (e.g. HTTP clients). Override if needed."""
        pass


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions).
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for LocalEmbeddingProvider. "
                "Install with: pip install 'vault-rag[local]'"
            )

        self._model_name = model_name
        LOG.info("Loading embedding model: %s", model_name)
        self._model = SentenceTransformer(model_name)
        self._dim = self._model.get_sentence_embedding_dimension()

    @property
    def model_id(self) -> str:
        return self._model_name

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        embeddings = self._model.encode(texts, show_progress_bar=False)
        return [e.tolist() for e in embeddings]

    def dimension(self) -> int:
        return self._dim


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """Shared httpx plumbing for remote embedding endpoints."""

    def __init__(self, model: str, base_url: str, api_key: str = "", timeout: float = 60.0,
                 dimension: Optional[int] = None) -> None:
        if httpx is None:
            raise ImportError("httpx is required for remote embeddings. Install with: pip install 'vault-rag[remote]'")

        self._model = model
        self._dim = dimension
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, headers=headers)

    @property
    def model_id(self) -> str:
        return self._model

    def dimension(self) -> int:
        if self._dim is None:
            # Probe once; the model decides its own size
            self._dim = len(self.embed(["dimension check"])[0])
        return self._dim

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.post(path, json=payload)
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self._client.close()


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI-compatible ``POST /embeddings`` backend."""

    def __init__(self, model: str = "text-embedding-3-small", base_url: str = "",
                 api_key: str = "", timeout: float = 60.0, dimension: Optional[int] = None) -> None:
        if not api_key:
            raise ValueError("API key required for the openai embedding backend. Set VAULT_RAG_EMBEDDING_API_KEY.")
        super().__init__(model, base_url or "https://api.openai.com/v1", api_key, timeout, dimension)
        self._request_dimension = dimension

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        payload: Dict[str, Any] = {"model": self._model, "input": texts}
        if self._request_dimension:
            payload["dimensions"] = self._request_dimension
        data = self._post("/embeddings", payload)
        items = sorted(data["data"], key=lambda item: item["index"])
        if len(items) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(items)}")
        return [list(map(float, item["embedding"])) for item in items]


class OllamaEmbeddingProvider(_HTTPEmbeddingProvider):
    """Ollama ``POST /api/embed`` backend."""

    def __init__(self, model: str = "nomic-embed-text", base_url: str = "",
                 timeout: float = 60.0, dimension: Optional[int] = None) -> None:
        super().__init__(model, base_url or "http://localhost:11434", "", timeout, dimension)

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        data = self._post("/api/embed", {"model": self._model, "input": texts})
        embeddings = data.get("embeddings") or []
        if len(embeddings) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(embeddings)}")
        return [list(map(float, e)) for e in embeddings]


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedding provider for testing.

    Each word is hashed into one of ``dim`` buckets; the bucket counts are
    L2-normalised. Texts sharing words get a positive cosine similarity.
    """

    _WORD_RE = re.compile(r"[a-z0-9]+")

    def __init__(self, dim: int = 384, model_id: str = "mock-embedding") -> None:
        self._dim = dim
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    def embed(self, texts: List[str]) -> List[List[float]]:
        return [self._text_to_vec(t) for t in texts]

    def dimension(self) -> int:
        return self._dim

    def _text_to_vec(self, text: str) -> List[float]:
        vec = [0.0] * self._dim
        for word in self._WORD_RE.findall(text.lower()):
            bucket = int.from_bytes(hashlib.sha256(word.encode()).digest()[:4], "big") % self._dim
            vec[bucket] += 1.0
        norm = math.sqrt(sum(x * x for x in vec))
        if norm == 0.0:
            vec[0] = 1.0
            return vec
        return [x / norm for x in vec]


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """
    Factory: create the EmbeddingProvider named by ``config.backend``.

    Raises:
        ValueError: Unknown backend
        ImportError: Optional dependency for the backend is missing
    """
    if config.backend == "local":
        return LocalEmbeddingProvider(config.model_id)
    elif config.backend == "openai":
        return OpenAIEmbeddingProvider(
            model=config.model_id,
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.request_timeout_seconds,
            dimension=config.dimension,
        )
    elif config.backend == "ollama":
        return OllamaEmbeddingProvider(
            model=config.model_id,
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            dimension=config.dimension,
        )
    elif config.backend == "mock":
        return MockEmbeddingProvider(dim=config.dimension or 384, model_id=config.model_id)
    else:
        raise ValueError(
            f"Unknown embedding backend: {config.backend!r}. "
            f"Supported: 'local', 'openai', 'ollama', 'mock'"
        )
