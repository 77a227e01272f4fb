"""Configuration management for vault-rag.

Loads settings from environment variables with sensible defaults. The
embedding configuration is a frozen, versioned value: the engine compares
its ``version`` against the stored manifest on every pass and rebuilds the
index when the active model or dimension changed.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

ENV_PREFIX = "VAULT_RAG_"

# Index sizes the vector store will create. Vectors of any other length are rejected.
SUPPORTED_DIMENSIONS: Tuple[int, ...] = (128, 256, 384, 512, 768, 1024, 1280, 1536, 1792)


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class EmbeddingConfig:
    """Which embedding backend and model is authoritative for search."""
    backend: str = "local"  # "local", "openai", "ollama", "mock"
    model_id: str = "all-MiniLM-L6-v2"
    dimension: Optional[int] = None  # None = whatever the model returns
    base_url: str = ""
    api_key: str = ""
    request_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.dimension is not None and self.dimension not in SUPPORTED_DIMENSIONS:
            raise ValueError(
                f"dimension must be one of {SUPPORTED_DIMENSIONS}, got {self.dimension}"
            )

    @property
    def version(self) -> str:
        """Fingerprint of the fields that make stored vectors comparable."""
        key = f"{self.backend}|{self.model_id}|{self.dimension or ''}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        dim = _env("EMBEDDING_DIMENSION", "")
        return cls(
            backend=_env("EMBEDDING_BACKEND", "local"),
            model_id=_env("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            dimension=int(dim) if dim else None,
            base_url=_env("EMBEDDING_BASE_URL", ""),
            api_key=_env("EMBEDDING_API_KEY", ""),
            request_timeout_seconds=float(_env("EMBEDDING_REQUEST_TIMEOUT", "60")),
        )


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk window policy. Bump ``version`` whenever the splitting rules change."""
    chunk_size: int = 1000
    chunk_overlap: int = 100
    version: int = 1

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap}"
            )

    @property
    def fingerprint(self) -> str:
        """Fingerprint of the fields that decide chunk boundaries and ids."""
        key = f"{self.chunk_size}|{self.chunk_overlap}|{self.version}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        return cls(
            chunk_size=int(_env("CHUNK_SIZE", "1000")),
            chunk_overlap=int(_env("CHUNK_OVERLAP", "100")),
        )


@dataclass
class IndexConfig:
    """Indexing pass behaviour."""
    batch_size: int = 64
    max_batch_chars: int = 64_000
    embed_timeout_seconds: float = 120.0
    include_patterns: Tuple[str, ...] = ()
    exclude_patterns: Tuple[str, ...] = (".obsidian/**", ".trash/**")

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_batch_chars < 1:
            raise ValueError(f"max_batch_chars must be >= 1, got {self.max_batch_chars}")
        if self.embed_timeout_seconds <= 0:
            raise ValueError(f"embed_timeout_seconds must be > 0, got {self.embed_timeout_seconds}")

    @classmethod
    def from_env(cls) -> "IndexConfig":
        return cls(
            batch_size=int(_env("BATCH_SIZE", "64")),
            max_batch_chars=int(_env("MAX_BATCH_CHARS", "64000")),
            embed_timeout_seconds=float(_env("EMBED_TIMEOUT", "120")),
            include_patterns=_env_list("INCLUDE_PATTERNS", ()),
            exclude_patterns=_env_list("EXCLUDE_PATTERNS", (".obsidian/**", ".trash/**")),
        )


@dataclass
class SearchConfig:
    """Query defaults."""
    top_k: int = 10
    min_similarity: Optional[float] = None
    over_fetch_factor: int = 5
    min_over_fetch: int = 50
    max_context_tokens: int = 4000

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {self.top_k}")
        if self.over_fetch_factor < 1:
            raise ValueError(f"over_fetch_factor must be >= 1, got {self.over_fetch_factor}")

    @classmethod
    def from_env(cls) -> "SearchConfig":
        min_sim = _env("MIN_SIMILARITY", "")
        return cls(
            top_k=int(_env("TOP_K", "10")),
            min_similarity=float(min_sim) if min_sim else None,
            over_fetch_factor=int(_env("OVER_FETCH_FACTOR", "5")),
            min_over_fetch=int(_env("MIN_OVER_FETCH", "50")),
            max_context_tokens=int(_env("MAX_CONTEXT_TOKENS", "4000")),
        )


@dataclass
class StorageConfig:
    """Where and how vectors are persisted."""
    backend: str = "chroma"  # "chroma" or "fallback"
    data_dir: str = ".vault_rag"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            backend=_env("STORE_BACKEND", "chroma"),
            data_dir=_env("DATA_DIR", ".vault_rag"),
        )


@dataclass
class AppConfig:
    """Top-level application configuration."""
    vault_root: str = "."
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            vault_root=_env("VAULT_ROOT", "."),
            embedding=EmbeddingConfig.from_env(),
            chunking=ChunkingConfig.from_env(),
            index=IndexConfig.from_env(),
            search=SearchConfig.from_env(),
            storage=StorageConfig.from_env(),
            log_level=_env("LOG_LEVEL", "INFO"),
        )
