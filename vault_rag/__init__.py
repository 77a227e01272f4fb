"""
vault-rag: incremental semantic indexing and search over a document vault.
"""

from vault_rag.config import AppConfig
from vault_rag.errors import VaultRAGError
from vault_rag.rag.engine import RAGEngine, SearchFilters, SearchResult, pack_context

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "RAGEngine",
    "SearchFilters",
    "SearchResult",
    "VaultRAGError",
    "pack_context",
]
