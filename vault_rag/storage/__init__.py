"""
Persistent storage layer for vault-rag.

Provides:
- ContentTracker: two-tier (mtime, content hash) change detection
- SQLiteMetadataStore: chunk metadata, snapshot and manifest for the primary store
- FallbackVectorStore (storage.fallback_store): flat-file store used when the primary cannot start
"""

from vault_rag.storage.content_tracker import ChangeSet, ContentTracker, DocumentRef, compute_content_hash
from vault_rag.storage.metadata_store import SQLiteMetadataStore

__all__ = [
    "ChangeSet",
    "ContentTracker",
    "DocumentRef",
    "SQLiteMetadataStore",
    "compute_content_hash",
]
