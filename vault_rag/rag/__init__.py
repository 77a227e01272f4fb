"""
RAG (Retrieval-Augmented Generation) subsystem for vault search.

Provides the chunker, embedding providers, the per-dimension vector store
abstraction, and the RAGEngine that keeps the index incrementally in sync
with the vault and answers semantic queries.
"""

from __future__ import annotations
