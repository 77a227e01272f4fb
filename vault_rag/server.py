from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from vault_rag.config import AppConfig
from vault_rag.documents import FileSystemDocumentSource
from vault_rag.models import (
    IndexReport,
    IndexStatus,
    ManifestInfo,
    ProgressEvent,
    SearchHit,
    SearchResponse,
)
from vault_rag.rag.embedding_provider import build_embedding_provider
from vault_rag.rag.engine import IndexResult, RAGEngine, SearchFilters, pack_context
from vault_rag.registry import EngineRegistry

LOG = logging.getLogger("vault_rag.server")

LOG_LEVEL = os.environ.get("VAULT_RAG_LOG_LEVEL", "INFO").upper()

try:
    from mcp.server.fastmcp import FastMCP
except ImportError as exc:  # pragma: no cover - dependency is optional at import time
    FastMCP = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None


def _require_server() -> "FastMCP":
    if FastMCP is None:
        raise SystemExit(
            "The mcp package is required to run the server. "
            "Install it with `pip install 'vault-rag[server]'`."
        ) from _IMPORT_ERROR
    return FastMCP("vault-rag-server")


def _validate_required(name: str, value: Optional[str]) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"Missing required field: {name}")


def _json_payload(model) -> dict:
    return model.model_dump(mode="json")


def build_engine(config: AppConfig) -> RAGEngine:
    """Engine over the configured vault directory, with the configured embedder."""
    source = FileSystemDocumentSource(
        Path(config.vault_root),
        include_patterns=config.index.include_patterns,
        exclude_patterns=config.index.exclude_patterns,
    )
    embedder = build_embedding_provider(config.embedding)

    def on_degraded(error: Exception) -> None:
        LOG.error("Running on the fallback vector store: %s", error)

    return RAGEngine(source=source, embedder=embedder, config=config, on_degraded=on_degraded)


def _report(result: IndexResult, events: List[ProgressEvent]) -> IndexReport:
    return IndexReport(
        documentsTotal=result.documents_total,
        created=result.created,
        modified=result.modified,
        deleted=result.deleted,
        unchanged=result.unchanged,
        skipped=result.skipped,
        documentsIndexed=result.documents_indexed,
        chunksEmbedded=result.chunks_embedded,
        chunksDeleted=result.chunks_deleted,
        recordsRejected=result.records_rejected,
        embeddingCalls=result.embedding_calls,
        failedBatches=result.failed_batches,
        cancelled=result.cancelled,
        fullRebuild=result.full_rebuild,
        degraded=result.degraded,
        durationMs=result.duration_ms,
        errors=result.errors,
        progress=events,
    )


def build_server(config: Optional[AppConfig] = None, registry: Optional[EngineRegistry] = None) -> "FastMCP":
    server = _require_server()
    config = config or AppConfig.from_env()
    registry = registry or EngineRegistry()
    default_root = str(Path(config.vault_root).resolve())

    async def _engine() -> RAGEngine:
        return await registry.get_or_create(default_root, lambda: build_engine(config))

    async def _run_pass(rebuild: bool) -> dict:
        engine = await _engine()
        events: List[ProgressEvent] = []

        def progress(processed: int, total: int, phase: str) -> None:
            events.append(ProgressEvent(processed=processed, total=total, phase=phase))

        if rebuild:
            result = await engine.rebuild_all(progress)
        else:
            result = await engine.build_or_update(progress)
        # Keep the payload small: one event per phase change plus the last
        condensed = [e for i, e in enumerate(events) if i == len(events) - 1 or events[i + 1].phase != e.phase]
        return _json_payload(_report(result, condensed))

    @server.tool(
            description="Semantic search over the indexed vault. Returns ranked chunks with paths, line ranges and scores."
    )
    async def search_vault(
        query: str,
        topK: Optional[int] = None,
        folders: Optional[List[str]] = None,
        paths: Optional[List[str]] = None,
        includeContext: bool = False,
    ) -> dict:
        _validate_required("query", query)
        engine = await _engine()
        filters = SearchFilters(folders=tuple(folders or ()), paths=tuple(paths or ()))
        results = await engine.search(query, top_k=topK, filters=filters)
        response = SearchResponse(
            query=query,
            topK=topK or config.search.top_k,
            results=[
                SearchHit(
                    path=r.path,
                    text=r.text,
                    startOffset=r.start_offset,
                    endOffset=r.end_offset,
                    startLine=r.start_line,
                    endLine=r.end_line,
                    score=r.score,
                    chunkId=r.chunk_id,
                )
                for r in results
            ],
            context=pack_context(results, config.search.max_context_tokens) if includeContext else None,
        )
        return _json_payload(response)

    @server.tool(
            description="Incrementally update the index: embed new and changed documents, drop deleted ones."
    )
    async def update_index() -> dict:
        return await _run_pass(rebuild=False)

    @server.tool(
            description="Drop the whole index and re-embed every document in the vault."
    )
    async def rebuild_index() -> dict:
        return await _run_pass(rebuild=True)

    @server.tool(
            description="Report engine state, store backend, record counts and the active embedding manifest."
    )
    async def index_status() -> dict:
        engine = await _engine()
        status = await engine.status()
        manifest = status.manifest
        payload = IndexStatus(
            vaultRoot=default_root,
            state=status.state,
            degraded=status.degraded,
            backend=status.backend,
            recordCount=status.record_count,
            documentCount=status.document_count,
            dimensions=status.dimensions,
            manifest=ManifestInfo(
                modelId=manifest["model_id"],
                configVersion=manifest["config_version"],
                dimension=manifest["dimension"],
                chunkingVersion=manifest.get("chunking_version", ""),
            ) if manifest else None,
            embedding={
                "backend": config.embedding.backend,
                "modelId": config.embedding.model_id,
                "version": config.embedding.version,
            },
        )
        return _json_payload(payload)

    return server


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    server = build_server()
    server.run()


if __name__ == "__main__":
    main()
