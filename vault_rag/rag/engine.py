"""
Index manager and semantic search over a document vault.

The RAGEngine keeps the vector store incrementally consistent with the
documents listed by a DocumentSource:

1. Open the store (lazily, once; fall back to the flat-file store if the
   primary cannot start)
2. Check the manifest against the active embedding and chunking
   configuration; a model, dimension or chunking policy change triggers a
   full rebuild
3. Classify documents with the ContentTracker
4. Delete records of deleted documents (including partially indexed ones
   that never reached the snapshot) and stale chunks of modified ones
5. Embed the chunks missing from the store in bounded batches and upsert
   them under the index matching the vector dimension
6. Commit the document snapshot for every fully indexed document

Indexing passes are serialised; a second call waits for the running pass
and then runs its own. Searches never wait for a pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vault_rag.config import AppConfig, EmbeddingConfig
from vault_rag.documents import DocumentEntry, DocumentSource, ExtractedText, ExtractorRegistry
from vault_rag.errors import (
    DimensionMismatchError,
    EmbeddingBatchError,
    ExtractionError,
    ManifestConflictError,
    SearchUnavailableError,
    StoreInitializationError,
)
from vault_rag.rag.chunker import Chunk, chunk_text
from vault_rag.rag.embedding_provider import EmbeddingProvider
from vault_rag.rag.lifecycle import LazyResource
from vault_rag.rag.vector_store import (
    EmbeddingRecord,
    IndexManifest,
    VectorStore,
    build_vector_store,
    validate_record,
)
from vault_rag.storage.content_tracker import ContentTracker, DocumentRef, compute_content_hash

LOG = logging.getLogger("rag.engine")

#: progress(documents_processed, documents_total, phase)
ProgressCallback = Callable[[int, int, str], None]


class EngineState(str, Enum):
    """Engine lifecycle. INDEXING does not block searches."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    INDEXING = "indexing"


@dataclass(frozen=True)
class SearchFilters:
    """Restrict results to folder subtrees and/or exact document paths."""

    folders: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not self.folders and not self.paths

    def matches(self, path: str) -> bool:
        if path in self.paths:
            return True
        for folder in self.folders:
            prefix = folder.strip("/")
            if not prefix or path == prefix or path.startswith(prefix + "/"):
                return True
        return False


@dataclass
class SearchResult:
    """A ranked chunk, hydrated for presentation."""

    path: str
    text: str
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    score: float
    chunk_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": self.score,
            "chunk_id": self.chunk_id,
        }


@dataclass
class IndexResult:
    """Outcome of one indexing pass."""

    documents_total: int = 0
    created: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    documents_indexed: int = 0
    chunks_embedded: int = 0
    chunks_deleted: int = 0
    records_rejected: int = 0
    embedding_calls: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    full_rebuild: bool = False
    degraded: bool = False
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documents_total": self.documents_total,
            "created": self.created,
            "modified": self.modified,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "documents_indexed": self.documents_indexed,
            "chunks_embedded": self.chunks_embedded,
            "chunks_deleted": self.chunks_deleted,
            "records_rejected": self.records_rejected,
            "embedding_calls": self.embedding_calls,
            "failed_batches": self.failed_batches,
            "cancelled": self.cancelled,
            "full_rebuild": self.full_rebuild,
            "degraded": self.degraded,
            "duration_ms": self.duration_ms,
            "errors": list(self.errors),
        }


@dataclass
class EngineStatus:
    """Snapshot of the engine and its store."""

    state: str
    degraded: bool
    backend: str
    record_count: int
    document_count: int
    dimensions: list[int]
    manifest: Optional[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "degraded": self.degraded,
            "backend": self.backend,
            "record_count": self.record_count,
            "document_count": self.document_count,
            "dimensions": list(self.dimensions),
            "manifest": self.manifest,
        }


@dataclass
class _DocProgress:
    """Chunks of one document still waiting for their embedding batch."""

    ref: DocumentRef
    outstanding: int
    failed: bool = False


class _Pass:
    """Mutable state of a single indexing pass."""

    def __init__(self, total: int, progress: Optional[ProgressCallback], result: IndexResult) -> None:
        self.total = total
        self.processed = 0
        self.progress = progress
        self.result = result
        self.docs: Dict[str, _DocProgress] = {}
        self.queue: List[Chunk] = []
        self.queue_chars = 0
        # Documents extracted during change detection: path -> (identity, text)
        self.prefetched: Dict[str, Tuple[str, ExtractedText]] = {}

    def report(self, phase: str, advanced: int = 1) -> None:
        self.processed += advanced
        if self.progress is None:
            return
        try:
            self.progress(self.processed, self.total, phase)
        except Exception as exc:  # noqa: BLE001
            LOG.warning("Progress callback raised: %s", exc)


class RAGEngine:
    """
    Incremental indexer and semantic search over a document vault.

    Usage::

        engine = RAGEngine(
            source=FileSystemDocumentSource(Path("vault/")),
            embedder=LocalEmbeddingProvider(),
            config=AppConfig(),
        )
        await engine.build_or_update()
        results = await engine.search("notes about fruit", top_k=5)
    """

    def __init__(
        self,
        source: DocumentSource,
        embedder: EmbeddingProvider,
        config: Optional[AppConfig] = None,
        store_factory: Optional[Callable[[], VectorStore]] = None,
        fallback_factory: Optional[Callable[[], VectorStore]] = None,
        extractors: Optional[ExtractorRegistry] = None,
        on_degraded: Optional[Callable[[StoreInitializationError], None]] = None,
    ) -> None:
        self._source = source
        self._embedder = embedder
        self._config = config or AppConfig()
        self._extractors = extractors or ExtractorRegistry()
        self._on_degraded = on_degraded

        data_dir = Path(self._config.storage.data_dir)
        self._store_factory = store_factory or (
            lambda: build_vector_store(self._config.storage.backend, data_dir=data_dir)
        )
        self._fallback_factory = fallback_factory or (
            lambda: build_vector_store("fallback", data_dir=data_dir / "fallback")
        )
        self._store: LazyResource[VectorStore] = LazyResource(self._open_store, name="vector store")

        self._state = EngineState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._cancel_requested = False
        self._init_error: Optional[StoreInitializationError] = None
        self._degraded_notified = False

    # ── Properties ────────────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def degraded(self) -> bool:
        """True once the engine runs on the fallback store because the primary failed."""
        return self._init_error is not None and self._degraded_notified

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def embedding_config(self) -> EmbeddingConfig:
        return self._config.embedding

    # ── Store lifecycle ───────────────────────────────────────────────

    def _open_store(self) -> VectorStore:
        """Primary store, or the fallback if the primary cannot start. Runs in a worker thread."""
        try:
            return self._store_factory()
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, StoreInitializationError):
                error = exc
            else:
                error = StoreInitializationError(f"Primary vector store failed to start: {exc}")
            LOG.warning("Primary vector store unavailable, switching to fallback store: %s", exc)

        try:
            store = self._fallback_factory()
        except Exception as exc:
            raise StoreInitializationError(
                f"Neither the primary nor the fallback vector store could be opened: {exc}"
            ) from exc
        self._init_error = error
        return store

    async def _get_store(self) -> VectorStore:
        store = await self._store.get()
        if self._init_error is not None and not self._degraded_notified:
            self._degraded_notified = True
            if self._on_degraded is not None:
                self._on_degraded(self._init_error)
        if self._state is EngineState.UNINITIALIZED:
            self._state = EngineState.READY
        return store

    def _new_manifest(self) -> IndexManifest:
        return IndexManifest(
            model_id=self._embedder.model_id,
            config_version=self._config.embedding.version,
            dimension=self._config.embedding.dimension,
            chunking_version=self._config.chunking.fingerprint,
        )

    def _manifest_matches(self, manifest: IndexManifest) -> bool:
        return (
            manifest.model_id == self._embedder.model_id
            and manifest.config_version == self._config.embedding.version
            and manifest.chunking_version == self._config.chunking.fingerprint
        )

    def reconfigure(self, embedder: EmbeddingProvider, embedding: EmbeddingConfig) -> None:
        """
        Switch the active embedding model.

        A running pass aborts with ManifestConflictError at its next batch
        boundary; the next ``build_or_update`` rebuilds the whole index.
        """
        self._embedder = embedder
        self._config.embedding = embedding
        LOG.info("Embedding configuration changed to %s (%s)", embedder.model_id, embedding.version)

    # ── Embedding ─────────────────────────────────────────────────────

    async def _embed(self, texts: Sequence[str]) -> List[List[float]]:
        timeout = self._config.index.embed_timeout_seconds
        try:
            vectors = await asyncio.wait_for(
                asyncio.to_thread(self._embedder.embed, list(texts)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingBatchError(len(texts), f"timed out after {timeout}s", timed_out=True) from exc
        except Exception as exc:
            raise EmbeddingBatchError(len(texts), str(exc) or type(exc).__name__) from exc

        if len(vectors) != len(texts):
            raise EmbeddingBatchError(len(texts), f"provider returned {len(vectors)} vectors")
        return [[float(v) for v in vec] for vec in vectors]

    def _identity(self, path: str, data: bytes, extracted: Optional[ExtractedText]) -> str:
        """The extractor's ``identity_hint`` when it offers one, else the SHA-256 of the raw bytes."""
        if extracted is not None and extracted.identity_hint and self._extractors.provides_identity(path):
            return extracted.identity_hint
        return compute_content_hash(data)

    def _read_and_identify(self, path: str) -> tuple[str, Optional[ExtractedText]]:
        """Content identity, plus the text when extraction was needed to get it."""
        data = self._source.read_document(path)
        extracted = self._extractors.extract(path, data) if self._extractors.provides_identity(path) else None
        return self._identity(path, data, extracted), extracted

    def _read_and_extract(self, path: str) -> tuple[str, ExtractedText]:
        data = self._source.read_document(path)
        extracted = self._extractors.extract(path, data)
        return self._identity(path, data, extracted), extracted

    # ── Indexing ──────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Stop issuing embedding batches in the running pass. Applied writes stay."""
        self._cancel_requested = True

    async def build_or_update(self, progress: Optional[ProgressCallback] = None) -> IndexResult:
        """Bring the index in line with the documents; a no-op when nothing changed."""
        async with self._lock:
            self._cancel_requested = False
            return await self._run_pass(progress, full_rebuild=False)

    async def rebuild_all(self, progress: Optional[ProgressCallback] = None) -> IndexResult:
        """Drop every record, index and snapshot entry, then index from scratch."""
        async with self._lock:
            self._cancel_requested = False
            store = await self._get_store()
            self._reset_store(store)
            return await self._run_pass(progress, full_rebuild=True)

    def _reset_store(self, store: VectorStore) -> None:
        store.clear()
        store.set_manifest(self._new_manifest())
        LOG.info("Index reset for model %s", self._embedder.model_id)

    async def _run_pass(self, progress: Optional[ProgressCallback], full_rebuild: bool) -> IndexResult:
        start = time.monotonic()
        store = await self._get_store()
        result = IndexResult(full_rebuild=full_rebuild, degraded=self.degraded)

        manifest = store.get_manifest()
        if manifest is None:
            store.set_manifest(self._new_manifest())
        elif not self._manifest_matches(manifest):
            LOG.warning(
                "Index configuration changed (model %s -> %s, chunking %s -> %s); rebuilding the index",
                manifest.model_id,
                self._embedder.model_id,
                manifest.chunking_version or "unset",
                self._config.chunking.fingerprint,
            )
            self._reset_store(store)
            result.full_rebuild = True

        self._state = EngineState.INDEXING
        try:
            await self._index_documents(store, result, progress)
        finally:
            self._state = EngineState.READY

        result.duration_ms = int((time.monotonic() - start) * 1000)
        LOG.info(
            "Index pass: %d created, %d modified, %d deleted, %d chunks embedded, "
            "%d chunks deleted, %d failed batches, %dms",
            result.created,
            result.modified,
            result.deleted,
            result.chunks_embedded,
            result.chunks_deleted,
            result.failed_batches,
            result.duration_ms,
        )
        return result

    async def _index_documents(
        self,
        store: VectorStore,
        result: IndexResult,
        progress: Optional[ProgressCallback],
    ) -> None:
        config_version = self._config.embedding.version
        model_id = self._embedder.model_id

        tracker = ContentTracker(store.get_document_snapshot())
        entries: List[DocumentEntry] = await asyncio.to_thread(self._source.list_documents)
        result.documents_total = len(entries)

        hashes: Dict[str, str] = {}
        prefetched: Dict[str, Tuple[str, ExtractedText]] = {}
        for entry in tracker.needs_hash(entries):
            try:
                digest, extracted = await asyncio.to_thread(self._read_and_identify, entry.path)
            except (OSError, ExtractionError) as exc:
                LOG.warning("Cannot read %s: %s", entry.path, exc)
                result.errors.append(f"{entry.path}: {exc}")
                continue
            hashes[entry.path] = digest
            if extracted is not None:
                prefetched[entry.path] = (digest, extracted)

        changes = tracker.classify(entries, hashes, stored_paths=store.paths())
        result.created = len(changes.created)
        result.modified = len(changes.modified)
        result.deleted = len(changes.deleted)
        result.unchanged = len(changes.unchanged)
        result.skipped = len(changes.skipped)

        run = _Pass(total=len(entries), progress=progress, result=result)
        run.prefetched = prefetched
        run.report("detecting", advanced=len(changes.unchanged) + len(changes.skipped))

        # Writes run on the loop thread: a concurrent search sees each record
        # either complete or absent.
        for path in changes.deleted:
            result.chunks_deleted += store.delete_by_chunk_ids(store.chunk_ids_for_path(path))
            tracker.record_deleted(path)

        to_index = set(changes.created) | set(changes.modified)
        for entry in entries:
            if entry.path not in to_index:
                continue
            if self._cancel_requested:
                result.cancelled = True
                break
            await self._index_document(store, entry, run, tracker, model_id, config_version)

        if not result.cancelled:
            await self._flush(store, run, tracker, model_id, config_version)

        if tracker.has_staged_changes:
            store.set_document_snapshot(tracker.commit())

    async def _index_document(
        self,
        store: VectorStore,
        entry: DocumentEntry,
        run: _Pass,
        tracker: ContentTracker,
        model_id: str,
        config_version: str,
    ) -> None:
        path = entry.path
        try:
            if path in run.prefetched:
                digest, extracted = run.prefetched.pop(path)
            else:
                digest, extracted = await asyncio.to_thread(self._read_and_extract, path)
        except (OSError, ExtractionError) as exc:
            LOG.warning("Skipping %s: %s", path, exc)
            run.result.errors.append(f"{path}: {exc}")
            run.result.skipped += 1
            run.report("indexing")
            return

        chunks = chunk_text(path, extracted.text, self._config.chunking)
        new_ids = {c.chunk_id for c in chunks}
        existing = set(store.chunk_ids_for_path(path))

        # Stale chunks go before any new chunk of this document is written
        stale = sorted(existing - new_ids)
        if stale:
            run.result.chunks_deleted += store.delete_by_chunk_ids(stale)

        ref = DocumentRef(path=path, mtime=entry.mtime, content_hash=digest)
        missing = [c for c in chunks if c.chunk_id not in existing]
        if not missing:
            tracker.record(ref)
            run.result.documents_indexed += 1
            run.report("indexing")
            return

        run.docs[path] = _DocProgress(ref=ref, outstanding=len(missing))
        batch_size = self._config.index.batch_size
        max_chars = self._config.index.max_batch_chars
        for chunk in missing:
            if run.queue and run.queue_chars + len(chunk.text) > max_chars:
                await self._flush(store, run, tracker, model_id, config_version)
            run.queue.append(chunk)
            run.queue_chars += len(chunk.text)
            if len(run.queue) >= batch_size:
                await self._flush(store, run, tracker, model_id, config_version)

    async def _flush(
        self,
        store: VectorStore,
        run: _Pass,
        tracker: ContentTracker,
        model_id: str,
        config_version: str,
    ) -> None:
        """Embed and write the queued chunks as one batch."""
        batch, run.queue, run.queue_chars = run.queue, [], 0
        if not batch:
            return

        if self._config.embedding.version != config_version or self._embedder.model_id != model_id:
            raise ManifestConflictError(
                "Embedding model changed during an indexing pass; call rebuild_all()"
            )
        if self._cancel_requested:
            run.result.cancelled = True
            for chunk in batch:
                run.docs[chunk.path].failed = True
            return

        failed_ids: set[str] = set()
        try:
            run.result.embedding_calls += 1
            vectors = await self._embed([c.text for c in batch])
        except EmbeddingBatchError as exc:
            LOG.warning("%s; %d chunks will be retried on the next pass", exc, len(batch))
            run.result.failed_batches += 1
            run.result.errors.append(str(exc))
            failed_ids = {c.chunk_id for c in batch}
        else:
            failed_ids = self._write_batch(store, batch, vectors, run, model_id)

        for chunk in batch:
            doc = run.docs[chunk.path]
            doc.outstanding -= 1
            if chunk.chunk_id in failed_ids:
                doc.failed = True
            if doc.outstanding == 0:
                if not doc.failed:
                    tracker.record(doc.ref)
                    run.result.documents_indexed += 1
                run.report("embedding")

    def _write_batch(
        self,
        store: VectorStore,
        batch: List[Chunk],
        vectors: List[List[float]],
        run: _Pass,
        model_id: str,
    ) -> set[str]:
        """Validate and upsert one batch; returns ids of rejected records."""
        manifest = store.get_manifest()
        expected = manifest.dimension if manifest is not None else None

        rejected: set[str] = set()
        records: List[EmbeddingRecord] = []
        for chunk, vector in zip(batch, vectors):
            record = EmbeddingRecord(
                chunk_id=chunk.chunk_id,
                model_id=model_id,
                dimension=len(vector),
                vector=vector,
                path=chunk.path,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                text=chunk.text,
            )
            try:
                validate_record(record)
                if expected is not None and record.dimension != expected:
                    raise DimensionMismatchError(record.dimension, expected=expected, chunk_id=chunk.chunk_id)
            except DimensionMismatchError as exc:
                LOG.warning("Rejecting record: %s", exc)
                run.result.records_rejected += 1
                rejected.add(chunk.chunk_id)
                continue

            if expected is None:
                # First vector of this model fixes the active dimension
                expected = record.dimension
                if manifest is not None:
                    manifest.dimension = expected
                    store.set_manifest(manifest)
            records.append(record)

        for dim in sorted({r.dimension for r in records}):
            store.ensure_index(dim)
        store.upsert(records)
        run.result.chunks_embedded += len(records)
        LOG.debug("Wrote %d records (%d rejected)", len(records), len(rejected))
        return rejected

    # ── Query ─────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        """
        Semantic search over indexed chunks.

        Raises:
            SearchUnavailableError: No store could be opened or the store failed
            EmbeddingBatchError: The query could not be embedded
            ManifestConflictError: The index was built with another model
        """
        search_config = self._config.search
        top_k = top_k if top_k is not None else search_config.top_k
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")

        try:
            store = await self._get_store()
        except StoreInitializationError as exc:
            raise SearchUnavailableError(f"Search unavailable: {exc}") from exc

        if not query.strip():
            return []

        try:
            manifest = store.get_manifest()
        except Exception as exc:
            raise SearchUnavailableError(f"Vector store unavailable: {exc}") from exc
        if manifest is not None and manifest.model_id != self._embedder.model_id:
            raise ManifestConflictError(
                f"Index was built with {manifest.model_id!r}, active model is "
                f"{self._embedder.model_id!r}; call rebuild_all()"
            )

        vector = (await self._embed([query]))[0]
        dimension = manifest.dimension if manifest is not None and manifest.dimension else len(vector)
        if len(vector) != dimension:
            raise DimensionMismatchError(len(vector), expected=dimension)

        filtered = filters is not None and not filters.is_empty()
        fetch_k = max(top_k * search_config.over_fetch_factor, search_config.min_over_fetch) if filtered else top_k
        threshold = search_config.min_similarity

        try:
            while True:
                hits = store.query(dimension, vector, fetch_k, threshold)
                records = store.get_records([h.chunk_id for h in hits])
                results = self._hydrate(hits, records, filters if filtered else None, top_k)
                # Widen the candidate pool until the filter stops starving results
                if not filtered or len(results) >= top_k or len(hits) < fetch_k:
                    break
                fetch_k *= 2
        except (DimensionMismatchError, ManifestConflictError):
            raise
        except Exception as exc:
            raise SearchUnavailableError(f"Vector store query failed: {exc}") from exc

        LOG.debug("Search %r: %d results (fetched %d)", query[:50], len(results), len(hits))
        return results

    @staticmethod
    def _hydrate(
        hits: list,
        records: Dict[str, EmbeddingRecord],
        filters: Optional[SearchFilters],
        top_k: int,
    ) -> List[SearchResult]:
        results: List[SearchResult] = []
        for hit in hits:
            record = records.get(hit.chunk_id)
            if record is None:
                # Deleted between query and hydration
                continue
            if filters is not None and not filters.matches(record.path):
                continue
            results.append(
                SearchResult(
                    path=record.path,
                    text=record.text,
                    start_offset=record.start_offset,
                    end_offset=record.end_offset,
                    start_line=record.start_line,
                    end_line=record.end_line,
                    score=hit.score,
                    chunk_id=hit.chunk_id,
                )
            )
            if len(results) >= top_k:
                break
        return results

    # ── Status / teardown ─────────────────────────────────────────────

    async def status(self) -> EngineStatus:
        store = await self._get_store()
        manifest = store.get_manifest()
        return EngineStatus(
            state=self._state.value,
            degraded=self.degraded,
            backend="fallback" if store.is_fallback else "primary",
            record_count=store.count(),
            document_count=len(store.paths()),
            dimensions=store.dimensions(),
            manifest=manifest.to_dict() if manifest else None,
        )

    async def close(self) -> None:
        """Cancel any running pass, wait for it, and release the store and embedder."""
        self.cancel()
        async with self._lock:
            store = self._store.reset()
            if store is not None:
                store.close()
            self._embedder.close()
            self._state = EngineState.UNINITIALIZED


def pack_context(results: List[SearchResult], max_tokens: int = 4000) -> str:
    """
    Pack search results into a single context string for prompt injection.

    Respects the token budget (estimated at 4 chars per token).
    """
    char_limit = max_tokens * 4  # rough chars-per-token estimate

    parts: list[str] = []
    total_chars = 0

    for r in results:
        entry = f"## {r.path} (lines {r.start_line}-{r.end_line}, score={r.score:.2f})\n{r.text}\n"
        if total_chars + len(entry) > char_limit:
            break
        parts.append(entry)
        total_chars += len(entry)

    return "\n".join(parts)
