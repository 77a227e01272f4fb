"""Tests for rag.engine: incremental indexing and search."""

from __future__ import annotations

import asyncio
import hashlib
import sqlite3
import threading

import pytest

from conftest import (
    FRUIT_CORPUS,
    ConceptEmbeddingProvider,
    CountingEmbeddingProvider,
    ReversedDocumentSource,
    make_config,
)
from vault_rag.config import ChunkingConfig, EmbeddingConfig
from vault_rag.documents import (
    ExtractedText,
    ExtractorRegistry,
    InMemoryDocumentSource,
    PlainTextExtractor,
    TextExtractor,
)
from vault_rag.rag.chunker import chunk_text
from vault_rag.errors import (
    EmbeddingBatchError,
    ManifestConflictError,
    SearchUnavailableError,
    StoreInitializationError,
)
from vault_rag.rag.engine import EngineState, RAGEngine, SearchFilters, SearchResult, pack_context
from vault_rag.storage.fallback_store import FallbackVectorStore


def _long_doc(topic: str, paragraphs: int = 6) -> str:
    """Several chunks worth of text under the 200-char test window."""
    return "".join(f"{topic} paragraph {i} " + "filler words " * 10 + "\n" for i in range(paragraphs))


def _records(store) -> dict:
    """chunk_id -> (path, text, vector) for comparing stores."""
    ids = store.all_chunk_ids()
    return {
        cid: (r.path, r.text, tuple(round(v, 9) for v in r.vector))
        for cid, r in store.get_records(ids, include_vectors=True).items()
    }


async def _store(engine: RAGEngine):
    return await engine._get_store()


def _failing_primary():
    raise StoreInitializationError("chroma is down")


class StampedExtractor(TextExtractor):
    """First line is a save stamp that carries no content."""

    provides_identity = True

    def extract(self, path, raw):
        text = raw.decode("utf-8").split("\n", 1)[1]
        return ExtractedText(text, identity_hint=hashlib.sha256(text.encode("utf-8")).hexdigest())

    def supported_suffixes(self):
        return (".stamped",)


# ── Indexing ─────────────────────────────────────────────────────────────────


class TestBuildOrUpdate:
    @pytest.mark.asyncio
    async def test_first_pass_indexes_everything(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)
        assert engine.state is EngineState.UNINITIALIZED

        result = await engine.build_or_update()

        assert result.created == 3
        assert result.chunks_embedded == 3
        assert result.documents_indexed == 3
        assert engine.state is EngineState.READY
        store = await _store(engine)
        assert store.paths() == ["A.md", "B.md", "C.md"]
        assert set(store.get_document_snapshot()) == {"A.md", "B.md", "C.md"}
        manifest = store.get_manifest()
        assert manifest.model_id == "concept-test"
        assert manifest.dimension == 128

    @pytest.mark.asyncio
    async def test_idempotent(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)
        await engine.build_or_update()
        store = await _store(engine)
        before = _records(store)
        snapshot_before = store.get_document_snapshot()
        counting_embedder.reset()

        result = await engine.build_or_update()

        assert counting_embedder.calls == 0
        assert result.chunks_embedded == 0
        assert result.chunks_deleted == 0
        assert result.unchanged == 3
        assert _records(store) == before
        assert store.get_document_snapshot() == snapshot_before

    @pytest.mark.asyncio
    async def test_identity_hint_decides_change(self, make_engine, concept_embedder):
        source = InMemoryDocumentSource({"n.stamped": ("saved 1\napples and oranges", 1.0)})
        embedder = CountingEmbeddingProvider(concept_embedder)
        extractors = ExtractorRegistry([PlainTextExtractor(), StampedExtractor()])
        engine = make_engine(source, embedder, extractors=extractors)
        await engine.build_or_update()
        embedder.reset()

        # New bytes, same extracted content
        source.put("n.stamped", "saved 2\napples and oranges", 2.0)
        touched = await engine.build_or_update()

        assert touched.unchanged == 1
        assert touched.modified == 0
        assert embedder.calls == 0
        store = await _store(engine)
        assert store.get_document_snapshot()["n.stamped"].mtime == 2.0

        source.put("n.stamped", "saved 3\napple pie", 3.0)
        edited = await engine.build_or_update()

        assert edited.modified == 1
        assert edited.chunks_embedded == 1
        assert [h.text for h in await engine.search("apple")] == ["apple pie"]

    @pytest.mark.asyncio
    async def test_second_pass_makes_no_writes(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)
        await engine.build_or_update()
        store = await _store(engine)

        writes = []
        for name in ("upsert", "delete_by_chunk_ids", "set_document_snapshot", "set_manifest", "clear"):
            original = getattr(store, name)

            def spy(*args, _name=name, _original=original, **kwargs):
                writes.append(_name)
                return _original(*args, **kwargs)

            setattr(store, name, spy)

        await engine.build_or_update()
        assert writes == []

    @pytest.mark.asyncio
    async def test_incremental_reembeds_only_changed_chunks(self, make_engine, counting_embedder):
        docs = {f"doc{i}.md": (_long_doc(f"topic{i}"), 1.0) for i in range(4)}
        source = InMemoryDocumentSource(docs)
        engine = make_engine(source, counting_embedder)
        await engine.build_or_update()
        store = await _store(engine)
        others_before = {p: store.chunk_ids_for_path(p) for p in docs if p != "doc2.md"}
        doc2_before = set(store.chunk_ids_for_path("doc2.md"))
        counting_embedder.reset()

        # Change only the last paragraph of doc2
        text = docs["doc2.md"][0]
        edited = text[: text.rindex("topic2 paragraph 5")] + "topic2 paragraph 5 rewritten apples\n"
        source.put("doc2.md", edited, 2.0)
        result = await engine.build_or_update()

        assert result.modified == 1
        assert result.unchanged == 3
        assert {p: store.chunk_ids_for_path(p) for p in others_before} == others_before
        doc2_after = set(store.chunk_ids_for_path("doc2.md"))
        embedded = set(counting_embedder.texts)
        # Only new chunks were sent to the embedder, and every one belongs to doc2
        assert 0 < result.chunks_embedded < len(doc2_after)
        assert embedded <= {r.text for r in store.get_records(list(doc2_after - doc2_before)).values()}
        assert doc2_before & doc2_after
        assert result.chunks_deleted == len(doc2_before - doc2_after)

    @pytest.mark.asyncio
    async def test_deletion_removes_records_and_results(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()
        fruit_source.remove("A.md")

        result = await engine.build_or_update()

        store = await _store(engine)
        assert result.deleted == 1
        assert store.chunk_ids_for_path("A.md") == []
        assert "A.md" not in store.get_document_snapshot()
        hits = await engine.search("apples and oranges")
        assert all(h.path != "A.md" for h in hits)

    @pytest.mark.asyncio
    async def test_order_independence(self, make_engine, concept_embedder):
        docs = {f"doc{i}.md": (_long_doc(f"topic{i}", 3), 1.0) for i in range(5)}
        forward = make_engine(InMemoryDocumentSource(docs), concept_embedder, config=make_config(batch_size=4))
        backward = make_engine(ReversedDocumentSource(docs), concept_embedder, config=make_config(batch_size=4))

        await forward.build_or_update()
        await backward.build_or_update()

        assert _records(await _store(forward)) == _records(await _store(backward))

    @pytest.mark.asyncio
    async def test_touch_without_change_does_not_reembed(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)
        await engine.build_or_update()
        counting_embedder.reset()

        fruit_source.put("A.md", FRUIT_CORPUS["A.md"], 50.0)
        result = await engine.build_or_update()

        assert counting_embedder.calls == 0
        assert result.unchanged == 3
        store = await _store(engine)
        assert store.get_document_snapshot()["A.md"].mtime == 50.0

    @pytest.mark.asyncio
    async def test_whitespace_document_has_no_records(self, make_engine, counting_embedder):
        source = InMemoryDocumentSource({"blank.md": ("  \n\n ", 1.0), "a.md": ("apples", 1.0)})
        engine = make_engine(source, counting_embedder)
        result = await engine.build_or_update()
        store = await _store(engine)
        assert store.paths() == ["a.md"]
        # Recorded anyway, so the next pass leaves it alone
        assert "blank.md" in store.get_document_snapshot()
        assert result.documents_indexed == 2

    @pytest.mark.asyncio
    async def test_batches_respect_size_and_char_limits(self, make_engine, counting_embedder):
        docs = {f"doc{i}.md": (_long_doc(f"topic{i}"), 1.0) for i in range(3)}
        config = make_config(batch_size=4, max_batch_chars=450)
        batches = []
        inner_embed = counting_embedder.embed

        def recording(texts):
            batches.append(list(texts))
            return inner_embed(texts)

        counting_embedder.embed = recording
        engine = make_engine(InMemoryDocumentSource(docs), counting_embedder, config=config)

        result = await engine.build_or_update()

        assert result.embedding_calls == len(batches)
        assert sum(len(b) for b in batches) == result.chunks_embedded
        for batch in batches:
            assert len(batch) <= 4
            assert len(batch) == 1 or sum(len(t) for t in batch) <= 450

    @pytest.mark.asyncio
    async def test_progress_callback(self, make_engine, fruit_source, concept_embedder):
        events = []
        engine = make_engine(fruit_source, concept_embedder)

        await engine.build_or_update(lambda done, total, phase: events.append((done, total, phase)))

        assert events
        assert events[-1][0] == 3
        assert all(total == 3 for _, total, _ in events)
        assert [done for done, _, _ in events] == sorted(done for done, _, _ in events)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self, make_engine, fruit_source, concept_embedder):
        def broken(done, total, phase):
            raise RuntimeError("ui went away")

        engine = make_engine(fruit_source, concept_embedder)
        result = await engine.build_or_update(broken)
        assert result.documents_indexed == 3


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_batch_is_retried_next_pass(self, make_engine, fruit_source, concept_embedder):
        embedder = CountingEmbeddingProvider(concept_embedder, fail_calls=(2,))
        engine = make_engine(fruit_source, embedder, config=make_config(batch_size=1))

        first = await engine.build_or_update()

        assert first.failed_batches == 1
        assert first.documents_indexed == 2
        store = await _store(engine)
        assert len(store.get_document_snapshot()) == 2
        missing = ({"A.md", "B.md", "C.md"} - set(store.get_document_snapshot())).pop()
        assert store.chunk_ids_for_path(missing) == []

        second = await engine.build_or_update()

        assert second.failed_batches == 0
        assert second.created == 1
        assert second.chunks_embedded == 1
        assert store.paths() == ["A.md", "B.md", "C.md"]

    @pytest.mark.asyncio
    async def test_removed_partially_indexed_document_leaves_no_records(self, make_engine, concept_embedder):
        source = InMemoryDocumentSource({"X.md": (_long_doc("apples"), 1.0)})
        embedder = CountingEmbeddingProvider(concept_embedder, fail_calls=(2,))
        engine = make_engine(source, embedder, config=make_config(batch_size=1))

        first = await engine.build_or_update()

        assert first.failed_batches == 1
        store = await _store(engine)
        assert store.chunk_ids_for_path("X.md")
        assert "X.md" not in store.get_document_snapshot()

        source.remove("X.md")
        second = await engine.build_or_update()

        assert second.deleted == 1
        assert store.chunk_ids_for_path("X.md") == []
        assert store.count() == 0
        assert await engine.search("apples") == []

    @pytest.mark.asyncio
    async def test_removed_document_of_cancelled_pass_leaves_no_records(self, make_engine, concept_embedder):
        source = InMemoryDocumentSource({"X.md": (_long_doc("apples"), 1.0)})
        box = {}

        def on_call(n):
            if n == 1:
                box["engine"].cancel()

        embedder = CountingEmbeddingProvider(concept_embedder, on_call=on_call)
        engine = make_engine(source, embedder, config=make_config(batch_size=1))
        box["engine"] = engine

        first = await engine.build_or_update()

        assert first.cancelled
        store = await _store(engine)
        assert store.count() == 1

        source.remove("X.md")
        await engine.build_or_update()

        assert store.count() == 0
        assert store.paths() == []

    @pytest.mark.asyncio
    async def test_embedding_timeout_is_batch_failure(self, make_engine, fruit_source, concept_embedder):
        embedder = CountingEmbeddingProvider(concept_embedder, delay=0.3)
        config = make_config(embed_timeout_seconds=0.05)
        engine = make_engine(fruit_source, embedder, config=config)

        result = await engine.build_or_update()

        assert result.failed_batches == result.embedding_calls >= 1
        assert result.documents_indexed == 0
        assert "timed out" in result.errors[0]
        store = await _store(engine)
        assert store.get_document_snapshot() == {}

    @pytest.mark.asyncio
    async def test_extraction_error_skips_document(self, make_engine, concept_embedder):
        source = InMemoryDocumentSource({"good.md": ("apples", 1.0)})
        source._docs["bad.md"] = (b"\xff\xfe broken", 1.0)
        engine = make_engine(source, concept_embedder)

        result = await engine.build_or_update()

        store = await _store(engine)
        assert store.paths() == ["good.md"]
        assert set(store.get_document_snapshot()) == {"good.md"}
        assert any("bad.md" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_failed_reembed_of_modified_document_is_retried(self, make_engine, fruit_source, concept_embedder):
        embedder = CountingEmbeddingProvider(concept_embedder)
        engine = make_engine(fruit_source, embedder)
        await engine.build_or_update()

        embedder.fail_calls = {embedder.calls + 1}
        fruit_source.put("B.md", "apples are fruit too", 2.0)
        result = await engine.build_or_update()

        assert result.failed_batches == 1
        store = await _store(engine)
        # Snapshot still holds the old version, so the next pass retries
        assert store.get_document_snapshot()["B.md"].mtime == 1.0
        retry = await engine.build_or_update()
        assert retry.modified == 1
        assert retry.chunks_embedded == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_stops_new_batches_and_keeps_applied_writes(self, make_engine, concept_embedder):
        docs = {f"doc{i}.md": (f"note number {i} about apples", 1.0) for i in range(6)}
        engine_box = {}

        def on_call(n):
            if n == 2:
                engine_box["engine"].cancel()

        embedder = CountingEmbeddingProvider(concept_embedder, on_call=on_call)
        engine = make_engine(InMemoryDocumentSource(docs), embedder, config=make_config(batch_size=1))
        engine_box["engine"] = engine

        result = await engine.build_or_update()

        assert result.cancelled
        assert embedder.calls == 2
        store = await _store(engine)
        # Both issued batches were applied; nothing after the cancel
        assert store.count() == 2
        assert len(store.get_document_snapshot()) == 2

        resumed = await engine.build_or_update()
        assert not resumed.cancelled
        assert store.count() == 6
        assert resumed.created == 4


# ── Manifest / configuration ─────────────────────────────────────────────────


class TestManifest:
    @pytest.mark.asyncio
    async def test_model_change_triggers_rebuild(self, make_engine, fruit_source, concept_embedder):
        shared = FallbackVectorStore()
        engine = make_engine(fruit_source, concept_embedder, store_factory=lambda: shared)
        await engine.build_or_update()

        wide = ConceptEmbeddingProvider(dim=256, model_id="concept-wide")
        config = make_config()
        config.embedding = EmbeddingConfig(backend="mock", model_id="concept-wide", dimension=256)
        engine2 = make_engine(fruit_source, wide, config=config, store_factory=lambda: shared)

        result = await engine2.build_or_update()

        assert result.full_rebuild
        assert result.chunks_embedded == 3
        assert shared.get_manifest().model_id == "concept-wide"
        assert shared.get_manifest().dimension == 256
        records = shared.get_records(shared.all_chunk_ids())
        assert {r.dimension for r in records.values()} == {256}

    @pytest.mark.asyncio
    async def test_reconfigure_then_update_rebuilds(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()

        engine.reconfigure(
            ConceptEmbeddingProvider(dim=256, model_id="concept-wide"),
            EmbeddingConfig(backend="mock", model_id="concept-wide", dimension=256),
        )
        result = await engine.build_or_update()

        assert result.full_rebuild
        store = await _store(engine)
        assert store.dimensions() == [256]
        hits = await engine.search("fruit")
        assert hits

    @pytest.mark.asyncio
    async def test_reconfigure_mid_pass_aborts(self, make_engine, concept_embedder):
        docs = {f"doc{i}.md": (f"note {i}", 1.0) for i in range(4)}
        box = {}

        def on_call(n):
            if n == 1:
                box["engine"].reconfigure(
                    ConceptEmbeddingProvider(dim=256, model_id="other"),
                    EmbeddingConfig(backend="mock", model_id="other", dimension=256),
                )

        embedder = CountingEmbeddingProvider(concept_embedder, on_call=on_call)
        engine = make_engine(InMemoryDocumentSource(docs), embedder, config=make_config(batch_size=1))
        box["engine"] = engine

        with pytest.raises(ManifestConflictError):
            await engine.build_or_update()
        store = await _store(engine)
        assert store.get_document_snapshot() == {}
        assert engine.state is EngineState.READY

    @pytest.mark.asyncio
    async def test_search_with_foreign_manifest_raises(self, make_engine, fruit_source, concept_embedder):
        shared = FallbackVectorStore()
        await make_engine(fruit_source, concept_embedder, store_factory=lambda: shared).build_or_update()
        other = make_engine(
            fruit_source, ConceptEmbeddingProvider(model_id="someone-else"), store_factory=lambda: shared
        )
        with pytest.raises(ManifestConflictError):
            await other.search("fruit")

    @pytest.mark.asyncio
    async def test_chunking_policy_change_rechunks_unchanged_documents(self, make_engine, concept_embedder):
        shared = FallbackVectorStore()
        text = _long_doc("apples")
        source = InMemoryDocumentSource({"X.md": (text, 1.0)})
        await make_engine(source, concept_embedder, store_factory=lambda: shared).build_or_update()

        config = make_config()
        config.chunking = ChunkingConfig(chunk_size=400, chunk_overlap=40, version=2)
        engine = make_engine(source, concept_embedder, config=config, store_factory=lambda: shared)

        result = await engine.build_or_update()

        assert result.full_rebuild
        assert result.chunks_embedded > 0
        expected = {c.chunk_id for c in chunk_text("X.md", text, config.chunking)}
        assert set(shared.chunk_ids_for_path("X.md")) == expected
        assert shared.get_manifest().chunking_version == config.chunking.fingerprint

        again = await engine.build_or_update()
        assert not again.full_rebuild
        assert again.chunks_embedded == 0

    @pytest.mark.asyncio
    async def test_rebuild_all(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)
        await engine.build_or_update()
        counting_embedder.reset()

        result = await engine.rebuild_all()

        assert result.full_rebuild
        assert result.created == 3
        assert counting_embedder.calls >= 1
        store = await _store(engine)
        assert store.count() == 3


# ── Search ───────────────────────────────────────────────────────────────────


class TestSearch:
    @pytest.mark.asyncio
    async def test_fruit_ranks_fruit_documents_first(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()

        hits = await engine.search("fruit", top_k=3)

        assert [h.path for h in hits][:2] in (["A.md", "C.md"], ["C.md", "A.md"])
        assert hits[-1].path == "B.md"
        assert hits[0].score > hits[-1].score

    @pytest.mark.asyncio
    async def test_manifest_read_failure_is_search_unavailable(
        self, make_engine, fruit_source, concept_embedder, monkeypatch
    ):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()
        store = await _store(engine)

        def broken():
            raise sqlite3.OperationalError("database disk image is malformed")

        monkeypatch.setattr(store, "get_manifest", broken)
        with pytest.raises(SearchUnavailableError):
            await engine.search("fruit")

    @pytest.mark.asyncio
    async def test_edit_scenario(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()

        fruit_source.put("B.md", "apples are fruit too", 2.0)
        await engine.build_or_update()
        hits = await engine.search("fruit", top_k=10)

        b_hits = [h for h in hits if h.path == "B.md"]
        assert len(b_hits) == 1
        assert b_hits[0].text == "apples are fruit too"
        assert b_hits[0].score > 0.5
        assert all("car engines" not in h.text for h in hits)
        store = await _store(engine)
        assert len(store.chunk_ids_for_path("B.md")) == 1

    @pytest.mark.asyncio
    async def test_identical_text_scores_one(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()

        hits = await engine.search("apple pie recipe")

        assert hits[0].score == pytest.approx(1.0, abs=1e-4)
        c = [h for h in hits if h.path == "C.md"][0]
        assert c.score == pytest.approx(1.0, abs=1e-4)
        assert c.start_offset == 0
        assert c.end_offset == len("apple pie recipe")
        assert c.start_line == c.end_line == 1

    @pytest.mark.asyncio
    async def test_results_are_sorted_and_limited(self, make_engine, concept_embedder):
        docs = {f"doc{i}.md": (_long_doc(f"topic{i}"), 1.0) for i in range(4)}
        engine = make_engine(InMemoryDocumentSource(docs), concept_embedder)
        await engine.build_or_update()

        hits = await engine.search("filler words", top_k=5)

        assert len(hits) == 5
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)
        assert all(isinstance(h, SearchResult) for h in hits)

    @pytest.mark.asyncio
    async def test_default_top_k_and_min_similarity(self, make_engine, fruit_source, concept_embedder):
        config = make_config()
        config.search.min_similarity = 0.5
        engine = make_engine(fruit_source, concept_embedder, config=config)
        await engine.build_or_update()

        hits = await engine.search("fruit")

        assert {h.path for h in hits} == {"A.md", "C.md"}

    @pytest.mark.asyncio
    async def test_empty_query_and_empty_index(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        assert await engine.search("fruit") == []
        await engine.build_or_update()
        assert await engine.search("   ") == []

    @pytest.mark.asyncio
    async def test_invalid_top_k(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        with pytest.raises(ValueError):
            await engine.search("fruit", top_k=0)

    @pytest.mark.asyncio
    async def test_folder_filter_over_fetches(self, make_engine, concept_embedder):
        docs = {f"inbox/n{i}.md": (f"apples note {i}", 1.0) for i in range(30)}
        docs["archive/old.md"] = ("car engines", 1.0)
        docs["archive/pie.md"] = ("apple pie", 1.0)
        engine = make_engine(InMemoryDocumentSource(docs), concept_embedder)
        await engine.build_or_update()

        # Thirty better matches outside the folder would starve a plain top-k
        hits = await engine.search("apples", top_k=2, filters=SearchFilters(folders=("archive",)))

        assert [h.path for h in hits] == ["archive/pie.md", "archive/old.md"]

    @pytest.mark.asyncio
    async def test_path_filter(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()

        hits = await engine.search("fruit", filters=SearchFilters(paths=("B.md",)))

        assert [h.path for h in hits] == ["B.md"]

    def test_filter_matching(self):
        f = SearchFilters(folders=("notes/",), paths=("top.md",))
        assert f.matches("notes/a.md")
        assert f.matches("top.md")
        assert not f.matches("notesbook/a.md")
        assert not f.matches("other.md")
        assert SearchFilters().is_empty()

    @pytest.mark.asyncio
    async def test_query_embedding_failure_raises(self, make_engine, fruit_source, concept_embedder):
        embedder = CountingEmbeddingProvider(concept_embedder)
        engine = make_engine(fruit_source, embedder)
        await engine.build_or_update()
        embedder.fail_calls = {embedder.calls + 1}

        with pytest.raises(EmbeddingBatchError):
            await engine.search("fruit")

    @pytest.mark.asyncio
    async def test_search_during_indexing(self, make_engine, concept_embedder):
        docs = {f"doc{i}.md": (f"apples note {i}", 1.0) for i in range(3)}
        source = InMemoryDocumentSource(docs)
        engine = make_engine(source, concept_embedder)
        await engine.build_or_update()

        release = threading.Event()
        blocking = CountingEmbeddingProvider(
            concept_embedder, on_call=lambda n: release.wait(timeout=5) if n == 1 else None
        )
        engine._embedder = blocking
        source.put("doc3.md", "apples note 3", 1.0)
        task = asyncio.create_task(engine.build_or_update())
        await asyncio.sleep(0.05)
        assert engine.state is EngineState.INDEXING

        # The blocked pass must not hold up queries; they see the applied records
        blocking.on_call = None
        hits = await asyncio.wait_for(engine.search("apples"), timeout=2)
        assert {h.path for h in hits} == {"doc0.md", "doc1.md", "doc2.md"}

        release.set()
        await task
        assert engine.state is EngineState.READY


# ── Degraded mode ────────────────────────────────────────────────────────────


class TestFallback:
    @pytest.mark.asyncio
    async def test_primary_failure_uses_fallback_with_same_ranking(self, make_engine, fruit_source, concept_embedder, tmp_path):
        signals = []
        degraded = make_engine(
            fruit_source,
            concept_embedder,
            config=make_config(tmp_path),
            store_factory=_failing_primary,
            fallback_factory=lambda: FallbackVectorStore(tmp_path / "fallback"),
            on_degraded=signals.append,
        )
        healthy = make_engine(fruit_source, concept_embedder)

        result = await degraded.build_or_update()
        await healthy.build_or_update()

        assert result.degraded
        assert degraded.degraded
        assert len(signals) == 1
        assert isinstance(signals[0], StoreInitializationError)

        for query in ("fruit", "car", "apple pie recipe"):
            got = [(h.path, round(h.score, 6)) for h in await degraded.search(query)]
            want = [(h.path, round(h.score, 6)) for h in await healthy.search(query)]
            assert got == want

        await degraded.build_or_update()
        assert len(signals) == 1
        status = await degraded.status()
        assert status.degraded
        assert status.backend == "fallback"
        assert (tmp_path / "fallback" / "records.jsonl").exists()

    @pytest.mark.chroma
    @pytest.mark.asyncio
    async def test_fallback_ranking_matches_primary(self, make_engine, fruit_source, concept_embedder, tmp_path):
        pytest.importorskip("chromadb")
        from vault_rag.rag.vector_store import ChromaVectorStore

        primary = make_engine(
            fruit_source, concept_embedder, store_factory=lambda: ChromaVectorStore(data_dir=tmp_path / "primary")
        )
        degraded = make_engine(
            fruit_source, concept_embedder, store_factory=_failing_primary, fallback_factory=FallbackVectorStore
        )
        await primary.build_or_update()
        await degraded.build_or_update()
        assert degraded.degraded and not primary.degraded

        for query in ("fruit", "car", "apple pie recipe", "apples are fruit"):
            want = {h.path: h.score for h in await primary.search(query)}
            got = {h.path: h.score for h in await degraded.search(query)}
            assert set(got) == set(want)
            for path, score in want.items():
                assert got[path] == pytest.approx(score, abs=1e-4)
        await primary.close()

    @pytest.mark.asyncio
    async def test_default_fallback_lives_under_data_dir(self, fruit_source, concept_embedder, tmp_path):
        engine = RAGEngine(
            source=fruit_source,
            embedder=concept_embedder,
            config=make_config(tmp_path),
            store_factory=_failing_primary,
        )
        await engine.build_or_update()
        assert (tmp_path / "fallback" / "state.json").exists()
        await engine.close()

    @pytest.mark.asyncio
    async def test_primary_exception_of_any_kind_falls_back(self, make_engine, fruit_source, concept_embedder):
        def broken():
            raise RuntimeError("sqlite is locked")

        engine = make_engine(fruit_source, concept_embedder, store_factory=broken, fallback_factory=FallbackVectorStore)
        await engine.build_or_update()
        assert engine.degraded
        assert len(await engine.search("fruit")) == 3

    @pytest.mark.asyncio
    async def test_both_stores_failing(self, make_engine, fruit_source, concept_embedder):
        attempts = []

        def broken_fallback():
            attempts.append(1)
            raise OSError("disk full")

        engine = make_engine(
            fruit_source, concept_embedder, store_factory=_failing_primary, fallback_factory=broken_fallback
        )

        with pytest.raises(SearchUnavailableError):
            await engine.search("fruit")
        with pytest.raises(StoreInitializationError):
            await engine.build_or_update()
        # Each request retries initialisation
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_concurrent_first_use_opens_store_once(self, make_engine, fruit_source, concept_embedder):
        opened = []

        def factory():
            opened.append(1)
            return FallbackVectorStore()

        engine = make_engine(fruit_source, concept_embedder, store_factory=factory)
        await asyncio.gather(engine.search("fruit"), engine.status(), engine.build_or_update())
        assert len(opened) == 1


# ── Concurrency / lifecycle ──────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_builds_are_serialised(self, make_engine, fruit_source, counting_embedder):
        engine = make_engine(fruit_source, counting_embedder)

        first, second = await asyncio.gather(engine.build_or_update(), engine.build_or_update())

        assert first.created == 3
        assert second.created == 0
        assert second.unchanged == 3
        assert counting_embedder.texts.count("apples and oranges") == 1

    @pytest.mark.asyncio
    async def test_close_releases_store(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()
        await engine.close()
        assert engine.state is EngineState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_status(self, make_engine, fruit_source, concept_embedder):
        engine = make_engine(fruit_source, concept_embedder)
        await engine.build_or_update()
        status = await engine.status()
        assert status.state == "ready"
        assert status.record_count == 3
        assert status.document_count == 3
        assert status.dimensions == [128]
        assert status.manifest["model_id"] == "concept-test"
        assert not status.degraded
        assert status.to_dict()["backend"] == "fallback"


def test_pack_context_respects_budget():
    results = [
        SearchResult("a.md", "x" * 100, 0, 100, 1, 3, 0.9, "c1"),
        SearchResult("b.md", "y" * 100, 0, 100, 1, 3, 0.8, "c2"),
    ]
    packed = pack_context(results, max_tokens=40)
    assert "a.md" in packed
    assert "b.md" not in packed
    assert "score=0.90" in packed
    assert pack_context([], max_tokens=100) == ""
