"""
Flat-file fallback vector store.

Used when the primary (Chroma) store cannot be initialised. Records are
kept in memory and persisted as newline-delimited JSON: an append-only log
of upsert/delete operations that is replayed on load and compacted when it
grows. Search is a brute-force numpy cosine scan over the records of the
queried dimension. Correctness and availability matter here, not speed.

Layout under ``data_dir``:
    records.jsonl   operation log
    state.json      document snapshot, manifest, index dimensions
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from vault_rag.errors import DimensionMismatchError, StoreInitializationError
from vault_rag.rag.vector_store import (
    EmbeddingRecord,
    IndexManifest,
    ScoredChunk,
    VectorStore,
    check_dimension,
    rank,
    validate_record,
)
from vault_rag.storage.content_tracker import DocumentRef

LOG = logging.getLogger("storage.fallback_store")


class FallbackVectorStore(VectorStore):
    """In-memory records with an optional JSONL log. ``data_dir=None`` never touches disk."""

    is_fallback = True

    # Rewrite the log once it holds this many more lines than live records
    COMPACT_SLACK = 1000

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._records: Dict[str, EmbeddingRecord] = {}
        self._dimensions: set[int] = set()
        self._snapshot: Dict[str, DocumentRef] = {}
        self._manifest: Optional[IndexManifest] = None
        self._matrix_cache: Dict[int, tuple[List[str], np.ndarray]] = {}
        self._log_lines = 0

        if self._data_dir is not None:
            try:
                self._data_dir.mkdir(parents=True, exist_ok=True)
                self._load_state()
                self._replay_log()
            except OSError as exc:
                raise StoreInitializationError(f"Cannot open fallback store at {self._data_dir}: {exc}") from exc
            LOG.info("Fallback store: %d records from %s", len(self._records), self._data_dir)
        else:
            LOG.info("Fallback store: in-memory")

    # ── Persistence ───────────────────────────────────────────────────

    @property
    def _log_file(self) -> Path:
        return self._data_dir / "records.jsonl"

    @property
    def _state_file(self) -> Path:
        return self._data_dir / "state.json"

    def _replay_log(self) -> None:
        if not self._log_file.exists():
            return
        with self._log_file.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                self._log_lines += 1
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    LOG.warning("Skipping malformed line %d in %s", line_num, self._log_file)
                    continue
                op = entry.get("op")
                if op == "upsert":
                    record = EmbeddingRecord.from_dict(entry["record"])
                    self._records[record.chunk_id] = record
                    self._dimensions.add(record.dimension)
                elif op == "delete":
                    for chunk_id in entry.get("ids", []):
                        self._records.pop(chunk_id, None)

    def _append(self, entries: List[Dict[str, Any]]) -> None:
        if self._data_dir is None or not entries:
            return
        with self._log_file.open("a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")
        self._log_lines += len(entries)
        if self._log_lines > len(self._records) + self.COMPACT_SLACK:
            self._compact()

    def _compact(self) -> None:
        tmp = self._log_file.with_suffix(".jsonl.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for chunk_id in sorted(self._records):
                f.write(json.dumps({"op": "upsert", "record": self._records[chunk_id].to_dict()}) + "\n")
        os.replace(tmp, self._log_file)
        self._log_lines = len(self._records)
        LOG.debug("Compacted %s to %d records", self._log_file, self._log_lines)

    def _load_state(self) -> None:
        if not self._state_file.exists():
            return
        try:
            state = json.loads(self._state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            LOG.warning("Ignoring malformed state file %s", self._state_file)
            return
        self._snapshot = {p: DocumentRef.from_dict(d) for p, d in state.get("documents", {}).items()}
        manifest = state.get("manifest")
        self._manifest = IndexManifest.from_dict(manifest) if manifest else None
        self._dimensions.update(int(d) for d in state.get("dimensions", []))

    def _save_state(self) -> None:
        if self._data_dir is None:
            return
        state = {
            "documents": {p: ref.to_dict() for p, ref in sorted(self._snapshot.items())},
            "manifest": self._manifest.to_dict() if self._manifest else None,
            "dimensions": sorted(self._dimensions),
        }
        tmp = self._state_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._state_file)

    # ── VectorStore ───────────────────────────────────────────────────

    def ensure_index(self, dimension: int) -> None:
        check_dimension(dimension)
        if dimension in self._dimensions:
            return
        self._dimensions.add(dimension)
        self._save_state()

    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        if not records:
            return 0
        for record in records:
            validate_record(record)
        for record in records:
            self.ensure_index(record.dimension)
        for record in records:
            self._records[record.chunk_id] = record
        self._matrix_cache.clear()
        self._append([{"op": "upsert", "record": r.to_dict()} for r in records])
        return len(records)

    def delete_by_chunk_ids(self, chunk_ids: Sequence[str]) -> int:
        existing = [cid for cid in dict.fromkeys(chunk_ids) if cid in self._records]
        if not existing:
            return 0
        for chunk_id in existing:
            del self._records[chunk_id]
        self._matrix_cache.clear()
        self._append([{"op": "delete", "ids": existing}])
        return len(existing)

    def _matrix(self, dimension: int) -> tuple[List[str], np.ndarray]:
        cached = self._matrix_cache.get(dimension)
        if cached is not None:
            return cached
        ids = sorted(cid for cid, r in self._records.items() if r.dimension == dimension)
        if ids:
            matrix = np.asarray([self._records[cid].vector for cid in ids], dtype=np.float64)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0.0] = 1.0
            matrix = matrix / norms
        else:
            matrix = np.zeros((0, dimension), dtype=np.float64)
        self._matrix_cache[dimension] = (ids, matrix)
        return ids, matrix

    def query(
        self,
        dimension: int,
        vector: Sequence[float],
        top_k: int,
        similarity_threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        if dimension not in self._dimensions or top_k < 1:
            return []
        if len(vector) != dimension:
            raise DimensionMismatchError(len(vector), expected=dimension)

        ids, matrix = self._matrix(dimension)
        if not ids:
            return []
        q = np.asarray(vector, dtype=np.float64)
        q_norm = np.linalg.norm(q)
        if q_norm == 0.0:
            scores = np.zeros(len(ids))
        else:
            scores = np.clip(matrix @ (q / q_norm), -1.0, 1.0)

        hits = [ScoredChunk(chunk_id, float(score)) for chunk_id, score in zip(ids, scores)]
        return rank(hits, top_k, similarity_threshold)

    def get_records(self, chunk_ids: Sequence[str], include_vectors: bool = False) -> Dict[str, EmbeddingRecord]:
        out: Dict[str, EmbeddingRecord] = {}
        for chunk_id in chunk_ids:
            record = self._records.get(chunk_id)
            if record is None:
                continue
            out[chunk_id] = EmbeddingRecord.from_dict(
                record.metadata(), vector=list(record.vector) if include_vectors else []
            )
        return out

    def chunk_ids_for_path(self, path: str) -> List[str]:
        return sorted(cid for cid, r in self._records.items() if r.path == path)

    def all_chunk_ids(self) -> List[str]:
        return sorted(self._records)

    def paths(self) -> List[str]:
        return sorted({r.path for r in self._records.values()})

    def count(self) -> int:
        return len(self._records)

    def dimensions(self) -> List[int]:
        return sorted(self._dimensions)

    def clear(self) -> None:
        self._records.clear()
        self._dimensions.clear()
        self._snapshot = {}
        self._manifest = None
        self._matrix_cache.clear()
        if self._data_dir is not None:
            self._log_file.write_text("", encoding="utf-8")
            self._log_lines = 0
            self._save_state()
        LOG.info("Cleared fallback store")

    def get_document_snapshot(self) -> Dict[str, DocumentRef]:
        return dict(self._snapshot)

    def set_document_snapshot(self, snapshot: Dict[str, DocumentRef]) -> None:
        self._snapshot = dict(snapshot)
        self._save_state()

    def get_manifest(self) -> Optional[IndexManifest]:
        return self._manifest

    def set_manifest(self, manifest: IndexManifest) -> None:
        self._manifest = manifest
        self._save_state()
