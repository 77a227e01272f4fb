"""
SQLite-backed metadata for the primary vector store.

Holds everything about an embedding except the vector itself: the chunk
identity → document reference/offsets/model id table, the registry of
per-dimension indexes, the content tracker's document snapshot, and the
index manifest. Uses WAL mode for concurrent read safety and batch inserts.

Schema: 4 tables (chunks, vector_indexes, documents, manifest).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

LOG = logging.getLogger("storage.metadata_store")

_SCHEMA_SQL = """
-- One row per embedded chunk; the vector lives in the index for `dimension`
CREATE TABLE IF NOT EXISTS chunks (
    chunk_id TEXT PRIMARY KEY,
    model_id TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    path TEXT NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    text TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Similarity indexes created so far
CREATE TABLE IF NOT EXISTS vector_indexes (
    dimension INTEGER PRIMARY KEY,
    created_at TEXT NOT NULL
);

-- Content tracker snapshot
CREATE TABLE IF NOT EXISTS documents (
    path TEXT PRIMARY KEY,
    mtime REAL NOT NULL,
    content_hash TEXT NOT NULL
);

-- Active embedding model (single row)
CREATE TABLE IF NOT EXISTS manifest (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    manifest_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);
CREATE INDEX IF NOT EXISTS idx_chunks_dimension ON chunks(dimension);
"""

_CHUNK_COLUMNS = (
    "chunk_id, model_id, dimension, path, start_offset, end_offset, start_line, end_line, text"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


class SQLiteMetadataStore:
    """SQLite metadata tables for the primary store. ``db_path=None`` keeps them in memory."""

    # SQLite's default host-parameter limit is 999 on older builds
    _MAX_PARAMS = 900

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self._db_path = db_path
        if db_path is None:
            target = ":memory:"
        else:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        # Opened on an initialisation thread, used from the event loop thread
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path is not None:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables and indexes (idempotent)."""
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    def _chunked(self, ids: List[str]) -> Iterable[List[str]]:
        for i in range(0, len(ids), self._MAX_PARAMS):
            yield ids[i : i + self._MAX_PARAMS]

    # ── Chunks ────────────────────────────────────────────────────────

    def upsert_chunks(self, rows: List[Dict[str, Any]]) -> None:
        """INSERT OR REPLACE chunk rows in one transaction."""
        if not rows:
            return
        now = _now()
        with self._conn:
            self._conn.executemany(
                f"INSERT OR REPLACE INTO chunks ({_CHUNK_COLUMNS}, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        r["chunk_id"],
                        r["model_id"],
                        r["dimension"],
                        r["path"],
                        r["start_offset"],
                        r["end_offset"],
                        r["start_line"],
                        r["end_line"],
                        r["text"],
                        now,
                    )
                    for r in rows
                ],
            )

    def delete_chunks(self, chunk_ids: List[str]) -> int:
        """Delete chunk rows; returns how many existed."""
        deleted = 0
        with self._conn:
            for group in self._chunked(chunk_ids):
                cur = self._conn.execute(
                    f"DELETE FROM chunks WHERE chunk_id IN ({_placeholders(len(group))})",
                    group,
                )
                deleted += cur.rowcount
        return deleted

    def get_chunks(self, chunk_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for group in self._chunked(chunk_ids):
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id IN ({_placeholders(len(group))})",
                group,
            ).fetchall()
            for row in rows:
                out[row["chunk_id"]] = dict(row)
        return out

    def dimensions_for(self, chunk_ids: List[str]) -> Dict[str, int]:
        """chunk_id → dimension for the ids that exist."""
        out: Dict[str, int] = {}
        for group in self._chunked(chunk_ids):
            rows = self._conn.execute(
                f"SELECT chunk_id, dimension FROM chunks WHERE chunk_id IN ({_placeholders(len(group))})",
                group,
            ).fetchall()
            out.update({row["chunk_id"]: row["dimension"] for row in rows})
        return out

    def chunk_ids_for_path(self, path: str) -> List[str]:
        rows = self._conn.execute(
            "SELECT chunk_id FROM chunks WHERE path = ? ORDER BY chunk_id", (path,)
        ).fetchall()
        return [row["chunk_id"] for row in rows]

    def all_chunk_ids(self) -> List[str]:
        rows = self._conn.execute("SELECT chunk_id FROM chunks ORDER BY chunk_id").fetchall()
        return [row["chunk_id"] for row in rows]

    def paths(self) -> List[str]:
        rows = self._conn.execute("SELECT DISTINCT path FROM chunks ORDER BY path").fetchall()
        return [row["path"] for row in rows]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    # ── Index registry ────────────────────────────────────────────────

    def register_index(self, dimension: int) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO vector_indexes (dimension, created_at) VALUES (?, ?)",
                (dimension, _now()),
            )

    def list_indexes(self) -> List[int]:
        rows = self._conn.execute("SELECT dimension FROM vector_indexes ORDER BY dimension").fetchall()
        return [row["dimension"] for row in rows]

    # ── Document snapshot ─────────────────────────────────────────────

    def get_documents(self) -> Dict[str, Dict[str, Any]]:
        rows = self._conn.execute("SELECT path, mtime, content_hash FROM documents").fetchall()
        return {row["path"]: dict(row) for row in rows}

    def set_documents(self, documents: Dict[str, Dict[str, Any]]) -> None:
        """Replace the whole snapshot in one transaction."""
        with self._conn:
            self._conn.execute("DELETE FROM documents")
            self._conn.executemany(
                "INSERT INTO documents (path, mtime, content_hash) VALUES (?, ?, ?)",
                [(d["path"], d["mtime"], d["content_hash"]) for d in documents.values()],
            )

    # ── Manifest ──────────────────────────────────────────────────────

    def get_manifest(self) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT manifest_json FROM manifest WHERE id = 1").fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["manifest_json"])
        except json.JSONDecodeError:
            LOG.warning("Ignoring malformed manifest in %s", self._db_path)
            return None

    def set_manifest(self, manifest: Dict[str, Any]) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO manifest (id, manifest_json, updated_at) VALUES (1, ?, ?)",
                (json.dumps(manifest, sort_keys=True), _now()),
            )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def clear(self) -> None:
        """Drop every chunk, index registration, snapshot entry and the manifest."""
        with self._conn:
            self._conn.execute("DELETE FROM chunks")
            self._conn.execute("DELETE FROM vector_indexes")
            self._conn.execute("DELETE FROM documents")
            self._conn.execute("DELETE FROM manifest")

    def close(self) -> None:
        self._conn.close()
