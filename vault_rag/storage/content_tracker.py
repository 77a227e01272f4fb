"""
Change detection for incremental indexing.

Classifies each listed document as created, modified, deleted or unchanged
against the snapshot recorded by the previous successful pass. The
modification time is a cheap pre-filter; the SHA-256 content hash is the
ground truth, so a touched-but-identical file is still unchanged.

The snapshot is only replaced when the engine commits at the end of a pass,
and only documents whose chunks were fully written are recorded, so an
interrupted or partially failed pass is retried on the next run.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from vault_rag.documents import DocumentEntry

LOG = logging.getLogger("storage.content_tracker")


def compute_content_hash(content: bytes) -> str:
    """SHA-256 hex digest of a document's raw bytes."""
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class DocumentRef:
    """Snapshot entry for a document that was indexed successfully."""

    path: str
    mtime: float
    content_hash: str

    def to_dict(self) -> dict:
        return {"path": self.path, "mtime": self.mtime, "content_hash": self.content_hash}

    @classmethod
    def from_dict(cls, data: Mapping) -> "DocumentRef":
        return cls(path=data["path"], mtime=float(data["mtime"]), content_hash=data["content_hash"])


@dataclass
class ChangeSet:
    """Documents classified by a tracking pass. All lists are sorted by path."""

    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # could not be hashed this pass

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.modified or self.deleted)

    @property
    def total_changed(self) -> int:
        return len(self.created) + len(self.modified) + len(self.deleted)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "modified": self.modified,
            "deleted": self.deleted,
            "unchanged": len(self.unchanged),
            "skipped": self.skipped,
            "total_changed": self.total_changed,
        }


class ContentTracker:
    """
    Two-tier change detector over a snapshot of DocumentRefs.

    Workflow:
    1. ``needs_hash(entries)``: entries whose mtime differs from the snapshot
    2. Caller reads and hashes those documents
    3. ``classify(entries, hashes)`` → ChangeSet
    4. Caller records each document it finished with ``record()``/``record_deleted()``
    5. ``commit()`` returns the new snapshot for persistence
    """

    def __init__(self, snapshot: Mapping[str, DocumentRef] | None = None) -> None:
        self._previous: Dict[str, DocumentRef] = dict(snapshot or {})
        self._staged: Dict[str, DocumentRef] = {}
        self._staged_deletes: set[str] = set()

    @property
    def previous(self) -> Dict[str, DocumentRef]:
        return dict(self._previous)

    def needs_hash(self, entries: Iterable[DocumentEntry]) -> List[DocumentEntry]:
        """Entries that are new or whose mtime changed since the snapshot."""
        out: List[DocumentEntry] = []
        for entry in entries:
            prev = self._previous.get(entry.path)
            if prev is None or prev.mtime != entry.mtime:
                out.append(entry)
        return out

    def classify(
        self,
        entries: Iterable[DocumentEntry],
        hashes: Mapping[str, str],
        stored_paths: Iterable[str] = (),
    ) -> ChangeSet:
        """
        Classify every listed entry against the snapshot.

        Args:
            entries: Current document listing
            hashes: Content hashes for (at least) the entries returned by
                ``needs_hash``. A candidate missing from this mapping could
                not be read and is reported as skipped; its snapshot entry
                and stored records are left alone.
            stored_paths: Paths that still have records in the store. Those
                missing from the listing are deleted even when they never
                reached the snapshot (a partially indexed document).
        """
        change_set = ChangeSet()
        seen: set[str] = set()

        for entry in sorted(entries, key=lambda e: e.path):
            seen.add(entry.path)
            prev = self._previous.get(entry.path)

            if prev is not None and prev.mtime == entry.mtime:
                change_set.unchanged.append(entry.path)
                continue

            digest = hashes.get(entry.path)
            if digest is None:
                change_set.skipped.append(entry.path)
                continue

            if prev is None:
                change_set.created.append(entry.path)
            elif prev.content_hash == digest:
                # Touched without a content change: refresh the mtime only
                change_set.unchanged.append(entry.path)
                self.record(DocumentRef(entry.path, entry.mtime, digest))
            else:
                change_set.modified.append(entry.path)

        known = set(self._previous) | set(stored_paths)
        change_set.deleted = sorted(p for p in known if p not in seen)

        LOG.info(
            "Change detection: %d created, %d modified, %d deleted, %d unchanged, %d skipped",
            len(change_set.created),
            len(change_set.modified),
            len(change_set.deleted),
            len(change_set.unchanged),
            len(change_set.skipped),
        )
        return change_set

    def record(self, ref: DocumentRef) -> None:
        """Stage a document whose records are now complete."""
        self._staged_deletes.discard(ref.path)
        self._staged[ref.path] = ref

    def record_deleted(self, path: str) -> None:
        """Stage removal of a document whose records were deleted."""
        self._staged.pop(path, None)
        self._staged_deletes.add(path)

    @property
    def has_staged_changes(self) -> bool:
        return bool(self._staged or self._staged_deletes)

    def commit(self) -> Dict[str, DocumentRef]:
        """Apply staged changes and return the resulting snapshot."""
        snapshot = {p: ref for p, ref in self._previous.items() if p not in self._staged_deletes}
        snapshot.update(self._staged)
        self._previous = snapshot
        self._staged = {}
        self._staged_deletes = set()
        return dict(snapshot)
