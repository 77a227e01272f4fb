"""
Document enumeration and text extraction collaborators.

The engine treats these as its filesystem boundary: a DocumentSource lists
(path, mtime) entries and returns raw bytes, and a TextExtractor turns those
bytes into plain text. Format-specific extractors (PDF, DOCX, XLSX, OCR)
plug into the ExtractorRegistry; only plain-text formats ship here.
"""

from __future__ import annotations

import fnmatch
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from vault_rag.errors import ExtractionError

LOG = logging.getLogger("documents")


@dataclass(frozen=True)
class DocumentEntry:
    """A listed document: vault-relative POSIX path and last-modified time."""

    path: str
    mtime: float


@dataclass(frozen=True)
class ExtractedText:
    """Plain text produced by an extractor."""

    text: str
    identity_hint: Optional[str] = None  # stable content identity, if the format offers one

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class DocumentSource(ABC):
    """Abstract listing + read access to the document corpus."""

    @abstractmethod
    def list_documents(self) -> List[DocumentEntry]:
        """Return every indexable document."""

    @abstractmethod
    def read_document(self, path: str) -> bytes:
        """Return the raw bytes of a listed document."""


def _matches(path: str, patterns: Iterable[str]) -> bool:
    pure = PurePosixPath(path)
    for pattern in patterns:
        if fnmatch.fnmatch(path, pattern) or pure.match(pattern):
            return True
        # "folder/**" also matches the folder's direct children
        if pattern.endswith("/**") and path.startswith(pattern[:-2]):
            return True
    return False


class FileSystemDocumentSource(DocumentSource):
    """Documents under a directory tree, filtered by suffix and glob patterns."""

    def __init__(
        self,
        root: Path,
        suffixes: Optional[Sequence[str]] = None,
        include_patterns: Sequence[str] = (),
        exclude_patterns: Sequence[str] = (),
    ) -> None:
        self._root = Path(root)
        self._suffixes = tuple(s.lower() for s in suffixes) if suffixes else None
        self._include = tuple(include_patterns)
        self._exclude = tuple(exclude_patterns)

    @property
    def root(self) -> Path:
        return self._root

    def list_documents(self) -> List[DocumentEntry]:
        entries: List[DocumentEntry] = []
        if not self._root.is_dir():
            LOG.warning("Vault root %s is not a directory", self._root)
            return entries

        for file_path in self._root.rglob("*"):
            if not file_path.is_file():
                continue
            rel_path = file_path.relative_to(self._root).as_posix()
            if self._suffixes is not None and file_path.suffix.lower() not in self._suffixes:
                continue
            if self._include and not _matches(rel_path, self._include):
                continue
            if self._exclude and _matches(rel_path, self._exclude):
                continue
            try:
                mtime = file_path.stat().st_mtime
            except OSError as exc:
                LOG.warning("Cannot stat %s: %s", file_path, exc)
                continue
            entries.append(DocumentEntry(path=rel_path, mtime=mtime))

        entries.sort(key=lambda e: e.path)
        return entries

    def read_document(self, path: str) -> bytes:
        return (self._root / path).read_bytes()


class InMemoryDocumentSource(DocumentSource):
    """Document source backed by a dict, for hosts that own their own storage."""

    def __init__(self, documents: Optional[Dict[str, Tuple[str, float]]] = None) -> None:
        self._docs: Dict[str, Tuple[bytes, float]] = {}
        for path, (text, mtime) in (documents or {}).items():
            self.put(path, text, mtime)

    def put(self, path: str, text: str, mtime: float) -> None:
        self._docs[path] = (text.encode("utf-8"), mtime)

    def remove(self, path: str) -> None:
        self._docs.pop(path, None)

    def list_documents(self) -> List[DocumentEntry]:
        return [DocumentEntry(path=p, mtime=m) for p, (_, m) in sorted(self._docs.items())]

    def read_document(self, path: str) -> bytes:
        try:
            return self._docs[path][0]
        except KeyError:
            raise FileNotFoundError(path) from None


class TextExtractor(ABC):
    """Converts a document's raw bytes into plain text."""

    #: True when ``extract`` returns an ``identity_hint``. Such documents are
    #: extracted during change detection and tracked by the hint rather than
    #: by the hash of their raw bytes.
    provides_identity: bool = False

    @abstractmethod
    def extract(self, path: str, raw: bytes) -> ExtractedText:
        """Return extracted text or raise ExtractionError."""

    @abstractmethod
    def supported_suffixes(self) -> Tuple[str, ...]:
        """Lower-case file suffixes this extractor handles, e.g. ('.md',)."""


class PlainTextExtractor(TextExtractor):
    """UTF-8 decoding for markdown and other text formats."""

    SUFFIXES = (".md", ".markdown", ".txt", ".text", ".csv", ".json", ".html", ".htm", ".canvas")

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    def extract(self, path: str, raw: bytes) -> ExtractedText:
        try:
            text = raw.decode(self._encoding)
        except UnicodeDecodeError as exc:
            raise ExtractionError(path, f"not valid {self._encoding}: {exc}") from exc
        # Normalise line endings so offsets don't depend on the platform
        return ExtractedText(text=text.replace("\r\n", "\n"))

    def supported_suffixes(self) -> Tuple[str, ...]:
        return self.SUFFIXES


class ExtractorRegistry:
    """Routes documents to an extractor by file suffix."""

    def __init__(self, extractors: Optional[Sequence[TextExtractor]] = None, default: Optional[TextExtractor] = None) -> None:
        self._by_suffix: Dict[str, TextExtractor] = {}
        self._default = default
        for extractor in extractors or [PlainTextExtractor()]:
            self.register(extractor)

    def register(self, extractor: TextExtractor) -> None:
        for suffix in extractor.supported_suffixes():
            self._by_suffix[suffix.lower()] = extractor

    def supported_suffixes(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_suffix))

    def extractor_for(self, path: str) -> Optional[TextExtractor]:
        suffix = PurePosixPath(path).suffix.lower()
        return self._by_suffix.get(suffix, self._default)

    def provides_identity(self, path: str) -> bool:
        extractor = self.extractor_for(path)
        return extractor is not None and extractor.provides_identity

    def extract(self, path: str, raw: bytes) -> ExtractedText:
        extractor = self.extractor_for(path)
        if extractor is None:
            raise ExtractionError(path, "no extractor registered for this file type")
        return extractor.extract(path, raw)
