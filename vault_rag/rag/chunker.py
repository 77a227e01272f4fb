"""
Deterministic text chunking for embedding.

Splits a document's text into overlapping character windows that prefer to
end on a line break. Identical input text and policy always produce the
same offsets, which keeps chunk identities stable across indexing passes.
"""

from __future__ import annotations

import hashlib
from bisect import bisect_left, bisect_right
from dataclasses import dataclass

from vault_rag.config import ChunkingConfig


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of a document's text."""

    path: str
    start_offset: int  # inclusive character offset
    end_offset: int  # exclusive character offset
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive
    text: str
    chunk_id: str


def compute_chunk_id(path: str, start: int, end: int, text: str, policy_version: int) -> str:
    """Identity of a chunk: changes iff the span, its text, or the policy changes."""
    text_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
    key = f"{path}\x00{start}\x00{end}\x00{policy_version}\x00{text_hash}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _line_starts(text: str) -> list[int]:
    starts = [0]
    pos = text.find("\n")
    while pos != -1:
        starts.append(pos + 1)
        pos = text.find("\n", pos + 1)
    return starts


def _make_chunk(
    path: str,
    text: str,
    start: int,
    end: int,
    line_starts: list[int],
    policy: ChunkingConfig,
) -> Chunk:
    span = text[start:end]
    return Chunk(
        path=path,
        start_offset=start,
        end_offset=end,
        start_line=bisect_right(line_starts, start),
        end_line=bisect_right(line_starts, end - 1),
        text=span,
        chunk_id=compute_chunk_id(path, start, end, span, policy.version),
    )


def chunk_text(path: str, text: str, policy: ChunkingConfig | None = None) -> list[Chunk]:
    """
    Split ``text`` into chunks according to ``policy``.

    Args:
        path: Document identity the chunks belong to
        text: Full document text
        policy: Window size/overlap policy (defaults to ChunkingConfig())

    Returns:
        Chunks ordered by start offset. Empty or whitespace-only text yields
        no chunks; text that fits in one window yields exactly one chunk.
    """
    policy = policy or ChunkingConfig()
    if not text.strip():
        return []

    line_starts = _line_starts(text)
    n = len(text)
    size = policy.chunk_size

    if n <= size:
        return [_make_chunk(path, text, 0, n, line_starts, policy)]

    chunks: list[Chunk] = []
    start = 0
    while start < n:
        end = min(start + size, n)
        if end < n:
            # Prefer a line break in the second half of the window
            brk = text.rfind("\n", start + size // 2, end)
            if brk != -1:
                end = brk + 1

        if text[start:end].strip():
            chunks.append(_make_chunk(path, text, start, end, line_starts, policy))

        if end >= n:
            break

        next_start = max(end - policy.chunk_overlap, start + 1)
        idx = bisect_left(line_starts, next_start)
        if idx < len(line_starts) and line_starts[idx] < end:
            next_start = line_starts[idx]
        start = next_start

    return chunks
