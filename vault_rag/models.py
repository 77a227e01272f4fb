from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Phase(str, Enum):
    DETECTING = "detecting"
    INDEXING = "indexing"
    EMBEDDING = "embedding"


class SearchHit(BaseModel):
    path: str
    text: str
    startOffset: int
    endOffset: int
    startLine: int
    endLine: int
    score: float
    chunkId: str


class SearchResponse(BaseModel):
    query: str
    topK: int
    results: List[SearchHit]
    context: Optional[str] = None


class ProgressEvent(BaseModel):
    processed: int
    total: int
    phase: Phase


class IndexReport(BaseModel):
    documentsTotal: int
    created: int
    modified: int
    deleted: int
    unchanged: int
    skipped: int
    documentsIndexed: int
    chunksEmbedded: int
    chunksDeleted: int
    recordsRejected: int
    embeddingCalls: int
    failedBatches: int
    cancelled: bool
    fullRebuild: bool
    degraded: bool
    durationMs: int
    errors: List[str] = Field(default_factory=list)
    progress: List[ProgressEvent] = Field(default_factory=list)


class ManifestInfo(BaseModel):
    modelId: str
    configVersion: str
    dimension: Optional[int] = None
    chunkingVersion: str = ""


class IndexStatus(BaseModel):
    vaultRoot: str
    state: str
    degraded: bool
    backend: str
    recordCount: int
    documentCount: int
    dimensions: List[int]
    manifest: Optional[ManifestInfo] = None
    embedding: Dict[str, Optional[str]] = Field(default_factory=dict)
