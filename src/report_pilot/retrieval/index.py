"""
Hybrid Index
============

In-process chunk store with per-model embeddings and hybrid
(lexical + vector) ranking.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import structlog

from report_pilot.errors import IndexUnavailable
from report_pilot.models import Chunk, DocType, RagDocument, RetrievalResult, RetrievedChunk
from report_pilot.retrieval.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    chunk_document,
    content_hash,
    tokenize,
)
from report_pilot.retrieval.embeddings import Embedder, cosine_similarity

logger = structlog.get_logger(__name__)

VECTOR_WEIGHT = 2.0
PHRASE_MATCH_SCORE = 3.0
COVERAGE_WEIGHT = 1.5
EXACT_MATCH_BOOST = 1.0
DOC_TYPE_BOOST = {
    DocType.SEMANTIC: 0.9,
    DocType.EXAMPLE: 0.8,
    DocType.POLICY: 0.5,
    DocType.SCHEMA: 0.2,
}


@dataclass(frozen=True)
class RetrievalFilters:
    """Scope of a retrieval query."""

    data_source_id: str
    doc_types: Optional[frozenset[DocType]] = None

    def accepts(self, chunk: Chunk) -> bool:
        if chunk.data_source_id != self.data_source_id:
            return False
        return not self.doc_types or chunk.doc_type in self.doc_types


@dataclass(frozen=True)
class IndexReport:
    doc_id: str
    changed: bool
    chunk_count: int
    embedded: bool


@dataclass
class _IndexedDocument:
    document: RagDocument
    content_hash: str
    chunk_ids: list[str] = field(default_factory=list)
    embedding_model: Optional[str] = None


class HybridIndex:
    """
    Chunk store answering hybrid top-k queries.

    Documents are keyed by ``(data_source_id, doc_id)``. Re-indexing a
    document whose content hash is unchanged, and whose chunks already carry
    embeddings for the current model, is a no-op.
    """

    def __init__(
        self,
        embedder: Embedder,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._lock = threading.RLock()
        self._documents: dict[tuple[str, str], _IndexedDocument] = {}
        self._chunks: dict[str, Chunk] = {}
        self._vectors: dict[str, dict[str, np.ndarray]] = {}

    def index(self, document: RagDocument) -> IndexReport:
        digest = content_hash(document.content)
        key = (document.data_source_id, document.doc_id)
        model = self.embedder.model_name

        with self._lock:
            existing = self._documents.get(key)
            if existing and existing.content_hash == digest and existing.embedding_model == model:
                return IndexReport(document.doc_id, False, len(existing.chunk_ids), True)

        chunks = chunk_document(document, self.chunk_size, self.chunk_overlap)
        vectors: Optional[np.ndarray] = None
        if chunks:
            try:
                vectors = self.embedder.embed([chunk.content for chunk in chunks])
            except IndexUnavailable as exc:
                logger.warning("chunk_embedding_unavailable", doc_id=document.doc_id, error=str(exc))

        with self._lock:
            self._drop_chunks(key)
            for position, chunk in enumerate(chunks):
                self._chunks[chunk.chunk_id] = chunk
                if vectors is not None:
                    self._vectors.setdefault(chunk.chunk_id, {})[model] = vectors[position]
            self._documents[key] = _IndexedDocument(
                document=document,
                content_hash=digest,
                chunk_ids=[chunk.chunk_id for chunk in chunks],
                embedding_model=model if vectors is not None else None,
            )

        return IndexReport(document.doc_id, True, len(chunks), vectors is not None)

    def remove(self, data_source_id: str, doc_id: str) -> bool:
        with self._lock:
            key = (data_source_id, doc_id)
            if key not in self._documents:
                return False
            self._drop_chunks(key)
            del self._documents[key]
            return True

    def _drop_chunks(self, key: tuple[str, str]) -> None:
        existing = self._documents.get(key)
        if existing is None:
            return
        for chunk_id in existing.chunk_ids:
            self._chunks.pop(chunk_id, None)
            self._vectors.pop(chunk_id, None)

    def document_ids(self, data_source_id: str) -> set[str]:
        with self._lock:
            return {doc_id for (source, doc_id) in self._documents if source == data_source_id}

    def chunks(self, data_source_id: str, doc_id: Optional[str] = None) -> list[Chunk]:
        with self._lock:
            found = [
                chunk
                for chunk in self._chunks.values()
                if chunk.data_source_id == data_source_id and (doc_id is None or chunk.doc_id == doc_id)
            ]
        return sorted(found, key=lambda c: (c.doc_id, c.ordinal))

    def retrieve(
        self,
        query: str,
        k: int,
        filters: RetrievalFilters,
        require_vectors: bool = False,
    ) -> RetrievalResult:
        """
        Rank chunks for a query.

        When the embedder is unreachable the ranking is lexical only and the
        result is flagged ``degraded``; pass ``require_vectors=True`` to get
        ``IndexUnavailable`` instead.
        """
        model = self.embedder.model_name
        with self._lock:
            candidates = [chunk for chunk in self._chunks.values() if filters.accepts(chunk)]
            vectors = {
                chunk.chunk_id: self._vectors.get(chunk.chunk_id, {}).get(model)
                for chunk in candidates
            }

        if not candidates or k <= 0:
            return RetrievalResult(query=query, embedding_model=model)

        query_vector: Optional[np.ndarray] = None
        degraded = False
        try:
            query_vector = self.embedder.embed([query])[0]
        except IndexUnavailable as exc:
            if require_vectors:
                raise
            degraded = True
            logger.warning("retrieval_degraded_to_lexical", error=str(exc))

        query_tokens = set(tokenize(query))
        phrase = " ".join(tokenize(query))
        ranked: list[RetrievedChunk] = []

        for chunk in candidates:
            chunk_tokens = tokenize(chunk.content)
            matched = query_tokens.intersection(chunk_tokens)
            exact = bool(phrase) and phrase in " ".join(chunk_tokens)
            lexical = float(len(matched)) + (PHRASE_MATCH_SCORE if exact else 0.0)

            vector = 0.0
            chunk_vector = vectors.get(chunk.chunk_id)
            if query_vector is not None and chunk_vector is not None:
                vector = max(0.0, cosine_similarity(query_vector, chunk_vector))

            base = lexical + VECTOR_WEIGHT * vector
            if base <= 0:
                continue

            coverage = len(matched) / len(query_tokens) if query_tokens else 0.0
            score = base + COVERAGE_WEIGHT * coverage + DOC_TYPE_BOOST.get(chunk.doc_type, 0.0)
            if exact:
                score += EXACT_MATCH_BOOST
            if chunk.doc_type is DocType.EXAMPLE:
                score += 0.5 * float(chunk.metadata.get("quality_score", 0.0))

            ranked.append(
                RetrievedChunk(chunk=chunk, score=round(score, 6), lexical_score=lexical, vector_score=vector)
            )

        ranked.sort(key=lambda item: (-item.score, item.chunk.chunk_id))
        return RetrievalResult(
            query=query,
            chunks=tuple(ranked[:k]),
            degraded=degraded,
            embedding_model=None if degraded else model,
        )
