"""
Retrieval Module
================

Chunking, embedding and hybrid retrieval over the schema, semantic,
policy and example corpus.
"""

from report_pilot.retrieval.chunking import chunk_document, content_hash, tokenize
from report_pilot.retrieval.documents import build_documents
from report_pilot.retrieval.embeddings import (
    Embedder,
    HashingEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from report_pilot.retrieval.engine import RetrievalEngine, SyncReport
from report_pilot.retrieval.index import HybridIndex, IndexReport, RetrievalFilters

__all__ = [
    "chunk_document",
    "content_hash",
    "tokenize",
    "build_documents",
    "Embedder",
    "HashingEmbedder",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
    "RetrievalEngine",
    "SyncReport",
    "HybridIndex",
    "IndexReport",
    "RetrievalFilters",
]
