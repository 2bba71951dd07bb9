"""
Unit Tests for Retrieval
========================

Tests for document building, chunking, the hybrid index and the
retrieval engine's reindexing.
"""

from typing import Iterator

import numpy as np
import pytest

from report_pilot.catalog import Catalog, InMemoryContextStore
from report_pilot.errors import IndexUnavailable
from report_pilot.models import DocType, Example, ExampleSource, RagDocument
from report_pilot.retrieval import (
    Embedder,
    HashingEmbedder,
    RetrievalEngine,
    RetrievalFilters,
    build_documents,
    chunk_document,
)
from report_pilot.retrieval.documents import column_hints
from report_pilot.sample import SAMPLE_DATA_SOURCE_ID

DEMO = SAMPLE_DATA_SOURCE_ID


class UnreachableEmbedder(Embedder):
    """Embedder whose backing service is down."""

    @property
    def model_name(self) -> str:
        return "unreachable"

    def embed(self, texts: list[str]) -> np.ndarray:
        raise IndexUnavailable("embedding service unreachable")


@pytest.fixture
def engine(sample_store: InMemoryContextStore) -> Iterator[RetrievalEngine]:
    """Create a retrieval engine with a local embedder."""
    engine = RetrievalEngine(sample_store, embedder=HashingEmbedder())
    yield engine
    engine.shutdown()


class TestDocuments:
    """Tests for building the retrievable corpus."""

    def test_document_set(self, sample_store: InMemoryContextStore) -> None:
        """Test one document per object, mapping, approved policy, note and example."""
        doc_ids = [doc.doc_id for doc in build_documents(sample_store, DEMO)]
        assert doc_ids == [
            "schema:main.customers",
            "schema:main.orders",
            "schema:main.products",
            "semantic:metric:revenue",
            "semantic:dimension:premium customer",
            "policy:main.orders:main.customers",
            "note:note_cancelled_orders",
            "example:ex_manual_premium",
        ]

    def test_unapproved_policy_is_not_indexed(self, sample_store: InMemoryContextStore) -> None:
        """Test that unreviewed join policies never reach the corpus."""
        contents = " ".join(doc.content for doc in build_documents(sample_store, DEMO))
        assert "orders.id = products.id" not in contents

    def test_schema_document_lists_columns_and_relationships(self, sample_store: InMemoryContextStore) -> None:
        """Test the schema document content."""
        orders = next(d for d in build_documents(sample_store, DEMO) if d.doc_id == "schema:main.orders")
        assert "column amount type=decimal" in orders.content
        assert "relationship main.orders.customer_id -> main.customers.id (fk)" in orders.content
        assert "index idx_orders_customer_id on (customer_id)" in orders.content

    def test_column_hints(self) -> None:
        """Test semantic hints for common column names."""
        assert "identifier field" in column_hints("customer_id")
        assert "monetary value" in column_hints("amount")
        assert column_hints("payload") == ""


class TestChunking:
    """Tests for deterministic document chunking."""

    def test_schema_chunks_repeat_header(self, sample_store: InMemoryContextStore) -> None:
        """Test that every schema chunk names its table."""
        document = build_documents(sample_store, DEMO)[0]
        chunks = chunk_document(document, chunk_size=160, overlap=20)
        assert len(chunks) > 1
        assert all(chunk.content.startswith("schema object main.customers") for chunk in chunks)
        assert [chunk.chunk_id for chunk in chunks][:2] == [
            f"{DEMO}:schema:main.customers#0",
            f"{DEMO}:schema:main.customers#1",
        ]

    def test_window_chunks_are_bounded_and_ordered(self) -> None:
        """Test fixed-size windows over long free text."""
        document = RagDocument(
            doc_id="note:long",
            data_source_id=DEMO,
            doc_type=DocType.POLICY,
            content=" ".join(f"word{i}" for i in range(600)),
        )
        chunks = chunk_document(document, chunk_size=500, overlap=100)
        assert len(chunks) > 1
        assert all(len(chunk.content) <= 500 for chunk in chunks)
        assert [chunk.ordinal for chunk in chunks] == list(range(len(chunks)))
        assert chunk_document(document, chunk_size=500, overlap=100) == chunks

    def test_chunks_copy_document_metadata(self, sample_store: InMemoryContextStore) -> None:
        """Test that chunk metadata carries the document metadata."""
        example = next(d for d in build_documents(sample_store, DEMO) if d.doc_type is DocType.EXAMPLE)
        chunk = chunk_document(example)[0]
        assert chunk.metadata["source"] == "manual"
        assert chunk.metadata["quality_score"] == 0.9

    def test_overlap_must_be_smaller_than_chunk(self, sample_store: InMemoryContextStore) -> None:
        """Test that an overlap as large as the chunk size is rejected."""
        document = build_documents(sample_store, DEMO)[0]
        with pytest.raises(ValueError):
            chunk_document(document, chunk_size=100, overlap=100)


class TestReindex:
    """Tests for keeping the index in sync with the context store."""

    def test_first_reindex_indexes_everything(self, engine: RetrievalEngine) -> None:
        """Test the initial build."""
        report = engine.reindex(DEMO)
        assert report.indexed == 8
        assert report.unchanged == 0
        assert report.removed == 0
        assert report.unembedded == 0

    def test_reindex_is_idempotent(self, engine: RetrievalEngine) -> None:
        """Test that unchanged documents are not re-embedded."""
        engine.reindex(DEMO)
        report = engine.reindex(DEMO)
        assert report.indexed == 0
        assert report.unchanged == 8

    def test_new_example_is_indexed(self, engine: RetrievalEngine, sample_store: InMemoryContextStore) -> None:
        """Test that only the added document is indexed."""
        engine.reindex(DEMO)
        sample_store.add_example(
            Example(
                example_id="ex_orders",
                data_source_id=DEMO,
                question="How many orders are there?",
                sql="SELECT COUNT(*) FROM orders",
                source=ExampleSource.FEEDBACK,
            )
        )
        report = engine.reindex(DEMO)
        assert report.indexed == 1
        assert report.unchanged == 8

    def test_removed_object_is_dropped(
        self, engine: RetrievalEngine, sample_store: InMemoryContextStore, catalog: Catalog
    ) -> None:
        """Test that documents missing from the store are removed from the index."""
        engine.reindex(DEMO)
        sample_store.set_catalog(DEMO, Catalog(objects=catalog.objects[:2], relationships=catalog.relationships))
        report = engine.reindex(DEMO)
        assert report.removed == 1
        assert "schema:main.products" not in engine.index_store.document_ids(DEMO)
        assert engine.index_store.chunks(DEMO, "schema:main.products") == []

    def test_model_change_reembeds(self, engine: RetrievalEngine) -> None:
        """Test that switching the embedding model re-embeds every document."""
        engine.reindex(DEMO)
        engine.index_store.embedder = HashingEmbedder(dimensions=64)
        report = engine.reindex(DEMO)
        assert report.indexed == 8

    def test_background_reindex(self, engine: RetrievalEngine, sample_store: InMemoryContextStore) -> None:
        """Test that a dispatched reindex completes after draining."""
        engine.reindex(DEMO)
        sample_store.add_example(
            Example(
                example_id="ex_products",
                data_source_id=DEMO,
                question="List all products",
                sql="SELECT name FROM products",
            )
        )
        future = engine.trigger_reindex(DEMO)
        engine.drain(timeout=10)
        assert future.result().indexed == 1
        assert "example:ex_products" in engine.index_store.document_ids(DEMO)

    def test_data_sources_sharing_an_object_stay_separate(
        self, engine: RetrievalEngine, sample_store: InMemoryContextStore, catalog: Catalog
    ) -> None:
        """Test that two data sources with the same table keep their own chunks."""
        sample_store.register_data_source("warehouse", catalog)
        engine.reindex(DEMO)
        engine.reindex("warehouse")
        demo_chunks = engine.index_store.chunks(DEMO, "schema:main.customers")
        assert demo_chunks
        assert all(chunk.data_source_id == DEMO for chunk in demo_chunks)

        assert engine.index_store.remove("warehouse", "schema:main.customers")
        assert engine.index_store.chunks(DEMO, "schema:main.customers") == demo_chunks
        result = engine.retrieve("customers", k=20, data_source_id=DEMO)
        assert "schema:main.customers" in {item.chunk.doc_id for item in result.chunks}
        assert engine.index_store.chunks("warehouse", "schema:main.customers") == []


class TestRetrieve:
    """Tests for hybrid retrieval."""

    def test_semantic_mapping_ranks_first(self, engine: RetrievalEngine) -> None:
        """Test that business vocabulary surfaces its semantic mapping."""
        engine.reindex(DEMO)
        result = engine.retrieve("total revenue last month", k=3, data_source_id=DEMO)
        assert not result.degraded
        assert result.chunks[0].chunk.doc_id == "semantic:metric:revenue"
        assert result.embedding_model == "local-hash-256"

    def test_results_are_sorted_and_bounded(self, engine: RetrievalEngine) -> None:
        """Test top-k ordering."""
        engine.reindex(DEMO)
        result = engine.retrieve("premium customers orders", k=4, data_source_id=DEMO)
        scores = [item.score for item in result.chunks]
        assert 0 < len(scores) <= 4
        assert scores == sorted(scores, reverse=True)

    def test_filters_by_data_source(self, engine: RetrievalEngine, sample_store: InMemoryContextStore,
                                    catalog: Catalog) -> None:
        """Test that chunks of other data sources are never returned."""
        sample_store.register_data_source("warehouse", catalog)
        engine.reindex(DEMO)
        engine.reindex("warehouse")
        result = engine.retrieve("customers", k=20, data_source_id="warehouse")
        assert result.chunks
        assert {item.chunk.data_source_id for item in result.chunks} == {"warehouse"}

    def test_filters_by_doc_type(self, engine: RetrievalEngine) -> None:
        """Test restricting retrieval to examples."""
        engine.reindex(DEMO)
        result = engine.retrieve("premium customers", k=5, data_source_id=DEMO, doc_types=[DocType.EXAMPLE])
        assert [item.chunk.doc_id for item in result.chunks] == ["example:ex_manual_premium"]

    def test_no_match_returns_nothing(self, engine: RetrievalEngine) -> None:
        """Test that a data source with nothing indexed returns no chunks."""
        result = engine.retrieve("anything", k=5, data_source_id="unindexed")
        assert result.chunks == ()


class TestDegradedRetrieval:
    """Tests for lexical-only fallback when embeddings are unavailable."""

    @pytest.fixture
    def degraded_engine(self, sample_store: InMemoryContextStore) -> Iterator[RetrievalEngine]:
        engine = RetrievalEngine(sample_store, embedder=UnreachableEmbedder())
        yield engine
        engine.shutdown()

    def test_reindex_without_embeddings(self, degraded_engine: RetrievalEngine) -> None:
        """Test that documents are stored even when they cannot be embedded."""
        report = degraded_engine.reindex(DEMO)
        assert report.indexed == 8
        assert report.unembedded == 8

    def test_retrieve_is_flagged_degraded(self, degraded_engine: RetrievalEngine) -> None:
        """Test the lexical-only result."""
        degraded_engine.reindex(DEMO)
        result = degraded_engine.retrieve("premium customers", k=5, data_source_id=DEMO)
        assert result.degraded
        assert result.embedding_model is None
        assert result.chunks
        assert all(item.vector_score == 0.0 for item in result.chunks)

    def test_vectors_can_be_required(self, degraded_engine: RetrievalEngine) -> None:
        """Test that callers needing vectors get IndexUnavailable."""
        degraded_engine.reindex(DEMO)
        with pytest.raises(IndexUnavailable):
            degraded_engine.index_store.retrieve(
                "premium customers", 5, RetrievalFilters(data_source_id=DEMO), require_vectors=True
            )
