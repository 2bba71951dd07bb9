"""
Unit Tests for the Context Assembler
====================================
"""

import pytest

from report_pilot.catalog import InMemoryContextStore, Synonym
from report_pilot.context import ContextAssembler, estimate_tokens
from report_pilot.models import Chunk, DocType, RetrievalResult, RetrievedChunk
from report_pilot.sample import SAMPLE_DATA_SOURCE_ID

DEMO = SAMPLE_DATA_SOURCE_ID


def make_retrieval(*refs: str, degraded: bool = False) -> RetrievalResult:
    """Retrieval result with one schema chunk per object ref."""
    chunks = tuple(
        RetrievedChunk(
            chunk=Chunk(
                chunk_id=f"schema:{ref}#0",
                doc_id=f"schema:{ref}",
                data_source_id=DEMO,
                doc_type=DocType.SCHEMA,
                ordinal=0,
                content=f"schema object {ref} type=table\ndescription retrieved for the question",
                metadata={"object_ref": ref},
            ),
            score=5.0 - position,
        )
        for position, ref in enumerate(refs)
    )
    return RetrievalResult(query="q", chunks=chunks, degraded=degraded, embedding_model=None if degraded else "m")


@pytest.fixture
def assembler(sample_store: InMemoryContextStore) -> ContextAssembler:
    """Create an assembler with a generous budget."""
    return ContextAssembler(sample_store)


class TestObjectSelection:
    """Tests for choosing the schema objects relevant to a question."""

    def test_table_names_and_mappings(self, assembler: ContextAssembler) -> None:
        """Test that named tables are selected and ranked by relevance."""
        context = assembler.assemble("Show premium customers and their orders", DEMO)
        assert context.object_refs == ["main.customers", "main.orders"]
        assert len(context.relationships) == 1

    def test_approved_policy_included_for_selected_pair(self, assembler: ContextAssembler) -> None:
        """Test that only approved policies between selected objects are included."""
        context = assembler.assemble("Show premium customers and their orders", DEMO)
        assert [(p.left_ref, p.right_ref) for p in context.join_policies] == [("main.orders", "main.customers")]

    def test_unapproved_policy_never_included(self, assembler: ContextAssembler) -> None:
        """Test that the unreviewed orders/products policy is left out."""
        context = assembler.assemble("orders and products", DEMO)
        assert context.object_refs == ["main.orders", "main.products"]
        assert context.join_policies == ()
        assert "Approved join policies" not in context.render()

    def test_synonym_selects_object(self, assembler: ContextAssembler) -> None:
        """Test that a synonym resolves to its object."""
        context = assembler.assemble("list every client", DEMO)
        assert context.object_refs == ["main.customers"]

    def test_no_match_falls_back_to_whole_catalog(self, assembler: ContextAssembler) -> None:
        """Test that an unmatched question sees every object."""
        context = assembler.assemble("hello there", DEMO)
        assert context.object_refs == ["main.customers", "main.orders", "main.products"]

    def test_retrieved_chunks_add_objects(self, assembler: ContextAssembler) -> None:
        """Test that objects referenced by retrieved chunks are selected."""
        context = assembler.assemble("premium customers", DEMO, retrieval=make_retrieval("main.products"))
        assert context.object_refs == ["main.customers", "main.products"]

    def test_low_weight_synonyms_filtered(self, assembler: ContextAssembler) -> None:
        """Test the synonym weight threshold and ordering."""
        context = assembler.assemble("anything", DEMO)
        assert [s.term for s in context.synonyms] == ["client", "purchase"]

    def test_semantic_mappings_follow_objects(self, assembler: ContextAssembler) -> None:
        """Test that mappings are included only for selected objects."""
        context = assembler.assemble("list every client", DEMO)
        assert [m.business_name for m in context.semantic_mappings] == ["premium customer"]


class TestRendering:
    """Tests for the rendered prompt context."""

    def test_render_is_deterministic(self, assembler: ContextAssembler) -> None:
        """Test that identical inputs render identically."""
        retrieval = make_retrieval("main.orders", "main.customers")
        first = assembler.assemble("premium customers", DEMO, retrieval=retrieval, dialect="sqlite")
        second = assembler.assemble("premium customers", DEMO, retrieval=retrieval, dialect="sqlite")
        assert first.render() == second.render()
        assert first.render().startswith("Dialect: sqlite")

    def test_render_sections(self, assembler: ContextAssembler) -> None:
        """Test that the rendered context lists columns, mappings and chunks."""
        context = assembler.assemble(
            "Show premium customers and their orders", DEMO, retrieval=make_retrieval("main.orders")
        )
        text = context.render()
        assert "- main.customers (table): Customer accounts" in text
        assert "id integer primary key" in text
        assert "(sql: customers.tier = 'premium')" in text
        assert "Retrieved context:\n[1] (schema) schema object main.orders" in text

    def test_degraded_retrieval_is_flagged(self, assembler: ContextAssembler) -> None:
        """Test that lexical-only retrieval is visible on the context."""
        context = assembler.assemble("premium customers", DEMO, retrieval=make_retrieval(degraded=True))
        assert context.retrieval_degraded


class TestTokenBudget:
    """Tests for keeping the context within its token budget."""

    def test_objects_trimmed_down_to_one(self, sample_store: InMemoryContextStore) -> None:
        """Test that the least relevant objects are dropped first, keeping at least one."""
        context = ContextAssembler(sample_store, token_budget=50).assemble(
            "Show premium customers and their orders", DEMO
        )
        assert context.object_refs == ["main.customers"]
        assert context.dropped_objects == 1

    def test_chunks_dropped_when_budget_is_spent(self, sample_store: InMemoryContextStore) -> None:
        """Test that chunks only fill the budget left after the structure."""
        question = "premium customers"
        retrieval = make_retrieval("main.customers", "main.orders")
        structure = ContextAssembler(sample_store).assemble(question, DEMO, retrieval=retrieval).render_structure()

        tight = ContextAssembler(sample_store, token_budget=estimate_tokens(structure) + 5)
        context = tight.assemble(question, DEMO, retrieval=retrieval)
        assert context.chunks == ()
        assert context.dropped_chunks == 2

    def test_chunks_kept_when_they_fit(self, assembler: ContextAssembler) -> None:
        """Test that every chunk is kept under a generous budget."""
        context = assembler.assemble("premium customers", DEMO, retrieval=make_retrieval("main.customers"))
        assert len(context.chunks) == 1
        assert context.dropped_chunks == 0
        assert context.token_estimate <= assembler.token_budget

    def test_synonyms_trimmed_lowest_weight_first(self, sample_store: InMemoryContextStore) -> None:
        """Test that a synonym list larger than the budget is cut from the weakest end."""
        catalog = sample_store.get_catalog(DEMO)
        synonyms = [Synonym(f"customer alias {n:02d}", "main.customers", weight=0.5 + n / 100) for n in range(40)]
        synonyms.append(Synonym("purchase", "main.orders", weight=0.99))

        bare = InMemoryContextStore()
        bare.register_data_source(DEMO, catalog)
        budget = ContextAssembler(bare).assemble("customers", DEMO).token_estimate + 60

        crowded = InMemoryContextStore()
        crowded.register_data_source(DEMO, catalog, synonyms=synonyms)
        context = ContextAssembler(crowded, token_budget=budget).assemble("customers", DEMO)

        assert context.object_refs == ["main.customers"]
        assert context.token_estimate <= budget
        assert 0 < len(context.synonyms) < 40
        assert context.dropped_synonyms == 40 - len(context.synonyms)
        assert context.synonyms[0].term == "customer alias 39"
        assert all(s.maps_to_ref == "main.customers" for s in context.synonyms)
        assert [s.weight for s in context.synonyms] == sorted((s.weight for s in context.synonyms), reverse=True)

    def test_synonyms_follow_selected_objects(self, assembler: ContextAssembler) -> None:
        """Test that synonyms for objects outside the context are left out."""
        context = assembler.assemble("list every client", DEMO)
        assert [s.term for s in context.synonyms] == ["client"]
