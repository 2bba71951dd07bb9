"""
Context Assembler
=================

Merges catalog facts, synonyms, approved join policies, semantic mappings
and retrieved chunks into a bounded prompt context for one question.
Output is deterministic for a given catalog snapshot and retrieval result.

Over budget, the least relevant objects go first (at least one stays),
then the lowest-weight synonyms, then semantic mappings. Retrieved chunks
only fill whatever budget is left.
"""

import math
from dataclasses import dataclass
from typing import Optional

from report_pilot.catalog import (
    Catalog,
    ContextStore,
    JoinPolicy,
    Relationship,
    SchemaObject,
    SemanticMapping,
    Synonym,
    normalize_ref,
    object_ref_of,
)
from report_pilot.models import RetrievalResult, RetrievedChunk
from report_pilot.retrieval.chunking import singularize, tokenize

CHARS_PER_TOKEN = 4
CHUNK_PREVIEW_LINES = 6


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


@dataclass(frozen=True)
class PromptContext:
    """Structured, size-bounded context handed to the SQL generator."""

    data_source_id: str
    question: str
    dialect: str
    objects: tuple[SchemaObject, ...] = ()
    relationships: tuple[Relationship, ...] = ()
    synonyms: tuple[Synonym, ...] = ()
    join_policies: tuple[JoinPolicy, ...] = ()
    semantic_mappings: tuple[SemanticMapping, ...] = ()
    chunks: tuple[RetrievedChunk, ...] = ()
    dropped_objects: int = 0
    dropped_synonyms: int = 0
    dropped_mappings: int = 0
    dropped_chunks: int = 0
    retrieval_degraded: bool = False

    @property
    def object_refs(self) -> list[str]:
        return [obj.ref for obj in self.objects]

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.render())

    def render_structure(self) -> str:
        sections = [f"Dialect: {self.dialect}"]

        lines = ["Schema objects:"]
        for obj in self.objects:
            header = f"- {obj.ref} ({obj.object_type})"
            if obj.description:
                header += f": {obj.description}"
            lines.append(header)
            columns = ", ".join(
                f"{c.name} {c.data_type}" + (" primary key" if c.is_primary_key else "")
                for c in obj.columns
            )
            if columns:
                lines.append(f"  columns: {columns}")
        sections.append("\n".join(lines))

        if self.relationships:
            sections.append(
                "Relationships:\n"
                + "\n".join(
                    f"- {r.from_ref}.{r.from_column} -> {r.to_ref}.{r.to_column} ({r.relationship_type})"
                    for r in self.relationships
                )
            )
        if self.semantic_mappings:
            sections.append(
                "Semantic mappings:\n"
                + "\n".join(_render_mapping(m) for m in self.semantic_mappings)
            )
        if self.synonyms:
            sections.append(
                "Synonyms:\n"
                + "\n".join(f"- {s.term} -> {s.maps_to_ref} (weight {s.weight:.2f})" for s in self.synonyms)
            )
        if self.join_policies:
            sections.append(
                "Approved join policies:\n"
                + "\n".join(
                    f"- {p.left_ref} {p.join_type} join {p.right_ref} on {p.on_clause}"
                    for p in self.join_policies
                )
            )
        return "\n\n".join(sections)

    def render(self) -> str:
        text = self.render_structure()
        if self.chunks:
            text += "\n\nRetrieved context:\n" + "\n".join(
                render_chunk(position, item) for position, item in enumerate(self.chunks, start=1)
            )
        return text


def _render_mapping(mapping: SemanticMapping) -> str:
    line = f"- {mapping.business_name} [{mapping.entity_type}] -> {mapping.target_ref}"
    if mapping.description:
        line += f": {mapping.description}"
    if mapping.sql_expression:
        line += f" (sql: {mapping.sql_expression})"
    return line


def render_chunk(position: int, item: RetrievedChunk) -> str:
    lines = item.chunk.content.splitlines()[:CHUNK_PREVIEW_LINES]
    body = "\n    ".join(lines)
    return f"[{position}] ({item.chunk.doc_type.value}) {body}"


def _chunk_refs(item: RetrievedChunk) -> list[str]:
    metadata = item.chunk.metadata
    refs = list(metadata.get("object_refs") or [])
    if metadata.get("object_ref"):
        refs.append(metadata["object_ref"])
    return [normalize_ref(ref) for ref in refs]


class ContextAssembler:
    """Builds ``PromptContext`` instances from the context store."""

    def __init__(
        self,
        store: ContextStore,
        token_budget: int = 6000,
        synonym_min_weight: float = 0.5,
        max_objects: int = 40,
    ) -> None:
        self.store = store
        self.token_budget = token_budget
        self.synonym_min_weight = synonym_min_weight
        self.max_objects = max_objects

    def assemble(
        self,
        question: str,
        data_source_id: str,
        retrieval: Optional[RetrievalResult] = None,
        dialect: str = "postgres",
    ) -> PromptContext:
        catalog = self.store.get_catalog(data_source_id)
        synonyms = sorted(
            (s for s in self.store.get_synonyms(data_source_id) if s.weight >= self.synonym_min_weight),
            key=lambda s: (-s.weight, s.term.lower(), s.maps_to_ref),
        )
        mappings = self.store.get_semantic_mappings(data_source_id)
        policies = [p for p in self.store.get_approved_join_policies(data_source_id) if p.approved]
        ranked_chunks = retrieval.chunks if retrieval else ()

        objects = self._relevant_objects(question, catalog, synonyms, mappings, ranked_chunks)

        def build(
            selected: list[SchemaObject],
            chunks: tuple[RetrievedChunk, ...],
            synonym_limit: Optional[int] = None,
            mapping_limit: Optional[int] = None,
        ) -> PromptContext:
            refs = {obj.ref for obj in selected}
            relevant_synonyms = [s for s in synonyms if object_ref_of(s.maps_to_ref) in refs]
            relevant_mappings = sorted(
                (m for m in mappings if object_ref_of(m.target_ref) in refs),
                key=lambda m: (m.entity_type, m.business_name.lower()),
            )
            kept_synonyms = relevant_synonyms[:synonym_limit]
            kept_mappings = relevant_mappings[:mapping_limit]
            return PromptContext(
                data_source_id=data_source_id,
                question=question,
                dialect=dialect,
                objects=tuple(selected),
                relationships=tuple(
                    sorted(
                        (r for r in catalog.relationships if r.from_ref in refs and r.to_ref in refs),
                        key=lambda r: (r.from_ref, r.from_column, r.to_ref, r.to_column),
                    )
                ),
                synonyms=tuple(kept_synonyms),
                join_policies=tuple(
                    sorted(
                        (p for p in policies if p.left_ref in refs and p.right_ref in refs),
                        key=lambda p: (p.left_ref, p.right_ref),
                    )
                ),
                semantic_mappings=tuple(kept_mappings),
                chunks=chunks,
                dropped_objects=total_objects - len(selected),
                dropped_synonyms=len(relevant_synonyms) - len(kept_synonyms),
                dropped_mappings=len(relevant_mappings) - len(kept_mappings),
                dropped_chunks=len(ranked_chunks) - len(chunks),
                retrieval_degraded=bool(retrieval and retrieval.degraded),
            )

        total_objects = len(objects)
        context = build(objects, ())
        while len(objects) > 1 and context.token_estimate > self.token_budget:
            objects = objects[:-1]
            context = build(objects, ())

        # Synonyms are ordered by weight, so cutting from the end drops the weakest
        synonym_limit = len(context.synonyms)
        while synonym_limit and context.token_estimate > self.token_budget:
            synonym_limit -= 1
            context = build(objects, (), synonym_limit)

        mapping_limit = len(context.semantic_mappings)
        while mapping_limit and context.token_estimate > self.token_budget:
            mapping_limit -= 1
            context = build(objects, (), synonym_limit, mapping_limit)

        remaining = self.token_budget - context.token_estimate
        kept: list[RetrievedChunk] = []
        for position, item in enumerate(ranked_chunks, start=1):
            cost = estimate_tokens(render_chunk(position, item)) + 1
            if cost > remaining:
                break
            kept.append(item)
            remaining -= cost

        return build(objects, tuple(kept), synonym_limit, mapping_limit)

    def _relevant_objects(
        self,
        question: str,
        catalog: Catalog,
        synonyms: list[Synonym],
        mappings: list[SemanticMapping],
        chunks: tuple[RetrievedChunk, ...],
    ) -> list[SchemaObject]:
        tokens = set(tokenize(question))
        tokens |= {singularize(token) for token in tokens}
        phrase = " ".join(tokenize(question))

        scores: dict[str, float] = {}

        def bump(ref: str, amount: float) -> None:
            obj = catalog.get(ref)
            if obj is not None:
                scores[obj.ref] = scores.get(obj.ref, 0.0) + amount

        for obj in catalog.objects:
            name = obj.name.lower()
            if name in tokens or singularize(name) in tokens:
                bump(obj.ref, 3.0)
            for column in obj.column_names:
                if column != "id" and column in tokens:
                    bump(obj.ref, 0.5)
        for synonym in synonyms:
            if " ".join(tokenize(synonym.term)) in phrase:
                bump(object_ref_of(synonym.maps_to_ref), 2.0 * synonym.weight)
        for mapping in mappings:
            if " ".join(tokenize(mapping.business_name)) in phrase:
                bump(object_ref_of(mapping.target_ref), 2.0)
        for item in chunks:
            for ref in _chunk_refs(item):
                bump(ref, 1.0)

        if not scores:
            ordered = sorted(catalog.objects, key=lambda o: o.ref)
        else:
            ordered = sorted(
                (obj for obj in catalog.objects if obj.ref in scores),
                key=lambda o: (-scores[o.ref], o.ref),
            )
        return ordered[: self.max_objects]
