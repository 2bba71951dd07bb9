"""
Context Store
=============

Read/write contract over the metadata store: schema catalog, semantic
mappings, join policies, synonyms, examples and notes. The pipeline only
depends on ``ContextStore``; ``InMemoryContextStore`` backs the demo service
and the tests.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from report_pilot.errors import UnknownDataSource
from report_pilot.models import Example


def normalize_ref(ref: str) -> str:
    """Lower-case and strip identifier quoting from a dotted reference."""
    return ".".join(part.strip().strip('"`[]').lower() for part in ref.split("."))


def object_ref_of(ref: str) -> str:
    """``schema.object.column`` -> ``schema.object``; shorter refs unchanged."""
    parts = normalize_ref(ref).split(".")
    return ".".join(parts[:2]) if len(parts) > 2 else ".".join(parts)


@dataclass(frozen=True)
class Column:
    name: str
    data_type: str = "text"
    nullable: bool = True
    is_primary_key: bool = False
    description: str = ""


@dataclass(frozen=True)
class SchemaObject:
    """A table, view or materialized view."""

    name: str
    columns: tuple[Column, ...] = ()
    schema: str = "public"
    object_type: str = "table"
    description: str = ""

    @property
    def ref(self) -> str:
        return normalize_ref(f"{self.schema}.{self.name}")

    @property
    def column_names(self) -> list[str]:
        return [column.name.lower() for column in self.columns]

    def column(self, name: str) -> Optional[Column]:
        wanted = name.lower()
        for column in self.columns:
            if column.name.lower() == wanted:
                return column
        return None


@dataclass(frozen=True)
class Relationship:
    from_ref: str
    from_column: str
    to_ref: str
    to_column: str
    relationship_type: str = "fk"  # "fk" or "inferred"


@dataclass(frozen=True)
class Index:
    object_ref: str
    name: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class Catalog:
    """Introspected schema metadata for one data source."""

    objects: tuple[SchemaObject, ...] = ()
    relationships: tuple[Relationship, ...] = ()
    indexes: tuple[Index, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.objects

    @property
    def refs(self) -> set[str]:
        return {obj.ref for obj in self.objects}

    def get(self, ref: str) -> Optional[SchemaObject]:
        """Look up by ``schema.name``; a bare name resolves when unambiguous."""
        wanted = normalize_ref(ref)
        if "." not in wanted:
            return self.resolve_name(wanted)
        for obj in self.objects:
            if obj.ref == wanted:
                return obj
        return None

    def resolve_name(self, name: str) -> Optional[SchemaObject]:
        wanted = normalize_ref(name)
        matches = [obj for obj in self.objects if obj.name.lower() == wanted]
        return matches[0] if len(matches) == 1 else None


@dataclass(frozen=True)
class SemanticMapping:
    """Business vocabulary mapped onto a catalog object or column."""

    business_name: str
    target_ref: str
    entity_type: str = "table"  # table, column, metric, dimension, rule
    description: str = ""
    sql_expression: Optional[str] = None


@dataclass(frozen=True)
class JoinPolicy:
    left_ref: str
    right_ref: str
    on_clause: str
    join_type: str = "inner"
    approved: bool = False
    notes: str = ""


@dataclass(frozen=True)
class Synonym:
    term: str
    maps_to_ref: str
    weight: float = 1.0


@dataclass(frozen=True)
class Note:
    """Free-form guidance written by data stewards."""

    note_id: str
    title: str
    content: str


class ContextStore(ABC):
    """Read/write contract over the metadata store."""

    @abstractmethod
    def has_data_source(self, data_source_id: str) -> bool:
        pass

    @abstractmethod
    def get_catalog(self, data_source_id: str) -> Catalog:
        pass

    @abstractmethod
    def get_semantic_mappings(self, data_source_id: str) -> list[SemanticMapping]:
        pass

    @abstractmethod
    def get_approved_join_policies(self, data_source_id: str) -> list[JoinPolicy]:
        """Only policies flagged as approved."""
        pass

    @abstractmethod
    def get_synonyms(self, data_source_id: str) -> list[Synonym]:
        pass

    @abstractmethod
    def get_examples(self, data_source_id: str) -> list[Example]:
        pass

    @abstractmethod
    def get_notes(self, data_source_id: str) -> list[Note]:
        pass

    @abstractmethod
    def add_example(self, example: Example) -> Example:
        pass


@dataclass
class _SourceMetadata:
    catalog: Catalog
    semantic_mappings: list[SemanticMapping] = field(default_factory=list)
    join_policies: list[JoinPolicy] = field(default_factory=list)
    synonyms: list[Synonym] = field(default_factory=list)
    examples: list[Example] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)


class InMemoryContextStore(ContextStore):
    """Thread-safe in-process metadata store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sources: dict[str, _SourceMetadata] = {}

    def register_data_source(
        self,
        data_source_id: str,
        catalog: Catalog,
        semantic_mappings: Iterable[SemanticMapping] = (),
        join_policies: Iterable[JoinPolicy] = (),
        synonyms: Iterable[Synonym] = (),
        examples: Iterable[Example] = (),
        notes: Iterable[Note] = (),
    ) -> None:
        with self._lock:
            self._sources[data_source_id] = _SourceMetadata(
                catalog=catalog,
                semantic_mappings=list(semantic_mappings),
                join_policies=list(join_policies),
                synonyms=list(synonyms),
                examples=list(examples),
                notes=list(notes),
            )

    def data_source_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._sources)

    def _source(self, data_source_id: str) -> _SourceMetadata:
        source = self._sources.get(data_source_id)
        if source is None:
            raise UnknownDataSource(f"Unknown data source: {data_source_id}")
        return source

    def has_data_source(self, data_source_id: str) -> bool:
        with self._lock:
            return data_source_id in self._sources

    def get_catalog(self, data_source_id: str) -> Catalog:
        with self._lock:
            return self._source(data_source_id).catalog

    def set_catalog(self, data_source_id: str, catalog: Catalog) -> None:
        with self._lock:
            self._source(data_source_id).catalog = catalog

    def get_semantic_mappings(self, data_source_id: str) -> list[SemanticMapping]:
        with self._lock:
            return list(self._source(data_source_id).semantic_mappings)

    def get_approved_join_policies(self, data_source_id: str) -> list[JoinPolicy]:
        with self._lock:
            return [p for p in self._source(data_source_id).join_policies if p.approved]

    def add_join_policy(self, data_source_id: str, policy: JoinPolicy) -> None:
        with self._lock:
            self._source(data_source_id).join_policies.append(policy)

    def get_synonyms(self, data_source_id: str) -> list[Synonym]:
        with self._lock:
            return list(self._source(data_source_id).synonyms)

    def get_examples(self, data_source_id: str) -> list[Example]:
        with self._lock:
            return list(self._source(data_source_id).examples)

    def add_example(self, example: Example) -> Example:
        with self._lock:
            self._source(example.data_source_id).examples.append(example)
        return example

    def get_notes(self, data_source_id: str) -> list[Note]:
        with self._lock:
            return list(self._source(data_source_id).notes)

    def add_note(self, data_source_id: str, note: Note) -> None:
        with self._lock:
            self._source(data_source_id).notes.append(note)
