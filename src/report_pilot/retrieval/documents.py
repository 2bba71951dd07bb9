"""
RAG Documents
=============

Builds the retrievable document set for a data source from the context
store: one document per schema object, semantic mapping, approved join
policy, note and example.
"""

from report_pilot.catalog import Catalog, ContextStore, SchemaObject, object_ref_of
from report_pilot.models import DocType, RagDocument


def column_hints(column_name: str) -> str:
    """Generate semantic hints for common column patterns."""
    hints = []
    col_lower = column_name.lower()

    if col_lower == "id" or col_lower.endswith("_id"):
        hints.append("identifier field")
    if "name" in col_lower:
        hints.append("used for display and filtering")
    if "email" in col_lower:
        hints.append("contact information")
    if "date" in col_lower or "created" in col_lower or "updated" in col_lower:
        hints.append("temporal data for date-based queries")
    if "amount" in col_lower or "price" in col_lower or "cost" in col_lower:
        hints.append("monetary value, useful for SUM/AVG calculations")
    if "status" in col_lower or "tier" in col_lower or "type" in col_lower or "category" in col_lower:
        hints.append("categorical field for filtering and grouping")
    if "count" in col_lower or "quantity" in col_lower or "stock" in col_lower:
        hints.append("numeric count, useful for inventory queries")

    return ", ".join(hints)


def schema_document(data_source_id: str, obj: SchemaObject, catalog: Catalog) -> RagDocument:
    lines = [f"schema object {obj.ref} type={obj.object_type}"]
    if obj.description:
        lines.append(f"description {obj.description}")
    for column in obj.columns:
        line = (
            f"column {column.name} type={column.data_type} "
            f"nullable={str(column.nullable).lower()} "
            f"primary_key={str(column.is_primary_key).lower()}"
        )
        hints = column_hints(column.name)
        if column.description:
            line += f" - {column.description}"
        if hints:
            line += f" ({hints})"
        lines.append(line)
    for rel in catalog.relationships:
        if obj.ref in (rel.from_ref, rel.to_ref):
            lines.append(
                f"relationship {rel.from_ref}.{rel.from_column} -> "
                f"{rel.to_ref}.{rel.to_column} ({rel.relationship_type})"
            )
    for index in catalog.indexes:
        if index.object_ref == obj.ref:
            unique = "unique " if index.unique else ""
            lines.append(f"{unique}index {index.name} on ({', '.join(index.columns)})")

    return RagDocument(
        doc_id=f"schema:{obj.ref}",
        data_source_id=data_source_id,
        doc_type=DocType.SCHEMA,
        content="\n".join(lines),
        metadata={"object_ref": obj.ref},
    )


def build_documents(store: ContextStore, data_source_id: str) -> list[RagDocument]:
    """All retrievable documents for one data source, in a stable order."""
    documents: list[RagDocument] = []
    catalog = store.get_catalog(data_source_id)

    for obj in sorted(catalog.objects, key=lambda o: o.ref):
        documents.append(schema_document(data_source_id, obj, catalog))

    for mapping in store.get_semantic_mappings(data_source_id):
        lines = [
            f"semantic {mapping.entity_type} {mapping.business_name} maps to {mapping.target_ref}"
        ]
        if mapping.description:
            lines.append(mapping.description)
        if mapping.sql_expression:
            lines.append(f"sql expression {mapping.sql_expression}")
        documents.append(
            RagDocument(
                doc_id=f"semantic:{mapping.entity_type}:{mapping.business_name.lower()}",
                data_source_id=data_source_id,
                doc_type=DocType.SEMANTIC,
                content="\n".join(lines),
                metadata={
                    "object_ref": object_ref_of(mapping.target_ref),
                    "business_name": mapping.business_name,
                },
            )
        )

    for policy in store.get_approved_join_policies(data_source_id):
        if not policy.approved:
            continue
        lines = [
            f"approved join policy {policy.left_ref} {policy.join_type} join {policy.right_ref}",
            f"on {policy.on_clause}",
        ]
        if policy.notes:
            lines.append(f"notes {policy.notes}")
        documents.append(
            RagDocument(
                doc_id=f"policy:{policy.left_ref}:{policy.right_ref}",
                data_source_id=data_source_id,
                doc_type=DocType.POLICY,
                content="\n".join(lines),
                metadata={"object_refs": [policy.left_ref, policy.right_ref]},
            )
        )

    for note in store.get_notes(data_source_id):
        documents.append(
            RagDocument(
                doc_id=f"note:{note.note_id}",
                data_source_id=data_source_id,
                doc_type=DocType.POLICY,
                content=f"note {note.title}\n{note.content}",
                metadata={"note_id": note.note_id},
            )
        )

    for example in store.get_examples(data_source_id):
        documents.append(
            RagDocument(
                doc_id=f"example:{example.example_id}",
                data_source_id=data_source_id,
                doc_type=DocType.EXAMPLE,
                content=f"example question {example.question}\nexample sql {example.sql}",
                metadata={
                    "example_id": example.example_id,
                    "source": example.source.value,
                    "quality_score": example.quality_score,
                },
            )
        )

    return documents
