"""
Column Policy Verifier
======================

Data stewards forbid columns in plain language ("do not use
customers.email"). Notes containing such wording are scanned for
``object.column`` or ``schema.object.column`` references that resolve
against the catalog, and any candidate query that touches one of those
columns is rejected, whether it names the column through the table, the
schema-qualified table or an alias.
"""

import re
from typing import Iterable

from report_pilot.catalog import Catalog, Note, normalize_ref
from report_pilot.models import Violation, ViolationRule
from report_pilot.verifiers.base import Verifier
from report_pilot.verifiers.objects import resolve_qualifier, resolve_table
from report_pilot.verifiers.parsing import ParsedQuery

FORBIDDING_PHRASES = (
    "do not use",
    "don't use",
    "dont use",
    "must not use",
    "never use",
    "not allowed",
    "forbid",
    "disallow",
    "avoid",
    "exclude",
    "blocked",
    "ban",
)

_FORBIDDING = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in FORBIDDING_PHRASES) + r")",
    re.IGNORECASE,
)
_COLUMN_REF = re.compile(r"\b[A-Za-z_][\w$]*(?:\.[A-Za-z_][\w$]*){1,2}\b")


def forbidden_columns(notes: Iterable[Note], catalog: Catalog) -> frozenset[str]:
    """
    Columns the notes forbid, as ``schema.object.column`` refs.

    A two-part ``object.column`` only counts when exactly one catalog
    object carries that name and column. Refs that do not resolve are
    ignored.
    """
    forbidden = set()
    for note in notes:
        text = f"{note.title}\n{note.content}"
        if not _FORBIDDING.search(text):
            continue
        for match in _COLUMN_REF.finditer(text):
            resolved = _resolve_column(catalog, normalize_ref(match.group(0)))
            if resolved:
                forbidden.add(resolved)
    return frozenset(forbidden)


def _resolve_column(catalog: Catalog, ref: str) -> str | None:
    parts = ref.split(".")
    if len(parts) == 3:
        obj = catalog.get(f"{parts[0]}.{parts[1]}")
        owners = [obj] if obj is not None else []
    else:
        owners = [obj for obj in catalog.objects if obj.name.lower() == parts[0]]
    owners = [obj for obj in owners if obj.column(parts[-1]) is not None]
    if len(owners) != 1:
        return None
    return f"{owners[0].ref}.{owners[0].column(parts[-1]).name.lower()}"


class ColumnPolicyVerifier(Verifier):
    """Rejects queries that reference a column forbidden by a steward note."""

    @property
    def name(self) -> str:
        return "ColumnPolicyVerifier"

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        catalog: Catalog = context.get("catalog") or Catalog()
        forbidden = forbidden_columns(context.get("notes") or (), catalog)
        if not forbidden:
            return []

        hits: list[str] = []
        for reference in query.qualified_columns:
            _, obj = resolve_qualifier(query, catalog, reference.qualifier)
            if obj is not None:
                hits.append(f"{obj.ref}.{reference.column.lower()}")

        # A bare column is only attributable when the query reads one object
        objects = {obj.ref: obj for obj in (resolve_table(catalog, t) for t in query.tables) if obj is not None}
        if len(objects) == 1:
            (ref,) = objects
            hits.extend(f"{ref}.{name.lower()}" for name in query.bare_identifiers)

        violations = []
        for column in dict.fromkeys(hits):
            if column in forbidden:
                violations.append(
                    Violation(ViolationRule.FORBIDDEN_COLUMN, f"Forbidden column referenced: {column}")
                )
        return violations
