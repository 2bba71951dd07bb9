"""
Object Allow-list Verifier
==========================

Validates that referenced tables, views and qualified columns exist in the
data source's catalog.
"""

from typing import Optional

from report_pilot.catalog import Catalog, SchemaObject
from report_pilot.models import Violation, ViolationRule
from report_pilot.verifiers.base import Verifier
from report_pilot.verifiers.parsing import ParsedQuery, TableReference

SYSTEM_SCHEMAS = frozenset(
    {"information_schema", "pg_catalog", "pg_toast", "sys", "mysql", "performance_schema", "temp"}
)
SYSTEM_PREFIXES = ("pg_", "sqlite_")


def resolve_table(catalog: Catalog, table: TableReference) -> Optional[SchemaObject]:
    if table.database:
        return None
    if table.schema:
        return catalog.get(f"{table.schema}.{table.name}")
    return catalog.resolve_name(table.name)


def resolve_qualifier(query: ParsedQuery, catalog: Catalog, qualifier: str) -> tuple[bool, Optional[SchemaObject]]:
    """
    Map a column qualifier to a catalog object.

    Returns ``(known, obj)``: ``known`` is False when the qualifier names
    nothing in the query; ``obj`` is None for CTEs and derived tables.
    """
    if qualifier in query.cte_names:
        return True, None
    if qualifier in query.aliases:
        target = query.aliases[qualifier]
        if target is None or target in query.cte_names:
            return True, None
        return True, catalog.get(target)
    return False, None


class ObjectAllowlistVerifier(Verifier):
    """Rejects objects outside the catalog, system catalogs and cross-database references."""

    @property
    def name(self) -> str:
        return "ObjectAllowlistVerifier"

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        catalog: Catalog = context.get("catalog") or Catalog()
        violations = []
        seen: set[str] = set()

        for table in query.tables:
            qualified = table.qualified_name
            if qualified in seen:
                continue
            seen.add(qualified)
            if table.schema is None and table.name in query.cte_names:
                continue
            if table.database:
                message = f"cross-database reference '{qualified}' is not allowed"
            elif (table.schema or "") in SYSTEM_SCHEMAS or table.name.startswith(SYSTEM_PREFIXES):
                message = f"system catalog '{qualified}' is not allowed"
            elif resolve_table(catalog, table) is None:
                message = f"unknown table or view '{qualified}'"
            else:
                continue
            violations.append(Violation(ViolationRule.DISALLOWED_OBJECT, message))

        for reference in query.qualified_columns:
            known, obj = resolve_qualifier(query, catalog, reference.qualifier)
            if not known or obj is None or not obj.columns:
                continue
            if obj.column(reference.column) is None:
                violations.append(
                    Violation(
                        ViolationRule.DISALLOWED_OBJECT,
                        f"unknown column '{reference.column}' on '{obj.ref}'",
                    )
                )
        return violations
