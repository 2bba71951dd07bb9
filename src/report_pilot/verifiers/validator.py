"""
SQL Validator
=============

Parses candidate SQL once, runs the verification chain and returns a
structured ``ValidationResult``. A rejected result is final for the attempt
it belongs to.
"""

from typing import Sequence

import structlog
from opentelemetry import trace

from report_pilot.catalog import Catalog, Note
from report_pilot.models import ValidationOutcome, ValidationResult
from report_pilot.verifiers.base import VerificationChain
from report_pilot.verifiers.objects import resolve_qualifier, resolve_table
from report_pilot.verifiers.parsing import ParsedQuery, parse_query

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class SqlValidator:
    """Validates SQL against the read-only, single-statement, allow-listed subset."""

    def __init__(self, chain: VerificationChain | None = None) -> None:
        self.chain = chain or VerificationChain()

    def validate(
        self, sql: str, catalog: Catalog, dialect: str = "postgres", notes: Sequence[Note] = ()
    ) -> ValidationResult:
        with tracer.start_as_current_span("sql.validate") as span:
            span.set_attribute("db.system", dialect)
            query = parse_query(sql)
            violations = self.chain.run(query, {"catalog": catalog, "dialect": dialect, "notes": notes})
            objects, columns = _references(query, catalog)

            result = ValidationResult(
                outcome=ValidationOutcome.REJECTED if violations else ValidationOutcome.VALID,
                violations=tuple(violations),
                referenced_objects=frozenset(objects),
                referenced_columns=frozenset(columns),
                referenced_functions=frozenset(f.rsplit(".", 1)[-1] for f in query.functions),
                normalized_sql=query.normalized_sql,
            )
            span.set_attribute("validation.outcome", result.outcome.value)
            if not result.is_valid:
                span.set_attribute("validation.rules", result.rules)
                logger.info("sql_rejected", rules=result.rules, reasons=result.summary())
            return result


def _references(query: ParsedQuery, catalog: Catalog) -> tuple[set[str], set[str]]:
    objects = {}
    for table in query.tables:
        obj = resolve_table(catalog, table)
        if obj is not None:
            objects[obj.ref] = obj

    columns = set()
    for reference in query.qualified_columns:
        _, obj = resolve_qualifier(query, catalog, reference.qualifier)
        if obj is not None and obj.column(reference.column) is not None:
            columns.add(f"{obj.ref}.{reference.column}")

    for name in query.bare_identifiers:
        owners = [obj for obj in objects.values() if obj.column(name) is not None]
        if len(owners) == 1:
            columns.add(f"{owners[0].ref}.{name}")

    return set(objects), columns
