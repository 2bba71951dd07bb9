"""
Syntax Verifier
===============

Validates SQL syntax using SQLite's parser.
"""

import sqlite3

from report_pilot.catalog import Catalog
from report_pilot.models import Violation, ViolationRule
from report_pilot.verifiers.base import Verifier
from report_pilot.verifiers.parsing import ParsedQuery


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SQLiteSyntaxVerifier(Verifier):
    """
    Validates SQL syntax using SQLite's parser with empty catalog tables.

    Only runs for the ``sqlite`` dialect, and only on queries that passed
    every other verifier.
    """

    runs_after_violations = False

    @property
    def name(self) -> str:
        return "SQLiteSyntaxVerifier"

    def _create_schema_tables(self, conn: sqlite3.Connection, catalog: Catalog) -> None:
        """Create empty tables matching the catalog for syntax validation."""
        cursor = conn.cursor()
        attached = {"main"}
        for obj in catalog.objects:
            schema = obj.schema.lower()
            if schema not in attached:
                cursor.execute(f"ATTACH DATABASE ':memory:' AS {_quote(schema)}")
                attached.add(schema)
            columns = [f"{_quote(c.name)} {c.data_type or 'TEXT'}" for c in obj.columns] or ['"_empty" TEXT']
            cursor.execute(f"CREATE TABLE {_quote(schema)}.{_quote(obj.name)} ({', '.join(columns)})")
        conn.commit()

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        """
        Verify SQL syntax is valid.

        Args:
            query: Parsed candidate query
            context: Must contain ``dialect``; ``catalog`` holds the tables

        Returns:
            A single violation describing the SQLite error, or nothing
        """
        if context.get("dialect") != "sqlite":
            return []

        conn = sqlite3.connect(":memory:")
        try:
            self._create_schema_tables(conn, context.get("catalog") or Catalog())
            # Use EXPLAIN to validate syntax
            conn.execute(f"EXPLAIN {query.normalized_sql}")
        except sqlite3.Error as e:
            message = str(e)
            if message.startswith(("no such table", "no such column")):
                rule = ViolationRule.DISALLOWED_OBJECT
            elif message.startswith("no such function"):
                rule = ViolationRule.DISALLOWED_FUNCTION
            else:
                rule = ViolationRule.UNPARSEABLE
            return [Violation(rule, f"SQL syntax error: {message}")]
        finally:
            conn.close()
        return []
