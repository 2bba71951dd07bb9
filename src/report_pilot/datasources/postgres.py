"""
PostgreSQL Data Source
======================

Read-only PostgreSQL adapter on psycopg2. Every statement runs in a
read-only transaction with ``SET LOCAL statement_timeout`` and is rolled
back afterwards. Results are read through a named (server-side) cursor, so
only the capped rows ever reach the client.
"""

import time
import uuid
from typing import Any, Optional

import psycopg2
import psycopg2.extensions
from psycopg2.pool import ThreadedConnectionPool

from report_pilot.datasources.base import (
    DataSourceAdapter,
    PlanEstimate,
    QueryOutput,
    rows_as_dicts,
    unique_labels,
)
from report_pilot.errors import DataSourceError

INSUFFICIENT_PRIVILEGE = "42501"
READ_ONLY_SQL_TRANSACTION = "25006"


def classify_postgres_error(exc: psycopg2.Error) -> DataSourceError:
    code = getattr(exc, "pgcode", None) or ""
    if isinstance(exc, psycopg2.extensions.QueryCanceledError):
        kind = DataSourceError.TIMEOUT
    elif code in (INSUFFICIENT_PRIVILEGE, READ_ONLY_SQL_TRANSACTION):
        kind = DataSourceError.PERMISSION
    elif code.startswith("42"):
        kind = DataSourceError.SYNTAX
    elif isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        kind = DataSourceError.CONNECTION
    else:
        kind = DataSourceError.OTHER
    message = (getattr(exc, "pgerror", None) or str(exc)).strip()
    return DataSourceError(message, kind=kind)


class PostgresDataSource(DataSourceAdapter):
    """Executes validated SQL against PostgreSQL."""

    def __init__(
        self,
        dsn: str,
        min_connections: int = 1,
        max_connections: int = 5,
        connect_timeout: int = 10,
        explain_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.explain_timeout_ms = explain_timeout_ms
        try:
            self._pool = ThreadedConnectionPool(
                min_connections, max_connections, dsn, connect_timeout=connect_timeout
            )
        except psycopg2.Error as exc:
            raise classify_postgres_error(exc) from exc

    @property
    def dialect(self) -> str:
        return "postgres"

    def _run(self, sql: str, timeout_ms: int, fetch: Any, server_side: bool = False) -> Any:
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as exc:
            raise classify_postgres_error(exc) from exc
        try:
            conn.set_session(readonly=True, autocommit=False)
            with conn.cursor() as setup:
                setup.execute("SET LOCAL statement_timeout = %s", (int(timeout_ms),))
            name = f"report_pilot_{uuid.uuid4().hex}" if server_side else None
            with conn.cursor(name=name) as cursor:
                cursor.execute(sql)
                return fetch(cursor)
        except psycopg2.Error as exc:
            raise classify_postgres_error(exc) from exc
        finally:
            self._release(conn)

    def _release(self, conn: Any) -> None:
        if not conn.closed:
            try:
                conn.rollback()
            except psycopg2.Error:
                conn.close()
        self._pool.putconn(conn, close=bool(conn.closed))

    def execute(self, sql: str, row_cap: int, timeout_seconds: float) -> QueryOutput:
        started = time.perf_counter()

        def fetch(cursor: Any) -> tuple[tuple[str, ...], list[tuple]]:
            # A named cursor only has a description after the first FETCH
            fetched = cursor.fetchmany(row_cap + 1)
            columns = unique_labels([description.name for description in cursor.description or ()])
            return columns, fetched

        columns, fetched = self._run(sql, int(timeout_seconds * 1000), fetch, server_side=True)
        truncated = len(fetched) > row_cap
        rows = rows_as_dicts(columns, fetched[:row_cap])
        return QueryOutput(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            truncated=truncated,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def explain(self, sql: str) -> Optional[PlanEstimate]:
        document = self._run(
            f"EXPLAIN (FORMAT JSON) {sql}",
            self.explain_timeout_ms,
            lambda cursor: cursor.fetchone()[0],
        )
        if not document:
            return None
        plan = document[0].get("Plan", {})
        rows = plan.get("Plan Rows")
        cost = plan.get("Total Cost")
        return PlanEstimate(
            estimated_rows=float(rows) if rows is not None else None,
            estimated_cost=float(cost) if cost is not None else None,
            plan=plan,
        )

    def close(self) -> None:
        self._pool.closeall()
