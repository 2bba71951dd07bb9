"""
SQL Server Data Source
======================

Read-only SQL Server adapter on pyodbc. Each call opens a connection (the
ODBC driver manager pools them), sets ``LOCK_TIMEOUT`` and the query
timeout, and rolls back before closing. Rows stream from the server, so
fetching stops after the row cap and the rest of the result is cancelled.
Plan estimates come from ``SET SHOWPLAN_XML``.
"""

import math
import re
import time
import xml.etree.ElementTree as ET
from typing import Any, Optional

import pyodbc
import structlog

from report_pilot.datasources.base import (
    DataSourceAdapter,
    PlanEstimate,
    QueryOutput,
    rows_as_dicts,
    unique_labels,
)
from report_pilot.errors import DataSourceError

logger = structlog.get_logger(__name__)

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"
SHOWPLAN_NS = "{http://schemas.microsoft.com/sqlserver/2004/07/showplan}"

TIMEOUT_STATES = frozenset({"HYT00", "HYT01"})
LOCK_TIMEOUT_EXCEEDED = 1222
# permission denied on object / column / database, read-only database
PERMISSION_ERRORS = frozenset({229, 230, 262, 297, 300, 916, 3906})

_NATIVE_CODE = re.compile(r"\((\d+)\)\s*\(SQL")
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


def classify_mssql_error(exc: pyodbc.Error) -> DataSourceError:
    state = str(exc.args[0]) if len(exc.args) > 1 else ""
    message = str(exc.args[-1]) if exc.args else str(exc)
    match = _NATIVE_CODE.search(message)
    native = int(match.group(1)) if match else None

    if state in TIMEOUT_STATES or native == LOCK_TIMEOUT_EXCEEDED:
        kind = DataSourceError.TIMEOUT
    elif native in PERMISSION_ERRORS:
        kind = DataSourceError.PERMISSION
    elif state.startswith("42") or state == "37000":
        kind = DataSourceError.SYNTAX
    elif state.startswith("08") or isinstance(exc, (pyodbc.OperationalError, pyodbc.InterfaceError)):
        kind = DataSourceError.CONNECTION
    else:
        kind = DataSourceError.OTHER
    return DataSourceError(message.strip(), kind=kind)


def parse_showplan(document: Optional[str]) -> Optional[PlanEstimate]:
    """Estimated rows and subtree cost of the first statement in a showplan XML document."""
    if not document:
        return None
    try:
        # a str with an encoding declaration is rejected by the parser
        root = ET.fromstring(_XML_DECLARATION.sub("", document))
    except ET.ParseError:
        logger.warning("showplan_unparseable", length=len(document))
        return None
    statement = next(root.iter(f"{SHOWPLAN_NS}StmtSimple"), None)
    if statement is None:
        return None
    rows = statement.get("StatementEstRows")
    cost = statement.get("StatementSubTreeCost")
    return PlanEstimate(
        estimated_rows=float(rows) if rows is not None else None,
        estimated_cost=float(cost) if cost is not None else None,
        plan=dict(statement.attrib),
    )


def odbc_connection_string(connection_ref: str, driver: str = DEFAULT_DRIVER) -> str:
    """Prefix ``DRIVER=`` when the reference does not name one."""
    if "driver=" in connection_ref.lower():
        return connection_ref
    return f"DRIVER={{{driver}}};{connection_ref}"


class MSSQLDataSource(DataSourceAdapter):
    """Executes validated SQL against SQL Server."""

    def __init__(
        self,
        connection_string: str,
        login_timeout: int = 10,
        explain_timeout_ms: int = 5000,
        driver: str = DEFAULT_DRIVER,
    ) -> None:
        self.connection_string = odbc_connection_string(connection_string, driver)
        self.login_timeout = login_timeout
        self.explain_timeout_ms = explain_timeout_ms

    @property
    def dialect(self) -> str:
        return "mssql"

    def _connect(self) -> Any:
        return pyodbc.connect(
            self.connection_string, autocommit=False, readonly=True, timeout=self.login_timeout
        )

    def _run(self, sql: str, timeout_ms: int, fetch: Any) -> Any:
        try:
            conn = self._connect()
        except pyodbc.Error as exc:
            raise classify_mssql_error(exc) from exc
        try:
            conn.timeout = max(1, math.ceil(timeout_ms / 1000))
            cursor = conn.cursor()
            try:
                cursor.execute(f"SET LOCK_TIMEOUT {int(timeout_ms)}")
                return fetch(cursor, sql)
            finally:
                cursor.close()
        except pyodbc.Error as exc:
            raise classify_mssql_error(exc) from exc
        finally:
            self._release(conn)

    def _release(self, conn: Any) -> None:
        try:
            conn.rollback()
        except pyodbc.Error:
            logger.warning("mssql_rollback_failed")
        finally:
            conn.close()

    def execute(self, sql: str, row_cap: int, timeout_seconds: float) -> QueryOutput:
        started = time.perf_counter()

        def fetch(cursor: Any, statement: str) -> tuple[tuple[str, ...], list[Any]]:
            cursor.execute(statement)
            columns = unique_labels([description[0] for description in cursor.description or ()])
            fetched = cursor.fetchmany(row_cap + 1)
            if len(fetched) > row_cap:
                cursor.cancel()
            return columns, fetched

        columns, fetched = self._run(sql, int(timeout_seconds * 1000), fetch)
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
        def fetch(cursor: Any, statement: str) -> Optional[str]:
            # SHOWPLAN_XML has to be alone in its batch
            cursor.execute("SET SHOWPLAN_XML ON")
            try:
                cursor.execute(statement)
                row = cursor.fetchone()
            finally:
                cursor.execute("SET SHOWPLAN_XML OFF")
            return row[0] if row else None

        return parse_showplan(self._run(sql, self.explain_timeout_ms, fetch))
