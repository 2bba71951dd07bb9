"""
SQLite Data Source
==================

Read-only SQLite adapter (stdlib ``sqlite3``). Connections open the file
through a ``mode=ro`` URI with ``PRAGMA query_only`` on top; a progress
handler enforces the statement timeout.
"""

import re
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Optional

from report_pilot.datasources.base import (
    DataSourceAdapter,
    PlanEstimate,
    QueryOutput,
    rows_as_dicts,
    unique_labels,
)
from report_pilot.errors import DataSourceError

_PLAN_STEP = re.compile(r"^(SCAN|SEARCH)\s+(?:TABLE\s+)?([\w\"\[\]`]+)", re.IGNORECASE)
_TRAILING_LIMIT = re.compile(r"\bLIMIT\s+(\d+)(?:\s+OFFSET\s+\d+)?\s*$", re.IGNORECASE)
_PROGRESS_OPCODES = 1000


def classify_sqlite_error(exc: sqlite3.Error) -> DataSourceError:
    message = str(exc)
    lowered = message.lower()
    if "interrupted" in lowered:
        kind = DataSourceError.TIMEOUT
    elif any(s in lowered for s in ("locked", "busy", "unable to open", "disk i/o")):
        kind = DataSourceError.CONNECTION
    elif any(s in lowered for s in ("readonly", "read-only", "attempt to write", "not authorized")):
        kind = DataSourceError.PERMISSION
    elif any(s in lowered for s in ("syntax error", "no such", "incomplete input")):
        kind = DataSourceError.SYNTAX
    else:
        kind = DataSourceError.OTHER
    return DataSourceError(message, kind=kind)


class SQLiteDataSource(DataSourceAdapter):
    """Executes validated SQL against a SQLite database file."""

    def __init__(self, path: str | Path, explain_timeout_seconds: float = 5.0) -> None:
        self.path = Path(path)
        self.explain_timeout_seconds = explain_timeout_seconds

    @property
    def dialect(self) -> str:
        return "sqlite"

    def _connect(self, deadline: float) -> sqlite3.Connection:
        uri = self.path.resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=1.0, check_same_thread=False)
        except sqlite3.Error as exc:
            raise classify_sqlite_error(exc) from exc
        conn.execute("PRAGMA query_only = ON")
        conn.set_progress_handler(lambda: 1 if time.perf_counter() > deadline else 0, _PROGRESS_OPCODES)
        return conn

    def execute(self, sql: str, row_cap: int, timeout_seconds: float) -> QueryOutput:
        started = time.perf_counter()
        with closing(self._connect(started + timeout_seconds)) as conn:
            try:
                cursor = conn.execute(sql)
                columns = unique_labels([description[0] for description in cursor.description or ()])
                fetched = cursor.fetchmany(row_cap + 1)
            except sqlite3.Error as exc:
                raise classify_sqlite_error(exc) from exc

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
        """
        Estimate rows from ``EXPLAIN QUERY PLAN``.

        SQLite reports no row counts, so every full scan multiplies the
        estimate by the scanned table's size and an index search counts as
        one row. A trailing LIMIT caps the estimate.
        """
        with closing(self._connect(time.perf_counter() + self.explain_timeout_seconds)) as conn:
            try:
                steps = [row[3] for row in conn.execute(f"EXPLAIN QUERY PLAN {sql}").fetchall()]
                sizes = self._table_sizes(conn)
            except sqlite3.Error as exc:
                raise classify_sqlite_error(exc) from exc

        largest = max(sizes.values(), default=0)
        estimate = 1.0
        scanned = False
        for detail in steps:
            match = _PLAN_STEP.match(detail)
            if not match:
                continue
            if match.group(1).upper() == "SCAN":
                name = match.group(2).strip('"[]`').lower()
                estimate *= max(sizes.get(name, largest), 1)
                scanned = True
        if not scanned and not steps:
            return None

        limit = _TRAILING_LIMIT.search(sql.strip().rstrip(";"))
        if limit:
            estimate = min(estimate, float(limit.group(1)))
        return PlanEstimate(estimated_rows=estimate, estimated_cost=None, plan=steps)

    def _table_sizes(self, conn: sqlite3.Connection) -> dict[str, int]:
        names = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")]
        sizes = {}
        for name in names:
            if name.startswith("sqlite_"):
                continue
            quoted = '"' + name.replace('"', '""') + '"'
            sizes[name.lower()] = conn.execute(f"SELECT COUNT(*) FROM {quoted}").fetchone()[0]
        return sizes
