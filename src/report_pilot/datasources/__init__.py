"""Target data source adapters."""

from report_pilot.datasources.base import DataSourceAdapter, DataSourceRegistry, PlanEstimate, QueryOutput
from report_pilot.datasources.sqlite import SQLiteDataSource


def create_data_source(db_type: str, connection_ref: str) -> DataSourceAdapter:
    """Build an adapter for ``db_type``: a ``sqlite`` path, ``postgres`` DSN or ``mssql`` ODBC string."""
    if db_type == "sqlite":
        return SQLiteDataSource(connection_ref)
    if db_type == "postgres":
        # psycopg2 is only needed when a PostgreSQL source is configured.
        from report_pilot.datasources.postgres import PostgresDataSource

        return PostgresDataSource(connection_ref)
    if db_type == "mssql":
        # Likewise pyodbc and its ODBC driver for SQL Server sources.
        from report_pilot.datasources.mssql import MSSQLDataSource

        return MSSQLDataSource(connection_ref)
    raise ValueError(f"Unsupported db_type: {db_type}")


__all__ = [
    "DataSourceAdapter",
    "DataSourceRegistry",
    "PlanEstimate",
    "QueryOutput",
    "SQLiteDataSource",
    "create_data_source",
]
