"""
Sample Data Source
==================

Customers/orders/products catalog with a matching SQLite database, used by
the demo service and the test-suite.
"""

import sqlite3
from contextlib import closing
from pathlib import Path

from report_pilot.catalog import (
    Catalog,
    Column,
    Index,
    InMemoryContextStore,
    JoinPolicy,
    Note,
    Relationship,
    SchemaObject,
    SemanticMapping,
    Synonym,
)
from report_pilot.models import Example, ExampleSource

SAMPLE_DATA_SOURCE_ID = "demo"

SAMPLE_CATALOG = Catalog(
    objects=(
        SchemaObject(
            name="customers",
            schema="main",
            description="Customer accounts",
            columns=(
                Column("id", "integer", nullable=False, is_primary_key=True),
                Column("name", "text", nullable=False),
                Column("email", "text"),
                Column("created_at", "date"),
                Column("tier", "text", description="standard or premium"),
            ),
        ),
        SchemaObject(
            name="orders",
            schema="main",
            description="Customer orders",
            columns=(
                Column("id", "integer", nullable=False, is_primary_key=True),
                Column("customer_id", "integer", nullable=False),
                Column("amount", "decimal"),
                Column("order_date", "date"),
                Column("status", "text"),
            ),
        ),
        SchemaObject(
            name="products",
            schema="main",
            description="Product catalog",
            columns=(
                Column("id", "integer", nullable=False, is_primary_key=True),
                Column("name", "text", nullable=False),
                Column("price", "decimal"),
                Column("category", "text"),
                Column("stock", "integer"),
            ),
        ),
    ),
    relationships=(
        Relationship("main.orders", "customer_id", "main.customers", "id"),
    ),
    indexes=(
        Index("main.orders", "idx_orders_customer_id", ("customer_id",)),
    ),
)

SAMPLE_SEMANTIC_MAPPINGS = (
    SemanticMapping(
        business_name="revenue",
        target_ref="main.orders.amount",
        entity_type="metric",
        description="Total order amount",
        sql_expression="SUM(orders.amount)",
    ),
    SemanticMapping(
        business_name="premium customer",
        target_ref="main.customers.tier",
        entity_type="dimension",
        description="Customers on the premium tier",
        sql_expression="customers.tier = 'premium'",
    ),
)

SAMPLE_JOIN_POLICIES = (
    JoinPolicy(
        left_ref="main.orders",
        right_ref="main.customers",
        on_clause="orders.customer_id = customers.id",
        approved=True,
        notes="Every order belongs to one customer",
    ),
    JoinPolicy(
        left_ref="main.orders",
        right_ref="main.products",
        on_clause="orders.id = products.id",
        approved=False,
        notes="Unreviewed guess",
    ),
)

SAMPLE_SYNONYMS = (
    Synonym("client", "main.customers", weight=0.9),
    Synonym("purchase", "main.orders", weight=0.8),
    Synonym("item", "main.products", weight=0.3),
)

SAMPLE_EXAMPLES = (
    Example(
        example_id="ex_manual_premium",
        data_source_id=SAMPLE_DATA_SOURCE_ID,
        question="Show me all premium customers",
        sql="SELECT name, email FROM customers WHERE tier = 'premium'",
        quality_score=0.9,
        source=ExampleSource.MANUAL,
    ),
)

SAMPLE_NOTES = (
    Note(
        note_id="note_cancelled_orders",
        title="Cancelled orders",
        content="Exclude orders with status 'cancelled' when computing revenue.",
    ),
)

SAMPLE_ROWS = {
    "customers": [
        (1, "Acme Corp", "ops@acme.test", "2023-01-05", "premium"),
        (2, "Globex", "hello@globex.test", "2023-02-11", "standard"),
        (3, "Initech", "it@initech.test", "2023-03-20", "premium"),
        (4, "Umbrella", "info@umbrella.test", "2023-04-02", "standard"),
        (5, "Hooli", "team@hooli.test", "2023-05-17", "premium"),
        (6, "Stark Industries", "tony@stark.test", "2023-06-30", "standard"),
    ],
    "orders": [
        (1, 1, 1200.0, "2024-01-03", "shipped"),
        (2, 1, 300.0, "2024-01-15", "shipped"),
        (3, 2, 150.0, "2024-02-01", "cancelled"),
        (4, 3, 980.0, "2024-02-10", "shipped"),
        (5, 4, 75.5, "2024-02-21", "pending"),
        (6, 5, 2200.0, "2024-03-05", "shipped"),
        (7, 6, 640.0, "2024-03-09", "shipped"),
        (8, 3, 410.0, "2024-03-28", "shipped"),
    ],
    "products": [
        (1, "Widget", 9.99, "hardware", 120),
        (2, "Gadget", 24.5, "hardware", 40),
        (3, "Gizmo", 199.0, "electronics", 5),
        (4, "Doohickey", 4.25, "accessories", 300),
    ],
}


def build_sample_store(data_source_id: str = SAMPLE_DATA_SOURCE_ID) -> InMemoryContextStore:
    """Context store pre-loaded with the sample catalog and semantic layer."""
    store = InMemoryContextStore()
    store.register_data_source(
        data_source_id,
        SAMPLE_CATALOG,
        semantic_mappings=SAMPLE_SEMANTIC_MAPPINGS,
        join_policies=SAMPLE_JOIN_POLICIES,
        synonyms=SAMPLE_SYNONYMS,
        examples=[
            Example(
                example_id=example.example_id,
                data_source_id=data_source_id,
                question=example.question,
                sql=example.sql,
                quality_score=example.quality_score,
                source=example.source,
            )
            for example in SAMPLE_EXAMPLES
        ],
        notes=SAMPLE_NOTES,
    )
    return store


def create_sample_database(path: str | Path, catalog: Catalog = SAMPLE_CATALOG) -> Path:
    """Create (or replace) a SQLite database matching the sample catalog."""
    path = Path(path)
    if path.exists():
        path.unlink()
    with closing(sqlite3.connect(path)) as conn:
        for obj in catalog.objects:
            columns = ", ".join(
                f"{column.name} {column.data_type.upper()}"
                + (" PRIMARY KEY" if column.is_primary_key else "")
                for column in obj.columns
            )
            conn.execute(f"CREATE TABLE {obj.name} ({columns})")
            rows = SAMPLE_ROWS.get(obj.name, [])
            if rows:
                placeholders = ", ".join("?" for _ in obj.columns)
                conn.executemany(f"INSERT INTO {obj.name} VALUES ({placeholders})", rows)
        for index in catalog.indexes:
            table = index.object_ref.split(".")[-1]
            conn.execute(f"CREATE INDEX {index.name} ON {table} ({', '.join(index.columns)})")
        conn.commit()
    return path
