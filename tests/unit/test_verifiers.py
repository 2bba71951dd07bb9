"""
Unit Tests for Verifiers
========================

Tests for SQL parsing, each verifier in the verification chain and the
validator that combines them.
"""

import pytest

from report_pilot.catalog import Catalog, Note
from report_pilot.llm.prompts import build_system_prompt
from report_pilot.models import ValidationOutcome, ViolationRule
from report_pilot.verifiers import ColumnPolicyVerifier, SqlValidator, forbidden_columns, parse_query
from report_pilot.verifiers.base import VerificationChain
from report_pilot.verifiers.read_only import ReadOnlyVerifier, SingleStatementVerifier


class TestParsing:
    """Tests for the token-tree walk over candidate SQL."""

    def test_tables_and_aliases(self) -> None:
        """Test that FROM and JOIN tables are found with their aliases."""
        query = parse_query(
            "SELECT c.name, o.amount FROM customers c JOIN orders AS o ON o.customer_id = c.id"
        )
        assert [table.name for table in query.tables] == ["customers", "orders"]
        assert query.aliases["c"] == "customers"
        assert query.aliases["o"] == "orders"

    def test_cte_names_are_recorded(self) -> None:
        """Test that CTE names are tracked separately from tables."""
        query = parse_query(
            "WITH big AS (SELECT customer_id FROM orders) SELECT * FROM big"
        )
        assert query.cte_names == {"big"}
        assert query.kind == "SELECT"

    def test_function_calls(self) -> None:
        """Test that function calls are collected, including keyword-named ones."""
        query = parse_query("SELECT COUNT(*), lower(name) FROM customers")
        assert "count" in query.functions
        assert "lower" in query.functions

    def test_trailing_semicolons_are_stripped(self) -> None:
        """Test that normalization drops trailing semicolons only."""
        query = parse_query("  SELECT 1 ;; ")
        assert query.normalized_sql == "SELECT 1"
        assert query.statement_count == 1

    def test_unbalanced_quote_is_a_lexical_error(self) -> None:
        """Test that an unterminated string is reported."""
        query = parse_query("SELECT * FROM customers WHERE name = 'test")
        assert query.lexical_error is not None


class TestReadOnlyVerifier:
    """Tests for the read-only and single-statement rules."""

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM customers",
            "UPDATE customers SET tier = 'premium'",
            "INSERT INTO orders (id) VALUES (99)",
            "DROP TABLE customers",
            "TRUNCATE orders",
            "ALTER TABLE customers ADD COLUMN score INTEGER",
        ],
    )
    def test_write_statements_rejected(self, validator: SqlValidator, catalog: Catalog, sql: str) -> None:
        """Test that DML and DDL statements are rejected."""
        result = validator.validate(sql, catalog)
        assert not result.is_valid
        assert "write_operation" in result.rules

    def test_drop_reports_only_write_rule(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a DROP is reported once, as a write operation."""
        result = validator.validate("DROP TABLE customers;", catalog, dialect="sqlite")
        assert result.rules == ["write_operation"]

    def test_select_into_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that SELECT ... INTO is treated as a write."""
        result = validator.validate("SELECT * INTO backup FROM customers", catalog)
        assert "write_operation" in result.rules

    def test_write_inside_cte_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a data-modifying CTE cannot hide behind a SELECT."""
        result = validator.validate(
            "WITH gone AS (DELETE FROM orders RETURNING *) SELECT * FROM gone", catalog
        )
        assert "write_operation" in result.rules

    def test_mixed_case_write_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that keyword casing does not matter."""
        result = validator.validate("dElEtE FROM orders", catalog)
        assert "write_operation" in result.rules

    def test_multiple_statements_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that statement batches are rejected and the write is still reported."""
        result = validator.validate("SELECT 1; DROP TABLE customers", catalog)
        assert "multiple_statements" in result.rules
        assert "write_operation" in result.rules
        assert "found 2" in result.summary()

    def test_empty_query_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that blank input is unparseable."""
        result = validator.validate("   ", catalog)
        assert result.rules == ["unparseable"]
        assert result.summary() == "query is empty"

    def test_locking_clause_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that FOR UPDATE is a disallowed construct, not a write."""
        result = validator.validate("SELECT * FROM customers FOR UPDATE", catalog)
        assert result.rules == ["disallowed_construct"]
        assert "FOR UPDATE" in result.summary()

    def test_unterminated_string_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that lexically broken SQL is unparseable."""
        result = validator.validate("SELECT * FROM customers WHERE name = 'test", catalog)
        assert "unparseable" in result.rules

    def test_verifiers_can_run_alone(self, catalog: Catalog) -> None:
        """Test a custom chain with only the statement rules."""
        chain = VerificationChain([SingleStatementVerifier(), ReadOnlyVerifier()])
        result = SqlValidator(chain).validate("SELECT * FROM invoices", catalog)
        assert result.is_valid


class TestObjectAllowlistVerifier:
    """Tests for catalog object and column checks."""

    def test_known_table_passes(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a catalog table validates and is referenced."""
        result = validator.validate("SELECT name, email FROM customers WHERE tier = 'premium'", catalog)
        assert result.outcome is ValidationOutcome.VALID
        assert result.referenced_objects == {"main.customers"}
        assert "main.customers.tier" in result.referenced_columns

    def test_schema_qualified_table_passes(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that schema-qualified names resolve."""
        result = validator.validate("SELECT * FROM main.orders", catalog)
        assert result.is_valid
        assert result.referenced_objects == {"main.orders"}

    def test_join_with_aliases(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that aliased joins resolve both tables and their columns."""
        result = validator.validate(
            "SELECT c.name, SUM(o.amount) AS revenue FROM customers c "
            "JOIN orders o ON o.customer_id = c.id GROUP BY c.name",
            catalog,
        )
        assert result.is_valid
        assert result.referenced_objects == {"main.customers", "main.orders"}
        assert "main.orders.amount" in result.referenced_columns
        assert result.referenced_functions == {"sum"}

    def test_cte_reference_passes(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that CTE names are not mistaken for unknown tables."""
        result = validator.validate(
            "WITH big AS (SELECT customer_id, SUM(amount) AS total FROM orders GROUP BY customer_id) "
            "SELECT c.name, big.total FROM big JOIN customers c ON c.id = big.customer_id",
            catalog,
        )
        assert result.is_valid

    def test_unknown_table_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that tables outside the catalog are rejected."""
        result = validator.validate("SELECT * FROM invoices", catalog)
        assert result.rules == ["disallowed_object"]
        assert "unknown table or view 'invoices'" in result.summary()

    def test_unknown_qualified_column_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that alias-qualified columns are checked against the catalog."""
        result = validator.validate("SELECT c.salary FROM customers c", catalog)
        assert result.rules == ["disallowed_object"]
        assert "unknown column 'salary' on 'main.customers'" in result.summary()

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM pg_catalog.pg_tables",
            "SELECT * FROM information_schema.columns",
            "SELECT name FROM sqlite_master",
        ],
    )
    def test_system_catalogs_rejected(self, validator: SqlValidator, catalog: Catalog, sql: str) -> None:
        """Test that system catalogs are never readable."""
        result = validator.validate(sql, catalog)
        assert "disallowed_object" in result.rules
        assert "system catalog" in result.summary()

    @pytest.mark.parametrize(
        "sql, message",
        [
            (
                "SELECT * FROM (pg_catalog.pg_authid a CROSS JOIN customers c)",
                "system catalog 'pg_catalog.pg_authid'",
            ),
            (
                "SELECT * FROM customers JOIN (pg_shadow s JOIN orders o ON true) ON true",
                "system catalog 'pg_shadow'",
            ),
            (
                "SELECT c.* FROM customers c WHERE c.id IN (TABLE secret)",
                "unknown table or view 'secret'",
            ),
        ],
    )
    def test_tables_inside_parenthesised_joins_are_checked(
        self, validator: SqlValidator, catalog: Catalog, sql: str, message: str
    ) -> None:
        """Test that nested join groups and TABLE shorthand cannot hide objects."""
        result = validator.validate(sql, catalog, dialect="postgres")
        assert result.outcome is ValidationOutcome.REJECTED
        assert "disallowed_object" in result.rules
        assert message in result.summary()

    def test_parenthesised_join_of_catalog_tables_passes(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a bracketed join still resolves its tables and aliases."""
        result = validator.validate(
            "SELECT c.name, o.amount FROM (customers c JOIN orders o ON o.customer_id = c.id)",
            catalog,
            dialect="postgres",
        )
        assert result.is_valid
        assert result.referenced_objects == {"main.customers", "main.orders"}
        assert "main.orders.amount" in result.referenced_columns

    def test_cross_database_reference_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that three-part names are rejected."""
        result = validator.validate("SELECT * FROM warehouse.main.customers", catalog)
        assert "cross-database reference" in result.summary()

    def test_empty_catalog_rejects_everything(self, validator: SqlValidator) -> None:
        """Test that an empty catalog allows no table at all."""
        result = validator.validate("SELECT * FROM customers", Catalog())
        assert result.rules == ["disallowed_object"]


class TestFunctionAllowlistVerifier:
    """Tests for the per-dialect function allow-lists."""

    def test_denied_function_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that sleep functions are never allowed."""
        result = validator.validate("SELECT pg_sleep(10)", catalog)
        assert result.rules == ["disallowed_function"]
        assert "function 'pg_sleep' is never allowed" in result.summary()

    def test_function_allowed_on_one_dialect_only(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that md5 is a postgres function but not a sqlite one."""
        sql = "SELECT md5(email) FROM customers"
        assert validator.validate(sql, catalog, dialect="postgres").is_valid
        rejected = validator.validate(sql, catalog, dialect="sqlite")
        assert rejected.rules == ["disallowed_function"]
        assert "is not on the allow-list" in rejected.summary()

    def test_sqlite_date_function(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that strftime is allowed for sqlite and rejected for postgres."""
        sql = "SELECT strftime('%Y', created_at) AS signup_year FROM customers"
        assert validator.validate(sql, catalog, dialect="sqlite").is_valid
        assert not validator.validate(sql, catalog, dialect="postgres").is_valid


class TestTransactSQL:
    """Tests for SQL Server syntax: TOP, bracketed identifiers and its functions."""

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT TOP 5 name FROM customers ORDER BY created_at DESC",
            "SELECT TOP (5) name FROM customers ORDER BY created_at DESC",
            "SELECT DISTINCT TOP 10 PERCENT WITH TIES tier FROM customers ORDER BY tier",
        ],
    )
    def test_top_is_neither_a_function_nor_a_column(
        self, validator: SqlValidator, catalog: Catalog, sql: str
    ) -> None:
        """Test that the row limit clause passes on mssql."""
        query = parse_query(sql)
        assert query.functions == []
        assert not {"top", "percent", "ties"} & query.bare_identifiers
        assert query.cte_names == set()
        assert validator.validate(sql, catalog, dialect="mssql").is_valid

    def test_bracketed_identifiers(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that [schema].[table] and [alias].[column] resolve against the catalog."""
        sql = "SELECT [c].[name] FROM [main].[customers] AS [c] WHERE [c].[tier] = 'premium'"
        query = parse_query(sql)
        assert [(t.schema, t.name, t.alias) for t in query.tables] == [("main", "customers", "c")]
        assert validator.validate(sql, catalog, dialect="mssql").referenced_columns == {
            "main.customers.name",
            "main.customers.tier",
        }

    def test_bracketed_unknown_column_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that bracket quoting does not hide an unknown column."""
        result = validator.validate("SELECT [c].[ssn] FROM [customers] [c]", catalog, dialect="mssql")
        assert result.rules == ["disallowed_object"]

    def test_lexical_check_understands_brackets(self) -> None:
        """Test that quotes inside brackets are ignored and an open bracket is reported."""
        assert parse_query("SELECT [O'Brien] FROM customers").lexical_error is None
        assert parse_query("SELECT tags[1] FROM customers").lexical_error is None
        assert parse_query("SELECT [name FROM customers").lexical_error == (
            "unterminated bracketed identifier at position 7"
        )

    def test_mssql_functions(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that DATEPART and ISNULL are SQL Server functions only."""
        sql = "SELECT DATEPART(year, created_at) AS signup_year, ISNULL(tier, 'standard') FROM customers"
        assert validator.validate(sql, catalog, dialect="mssql").is_valid
        assert validator.validate(sql, catalog, dialect="postgres").rules == ["disallowed_function"]

    def test_mssql_prompt_asks_for_top(self) -> None:
        """Test that the system prompt swaps LIMIT for TOP on SQL Server."""
        assert "SELECT TOP n" in build_system_prompt("mssql")
        assert "LIMIT" in build_system_prompt("postgres")


class TestColumnPolicyVerifier:
    """Tests for columns forbidden by steward notes."""

    NOTES = [
        Note(note_id="n1", title="PII", content="Do not use customers.email; use the CRM export instead."),
        Note(note_id="n2", title="Pricing", content="products.price is the list price, not the paid amount."),
    ]

    def test_forbidden_columns_come_from_forbidding_notes(self, catalog: Catalog) -> None:
        """Test that only notes with forbidding wording contribute columns."""
        assert forbidden_columns(self.NOTES, catalog) == {"main.customers.email"}

    def test_schema_qualified_and_unknown_refs(self, catalog: Catalog) -> None:
        """Test that three-part refs resolve and refs outside the catalog are ignored."""
        notes = [Note(note_id="n", title="Restricted", content="Never use main.orders.status or ledger.secret.")]
        assert forbidden_columns(notes, catalog) == {"main.orders.status"}

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT email FROM customers",
            "SELECT customers.email FROM customers",
            "SELECT main.customers.email FROM main.customers",
            "SELECT c.name FROM customers c JOIN orders o ON o.customer_id = c.id WHERE c.email LIKE '%@x.com'",
        ],
    )
    def test_forbidden_column_rejected(self, validator: SqlValidator, catalog: Catalog, sql: str) -> None:
        """Test that the column is caught bare, table-qualified, schema-qualified and through an alias."""
        result = validator.validate(sql, catalog, "sqlite", self.NOTES)
        assert result.outcome is ValidationOutcome.REJECTED
        assert result.rules == ["forbidden_column"]
        assert result.violations[0].message == "Forbidden column referenced: main.customers.email"

    def test_allowed_columns_pass(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that other columns of the same table are untouched."""
        result = validator.validate("SELECT name, tier FROM customers", catalog, "sqlite", self.NOTES)
        assert result.is_valid

    def test_bare_column_in_a_join_is_not_attributed(self, catalog: Catalog) -> None:
        """Test that a bare name is only checked when one object is read."""
        notes = [Note(note_id="n", title="Ids", content="Avoid orders.id in exports.")]
        query = parse_query("SELECT name FROM customers c JOIN orders o ON o.customer_id = c.id WHERE id > 1")
        assert ColumnPolicyVerifier().verify(query, {"catalog": catalog, "notes": notes}) == []

    def test_without_notes_nothing_is_forbidden(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that the default chain passes the column when no note forbids it."""
        assert validator.validate("SELECT email FROM customers", catalog, "sqlite").is_valid


class TestSQLiteSyntaxVerifier:
    """Tests for the SQLite parser check."""

    def test_valid_sqlite_query(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a valid query passes the SQLite parser."""
        result = validator.validate(
            "SELECT c.name, COUNT(o.id) AS order_count FROM customers c "
            "LEFT JOIN orders o ON o.customer_id = c.id GROUP BY c.name",
            catalog,
            dialect="sqlite",
        )
        assert result.is_valid

    def test_incomplete_query_rejected(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that SQLite reports incomplete input."""
        result = validator.validate("SELECT name FROM customers WHERE", catalog, dialect="sqlite")
        assert result.rules == ["unparseable"]
        assert result.summary().startswith("SQL syntax error")

    def test_skipped_for_other_dialects(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that the SQLite check only applies to sqlite sources."""
        result = validator.validate("SELECT name FROM customers WHERE", catalog, dialect="postgres")
        assert result.is_valid

    def test_skipped_after_other_violations(self, validator: SqlValidator, catalog: Catalog) -> None:
        """Test that a rejected query is not also sent to SQLite."""
        result = validator.validate("SELECT * FROM invoices WHERE", catalog, dialect="sqlite")
        assert all(v.rule is ViolationRule.DISALLOWED_OBJECT for v in result.violations)
