"""
Read-Only Verifiers
===================

Ensures a candidate is exactly one read-only SELECT statement.
"""

from report_pilot.models import Violation, ViolationRule
from report_pilot.verifiers.base import Verifier
from report_pilot.verifiers.parsing import ParsedQuery, word

WRITE_KEYWORDS = frozenset(
    {
        "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "REPLACE", "DROP", "CREATE",
        "ALTER", "TRUNCATE", "GRANT", "REVOKE", "RENAME", "COPY", "VACUUM", "REINDEX",
        "CLUSTER", "ATTACH", "DETACH", "PRAGMA", "CALL", "EXEC", "EXECUTE", "LOCK",
        "REFRESH", "INTO", "COMMENT", "ANALYZE", "DO", "LOAD", "IMPORT", "SET",
    }
)

# Keywords that are only writes when they start a statement.
LEADING_ONLY_KEYWORDS = frozenset({"SET", "ANALYZE", "DO", "LOAD", "IMPORT", "COMMENT", "LOCK"})


class SingleStatementVerifier(Verifier):
    """Rejects empty input and statement batches."""

    @property
    def name(self) -> str:
        return "SingleStatementVerifier"

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        if query.statement_count == 0:
            return [Violation(ViolationRule.UNPARSEABLE, "query is empty")]
        if query.statement_count > 1:
            return [
                Violation(
                    ViolationRule.MULTIPLE_STATEMENTS,
                    f"exactly one statement is allowed, found {query.statement_count}",
                )
            ]
        return []


class ReadOnlyVerifier(Verifier):
    """
    Ensures no write, DDL or administrative operation is present.

    The statement has to start with SELECT (or WITH ... SELECT), and no write
    keyword may appear anywhere in it, CTE bodies included. Keywords are
    matched on lexed tokens, so case tricks and comments between words do
    not hide them.
    """

    @property
    def name(self) -> str:
        return "ReadOnlyVerifier"

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        violations: list[Violation] = []
        if query.lexical_error:
            violations.append(Violation(ViolationRule.UNPARSEABLE, f"cannot parse query: {query.lexical_error}"))

        reported: set[str] = set()
        for statement in query.statements:
            kind = statement.kind
            if kind == "SELECT":
                pass
            elif kind in WRITE_KEYWORDS:
                reported.add(kind)
                violations.append(Violation(ViolationRule.WRITE_OPERATION, f"{kind} statements are not allowed"))
            elif kind == "UNKNOWN":
                first = statement.tokens[0].value if statement.tokens else ""
                violations.append(
                    Violation(
                        ViolationRule.UNPARSEABLE,
                        f"statement must start with SELECT or WITH, not '{first[:30]}'",
                    )
                )
            else:
                violations.append(
                    Violation(ViolationRule.DISALLOWED_CONSTRUCT, f"{kind} statements are not allowed")
                )

            for position, token in enumerate(statement.tokens):
                if id(token) in query.identifier_token_ids:
                    continue
                keyword = word(token)
                if keyword is None:
                    continue
                first_word = keyword.split()[0]
                if first_word not in WRITE_KEYWORDS or first_word in reported:
                    continue
                if first_word in LEADING_ONLY_KEYWORDS and position > 0:
                    continue
                following = statement.tokens[position + 1] if position + 1 < len(statement.tokens) else None
                if first_word == "REPLACE" and following is not None and following.value == "(":
                    continue
                reported.add(first_word)
                if first_word == "INTO":
                    message = "SELECT ... INTO writes a table and is not allowed"
                else:
                    message = f"write operation '{first_word}' is not allowed"
                violations.append(Violation(ViolationRule.WRITE_OPERATION, message))

        for clause in query.locking_clauses:
            violations.append(
                Violation(ViolationRule.DISALLOWED_CONSTRUCT, f"locking clause '{clause}' is not allowed")
            )
        return violations
