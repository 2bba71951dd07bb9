"""
Prompts
=======

System and user prompt construction for SQL generation.
"""

from typing import Sequence

from report_pilot.context import PromptContext

PROMPT_VERSION = "v3-structured"
QUESTION_MARKER = "User question:"

SYSTEM_PROMPT_TEMPLATE = """You are a SQL query generator for a read-only analytics assistant.
Write one {dialect} query that answers the user's question using only the
objects in the provided context.

Rules:
- Generate exactly one SELECT (or WITH ... SELECT) statement; never modify data or schema
- Use only the tables, columns and functions listed in the context
- Join tables only along the approved join policies and relationships
- Use aggregation functions (COUNT, SUM, AVG) when quantities are requested
{dialect_rules}
- Prefer explicit column lists over SELECT *

Respond with a JSON object only:
{{"sql": "<the query>", "rationale": "<one or two sentences>", "citations": ["<schema.object>"]}}"""

DEFAULT_DIALECT_RULES = '- Add ORDER BY and LIMIT when ranking or "top N" is requested'

DIALECT_RULES = {
    "mssql": (
        '- SQL Server has no LIMIT: use SELECT TOP n with ORDER BY when ranking or "top N" is requested\n'
        "- Quote identifiers that need it with [square brackets]"
    ),
}

CORRECTION_HEADER = "Previous attempts failed. Fix these problems in the new query:"


def build_system_prompt(dialect: str) -> str:
    rules = DIALECT_RULES.get(dialect, DEFAULT_DIALECT_RULES)
    return SYSTEM_PROMPT_TEMPLATE.format(dialect=dialect, dialect_rules=rules)


def build_user_prompt(context: PromptContext, hints: Sequence[str] = ()) -> str:
    """Rendered context, then correction hints, then the question last."""
    parts = [context.render()]
    if hints:
        parts.append(CORRECTION_HEADER + "\n" + "\n".join(f"- {hint}" for hint in hints))
    parts.append(f"{QUESTION_MARKER} {context.question}")
    return "\n\n".join(parts)


def rejection_hint(sql: str, summary: str) -> str:
    return f"The query `{_one_line(sql)}` was rejected: {summary}"


def transient_failure_hint(sql: str) -> str:
    return (
        f"The query `{_one_line(sql)}` kept failing on the database; "
        "write a simpler query that touches fewer rows"
    )


def _one_line(sql: str, limit: int = 300) -> str:
    text = " ".join(sql.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
