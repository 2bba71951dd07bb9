"""
Output Parsing
==============

Turns raw provider output into candidate SQL plus rationale and citations.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from report_pilot.errors import GenerationFailure

_FENCE_PATTERN = re.compile(r"```([a-zA-Z]*)[ \t]*\n?(.*?)```", re.DOTALL)
_SQL_START_PATTERN = re.compile(r"^\s*(select|with)\b", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class ParsedGeneration:
    sql: str
    rationale: str = ""
    citations: tuple[str, ...] = ()


def parse_generation(content: str) -> ParsedGeneration:
    """
    Parse a provider response.

    The expected shape is a JSON object with ``sql``, ``rationale`` and
    ``citations``. Plain or fenced SQL is accepted too, with an empty
    rationale. Raises ``GenerationFailure`` for empty or malformed output.
    """
    text = (content or "").strip()
    if not text:
        raise GenerationFailure("provider returned no content", reason=GenerationFailure.EMPTY_SQL)

    payload = _load_json_object(text)
    if payload is not None:
        sql = payload.get("sql", payload.get("query"))
        if sql is None:
            raise GenerationFailure(
                "response object has no sql field", reason=GenerationFailure.MALFORMED_OUTPUT
            )
        if not isinstance(sql, str):
            raise GenerationFailure("sql field is not a string", reason=GenerationFailure.MALFORMED_OUTPUT)
        rationale = payload.get("rationale") or payload.get("explanation") or ""
        citations = payload.get("citations") or []
        if not isinstance(citations, list):
            citations = []
        sql = extract_sql(sql)
        if not sql:
            raise GenerationFailure("sql field is empty", reason=GenerationFailure.EMPTY_SQL)
        return ParsedGeneration(
            sql=sql,
            rationale=str(rationale).strip(),
            citations=tuple(str(item) for item in citations if item),
        )

    if text.startswith("{"):
        raise GenerationFailure("response is not valid JSON", reason=GenerationFailure.MALFORMED_OUTPUT)

    sql = extract_sql(text)
    if not sql:
        raise GenerationFailure("no SQL found in response", reason=GenerationFailure.EMPTY_SQL)
    return ParsedGeneration(sql=sql)


def extract_sql(text: str) -> str:
    """Extract SQL from LLM output, handling markdown code blocks and lead-in prose."""
    sql = text.strip()
    fence = _FENCE_PATTERN.search(sql)
    if fence:
        sql = fence.group(2).strip()
    match = _SQL_START_PATTERN.search(sql)
    if match and match.start() > 0:
        sql = sql[match.start():]
    return sql.strip()


def _load_json_object(text: str) -> Optional[dict[str, Any]]:
    candidates = []
    for match in _FENCE_PATTERN.finditer(text):
        if match.group(1).lower() in ("", "json"):
            candidates.append(match.group(2).strip())
    candidates.append(text)
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        if not candidate.startswith("{"):
            continue
        try:
            loaded = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(loaded, dict):
            return loaded
    return None
