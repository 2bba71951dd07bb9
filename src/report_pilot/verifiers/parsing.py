"""
SQL Parsing
===========

Token-tree analysis of candidate SQL on top of sqlparse.

sqlparse lexes every statement into flat tokens; parenthesised runs are
folded into nested groups here and walked recursively to find table
references, CTE names, aliases, function calls and qualified column
references. A separate lexical pass checks that quotes, T-SQL ``[bracketed]``
identifiers, comments and parentheses are balanced, which sqlparse itself
never reports.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Token

from report_pilot.catalog import normalize_ref

# Words that end a FROM list or can never name a table or alias.
STRUCTURAL_WORDS = frozenset(
    {
        "SELECT", "FROM", "WHERE", "GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET",
        "UNION", "UNION ALL", "INTERSECT", "EXCEPT", "MINUS", "ON", "USING", "AS", "WITH",
        "LATERAL", "WINDOW", "FETCH", "FOR", "AND", "OR", "NOT", "IN", "EXISTS", "CASE",
        "WHEN", "THEN", "ELSE", "END", "RETURNING", "SET", "VALUES", "INTO", "NATURAL",
        "CROSS", "LEFT", "RIGHT", "FULL", "INNER", "OUTER", "QUALIFY", "TABLESAMPLE",
        "DISTINCT", "ALL", "IS", "NULL", "LIKE", "BETWEEN", "BY", "PARTITION", "OVER",
    }
)

# Callable-looking words that are syntax rather than functions.
NON_FUNCTION_WORDS = frozenset(
    {
        "exists", "in", "any", "all", "some", "values", "not", "over", "filter", "as",
        "on", "using", "and", "or", "when", "then", "else", "lateral", "row", "array",
        "within", "from", "select", "where", "join", "interval", "case", "is", "like",
        "between", "partition", "window", "into", "table",
    }
)

LOCK_STRENGTHS = frozenset({"UPDATE", "SHARE", "NO KEY UPDATE", "KEY SHARE", "NO"})

TOP_MODIFIERS = frozenset({"PERCENT", "WITH", "TIES"})

QUOTE_CLOSERS = {"'": "'", '"': '"', "`": "`", "[": "]"}


@dataclass(frozen=True)
class TableReference:
    """A table or view named in a FROM or JOIN clause."""

    name: str
    schema: Optional[str] = None
    database: Optional[str] = None
    alias: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        return ".".join(part for part in (self.database, self.schema, self.name) if part)


@dataclass(frozen=True)
class QualifiedColumn:
    """``qualifier.column`` reference, e.g. ``o.amount`` or ``main.orders.amount``."""

    qualifier: str
    column: str


@dataclass
class StatementInfo:
    """One statement's leading word and its significant tokens."""

    kind: str
    tokens: list[Token]


@dataclass
class ParsedQuery:
    """Everything the verifiers need to know about a candidate query."""

    sql: str
    normalized_sql: str
    statements: list[StatementInfo] = field(default_factory=list)
    lexical_error: Optional[str] = None
    tables: list[TableReference] = field(default_factory=list)
    aliases: dict[str, Optional[str]] = field(default_factory=dict)
    cte_names: set[str] = field(default_factory=set)
    functions: list[str] = field(default_factory=list)
    qualified_columns: list[QualifiedColumn] = field(default_factory=list)
    bare_identifiers: set[str] = field(default_factory=set)
    locking_clauses: list[str] = field(default_factory=list)
    identifier_token_ids: set[int] = field(default_factory=set)

    @property
    def statement_count(self) -> int:
        return len(self.statements)

    @property
    def kind(self) -> str:
        return self.statements[0].kind if self.statements else "UNKNOWN"

    @property
    def tokens(self) -> list[Token]:
        return [token for statement in self.statements for token in statement.tokens]


@dataclass
class _Group:
    """A parenthesised run of items."""

    children: list["_Item"]


_Item = Union[Token, _Group]


def normalize_sql(sql: str) -> str:
    """Trim whitespace and trailing semicolons; nothing else is rewritten."""
    text = (sql or "").strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def word(token: _Item) -> Optional[str]:
    """Upper-cased, whitespace-collapsed keyword text, or None for non-keywords."""
    if isinstance(token, _Group) or not token.is_keyword:
        return None
    return " ".join(token.value.upper().split())


def lexical_error(sql: str) -> Optional[str]:
    """Return a description of unbalanced quotes, comments or parentheses."""
    depth = 0
    position = 0
    length = len(sql)
    while position < length:
        char = sql[position]
        if sql.startswith("--", position):
            newline = sql.find("\n", position)
            position = length if newline < 0 else newline + 1
            continue
        if sql.startswith("/*", position):
            end = sql.find("*/", position + 2)
            if end < 0:
                return "unterminated block comment"
            position = end + 2
            continue
        # ``[name]`` only opens an identifier where a name can start, not in ``arr[1]``
        previous = sql[position - 1] if position else " "
        bracketed = char == "[" and not (previous.isalnum() or previous in "_])")
        if char in "'\"`" or bracketed:
            closer = QUOTE_CLOSERS[char]
            end = position + 1
            while True:
                end = sql.find(closer, end)
                if end < 0:
                    what = "bracketed identifier" if bracketed else "quoted text"
                    return f"unterminated {what} at position {position}"
                if sql.startswith(closer * 2, end):
                    end += 2
                    continue
                break
            position = end + 1
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return "unbalanced parentheses"
        position += 1
    if depth:
        return "unbalanced parentheses"
    return None


def parse_query(sql: str) -> ParsedQuery:
    """Parse candidate SQL into a ``ParsedQuery``. Never raises on bad input."""
    normalized = normalize_sql(sql)
    query = ParsedQuery(sql=sql, normalized_sql=normalized)
    if not normalized:
        return query

    query.lexical_error = lexical_error(normalized)
    walker = _Walker(query)
    for statement in sqlparse.parse(normalized):
        tokens = [
            token
            for token in statement.flatten()
            if not token.is_whitespace
            and token.ttype not in T.Comment
            and not token.match(T.Punctuation, ";")
        ]
        if not tokens:
            continue
        if query.lexical_error is None and any(token.ttype in T.Error for token in tokens):
            query.lexical_error = "unexpected character in query"
        tree = _build_tree(tokens)
        query.statements.append(StatementInfo(kind=walker.leading_kind(tree), tokens=tokens))
        walker.walk(tree, in_function=False)
    return query


def _build_tree(tokens: list[Token]) -> list[_Item]:
    root: list[_Item] = []
    stack = [root]
    for token in tokens:
        if token.match(T.Punctuation, "("):
            group = _Group(children=[])
            stack[-1].append(group)
            stack.append(group.children)
        elif token.match(T.Punctuation, ")"):
            if len(stack) > 1:
                stack.pop()
        else:
            stack[-1].append(token)
    return root


def _unquote(value: str) -> str:
    return normalize_ref(value)


def _is_punct(item: _Item, value: str) -> bool:
    return isinstance(item, Token) and item.match(T.Punctuation, value)


def _is_name(item: _Item) -> bool:
    """Plain or quoted identifier token."""
    if isinstance(item, _Group):
        return False
    if item.ttype in T.Name.Placeholder or item.ttype in T.Name.Builtin:
        return False
    return item.ttype in T.Name or item.ttype in T.String.Symbol


def _is_table_name(item: _Item) -> bool:
    """Identifier in a table position; keyword-named tables such as ``user`` count."""
    if isinstance(item, _Group):
        return False
    if _is_name(item) or item.ttype in T.Name.Builtin:
        return True
    keyword = word(item)
    return keyword is not None and keyword not in STRUCTURAL_WORDS and " " not in keyword


def _is_top(items: list[_Item], position: int) -> bool:
    item = items[position]
    return (
        position > 0
        and isinstance(item, Token)
        and item.value.upper() == "TOP"
        and word(items[position - 1]) in ("SELECT", "DISTINCT", "ALL")
    )


def _starts_query(group: _Group) -> bool:
    first = group.children[0] if group.children else None
    return word(first) in ("SELECT", "WITH") if first is not None else False


class _Walker:
    """Recursive walk over a statement's token tree, filling in a ``ParsedQuery``."""

    def __init__(self, query: ParsedQuery, known_functions: frozenset[str] = frozenset()) -> None:
        self.query = query
        self.known_functions = known_functions or _keyword_functions()
        # Parenthesised table expressions, e.g. ``FROM (a JOIN b ON ...)``
        self._table_groups: set[int] = set()

    def leading_kind(self, items: list[_Item]) -> str:
        if not items:
            return "UNKNOWN"
        first = items[0]
        if isinstance(first, _Group):
            return self.leading_kind(first.children)
        keyword = word(first)
        if keyword is None:
            return "UNKNOWN"
        if first.ttype in T.Keyword.CTE:
            position = self._skip_ctes(items, 1, record=False)
            following = items[position] if position < len(items) else None
            return (word(following) or "UNKNOWN") if following is not None else "UNKNOWN"
        return keyword.split()[0] if keyword.startswith("CREATE") else keyword

    def walk(self, items: list[_Item], in_function: bool, table_list: bool = False) -> None:
        consumed: set[int] = set()
        if table_list:
            self._read_tables(items, 0, consumed, allow_list=True)
        position = 0
        while position < len(items):
            item = items[position]
            if isinstance(item, _Group):
                self.walk(
                    item.children,
                    in_function=self._group_is_function(items, position),
                    table_list=id(item) in self._table_groups,
                )
                position += 1
                continue
            if id(item) in consumed:
                position += 1
                continue

            keyword = word(item)
            if item.ttype in T.Keyword.CTE:
                self._skip_ctes(items, position + 1, record=True, consumed=consumed)
            elif keyword == "FROM" and not in_function:
                self._read_tables(items, position + 1, consumed, allow_list=True)
            elif keyword is not None and keyword.endswith("JOIN"):
                self._read_tables(items, position + 1, consumed, allow_list=False)
            elif keyword == "TABLE":
                # ``TABLE name`` is shorthand for ``SELECT * FROM name``
                self._read_tables(items, position + 1, consumed, allow_list=False)
            elif _is_top(items, position):
                position = self._read_top(items, position, consumed)
                continue
            elif keyword == "AS":
                following = items[position + 1] if position + 1 < len(items) else None
                if following is not None and _is_table_name(following):
                    self._consume(following, consumed)
            elif keyword == "FOR":
                self._read_lock(items, position + 1, consumed)
            elif _is_name(item) or self._is_keyword_call(items, position):
                position = self._read_reference(items, position, consumed)
                continue
            position += 1

    # -- clauses --------------------------------------------------------------

    def _skip_ctes(
        self,
        items: list[_Item],
        position: int,
        record: bool,
        consumed: Optional[set[int]] = None,
    ) -> int:
        """Step over ``[RECURSIVE] name [(cols)] AS [NOT] [MATERIALIZED] (body), ...``."""
        if position < len(items) and word(items[position]) == "RECURSIVE":
            position += 1
        while position < len(items):
            name = items[position]
            if not _is_table_name(name):
                break
            if record:
                self.query.cte_names.add(_unquote(name.value))
                self._consume(name, consumed)
            position += 1
            if position < len(items) and isinstance(items[position], _Group):
                position += 1
            if position < len(items) and word(items[position]) == "AS":
                position += 1
            while position < len(items) and word(items[position]) in ("NOT", "MATERIALIZED"):
                position += 1
            if position < len(items) and isinstance(items[position], _Group):
                position += 1
            if position < len(items) and _is_punct(items[position], ","):
                position += 1
                continue
            break
        return position

    def _read_tables(self, items: list[_Item], position: int, consumed: set[int], allow_list: bool) -> None:
        while position < len(items):
            item = items[position]
            if word(item) in ("LATERAL", "ONLY"):
                position += 1
                continue
            if isinstance(item, _Group):
                if not _starts_query(item):
                    self._table_groups.add(id(item))
                position += 1
                position, alias = self._read_alias(items, position, consumed)
                if alias:
                    self.query.aliases[alias] = None
            elif _is_table_name(item):
                parts, position = self._read_chain(items, position, consumed)
                if position < len(items) and isinstance(items[position], _Group):
                    # table-valued function, e.g. generate_series(1, 10)
                    self._add_function(".".join(parts))
                    position += 1
                    position, alias = self._read_alias(items, position, consumed)
                    if alias:
                        self.query.aliases[alias] = None
                else:
                    table = _table_reference(parts)
                    position, alias = self._read_alias(items, position, consumed)
                    self.query.tables.append(
                        TableReference(table.name, table.schema, table.database, alias)
                    )
                    self.query.aliases.setdefault(table.name, table.qualified_name)
                    self.query.aliases[table.qualified_name] = table.qualified_name
                    if alias:
                        self.query.aliases[alias] = table.qualified_name
            else:
                break
            if allow_list and position < len(items) and _is_punct(items[position], ","):
                position += 1
                continue
            break

    def _read_alias(self, items: list[_Item], position: int, consumed: set[int]) -> tuple[int, Optional[str]]:
        if position < len(items) and word(items[position]) == "AS":
            position += 1
            if position < len(items) and _is_table_name(items[position]):
                self._consume(items[position], consumed)
                return position + 1, _unquote(items[position].value)
            return position, None
        if position < len(items) and _is_name(items[position]):
            self._consume(items[position], consumed)
            return position + 1, _unquote(items[position].value)
        return position, None

    def _read_lock(self, items: list[_Item], position: int, consumed: set[int]) -> None:
        strength = []
        while position < len(items) and word(items[position]) in LOCK_STRENGTHS | {"KEY"}:
            strength.append(word(items[position]))
            self._consume(items[position], consumed)
            position += 1
        if strength:
            self.query.locking_clauses.append("FOR " + " ".join(strength))

    def _read_top(self, items: list[_Item], position: int, consumed: set[int]) -> int:
        """Step over T-SQL ``TOP n [PERCENT] [WITH TIES]``; a ``TOP (expr)`` count is walked."""
        self._consume(items[position], consumed)
        position += 1
        if position < len(items) and isinstance(items[position], _Group):
            self.walk(items[position].children, in_function=False)
            position += 1
        elif position < len(items) and items[position].ttype in T.Number:
            position += 1
        while (
            position < len(items)
            and isinstance(items[position], Token)
            and items[position].value.upper() in TOP_MODIFIERS
        ):
            self._consume(items[position], consumed)
            position += 1
        return position

    def _read_reference(self, items: list[_Item], position: int, consumed: set[int]) -> int:
        parts, end = self._read_chain(items, position, consumed)
        if end < len(items) and isinstance(items[end], _Group):
            name = ".".join(parts)
            if parts[-1] not in NON_FUNCTION_WORDS:
                self._add_function(name)
        elif len(parts) >= 2 and parts[-1] != "*":
            self.query.qualified_columns.append(
                QualifiedColumn(qualifier=".".join(parts[:-1]), column=parts[-1])
            )
        elif len(parts) == 1 and _is_name(items[position]):
            self.query.bare_identifiers.add(parts[0])
        return end

    # -- helpers --------------------------------------------------------------

    def _read_chain(self, items: list[_Item], position: int, consumed: set[int]) -> tuple[list[str], int]:
        first = items[position]
        parts = [_unquote(first.value)]
        self._consume(first, consumed)
        position += 1
        while (
            position + 1 < len(items)
            and _is_punct(items[position], ".")
            and isinstance(items[position + 1], Token)
            and (
                _is_table_name(items[position + 1])
                or items[position + 1].is_keyword
                or items[position + 1].ttype in T.Wildcard
            )
        ):
            part = items[position + 1]
            parts.append("*" if part.ttype in T.Wildcard else _unquote(part.value))
            self._consume(part, consumed)
            position += 2
        return parts, position

    def _is_keyword_call(self, items: list[_Item], position: int) -> bool:
        keyword = word(items[position])
        return (
            keyword is not None
            and keyword.lower() in self.known_functions
            and position + 1 < len(items)
            and isinstance(items[position + 1], _Group)
        )

    def _group_is_function(self, items: list[_Item], position: int) -> bool:
        group = items[position]
        if position == 0 or _starts_query(group):
            return False
        previous = items[position - 1]
        if isinstance(previous, _Group):
            return False
        if _is_name(previous):
            return _unquote(previous.value) not in NON_FUNCTION_WORDS
        keyword = word(previous)
        return keyword is not None and keyword.lower() in self.known_functions

    def _add_function(self, name: str) -> None:
        if name not in self.query.functions:
            self.query.functions.append(name)

    def _consume(self, token: Token, consumed: Optional[set[int]]) -> None:
        if consumed is not None:
            consumed.add(id(token))
        self.query.identifier_token_ids.add(id(token))


def _table_reference(parts: list[str]) -> TableReference:
    if len(parts) == 1:
        return TableReference(name=parts[0])
    if len(parts) == 2:
        return TableReference(name=parts[1], schema=parts[0])
    return TableReference(name=parts[-1], schema=parts[-2], database=".".join(parts[:-2]))


def _keyword_functions() -> frozenset[str]:
    # Local import: the allow-lists live with the function verifier.
    from report_pilot.verifiers.functions import ALL_KNOWN_FUNCTIONS

    return ALL_KNOWN_FUNCTIONS
