import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from app.core.schemas import GuardVerdict, SchemaDescriptor
from app.ai_feature.errors import GuardRejected


# -----------------------------------------------------------------------------
# GUARD MODULE - Static validation of candidate SQL
# Purpose: Turn untrusted generated SQL into either one bounded, read-only,
# allow-listed SELECT or a rejection. Nothing reaches the database otherwise.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<line_comment>--[^\n]*)
  | (?P<block_comment>/\*.*?\*/)
  | (?P<open_comment>/\*)
  | (?P<dollar>\$(?:[^\W\d]\w*)?\$)
  | (?P<estring>[Ee]'(?:[^'\\]|\\.|'')*')
  | (?P<string>[BbXxNn]?'(?:[^']|'')*')
  | (?P<quoted>"(?:[^"]|"")*")
  | (?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[Ee][+-]?\d+)?)
  | (?P<word>[^\W\d][\w$]*)
  | (?P<param>\$\d+)
  | (?P<punct>[(),;.])
  | (?P<op>::|<>|!=|>=|<=|\|\||->>|->|\#>>|\#>|@>|<@|[-+*/%<>=~!@\#^&|?:\[\]])
  | (?P<bad>.)
    """,
    re.VERBOSE | re.DOTALL,
)

# Data/schema changing or session altering keywords, matched as whole unquoted words
FORBIDDEN_KEYWORDS = {
    "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "DROP", "ALTER", "CREATE",
    "TRUNCATE", "RENAME", "GRANT", "REVOKE", "EXECUTE", "EXEC", "CALL", "DO",
    "COPY", "INTO", "TABLE", "LOCK", "SET", "RESET", "VACUUM", "ANALYZE",
    "ANALYSE", "EXPLAIN", "CLUSTER", "REINDEX", "REFRESH", "ATTACH", "DETACH",
    "PRAGMA", "BEGIN", "COMMIT", "ROLLBACK", "SAVEPOINT", "PREPARE", "DEALLOCATE",
    "LISTEN", "NOTIFY", "UNLISTEN", "DISCARD", "CHECKPOINT",
}

# Functions with side effects or that reach outside the allow-listed tables
FORBIDDEN_FUNCTIONS = {
    "set_config", "current_setting", "nextval", "setval", "dblink", "dblink_exec",
    "query_to_xml", "query_to_xml_and_xmlschema", "query_to_xmlschema",
    "table_to_xml", "table_to_xml_and_xmlschema", "table_to_xmlschema",
    "cursor_to_xml", "cursor_to_xmlschema", "database_to_xml", "schema_to_xml",
    "load_extension", "readfile", "writefile", "fts3_tokenizer",
}
FORBIDDEN_PREFIXES = ("pg_", "lo_", "sqlite_", "pragma_", "dblink")

# Set returning functions allowed in FROM
TABLE_FUNCTIONS = {"generate_series", "unnest"}

# Words that may sit right before "(" without being a function name
NON_FUNCTION_WORDS = {
    "FROM", "JOIN", "IN", "EXISTS", "AS", "ANY", "ALL", "SOME", "LATERAL", "ON",
    "WHERE", "AND", "OR", "NOT", "SELECT", "UNION", "INTERSECT", "EXCEPT", "THEN",
    "ELSE", "WHEN", "BY", "HAVING", "USING", "DISTINCT", "CASE", "WITH",
    "MATERIALIZED", "VALUES", "IS", "LIKE", "ILIKE", "BETWEEN", "RECURSIVE",
}

# Words that cannot be a table alias
CLAUSE_WORDS = {
    "WHERE", "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "NATURAL", "OUTER",
    "ON", "USING", "GROUP", "ORDER", "LIMIT", "OFFSET", "HAVING", "UNION",
    "INTERSECT", "EXCEPT", "WINDOW", "FETCH", "FOR", "RETURNING", "TABLESAMPLE",
}

# Words that cannot start a FROM item
NOT_A_TABLE = CLAUSE_WORDS | {"SELECT", "FROM", "AS", "WITH", "VALUES"}

SUBQUERY_STARTS = {"SELECT", "WITH", "VALUES"}

# Words that close a FROM list; JOIN conditions keep it open for ", next_table"
FROM_TERMINATORS = {
    "WHERE", "GROUP", "ORDER", "LIMIT", "OFFSET", "HAVING", "UNION", "INTERSECT",
    "EXCEPT", "WINDOW", "FETCH", "FOR", "RETURNING", "SELECT",
}

_FROM_ITEM_PREFIXES = {"LATERAL", "ONLY"}


@dataclass
class Token:
    kind: str
    text: str
    start: int
    end: int

    @property
    def upper(self) -> str:
        return self.text.upper()

    @property
    def is_name(self) -> bool:
        return self.kind in ("word", "quoted")

    @property
    def name(self) -> str:
        """Identifier as the engine resolves it: unquoted folds to lower case."""
        if self.kind == "quoted":
            return self.text[1:-1].replace('""', '"')
        return self.text.lower()

    def is_word(self, *words: str) -> bool:
        return self.kind == "word" and self.upper in words


@dataclass
class _Level:
    kind: str
    in_from: bool = False


@dataclass
class _Scan:
    # (position of the first name token, dotted name parts)
    table_refs: List[Tuple[int, List[Token]]] = field(default_factory=list)
    # table name (as referenced) -> aliases
    aliases: Dict[str, Set[str]] = field(default_factory=dict)
    # token positions consumed as FROM item names or aliases
    item_positions: Set[int] = field(default_factory=set)
    top_level_limits: List[int] = field(default_factory=list)


def tokenize(sql: str) -> List[Token]:
    """
    Split SQL into significant tokens. Comments and whitespace are dropped,
    literals and quoted identifiers stay opaque.
    """
    tokens: List[Token] = []
    for m in _TOKEN_RE.finditer(sql):
        kind = m.lastgroup
        text = m.group()
        if kind in ("ws", "line_comment", "block_comment"):
            continue
        if kind == "open_comment":
            raise GuardRejected("Unterminated comment")
        if kind == "dollar":
            raise GuardRejected("Dollar-quoted literals are not allowed")
        if kind == "string" and "\\" in text:
            raise GuardRejected("Backslashes in string literals are not allowed")
        if kind == "bad":
            if text in ("'", '"'):
                raise GuardRejected("Unterminated quoted literal")
            raise GuardRejected(f"Unexpected character {text!r}")
        if kind == "estring":
            kind = "string"
        tokens.append(Token(kind, text, m.start(), m.end()))
    return tokens


def _match_parens(tokens: List[Token]) -> Dict[int, int]:
    matches: Dict[int, int] = {}
    stack: List[int] = []
    for i, tok in enumerate(tokens):
        if tok.text == "(" and tok.kind == "punct":
            stack.append(i)
        elif tok.text == ")" and tok.kind == "punct":
            if not stack:
                raise GuardRejected("Unbalanced parentheses")
            matches[stack.pop()] = i
    if stack:
        raise GuardRejected("Unbalanced parentheses")
    return matches


def render(tokens: List[Token]) -> str:
    """Single-spaced text: one space wherever the source had whitespace or a comment."""
    parts: List[str] = []
    previous: Optional[Token] = None
    for tok in tokens:
        if previous is not None and tok.start > previous.end:
            parts.append(" ")
        parts.append(tok.text)
        previous = tok
    return "".join(parts)


class SqlGuard:
    """
    Static gate in front of the query executor.

    check() is terminal: Pending -> Approved or Rejected, no retries. Rules are
    evaluated on a token stream so casing, spacing and comments do not matter.
    """

    def __init__(self, max_rows: int = 100, max_length: int = 8000):
        self.max_rows = max_rows
        self.max_length = max_length

    @property
    def row_bound(self) -> int:
        # One row past the cap so the executor can tell whether it truncated
        return self.max_rows + 1

    def check(self, sql_text: str, schema: SchemaDescriptor) -> GuardVerdict:
        try:
            normalized, tables = self._validate(sql_text or "", schema)
        except GuardRejected as e:
            logger.warning(f"SQL rejected: {e.reason} | sql={sql_text!r}")
            return GuardVerdict(approved=False, rejection_reason=e.reason)

        return GuardVerdict(
            approved=True, normalized_sql=normalized, referenced_tables=tables
        )

    # ------------------------------------------------------------------ rules

    def _validate(self, sql: str, schema: SchemaDescriptor) -> Tuple[str, List[str]]:
        if not sql.strip():
            raise GuardRejected("Empty statement")
        if len(sql) > self.max_length:
            raise GuardRejected("Statement is too long")

        tokens = tokenize(sql)
        tokens = self._single_statement(tokens)
        matches = _match_parens(tokens)
        self._check_leading_keyword(tokens)
        self._check_keywords(tokens)

        ctes = self._cte_scopes(tokens, matches)
        scan = self._scan(tokens)
        tables = self._check_tables(scan, ctes, schema)
        self._check_hidden_columns(tokens, scan, tables, schema)
        tokens, needs_limit = self._bound_rows(tokens, scan)

        normalized = render(tokens)
        if needs_limit:
            normalized = f"{normalized} LIMIT {self.row_bound}"
        return normalized, sorted(tables)

    def _single_statement(self, tokens: List[Token]) -> List[Token]:
        separators = [i for i, t in enumerate(tokens) if t.text == ";" and t.kind == "punct"]
        if not separators:
            return tokens
        if len(separators) > 1 or separators[0] != len(tokens) - 1:
            raise GuardRejected("Multiple statements are not allowed")
        tokens = tokens[:-1]
        if not tokens:
            raise GuardRejected("Empty statement")
        return tokens

    def _check_leading_keyword(self, tokens: List[Token]) -> None:
        for tok in tokens:
            if tok.text == "(" and tok.kind == "punct":
                continue
            if tok.is_word("SELECT", "WITH"):
                return
            break
        raise GuardRejected("Only SELECT statements are allowed")

    def _check_keywords(self, tokens: List[Token]) -> None:
        for i, tok in enumerate(tokens):
            if tok.kind == "word" and tok.upper in FORBIDDEN_KEYWORDS:
                raise GuardRejected(f"Forbidden keyword: {tok.upper}")
            if tok.is_word("FOR") and i + 1 < len(tokens):
                if tokens[i + 1].is_word("SHARE", "KEY", "NO", "UPDATE"):
                    raise GuardRejected("Row-locking clauses are not allowed")
            if tok.is_name:
                name = tok.name.lower()
                if name in FORBIDDEN_FUNCTIONS or name.startswith(FORBIDDEN_PREFIXES):
                    raise GuardRejected(f"Access to {name} is not allowed")

    def _cte_scopes(
        self, tokens: List[Token], matches: Dict[int, int]
    ) -> List[Tuple[str, int, int]]:
        """CTE names with the token range they are visible in."""
        scopes: List[Tuple[str, int, int]] = []
        n = len(tokens)
        for i, tok in enumerate(tokens):
            if not tok.is_word("WITH"):
                continue
            if i > 0 and not (tokens[i - 1].text == "(" and tokens[i - 1].kind == "punct"):
                # WITH TIME ZONE, WITH ORDINALITY
                continue
            end = n if i == 0 else matches[i - 1]

            j = i + 1
            recursive = j < n and tokens[j].is_word("RECURSIVE")
            if recursive:
                j += 1
            while True:
                if j >= n or not tokens[j].is_name:
                    raise GuardRejected("Malformed WITH clause")
                name = tokens[j].name
                j += 1
                if j < n and tokens[j].text == "(":
                    j = matches[j] + 1
                if j >= n or not tokens[j].is_word("AS"):
                    raise GuardRejected("Malformed WITH clause")
                j += 1
                if j < n and tokens[j].is_word("NOT"):
                    j += 1
                if j < n and tokens[j].is_word("MATERIALIZED"):
                    j += 1
                if j >= n or tokens[j].text != "(":
                    raise GuardRejected("Malformed WITH clause")
                # Only a recursive CTE sees its own name inside its body
                start = j if recursive else matches[j]
                scopes.append((name, start, end))
                j = matches[j] + 1
                if j < n and tokens[j].text == ",":
                    j += 1
                    continue
                break
        return scopes

    def _paren_kind(self, tokens: List[Token], i: int) -> str:
        prev = tokens[i - 1] if i > 0 else None
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if nxt is not None and nxt.kind == "word" and nxt.upper in SUBQUERY_STARTS:
            return "subquery"
        if prev is not None and prev.is_name:
            if not (prev.kind == "word" and prev.upper in NON_FUNCTION_WORDS):
                return "function"
        return "group"

    def _scan(self, tokens: List[Token]) -> _Scan:
        """
        Walk every nesting level and collect the tables named in FROM/JOIN
        positions, including comma lists, derived tables and sub-queries.
        """
        scan = _Scan()
        stack = [_Level(kind="statement")]
        expect_item = False
        join_group = False
        n = len(tokens)
        i = 0

        while i < n:
            tok = tokens[i]

            if expect_item:
                expect_item = False
                i, join_group = self._read_from_item(tokens, i, scan)
                continue

            if tok.kind == "punct" and tok.text == "(":
                level = _Level(kind=self._paren_kind(tokens, i))
                if join_group:
                    # FROM (a JOIN b ON ...)
                    level.in_from = True
                    expect_item = True
                    join_group = False
                stack.append(level)
                i += 1
                continue

            if tok.kind == "punct" and tok.text == ")":
                stack.pop()
                i += 1
                continue

            level = stack[-1]
            if tok.kind == "word":
                word = tok.upper
                if word == "FROM":
                    if level.kind != "function" and not self._is_distinct_from(tokens, i):
                        level.in_from = True
                        expect_item = True
                elif word == "JOIN":
                    level.in_from = True
                    expect_item = True
                elif word == "FETCH" and len(stack) == 1:
                    raise GuardRejected("Use LIMIT instead of FETCH")
                elif word == "LIMIT" and len(stack) == 1:
                    scan.top_level_limits.append(i)
                    level.in_from = False
                elif word in FROM_TERMINATORS:
                    level.in_from = False
            elif tok.kind == "punct" and tok.text == "," and level.in_from:
                expect_item = True
            i += 1

        if expect_item:
            raise GuardRejected("FROM clause without a table")
        return scan

    @staticmethod
    def _is_distinct_from(tokens: List[Token], i: int) -> bool:
        return i >= 2 and tokens[i - 1].is_word("DISTINCT") and tokens[i - 2].is_word("IS", "NOT")

    def _read_from_item(self, tokens: List[Token], i: int, scan: _Scan) -> Tuple[int, bool]:
        """
        Consume one FROM item starting at i. Returns the next index and whether
        the item opens a parenthesized join.
        """
        n = len(tokens)
        j = i
        while j < n and tokens[j].kind == "word" and tokens[j].upper in _FROM_ITEM_PREFIXES:
            j += 1
        if j >= n:
            raise GuardRejected("FROM clause without a table")

        tok = tokens[j]
        if tok.kind == "punct" and tok.text == "(":
            nxt = tokens[j + 1] if j + 1 < n else None
            starts_subquery = nxt is not None and nxt.kind == "word" and nxt.upper in SUBQUERY_STARTS
            return j, not starts_subquery

        if not tok.is_name or (tok.kind == "word" and tok.upper in NOT_A_TABLE):
            raise GuardRejected("Expected a table name after FROM/JOIN")

        parts = [tok]
        positions = [j]
        j += 1
        while j + 1 < n and tokens[j].text == "." and tokens[j + 1].is_name:
            parts.append(tokens[j + 1])
            positions.append(j + 1)
            j += 2

        if j < n and tokens[j].text == "(":
            function = ".".join(p.name for p in parts)
            if len(parts) > 1 or parts[0].name.lower() not in TABLE_FUNCTIONS:
                raise GuardRejected(f"Function {function} is not allowed in FROM")
            return j, False

        scan.table_refs.append((positions[0], parts))
        scan.item_positions.update(positions)
        aliases = scan.aliases.setdefault(parts[-1].name, set())

        if j < n and tokens[j].is_word("AS"):
            j += 1
            if j >= n or not tokens[j].is_name:
                raise GuardRejected("Expected an alias after AS")
            aliases.add(tokens[j].name)
            scan.item_positions.add(j)
            j += 1
        elif j < n and tokens[j].is_name and not (
            tokens[j].kind == "word" and tokens[j].upper in CLAUSE_WORDS
        ):
            aliases.add(tokens[j].name)
            scan.item_positions.add(j)
            j += 1
        return j, False

    def _check_tables(
        self, scan: _Scan, ctes: List[Tuple[str, int, int]], schema: SchemaDescriptor
    ) -> Set[str]:
        allowed = set(schema.tables)
        referenced: Set[str] = set()

        for position, parts in scan.table_refs:
            name = parts[-1].name
            label = ".".join(p.text for p in parts)
            if len(parts) > 2:
                raise GuardRejected(f"Table {label} is not allowed")
            if len(parts) == 2:
                qualifier = parts[0].name
                if schema.schema_name is None or qualifier != schema.schema_name:
                    raise GuardRejected(f"Table {label} is not allowed")
            elif any(cte == name and start <= position <= end for cte, start, end in ctes):
                continue

            if name not in allowed:
                raise GuardRejected(f"Table {label} is not allowed")
            referenced.add(name)

        return referenced

    def _check_hidden_columns(
        self,
        tokens: List[Token],
        scan: _Scan,
        tables: Set[str],
        schema: SchemaDescriptor,
    ) -> None:
        restricted = [t for t in tables if schema.hidden_columns.get(t)]
        if not restricted:
            return

        hidden = {c for t in restricted for c in schema.hidden_columns[t]}
        hidden_lower = {c.lower() for c in hidden}
        # Names that would expand to a whole row of a restricted table
        row_names: Set[str] = set()
        for table in restricted:
            row_names.add(table)
            row_names.update(scan.aliases.get(table, set()))

        n = len(tokens)
        for i, tok in enumerate(tokens):
            prev = tokens[i - 1] if i > 0 else None
            nxt = tokens[i + 1] if i + 1 < n else None

            if tok.kind == "word" and tok.text.lower() in hidden_lower:
                raise GuardRejected(f"Column {tok.text} is not available")
            if tok.kind == "quoted" and tok.name in hidden:
                raise GuardRejected(f"Column {tok.text} is not available")

            if tok.text == "*" and tok.kind == "op":
                after_dot = prev is not None and prev.text == "."
                bare = (prev is None or prev.text != "(") and (
                    nxt is None or nxt.text in (",", ")") or nxt.is_word("FROM")
                )
                if after_dot or bare:
                    raise GuardRejected("Wildcard selection is not allowed on tables with restricted columns")

            if tok.is_name and i not in scan.item_positions and tok.name in row_names:
                if nxt is None or nxt.text != ".":
                    raise GuardRejected(f"Whole-row reference to {tok.text} is not allowed")

    def _bound_rows(self, tokens: List[Token], scan: _Scan) -> Tuple[List[Token], bool]:
        if not scan.top_level_limits:
            return tokens, True
        if len(scan.top_level_limits) > 1:
            raise GuardRejected("More than one LIMIT clause")

        i = scan.top_level_limits[0]
        value = tokens[i + 1] if i + 1 < len(tokens) else None
        after = tokens[i + 2] if i + 2 < len(tokens) else None
        if value is None or value.kind != "number" or not value.text.isdigit():
            raise GuardRejected("LIMIT must be a whole number")
        if after is not None and after.text == ",":
            raise GuardRejected("LIMIT offset, count form is not supported")

        if int(value.text) > self.row_bound:
            tokens = list(tokens)
            tokens[i + 1] = Token("number", str(self.row_bound), value.start, value.end)
        return tokens, False
