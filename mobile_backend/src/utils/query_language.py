"""
Continuous-query language parser and evaluator.

Parses the query strings produced by ``FilterExpression`` and evaluates
them against flat record documents. The grammar:

    query       := or_expr
    or_expr     := and_expr ("OR" and_expr)*
    and_expr    := unary ("AND" unary)*
    unary       := "NOT" unary | "(" query ")" | comparison
    comparison  := FIELD (":" | "<" | "<=" | ">" | ">=") literal
    literal     := "quoted string" | number | true | false

Comparison semantics follow the record store:
- A list-valued field matches when any element matches.
- The literal decides how the field is read: quoted strings compare with
  string values, numbers with numeric values and date-like strings (as
  epoch milliseconds), booleans with boolean values. A value of any other
  type never matches.
- A missing field never matches, so ``NOT f : v`` matches records
  lacking ``f``.

Example:
    >>> predicate = parse_query('(_kindName:"Message") AND ( priority >= 3 )')
    >>> predicate.matches({"_kindName": "Message", "priority": 5})
    True
"""

import enum
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union


class QuerySyntaxError(ValueError):
    """Raised when a continuous-query string cannot be parsed."""
    pass


class FieldType(str, enum.Enum):
    """Declared type of a field in a continuous-query schema."""
    STRING = "STRING"
    INT32 = "INT32"
    DOUBLE = "DOUBLE"
    BOOLEAN = "BOOLEAN"


# ============================================================================
# Date handling shared with the record store projection
# ============================================================================

# Fast pre-check before attempting a full ISO-8601 parse
DATE_PATTERN = re.compile(r"^\d.+[Z\d]$")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_date_millis(value: str) -> Optional[int]:
    """
    Convert an ISO-8601 date or datetime string to epoch milliseconds.

    Naive values are taken as UTC and a trailing ``Z`` is accepted.

    Returns:
        Epoch milliseconds, or None when the string is not a date.
    """
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None

    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError:
            return None
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int((parsed - _EPOCH).total_seconds() * 1000)


# ============================================================================
# Tokenizer
# ============================================================================

TOKEN_PATTERNS = [
    (r'\s+', 'WHITESPACE'),
    (r'"(?:[^"\\]|\\.)*"', 'STRING'),
    (r'-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?', 'NUMBER'),
    (r'[A-Za-z_][A-Za-z0-9_.\-]*', 'IDENTIFIER'),
    (r'<=', 'LTE'),
    (r'>=', 'GTE'),
    (r'<', 'LT'),
    (r'>', 'GT'),
    (r':', 'COLON'),
    (r'\(', 'LPAREN'),
    (r'\)', 'RPAREN'),
]

KEYWORDS = {'AND', 'OR', 'NOT', 'TRUE', 'FALSE'}

_TOKEN_REGEX = re.compile(
    '|'.join(f'(?P<{name}>{pattern})' for pattern, name in TOKEN_PATTERNS)
)

_COMPARISON_TOKENS = {
    'COLON': ':',
    'LT': '<',
    'LTE': '<=',
    'GT': '>',
    'GTE': '>=',
}

Token = Tuple[str, Any]


def tokenize(query: str) -> List[Token]:
    """
    Split a query string into (token_type, value) tuples.

    Raises:
        QuerySyntaxError: On a character no token starts with
    """
    tokens = []
    pos = 0
    while pos < len(query):
        match = _TOKEN_REGEX.match(query, pos)
        if not match:
            raise QuerySyntaxError(
                f"Invalid character at position {pos}: {query[pos]!r}"
            )

        token_type = match.lastgroup
        text = match.group()
        pos = match.end()

        if token_type == 'WHITESPACE':
            continue
        if token_type == 'STRING':
            tokens.append(('STRING', _unescape(text[1:-1])))
        elif token_type == 'NUMBER':
            is_float = any(ch in text for ch in '.eE')
            tokens.append(('NUMBER', float(text) if is_float else int(text)))
        elif token_type == 'IDENTIFIER' and text.upper() in KEYWORDS:
            keyword = text.upper()
            if keyword == 'TRUE':
                tokens.append(('BOOLEAN', True))
            elif keyword == 'FALSE':
                tokens.append(('BOOLEAN', False))
            else:
                tokens.append((keyword, keyword))
        else:
            tokens.append((token_type, text))
    return tokens


def _unescape(text: str) -> str:
    return re.sub(r'\\(.)', r'\1', text)


def quote_string(value: str) -> str:
    """Quote a string literal for a continuous query."""
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


# ============================================================================
# Predicate tree
# ============================================================================

Literal = Union[str, int, float, bool]

_NO_VALUE = object()


def _read_as(value: Any, literal: Literal) -> Any:
    """Read a document value the way the literal's type requires."""
    if isinstance(literal, bool):
        return value if isinstance(value, bool) else _NO_VALUE
    if isinstance(literal, (int, float)):
        if isinstance(value, bool):
            return _NO_VALUE
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            millis = parse_date_millis(value)
            return _NO_VALUE if millis is None else float(millis)
        return _NO_VALUE
    return value if isinstance(value, str) else _NO_VALUE


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == ':':
        return left == right
    if op == '<':
        return left < right
    if op == '<=':
        return left <= right
    if op == '>':
        return left > right
    return left >= right


@dataclass(frozen=True)
class Comparison:
    """``field op literal``."""
    field: str
    op: str
    literal: Literal

    def matches(self, document: Mapping[str, Any]) -> bool:
        if self.field not in document:
            return False
        raw = document[self.field]
        values = raw if isinstance(raw, (list, tuple)) else [raw]

        right = self.literal
        if isinstance(right, (int, float)) and not isinstance(right, bool):
            right = float(right)

        for value in values:
            left = _read_as(value, self.literal)
            if left is not _NO_VALUE and _compare(self.op, left, right):
                return True
        return False

    def fields(self) -> Set[str]:
        return {self.field}


@dataclass(frozen=True)
class Not:
    child: "QueryPredicate"

    def matches(self, document: Mapping[str, Any]) -> bool:
        return not self.child.matches(document)

    def fields(self) -> Set[str]:
        return self.child.fields()


@dataclass(frozen=True)
class And:
    children: Tuple["QueryPredicate", ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        return all(child.matches(document) for child in self.children)

    def fields(self) -> Set[str]:
        return set().union(*(child.fields() for child in self.children))


@dataclass(frozen=True)
class Or:
    children: Tuple["QueryPredicate", ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        return any(child.matches(document) for child in self.children)

    def fields(self) -> Set[str]:
        return set().union(*(child.fields() for child in self.children))


QueryPredicate = Union[Comparison, Not, And, Or]


# ============================================================================
# Parser
# ============================================================================

class _Parser:
    """Recursive descent parser over a token list."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def parse(self) -> QueryPredicate:
        if not self.tokens:
            raise QuerySyntaxError("Empty query")
        node = self._or_expr()
        if self.pos < len(self.tokens):
            raise QuerySyntaxError(f"Unexpected token: {self.tokens[self.pos][1]!r}")
        return node

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos][0]
        return None

    def _advance(self) -> Token:
        if self.pos >= len(self.tokens):
            raise QuerySyntaxError("Unexpected end of query")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _expect(self, token_type: str) -> Token:
        token = self._advance()
        if token[0] != token_type:
            raise QuerySyntaxError(f"Expected {token_type}, got {token[1]!r}")
        return token

    def _or_expr(self) -> QueryPredicate:
        children = [self._and_expr()]
        while self._peek() == 'OR':
            self._advance()
            children.append(self._and_expr())
        return children[0] if len(children) == 1 else Or(tuple(children))

    def _and_expr(self) -> QueryPredicate:
        children = [self._unary()]
        while self._peek() == 'AND':
            self._advance()
            children.append(self._unary())
        return children[0] if len(children) == 1 else And(tuple(children))

    def _unary(self) -> QueryPredicate:
        token_type = self._peek()
        if token_type == 'NOT':
            self._advance()
            return Not(self._unary())
        if token_type == 'LPAREN':
            self._advance()
            node = self._or_expr()
            self._expect('RPAREN')
            return node
        return self._comparison()

    def _comparison(self) -> QueryPredicate:
        _, field = self._expect('IDENTIFIER')
        op_token = self._advance()
        if op_token[0] not in _COMPARISON_TOKENS:
            raise QuerySyntaxError(f"Expected comparison after {field!r}, got {op_token[1]!r}")
        literal_token = self._advance()
        if literal_token[0] not in ('STRING', 'NUMBER', 'BOOLEAN'):
            raise QuerySyntaxError(f"Expected a literal value, got {literal_token[1]!r}")
        return Comparison(field, _COMPARISON_TOKENS[op_token[0]], literal_token[1])


def parse_query(query: str) -> QueryPredicate:
    """
    Parse a continuous-query string.

    Raises:
        QuerySyntaxError: If the query is malformed
    """
    return _Parser(tokenize(query)).parse()


def validate_query(query: str, schema: Mapping[str, Any]) -> QueryPredicate:
    """
    Parse a query and check every field it uses is declared in the schema.

    Raises:
        QuerySyntaxError: If the query is malformed or uses undeclared fields
    """
    predicate = parse_query(query)
    declared = {name for name in schema}
    undeclared = predicate.fields() - declared
    if undeclared:
        raise QuerySyntaxError(
            f"Fields not declared in schema: {', '.join(sorted(undeclared))}"
        )
    for name, field_type in schema.items():
        try:
            FieldType(field_type)
        except ValueError:
            raise QuerySyntaxError(f"Unknown field type for {name!r}: {field_type!r}")
    return predicate


def normalize_schema(schema: Mapping[str, Any]) -> Dict[str, str]:
    """Return a JSON-serializable copy of a schema (enum members as names)."""
    return {
        name: FieldType(field_type).value
        for name, field_type in schema.items()
    }
