"""
Metadata Filter Expressions

A small expression language for restricting vector search to documents
whose metadata matches a predicate:

    record_type in ['DIAGNOSIS', 'TREATMENT_PLAN']
    document_type == 'CLINICAL_GUIDELINE'
    severity != 'LOW' && (risk_score >= 0.6 || department == 'cardiology')
    not (confidentiality in ['RESTRICTED', 'CONFIDENTIAL'])

Grammar:

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := unary (("&&" | "and") unary)*
    unary      := ("!" | "not") unary | "(" expr ")" | comparison
    comparison := IDENT OP literal | IDENT ("in" | "nin") "[" literal ("," literal)* "]"
    OP         := "==" | "=" | "!=" | "<" | "<=" | ">" | ">="

A parsed filter can be evaluated against a metadata dict (in-memory store)
or rendered to a parameterised SQL predicate over a JSONB column (pgvector).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
import json
import re

from clinsight.exceptions import FilterExpressionError

FilterValue = str | int | float | bool

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|<=|>=|&&|\|\||=|<|>|!|\(|\)|\[|\]|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and": "&&", "or": "||", "not": "!", "in": "in", "nin": "nin",
             "true": True, "false": False}

_SAFE_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# =============================================================================
# AST
# =============================================================================

class Filter(ABC):
    """A parsed filter predicate."""

    @abstractmethod
    def matches(self, metadata: dict[str, Any]) -> bool:
        """Evaluate against a document's metadata."""

    @abstractmethod
    def to_sql(self, params: list[Any], column: str = "metadata") -> str:
        """
        Render as a SQL predicate over a JSONB column.

        Values are appended to ``params`` and referenced positionally
        (``$n``), so the caller must pass the list that already holds the
        query's earlier parameters.
        """

    def __and__(self, other: "Filter") -> "Filter":
        return And(self, other)

    def __or__(self, other: "Filter") -> "Filter":
        return Or(self, other)

    def __invert__(self) -> "Filter":
        return Not(self)


@dataclass(frozen=True)
class Comparison(Filter):
    key: str
    op: str
    value: FilterValue | tuple[FilterValue, ...]

    def matches(self, metadata: dict[str, Any]) -> bool:
        actual = metadata.get(self.key)
        if self.op == "in":
            return _in(actual, self.value)
        if self.op == "nin":
            return not _in(actual, self.value)
        if self.op == "==":
            return _equal(actual, self.value)
        if self.op == "!=":
            return not _equal(actual, self.value)

        # Ordering comparisons never match missing or incomparable values
        if actual is None:
            return False
        try:
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            if self.op == ">=":
                return actual >= self.value
        except TypeError:
            return False
        raise FilterExpressionError(f"Unsupported operator {self.op}", str(self))

    def to_sql(self, params: list[Any], column: str = "metadata") -> str:
        if not _SAFE_KEY.match(self.key):
            raise FilterExpressionError("Key not usable in SQL", self.key)
        node = f"{column}->'{self.key}'"

        # A value equals the literal, or is an array holding it
        if self.op in ("in", "nin"):
            params.append(json.dumps(list(self.value)))
            clause = (
                f"EXISTS (SELECT 1 FROM jsonb_array_elements(${len(params)}::jsonb) AS v(item) "
                f"WHERE {node} = v.item OR {node} @> jsonb_build_array(v.item))"
            )
            return clause if self.op == "in" else f"(NOT {clause})"

        if self.op in ("==", "!="):
            params.append(json.dumps(self.value))
            placeholder = f"${len(params)}::jsonb"
            clause = f"COALESCE({node} = {placeholder} OR {node} @> jsonb_build_array({placeholder}), false)"
            return clause if self.op == "==" else f"(NOT {clause})"

        # Ordering only applies between values of the same JSON type
        if isinstance(self.value, bool):
            params.append(json.dumps(self.value))
            json_type, compared = "boolean", f"{node} {self.op} ${len(params)}::jsonb"
        elif isinstance(self.value, (int, float)):
            params.append(float(self.value))
            json_type = "number"
            compared = f"({column}->>'{self.key}')::double precision {self.op} ${len(params)}"
        else:
            params.append(str(self.value))
            json_type = "string"
            compared = f"{column}->>'{self.key}' COLLATE \"C\" {self.op} ${len(params)}"
        return f"(CASE WHEN jsonb_typeof({node}) = '{json_type}' THEN {compared} ELSE false END)"

    def __str__(self) -> str:
        if isinstance(self.value, tuple):
            return f"{self.key} {self.op} [{', '.join(map(repr, self.value))}]"
        return f"{self.key} {self.op} {self.value!r}"


@dataclass(frozen=True)
class And(Filter):
    left: Filter
    right: Filter

    def matches(self, metadata: dict[str, Any]) -> bool:
        return self.left.matches(metadata) and self.right.matches(metadata)

    def to_sql(self, params: list[Any], column: str = "metadata") -> str:
        return f"({self.left.to_sql(params, column)} AND {self.right.to_sql(params, column)})"

    def __str__(self) -> str:
        return f"({self.left} && {self.right})"


@dataclass(frozen=True)
class Or(Filter):
    left: Filter
    right: Filter

    def matches(self, metadata: dict[str, Any]) -> bool:
        return self.left.matches(metadata) or self.right.matches(metadata)

    def to_sql(self, params: list[Any], column: str = "metadata") -> str:
        return f"({self.left.to_sql(params, column)} OR {self.right.to_sql(params, column)})"

    def __str__(self) -> str:
        return f"({self.left} || {self.right})"


@dataclass(frozen=True)
class Not(Filter):
    operand: Filter

    def matches(self, metadata: dict[str, Any]) -> bool:
        return not self.operand.matches(metadata)

    def to_sql(self, params: list[Any], column: str = "metadata") -> str:
        return f"(NOT {self.operand.to_sql(params, column)})"

    def __str__(self) -> str:
        return f"!{self.operand}"


def _equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list):
        return expected in actual
    if hasattr(actual, "value"):
        actual = actual.value
    return actual == expected


def _in(actual: Any, values: tuple) -> bool:
    if isinstance(actual, list):
        return any(item in values for item in actual)
    if hasattr(actual, "value"):
        actual = actual.value
    return actual in values


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = self._tokenize(expression)
        self.pos = 0

    def _tokenize(self, text: str) -> list[tuple[str, Any, int]]:
        tokens = []
        index = 0
        stripped_end = len(text.rstrip())
        while index < stripped_end:
            match = _TOKEN_RE.match(text, index)
            if not match or match.end() == index:
                raise FilterExpressionError("Unexpected character", text, index)
            kind = match.lastgroup
            raw = match.group(kind)
            start = match.start(kind)
            if kind == "string":
                tokens.append(("literal", _unquote(raw), start))
            elif kind == "number":
                tokens.append(("literal", float(raw) if "." in raw else int(raw), start))
            elif kind == "ident":
                keyword = _KEYWORDS.get(raw.lower())
                if isinstance(keyword, bool):
                    tokens.append(("literal", keyword, start))
                elif keyword is not None:
                    tokens.append(("op", keyword, start))
                else:
                    tokens.append(("ident", raw, start))
            else:
                tokens.append(("op", "==" if raw == "=" else raw, start))
            index = match.end()
        return tokens

    def _peek(self) -> tuple[str, Any, int] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> tuple[str, Any, int]:
        token = self._peek()
        if token is None:
            raise FilterExpressionError("Unexpected end of expression", self.expression, len(self.expression))
        self.pos += 1
        return token

    def _expect_op(self, op: str) -> None:
        kind, value, position = self._next()
        if kind != "op" or value != op:
            raise FilterExpressionError(f"Expected '{op}'", self.expression, position)

    def _accept_op(self, op: str) -> bool:
        token = self._peek()
        if token and token[0] == "op" and token[1] == op:
            self.pos += 1
            return True
        return False

    def parse(self) -> Filter:
        if not self.tokens:
            raise FilterExpressionError("Empty filter expression", self.expression)
        result = self._or()
        token = self._peek()
        if token is not None:
            raise FilterExpressionError("Unexpected trailing input", self.expression, token[2])
        return result

    def _or(self) -> Filter:
        node = self._and()
        while self._accept_op("||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Filter:
        node = self._unary()
        while self._accept_op("&&"):
            node = And(node, self._unary())
        return node

    def _unary(self) -> Filter:
        if self._accept_op("!"):
            return Not(self._unary())
        if self._accept_op("("):
            node = self._or()
            self._expect_op(")")
            return node
        return self._comparison()

    def _comparison(self) -> Filter:
        kind, key, position = self._next()
        if kind != "ident":
            raise FilterExpressionError("Expected metadata key", self.expression, position)

        kind, op, position = self._next()
        if kind != "op" or op not in ("==", "!=", "<", "<=", ">", ">=", "in", "nin"):
            raise FilterExpressionError("Expected comparison operator", self.expression, position)

        if op in ("in", "nin"):
            self._expect_op("[")
            values = [self._literal()]
            while self._accept_op(","):
                values.append(self._literal())
            self._expect_op("]")
            return Comparison(key, op, tuple(values))

        value = self._literal()
        if op in ("<", "<=", ">", ">=") and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise FilterExpressionError("Ordering comparison needs a number", self.expression, position)
        return Comparison(key, op, value)

    def _literal(self) -> FilterValue:
        kind, value, position = self._next()
        if kind != "literal":
            raise FilterExpressionError("Expected literal", self.expression, position)
        return value


def _unquote(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


def parse_filter(expression: str | None) -> Filter | None:
    """Parse a filter expression. Blank input means no filter."""
    if expression is None or not expression.strip():
        return None
    return _Parser(expression).parse()


def filter_from_dict(filters: dict[str, Any] | None) -> Filter | None:
    """
    Build a conjunction from ``{key: value}`` pairs.

    List values become ``in`` comparisons.
    """
    if not filters:
        return None
    clauses: list[Filter] = []
    for key, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            clauses.append(Comparison(key, "in", tuple(_plain(v) for v in value)))
        else:
            clauses.append(Comparison(key, "==", _plain(value)))
    result = clauses[0]
    for clause in clauses[1:]:
        result = And(result, clause)
    return result


def _plain(value: Any) -> FilterValue:
    return value.value if hasattr(value, "value") else value
