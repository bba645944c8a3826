"""
Condition evaluator for edge routing.

Two condition forms are accepted on an edge:

  * an expression string in a small, fixed grammar

        expr       := or_expr
        or_expr    := and_expr (("||" | "or") and_expr)*
        and_expr   := not_expr (("&&" | "and") not_expr)*
        not_expr   := ("!" | "not") not_expr | comparison
        comparison := operand (("==" | "!=" | ">" | ">=" | "<" | "<=") operand)?
        operand    := "{{" path "}}" | path | NUMBER | STRING
                    | "true" | "false" | "(" expr ")"

    Bare identifiers and {{...}} are variable references. == and != compare
    numerically when both sides are numbers, as text otherwise. Ordering
    operators need two numbers and are false otherwise, so a missing
    variable never satisfies "{{age}} >= 18".

  * a structured object {"variable": "age", "operator": "gte", "value": 18}
    using the OPERATORS table below ("field" is accepted for "variable"),
    or {"expression": "..."}.

Malformed input raises ConditionSyntaxError inside the parser; evaluate()
logs it and reports the edge as non-matching.
"""
from __future__ import annotations

import operator as op
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Optional

import structlog

from core.errors import ConditionSyntaxError
from utils.templating import get_nested_value, interpolate, stringify

logger = structlog.get_logger()


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: b in str(a),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a not in (None, ""),
    "not_exists": lambda a, b: a in (None, ""),
}

_SYMBOLIC = {"==": "eq", "!=": "neq", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}

_TOKEN_RE = re.compile(r"""
    (?P<var>\{\{\s*[^{}]+?\s*\}\})
   |(?P<number>\d+(?:\.\d+)?)
   |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
   |(?P<op>==|!=|>=|<=|&&|\|\||[<>!()-])
   |(?P<name>[A-Za-z_][\w.]*)
""", re.VERBOSE)

_KEYWORDS = {"and": "&&", "or": "||", "not": "!"}

# parentheses and negations; past this the expression is rejected
MAX_NESTING = 64


# ──────────────────────────────────────────────────────────────
#  Value helpers
# ──────────────────────────────────────────────────────────────

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no")
    return bool(value)


def _compare(symbol: str, left: Any, right: Any) -> bool:
    lnum, rnum = _as_number(left), _as_number(right)
    if symbol in ("==", "!="):
        if lnum is not None and rnum is not None:
            equal = lnum == rnum
        else:
            equal = stringify(left) == stringify(right)
        return equal if symbol == "==" else not equal
    if lnum is None or rnum is None:
        return False
    return OPERATORS[_SYMBOLIC[symbol]](lnum, rnum)


def _lookup(scope: Any, path: str) -> Any:
    if scope is None:
        return ""
    if isinstance(scope, Mapping):
        value = get_nested_value(dict(scope), path)
    else:
        value = scope.get(path)
    return "" if value is None else value


# ──────────────────────────────────────────────────────────────
#  Tokenizer + recursive-descent parser
# ──────────────────────────────────────────────────────────────

def _tokenize(expression: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    pos = 0
    while pos < len(expression):
        if expression[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            raise ConditionSyntaxError(expression, "unexpected character", pos)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "name" and text.lower() in _KEYWORDS:
            kind, text = "op", _KEYWORDS[text.lower()]
        tokens.append((kind, text, pos))
        pos = match.end()
    return tokens


class _Parser:
    """Builds a tuple AST: ("or", [a, b, ...]) | ("and", [a, b, ...]) | ("not", a) |
    ("cmp", symbol, a, b) | ("var", path) | ("lit", value)."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0
        self.depth = 0

    def _enter(self, where: int) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ConditionSyntaxError(self.expression, "expression nested too deeply", where)

    def parse(self) -> tuple:
        if not self.tokens:
            raise ConditionSyntaxError(self.expression, "empty expression")
        node = self._or()
        if self.pos < len(self.tokens):
            _, text, where = self.tokens[self.pos]
            raise ConditionSyntaxError(self.expression, f"unexpected token {text!r}", where)
        return node

    def _peek(self) -> Optional[tuple[str, str, int]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, *ops: str) -> Optional[str]:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def _or(self) -> tuple:
        terms = [self._and()]
        while self._accept("||"):
            terms.append(self._and())
        return terms[0] if len(terms) == 1 else ("or", terms)

    def _and(self) -> tuple:
        terms = [self._not()]
        while self._accept("&&"):
            terms.append(self._not())
        return terms[0] if len(terms) == 1 else ("and", terms)

    def _not(self) -> tuple:
        negations = 0
        while True:
            tok = self._peek()
            if not self._accept("!"):
                break
            self._enter(tok[2])
            negations += 1
        node = self._comparison()
        self.depth -= negations
        for _ in range(negations):
            node = ("not", node)
        return node

    def _comparison(self) -> tuple:
        left = self._operand()
        symbol = self._accept(*_SYMBOLIC)
        if symbol:
            return ("cmp", symbol, left, self._operand())
        return left

    def _operand(self) -> tuple:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(self.expression, "unexpected end of expression")
        kind, text, where = tok
        self.pos += 1
        if kind == "var":
            return ("var", text[2:-2].strip())
        if kind == "number":
            return ("lit", float(text))
        if kind == "string":
            body = text[1:-1]
            return ("tpl", re.sub(r"\\(.)", r"\1", body))
        if kind == "name":
            lowered = text.lower()
            if lowered in ("true", "false"):
                return ("lit", lowered == "true")
            return ("var", text)
        if text == "-":
            nxt = self._peek()
            if nxt and nxt[0] == "number":
                self.pos += 1
                return ("lit", -float(nxt[1]))
        if text == "(":
            self._enter(where)
            node = self._or()
            if not self._accept(")"):
                raise ConditionSyntaxError(self.expression, "missing ')'", where)
            self.depth -= 1
            return node
        raise ConditionSyntaxError(self.expression, f"unexpected token {text!r}", where)


@lru_cache(maxsize=1024)
def compile_expression(expression: str) -> tuple:
    """Parse an expression to an AST. Raises ConditionSyntaxError."""
    return _Parser(expression).parse()


def _eval(node: tuple, scope: Any) -> Any:
    tag = node[0]
    if tag == "or":
        return any(_truthy(_eval(term, scope)) for term in node[1])
    if tag == "and":
        return all(_truthy(_eval(term, scope)) for term in node[1])
    if tag == "not":
        return not _truthy(_eval(node[1], scope))
    if tag == "cmp":
        return _compare(node[1], _eval(node[2], scope), _eval(node[3], scope))
    if tag == "var":
        return _lookup(scope, node[1])
    if tag == "tpl":
        return interpolate(node[1], lambda name: _lookup(scope, name))
    return node[1]


# ──────────────────────────────────────────────────────────────
#  Structured conditions
# ──────────────────────────────────────────────────────────────

def evaluate_structured(condition: Mapping[str, Any], scope: Any) -> bool:
    """Evaluate {"variable", "operator", "value"} against the scope."""
    if "expression" in condition:
        return _truthy(_eval(compile_expression(str(condition["expression"])), scope))

    name = condition.get("variable") or condition.get("field")
    if not name:
        raise ConditionSyntaxError(str(dict(condition)), "structured condition without variable")
    operator_name = condition.get("operator", "eq")
    fn = OPERATORS.get(operator_name)
    if fn is None:
        raise ConditionSyntaxError(str(dict(condition)), f"unknown operator {operator_name!r}")

    val = _lookup(scope, str(name))
    expected = condition.get("value")
    try:
        if operator_name in ("gt", "gte", "lt", "lte"):
            lnum, rnum = _as_number(val), _as_number(expected)
            if lnum is None or rnum is None:
                return False
            return fn(lnum, rnum)
        if operator_name in ("eq", "neq"):
            return _compare("==" if operator_name == "eq" else "!=", val, expected)
        return fn(val, expected)
    except (TypeError, ValueError, re.error):
        return False


# ──────────────────────────────────────────────────────────────
#  Public evaluator
# ──────────────────────────────────────────────────────────────

class ConditionEvaluator:
    """Evaluates edge conditions against a VariableScope (or plain dict)."""

    def check(self, condition: Any, scope: Any) -> bool:
        """Strict evaluation: raises ConditionSyntaxError on malformed input."""
        if condition is None:
            return True
        if isinstance(condition, str):
            if not condition.strip():
                return True
            return _truthy(_eval(compile_expression(condition), scope))
        if isinstance(condition, Mapping):
            if not condition:
                return True
            return evaluate_structured(condition, scope)
        if isinstance(condition, bool):
            return condition
        raise ConditionSyntaxError(repr(condition), "unsupported condition type")

    def evaluate(self, condition: Any, scope: Any) -> bool:
        """Never raises: malformed conditions are logged and evaluate to False."""
        try:
            return self.check(condition, scope)
        except ConditionSyntaxError as e:
            logger.warning("condition_syntax_error",
                           expression=e.expression,
                           reason=e.reason,
                           position=e.position)
            return False

    @staticmethod
    def validate(condition: Any) -> Optional[str]:
        """Return a syntax problem description, or None when the condition parses."""
        try:
            if isinstance(condition, str) and condition.strip():
                compile_expression(condition)
            elif isinstance(condition, Mapping) and "expression" in condition:
                compile_expression(str(condition["expression"]))
        except ConditionSyntaxError as e:
            return str(e)
        return None


_default_evaluator = ConditionEvaluator()


def evaluate(condition: Any, scope: Any) -> bool:
    """Module-level shortcut for ConditionEvaluator().evaluate."""
    return _default_evaluator.evaluate(condition, scope)
