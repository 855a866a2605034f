"""Restricted expression evaluator for step ``when`` conditions.

Conditions are evaluated with a small recursive-descent parser instead of a
general-purpose evaluator. Supported grammar::

    expression  := or_expr
    or_expr     := and_expr (("or" | "||") and_expr)*
    and_expr    := not_expr (("and" | "&&") not_expr)*
    not_expr    := ("not" | "!") not_expr | comparison
    comparison  := operand (op operand)?
    op          := "==" | "!=" | "===" | "!==" | "<" | "<=" | ">" | ">=" | "in" | "not in"
    operand     := literal | reference | "(" expression ")" | "[" [operand ("," operand)*] "]"
    reference   := NAME ("." NAME | "[" (STRING | NUMBER) "]")* | "{{" dotted-name "}}"

Literals are quoted strings, integers/floats, ``true``/``false`` and
``null``/``none`` (Python spellings accepted). Undefined references evaluate to
``None``; ``.length`` on a sized value yields its length.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class ExpressionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: str = ""):
        self.expression = expression
        if expression:
            message = f"{message} in expression: {expression!r}"
        super().__init__(message)


_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<template>\{\{\s*[A-Za-z_][\w.]*\s*\}\})
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!()\[\].,])
      | (?P<name>[A-Za-z_$][\w$]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in"}
_LITERALS: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
    "undefined": None,
}

_MISSING = object()


@dataclass
class _Token:
    kind: str  # number, string, op, name, keyword, template, end
    value: str
    position: int


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    length = len(expression)
    while position < length:
        if expression[position:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, position)
        if not match or match.end() == position:
            raise ExpressionError(f"Unexpected character at position {position}", expression)
        kind = match.lastgroup or ""
        value = match.group(kind)
        if kind == "name" and value in _KEYWORDS:
            kind = "keyword"
        tokens.append(_Token(kind, value, match.start(kind)))
        position = match.end()
    tokens.append(_Token("end", "", length))
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _lookup(value: Any, key: Any) -> Any:
    """Resolve one path segment on a mapping, sequence or object."""
    if value is None or value is _MISSING:
        return _MISSING
    if isinstance(value, Mapping):
        if key in value:
            return value[key]
    elif isinstance(key, int) and isinstance(value, (list, tuple, str)):
        if -len(value) <= key < len(value):
            return value[key]
        return _MISSING
    elif isinstance(key, str) and not key.startswith("_") and hasattr(value, key):
        return getattr(value, key)
    if key == "length" and hasattr(value, "__len__"):
        return len(value)
    return _MISSING


class _Parser:
    """Parses and evaluates in a single pass over the token stream."""

    def __init__(self, expression: str, variables: Mapping[str, Any]):
        self.expression = expression
        self.variables = variables
        self.tokens = _tokenize(expression)
        self.index = 0
        # Depth of operands being parsed only to be discarded by short-circuiting
        self.skipping = 0

    # Token helpers

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *values: str) -> _Token | None:
        token = self.current
        if token.kind in ("op", "keyword") and token.value in values:
            self.index += 1
            return token
        return None

    def _expect(self, value: str) -> _Token:
        token = self._accept(value)
        if token is None:
            raise ExpressionError(f"Expected '{value}' at position {self.current.position}", self.expression)
        return token

    # Grammar

    def parse(self) -> Any:
        if self.current.kind == "end":
            raise ExpressionError("Empty expression", self.expression)
        value = self._or()
        if self.current.kind != "end":
            raise ExpressionError(
                f"Unexpected token '{self.current.value}' at position {self.current.position}", self.expression
            )
        return value

    def _or(self) -> Any:
        value = self._and()
        while self._accept("or", "||"):
            if value:
                self._skip(self._and)
            else:
                value = self._and()
        return value

    def _and(self) -> Any:
        value = self._not()
        while self._accept("and", "&&"):
            if value:
                value = self._not()
            else:
                self._skip(self._not)
        return value

    def _skip(self, parse) -> None:
        """Consume an operand without letting its evaluation fail the expression."""
        self.skipping += 1
        try:
            parse()
        finally:
            self.skipping -= 1

    def _not(self) -> Any:
        if self._accept("not", "!"):
            return not self._truthy(self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._operand()
        token = self.current
        if token.kind == "op" and token.value in ("==", "!=", "===", "!==", "<", "<=", ">", ">="):
            self._advance()
            return self._compare(token.value, left, self._operand())
        if token.kind == "keyword" and token.value == "in":
            self._advance()
            return self._contains(self._operand(), left)
        if token.kind == "keyword" and token.value == "not":
            following = self.tokens[self.index + 1]
            if following.kind == "keyword" and following.value == "in":
                self.index += 2
                return not self._contains(self._operand(), left)
        return left

    def _operand(self) -> Any:
        token = self.current

        if token.kind == "number":
            self._advance()
            return float(token.value) if "." in token.value else int(token.value)

        if token.kind == "string":
            self._advance()
            return _unquote(token.value)

        if token.kind == "template":
            self._advance()
            path = token.value.strip("{} \t")
            return self._resolve_path(path.split("."))

        if token.kind == "name":
            if token.value in _LITERALS:
                self._advance()
                return _LITERALS[token.value]
            return self._reference()

        if self._accept("("):
            value = self._or()
            self._expect(")")
            return value

        if self._accept("["):
            items = []
            if not self._accept("]"):
                items.append(self._operand())
                while self._accept(","):
                    items.append(self._operand())
                self._expect("]")
            return items

        if token.kind == "end":
            raise ExpressionError("Unexpected end of expression", self.expression)
        raise ExpressionError(f"Unexpected token '{token.value}' at position {token.position}", self.expression)

    def _reference(self) -> Any:
        path: list[Any] = [self._advance().value]
        while True:
            if self._accept("."):
                token = self.current
                if token.kind not in ("name", "keyword"):
                    raise ExpressionError(f"Expected attribute name at position {token.position}", self.expression)
                path.append(self._advance().value)
            elif self._accept("["):
                token = self._advance()
                if token.kind == "string":
                    path.append(_unquote(token.value))
                elif token.kind == "number" and "." not in token.value:
                    path.append(int(token.value))
                else:
                    raise ExpressionError(
                        f"Index must be a string or integer at position {token.position}", self.expression
                    )
                self._expect("]")
            else:
                break
        return self._resolve_path(path)

    def _resolve_path(self, path: list[Any]) -> Any:
        value: Any = self.variables
        for segment in path:
            value = _lookup(value, segment)
            if value is _MISSING:
                return None
        return value

    # Semantics

    @staticmethod
    def _truthy(value: Any) -> bool:
        return bool(value)

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        if op in ("==", "==="):
            return left == right
        if op in ("!=", "!=="):
            return left != right
        if left is None or right is None:
            return False
        try:
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            return left >= right
        except TypeError as e:
            if self.skipping:
                return False
            raise ExpressionError(
                f"Cannot compare {type(left).__name__} with {type(right).__name__}", self.expression
            ) from e

    def _contains(self, container: Any, item: Any) -> bool:
        if container is None:
            return False
        try:
            return item in container
        except TypeError as e:
            if self.skipping:
                return False
            raise ExpressionError(f"'in' requires a container, got {type(container).__name__}", self.expression) from e


def evaluate_expression(expression: str, variables: Mapping[str, Any]) -> Any:
    """Evaluate an expression and return its raw value."""
    if not isinstance(expression, str):
        raise ExpressionError(f"Expression must be a string, got {type(expression).__name__}")
    return _Parser(expression, variables).parse()


def evaluate_condition(expression: str, variables: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition expression against a variable mapping.

    Args:
        expression: Condition source, e.g. ``"framework == 'react' and not skipTests"``
        variables: Variables visible to the expression

    Returns:
        Truthiness of the evaluated expression

    Raises:
        ExpressionError: If the expression is malformed or compares incompatible values
    """
    return bool(evaluate_expression(expression, variables))
