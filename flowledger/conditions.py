"""Minimal condition DSL used by condition nodes and edge expressions.

Grammar::

    expr  := call | atom
    call  := ("not" | "eq" | "contains") "(" [expr ("," expr)*] ")"
    atom  := STRING | NUMBER | "true" | "false" | "null" | PATH | "{{" PATH "}}"

Paths resolve against the template context. Comparisons use the same string
rendering as template substitution, so ``eq(nodes.check.result, true)`` holds
when the referenced value is ``True``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Union

from .errors import ConditionSyntaxError
from .templates import MISSING, lookup_path, to_template_string

FALSY_STRINGS = frozenset({"", "false", "0", "{}"})

_ARITY = {"not": 1, "eq": 2, "contains": 2}
_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?")
_BARE_RE = re.compile(r"[A-Za-z0-9_.\-\[\]$]+")


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PathRef:
    path: str


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple["Expr", ...]


Expr = Union[Literal, PathRef, Call]


@dataclass(frozen=True)
class _Token:
    kind: str  # "lparen", "rparen", "comma", "string", "bare", "path"
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    while i < len(source):
        ch = source[i]
        if ch.isspace():
            i += 1
        elif ch == "(":
            tokens.append(_Token("lparen", ch, i))
            i += 1
        elif ch == ")":
            tokens.append(_Token("rparen", ch, i))
            i += 1
        elif ch == ",":
            tokens.append(_Token("comma", ch, i))
            i += 1
        elif ch in ("'", '"'):
            start = i
            i += 1
            chars: list[str] = []
            while i < len(source) and source[i] != ch:
                if source[i] == "\\" and i + 1 < len(source):
                    i += 1
                chars.append(source[i])
                i += 1
            if i >= len(source):
                raise ConditionSyntaxError(source, "unterminated string", start)
            tokens.append(_Token("string", "".join(chars), start))
            i += 1
        elif source.startswith("{{", i):
            end = source.find("}}", i + 2)
            if end == -1:
                raise ConditionSyntaxError(source, "unterminated placeholder", i)
            tokens.append(_Token("path", source[i + 2 : end].strip(), i))
            i = end + 2
        else:
            match = _BARE_RE.match(source, i)
            if not match:
                raise ConditionSyntaxError(source, f"unexpected character {ch!r}", i)
            tokens.append(_Token("bare", match.group(0), i))
            i = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(self.source, "unexpected end of expression", len(self.source))
        self.index += 1
        return token

    def _expect(self, kind: str) -> _Token:
        token = self._next()
        if token.kind != kind:
            raise ConditionSyntaxError(self.source, f"expected {kind}, found {token.text!r}", token.pos)
        return token

    def parse(self) -> Expr:
        expr = self._expr()
        trailing = self._peek()
        if trailing is not None:
            raise ConditionSyntaxError(self.source, f"unexpected {trailing.text!r}", trailing.pos)
        return expr

    def _expr(self) -> Expr:
        token = self._next()
        if token.kind == "string":
            return Literal(token.text)
        if token.kind == "path":
            return PathRef(token.text)
        if token.kind != "bare":
            raise ConditionSyntaxError(self.source, f"unexpected {token.text!r}", token.pos)

        following = self._peek()
        if following is not None and following.kind == "lparen":
            return self._call(token)
        return _atom(token.text)

    def _call(self, name_token: _Token) -> Call:
        name = name_token.text
        if name not in _ARITY:
            raise ConditionSyntaxError(self.source, f"unknown function {name!r}", name_token.pos)
        self._expect("lparen")
        args: list[Expr] = []
        if self._peek() is not None and self._peek().kind != "rparen":
            args.append(self._expr())
            while self._peek() is not None and self._peek().kind == "comma":
                self._next()
                args.append(self._expr())
        self._expect("rparen")
        if len(args) != _ARITY[name]:
            raise ConditionSyntaxError(
                self.source,
                f"{name}() takes {_ARITY[name]} argument(s), got {len(args)}",
                name_token.pos,
            )
        return Call(name, tuple(args))


def _atom(text: str) -> Expr:
    if text == "true":
        return Literal(True)
    if text == "false":
        return Literal(False)
    if text == "null":
        return Literal(None)
    if _NUMBER_RE.fullmatch(text):
        return Literal(float(text) if "." in text else int(text))
    return PathRef(text)


@lru_cache(maxsize=512)
def parse_condition(expression: str) -> Expr:
    """Parse ``expression`` into an expression tree."""
    return _Parser(expression.strip()).parse()


def is_truthy(value: Any) -> bool:
    return to_template_string(value) not in FALSY_STRINGS


def _value(expr: Expr, context: Mapping[str, Any]) -> Any:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, PathRef):
        found = lookup_path(context, expr.path)
        return None if found is MISSING else found
    return _call(expr, context)


def _call(expr: Call, context: Mapping[str, Any]) -> bool:
    if expr.name == "not":
        return not is_truthy(_value(expr.args[0], context))
    left = _value(expr.args[0], context)
    right = to_template_string(_value(expr.args[1], context))
    if expr.name == "eq":
        return to_template_string(left) == right
    if isinstance(left, (list, tuple)):
        return any(to_template_string(item) == right for item in left)
    return right in to_template_string(left)


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``context``. Empty expressions are false."""
    if not expression or not expression.strip():
        return False
    return is_truthy(_value(parse_condition(expression), context))
