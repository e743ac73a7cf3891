# expressions.py
# Evaluator for the `${{ ... }}` expression language used by job guards
# (`if:`) and by value interpolation in `run`, `with` and `env`.
#
#   github.repository == 'org/repo' && github.ref == 'refs/heads/main'
#   ${{ secrets.GITHUB_TOKEN }}
#
# Grammar (lowest precedence first):
#   or      := and ('||' and)*
#   and     := compare ('&&' compare)*
#   compare := unary (('=='|'!='|'<'|'<='|'>'|'>=') unary)*
#   unary   := '!' unary | primary
#   primary := literal | '(' or ')' | name '(' args ')' | name ('.' name | '[' or ']')*

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
      (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>'(?:[^']|'')*')
    | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().\[\],])
    | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    )
    """,
    re.VERBOSE,
)


class ExpressionError(ValueError):
    """Raised for malformed expressions."""


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"unexpected character at {pos} in {source!r}")
        pos = m.end()
        kind = m.lastgroup
        if kind is None:
            continue
        tokens.append(_Token(kind, m.group(kind)))
    return tokens


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.strip() == "":
            return 0.0
        try:
            return float(value)
        except ValueError:
            return math.nan
    return math.nan


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left.casefold()
        b: Any = right.casefold()
    elif type(left) is type(right) and not isinstance(left, (int, float)):
        a, b = left, right
        if op in ("==", "!="):
            return (a == b) == (op == "==")
        return False
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return op == "!="

    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise ExpressionError(f"unknown operator {op!r}")


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _contains(search: Any, item: Any) -> bool:
    if isinstance(search, (list, tuple)):
        return any(_compare("==", x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _format(template: Any, *args: Any) -> str:
    out = to_string(template).replace("{{", "\0").replace("}}", "\1")
    for i, arg in enumerate(args):
        out = out.replace(f"{{{i}}}", to_string(arg))
    return out.replace("\0", "{").replace("\1", "}")


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": lambda s, p: to_string(s).casefold().startswith(to_string(p).casefold()),
    "endswith": lambda s, p: to_string(s).casefold().endswith(to_string(p).casefold()),
    "format": _format,
    # Guards are evaluated before any step, and a failed step halts the job,
    # so status functions are constant here.
    "success": lambda: True,
    "always": lambda: True,
    "failure": lambda: False,
}


# ---------------------------------------------------------------------
# Parser / evaluator
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str, context: Mapping[str, Any]):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0
        self.context = context

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"unexpected end of expression: {self.source!r}")
        self.pos += 1
        return tok

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.value == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise ExpressionError(f"expected {value!r} in {self.source!r}")

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"unexpected token {self._peek().value!r} in {self.source!r}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._accept("||"):
            right = self._and()
            left = left if truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._compare()
        while self._accept("&&"):
            right = self._compare()
            left = right if truthy(left) else left
        return left

    def _compare(self) -> Any:
        left = self._unary()
        while True:
            tok = self._peek()
            if tok is None or tok.kind != "op" or tok.value not in ("==", "!=", "<", "<=", ">", ">="):
                return left
            self.pos += 1
            left = _compare(tok.value, left, self._unary())

    def _unary(self) -> Any:
        if self._accept("!"):
            return not truthy(self._unary())
        return self._primary()

    def _primary(self) -> Any:
        tok = self._next()
        if tok.kind == "number":
            num = float(tok.value)
            return int(num) if num.is_integer() and "." not in tok.value else num
        if tok.kind == "string":
            return tok.value[1:-1].replace("''", "'")
        if tok.kind == "op" and tok.value == "(":
            value = self._or()
            self._expect(")")
            return value
        if tok.kind != "name":
            raise ExpressionError(f"unexpected token {tok.value!r} in {self.source!r}")

        word = tok.value
        if word == "true":
            return True
        if word == "false":
            return False
        if word == "null":
            return None

        if self._accept("("):
            fn = FUNCTIONS.get(word.lower())
            if fn is None:
                raise ExpressionError(f"unknown function {word!r}")
            args: List[Any] = []
            if not self._accept(")"):
                args.append(self._or())
                while self._accept(","):
                    args.append(self._or())
                self._expect(")")
            try:
                return fn(*args)
            except TypeError as e:
                raise ExpressionError(f"bad arguments to {word}(): {e}") from e

        value: Any = self.context.get(word)
        while True:
            if self._accept("."):
                key = self._next()
                if key.kind != "name":
                    raise ExpressionError(f"expected property name after '.' in {self.source!r}")
                value = _index(value, key.value)
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                value = _index(value, key)
            else:
                return value


def _index(value: Any, key: Any) -> Any:
    if isinstance(value, Mapping):
        if key in value:
            return value[key]
        # property lookup is case-insensitive
        lowered = to_string(key).casefold()
        for k, v in value.items():
            if isinstance(k, str) and k.casefold() == lowered:
                return v
        return None
    if isinstance(value, (list, tuple)):
        try:
            return value[int(_to_number(key))]
        except (ValueError, IndexError):
            return None
    return None


def evaluate(source: str, context: Mapping[str, Any]) -> Any:
    """Evaluate a bare expression (no `${{ }}` wrapper)."""
    return _Parser(source, context).parse()


def _unwrap(source: str) -> str:
    text = source.strip()
    m = _INTERP_RE.fullmatch(text)
    if m:
        return m.group(1)
    return text


def evaluate_condition(source: str, context: Mapping[str, Any]) -> bool:
    """Evaluate an `if:` condition, with or without the `${{ }}` wrapper."""
    return truthy(evaluate(_unwrap(source), context))


def interpolate(text: str, context: Mapping[str, Any]) -> str:
    """Replace every `${{ expr }}` in `text` with its string value."""
    if "${{" not in text:
        return text
    return _INTERP_RE.sub(lambda m: to_string(evaluate(m.group(1), context)), text)
