"""Sandboxed template and condition evaluation for skill steps.

Templates embed expressions as ``{{ expr }}``. A value consisting of exactly
one template resolves to the expression's native value (so
``"{{ target_count }}"`` stays an ``int``); anything else is string
interpolation.

The expression grammar is deliberately small and never touches ``eval``::

    expr       := or
    or         := and (("or" | "||") and)*
    and        := not (("and" | "&&") not)*
    not        := ("not" | "!") not | comparison
    comparison := operand (op operand)?
    op         := == != === !== < <= > >= in "not in" contains startswith endswith
    operand    := literal | list | path | "(" expr ")"
    path       := NAME ("." (NAME | INT) | "[" expr "]")*

Names resolve against the scope built by :func:`build_scope`. An unknown
name or missing key raises :class:`TemplateResolutionError`; a condition is
never silently treated as false.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .schema import ExpressionSyntaxError, TemplateResolutionError

BUILTIN_VARIABLES = frozenset({"now", "timestamp", "user", "session_id"})

_TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}", re.DOTALL)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||<|>|!|\(|\)|\[|\]|\.|,|-)
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_KEYWORD_LITERALS = {
    "true": True, "True": True,
    "false": False, "False": False,
    "null": None, "none": None, "None": None,
}

_COMPARISONS = {"==", "!=", "===", "!==", "<", "<=", ">", ">=",
                "in", "not in", "contains", "startswith", "endswith"}

_WORD_OPERATORS = {"and", "or", "not", "in", "contains", "startswith", "endswith"}

Token = Tuple[str, str]
Node = Tuple[Any, ...]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise ExpressionSyntaxError(source, f"unexpected character {source[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionSyntaxError(self.source, "empty expression")
        node = self._or()
        if self.pos != len(self.tokens):
            raise ExpressionSyntaxError(
                self.source, f"unexpected token {self.tokens[self.pos][1]!r}"
            )
        return node

    # -- helpers -----------------------------------------------------------

    def _peek(self, offset: int = 0) -> Optional[Token]:
        i = self.pos + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def _accept(self, *values: str) -> Optional[str]:
        tok = self._peek()
        if tok is not None and tok[0] in ("op", "name") and tok[1] in values:
            self.pos += 1
            return tok[1]
        return None

    def _expect(self, value: str) -> None:
        if self._accept(value) is None:
            found = self._peek()
            raise ExpressionSyntaxError(
                self.source,
                f"expected {value!r}, found {found[1] if found else 'end of input'!r}",
            )

    # -- grammar -----------------------------------------------------------

    def _or(self) -> Node:
        node = self._and()
        while self._accept("or", "||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("and", "&&"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> Node:
        # a leading "not" is negation; "x not in y" is handled as a comparison
        if self._peek() in (("name", "not"), ("op", "!")):
            self.pos += 1
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        tok = self._peek()
        if tok is None:
            return left
        op: Optional[str] = None
        if tok == ("name", "not") and self._peek(1) == ("name", "in"):
            self.pos += 2
            op = "not in"
        elif tok[1] in _COMPARISONS and tok[0] in ("op", "name"):
            self.pos += 1
            op = tok[1]
        if op is None:
            return left
        return ("cmp", op, left, self._operand())

    def _operand(self) -> Node:
        tok = self._peek()
        if tok is None:
            raise ExpressionSyntaxError(self.source, "unexpected end of input")
        kind, value = tok

        if kind == "number":
            self.pos += 1
            return ("lit", _number(value))
        if kind == "string":
            self.pos += 1
            return ("lit", _unquote(value))
        if tok == ("op", "-"):
            self.pos += 1
            num = self._peek()
            if num is None or num[0] != "number":
                raise ExpressionSyntaxError(self.source, "'-' must precede a number")
            self.pos += 1
            return ("lit", -_number(num[1]))
        if tok == ("op", "("):
            self.pos += 1
            node = self._or()
            self._expect(")")
            return node
        if tok == ("op", "["):
            self.pos += 1
            items: List[Node] = []
            if self._accept("]") is None:
                items.append(self._or())
                while self._accept(","):
                    items.append(self._or())
                self._expect("]")
            return ("list", items)
        if kind == "name":
            if value in _KEYWORD_LITERALS:
                self.pos += 1
                return ("lit", _KEYWORD_LITERALS[value])
            if value in _WORD_OPERATORS:
                raise ExpressionSyntaxError(self.source, f"unexpected operator {value!r}")
            return self._path()
        raise ExpressionSyntaxError(self.source, f"unexpected token {value!r}")

    def _path(self) -> Node:
        segments: List[Any] = [self.tokens[self.pos][1]]
        self.pos += 1
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok[0] not in ("name", "number"):
                    raise ExpressionSyntaxError(self.source, "expected a name after '.'")
                self.pos += 1
                segments.append(tok[1])
            elif self._accept("["):
                segments.append(("expr", self._or()))
                self._expect("]")
            else:
                return ("name", segments)


def _number(text: str) -> Any:
    return float(text) if "." in text else int(text)


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def parse_expression(source: str) -> Node:
    """Parse *source* into an expression tree.

    Raises:
        ExpressionSyntaxError: If the expression is malformed.
    """
    return _Parser(source).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

class _Evaluator:
    def __init__(self, source: str, scope: Mapping[str, Any]) -> None:
        self.source = source
        self.scope = scope

    def eval(self, node: Node) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "list":
            return [self.eval(n) for n in node[1]]
        if kind == "name":
            return self._lookup(node[1])
        if kind == "not":
            return not self.eval(node[1])
        if kind == "and":
            return bool(self.eval(node[1])) and bool(self.eval(node[2]))
        if kind == "or":
            return bool(self.eval(node[1])) or bool(self.eval(node[2]))
        if kind == "cmp":
            return self._compare(node[1], self.eval(node[2]), self.eval(node[3]))
        raise ExpressionSyntaxError(self.source, f"unknown node {kind!r}")

    def _lookup(self, segments: List[Any]) -> Any:
        head = segments[0]
        if head not in self.scope:
            raise TemplateResolutionError(self.source, f"unknown name '{head}'")
        value = self.scope[head]
        walked = [head]
        for seg in segments[1:]:
            key = self.eval(seg[1]) if isinstance(seg, tuple) else seg
            walked.append(str(key))
            value = self._step(value, key, walked)
        return value

    def _step(self, value: Any, key: Any, walked: List[str]) -> Any:
        if isinstance(value, Mapping):
            if key in value:
                return value[key]
            raise TemplateResolutionError(self.source, f"'{'.'.join(walked)}' is not defined")
        if isinstance(value, (list, tuple)):
            try:
                return value[int(key)]
            except (ValueError, IndexError) as exc:
                raise TemplateResolutionError(
                    self.source, f"'{'.'.join(walked)}' is out of range"
                ) from exc
        raise TemplateResolutionError(
            self.source, f"cannot index {type(value).__name__} with '{'.'.join(walked)}'"
        )

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        try:
            if op in ("==", "==="):
                return left == right
            if op in ("!=", "!=="):
                return left != right
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            if op == ">=":
                return left >= right
            if op == "in":
                return left in right
            if op == "not in":
                return left not in right
            if op == "contains":
                return right in left
            if op == "startswith":
                return str(left).startswith(str(right))
            if op == "endswith":
                return str(left).endswith(str(right))
        except TypeError as exc:
            raise TemplateResolutionError(
                self.source, f"cannot apply '{op}' to {type(left).__name__} and {type(right).__name__}"
            ) from exc
        raise ExpressionSyntaxError(self.source, f"unknown operator {op!r}")


def evaluate(source: str, scope: Mapping[str, Any]) -> Any:
    """Parse and evaluate a bare expression against *scope*."""
    return _Evaluator(source, scope).eval(parse_expression(source))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def build_scope(
    params: Mapping[str, Any],
    steps: Mapping[str, Any],
    builtins: Mapping[str, Any],
) -> Dict[str, Any]:
    """Assemble the name scope for template evaluation.

    Parameters are reachable both bare (``target_count``) and qualified
    (``params.target_count``); step results live under ``steps.<id>``.
    """
    scope: Dict[str, Any] = dict(params)
    scope["params"] = dict(params)
    scope["steps"] = dict(steps)
    scope.update(builtins)
    return scope


def render(template: str, scope: Mapping[str, Any]) -> Any:
    """Resolve every ``{{ expr }}`` in *template*.

    Raises:
        TemplateResolutionError: If any expression cannot be resolved.
    """
    whole = _TEMPLATE_RE.fullmatch(template.strip())
    if whole is not None and template.strip().count("{{") == 1:
        return evaluate(whole.group(1), scope)

    def _sub(m: "re.Match[str]") -> str:
        return _stringify(evaluate(m.group(1), scope))

    return _TEMPLATE_RE.sub(_sub, template)


def render_value(value: Any, scope: Mapping[str, Any]) -> Any:
    """Recursively render templates inside dicts, lists and strings."""
    if isinstance(value, str):
        return render(value, scope) if "{{" in value else value
    if isinstance(value, dict):
        return {k: render_value(v, scope) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v, scope) for v in value]
    return value


def evaluate_condition(condition: str, scope: Mapping[str, Any]) -> bool:
    """Evaluate a step condition to a boolean.

    The condition may be written as a bare expression or wrapped in
    ``{{ }}``; embedded templates are inlined as sub-expressions.
    """
    return bool(evaluate(_condition_source(condition), scope))


def _condition_source(condition: str) -> str:
    return _TEMPLATE_RE.sub(lambda m: f"({m.group(1)})", condition).strip()


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


# ---------------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------------

def _collect_paths(node: Node, out: List[List[str]]) -> None:
    kind = node[0]
    if kind == "name":
        static: List[str] = []
        for seg in node[1]:
            if isinstance(seg, tuple):
                _collect_paths(seg[1], out)
                break
            static.append(seg)
        out.append(static)
    elif kind == "list":
        for child in node[1]:
            _collect_paths(child, out)
    elif kind == "not":
        _collect_paths(node[1], out)
    elif kind in ("and", "or"):
        _collect_paths(node[1], out)
        _collect_paths(node[2], out)
    elif kind == "cmp":
        _collect_paths(node[2], out)
        _collect_paths(node[3], out)


def referenced_paths(template: str) -> List[List[str]]:
    """Name paths referenced by the ``{{ }}`` expressions in *template*."""
    out: List[List[str]] = []
    for m in _TEMPLATE_RE.finditer(template):
        _collect_paths(parse_expression(m.group(1)), out)
    return out


def condition_paths(condition: str) -> List[List[str]]:
    """Name paths referenced by a step condition."""
    out: List[List[str]] = []
    _collect_paths(parse_expression(_condition_source(condition)), out)
    return out
