"""HCL expression and template evaluation.

python-hcl2 returns every non-literal expression of a configuration file as a
``${...}`` template string. List and map literals nested inside such an
expression arrive in Python repr form (``['a', 'b']``, ``{'k': 1}``,
``True``), so the lexer reads single-quoted strings and the Python constants
too. This module parses those templates and the expressions inside them into a
small node tree and evaluates the tree against a ``Scope`` holding the
variables (``local``, ``include``, ``dependency``, ``feature``) and the built-in
functions.
"""

import ast
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple


class EvaluationError(Exception):
    """Base exception for expression evaluation errors."""

    pass


class UnresolvedLocalError(EvaluationError):
    """Raised when an expression reads a local that is not evaluated yet."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Local '{name}' is not resolved yet")


class FunctionCallError(EvaluationError):
    """Raised when a built-in function rejects its arguments."""

    pass


class Scope:
    """Variables and functions visible to an expression."""

    def __init__(
        self,
        variables: Optional[Mapping[str, Any]] = None,
        functions: Optional[Mapping[str, Callable]] = None,
        parent: Optional["Scope"] = None,
    ):
        self.variables = dict(variables or {})
        self.functions = dict(functions or {})
        self.parent = parent

    def lookup(self, name: str) -> Any:
        if name in self.variables:
            return self.variables[name]
        if self.parent is not None:
            return self.parent.lookup(name)
        raise EvaluationError(
            f"Unknown variable: there is no variable named \"{name}\""
        )

    def function(self, name: str) -> Callable:
        if name in self.functions:
            return self.functions[name]
        if self.parent is not None:
            return self.parent.function(name)
        raise EvaluationError(
            f"Call to unknown function: there is no function named \"{name}\""
        )

    def child(self, variables: Mapping[str, Any]) -> "Scope":
        return Scope(variables=variables, parent=self)


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------

_OPERATORS = [
    "...", "==", "!=", "<=", ">=", "&&", "||", "=>",
    "+", "-", "*", "/", "%", "<", ">", "!", "?", ":",
    ".", ",", "(", ")", "[", "]", "{", "}", "=",
]

_NUMBER_RE = re.compile(r"\d+(\.\d+)?([eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")


class Token:
    __slots__ = ("kind", "value", "pos")

    def __init__(self, kind: str, value: str, pos: int):
        self.kind = kind
        self.value = value
        self.pos = pos

    def is_op(self, value: str) -> bool:
        return self.kind == "OP" and self.value == value

    def is_ident(self, value: str) -> bool:
        return self.kind == "IDENT" and self.value == value

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.value!r})"


def _skip_string(text: str, i: int) -> int:
    """Return the index just past the closing quote of the string at text[i]."""
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i + 1
        if text.startswith("$${", i) or text.startswith("%%{", i):
            i += 3
            continue
        if text.startswith("${", i) or text.startswith("%{", i):
            i = _skip_interpolation(text, i + 2)
            continue
        i += 1
    raise EvaluationError(f"Unterminated string literal in: {text}")


def _skip_repr_string(text: str, i: int) -> int:
    """Return the index just past a single-quoted Python repr string at text[i]."""
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "'":
            return i + 1
        i += 1
    raise EvaluationError(f"Unterminated string literal in: {text}")


def _skip_interpolation(text: str, i: int) -> int:
    """Return the index just past the brace closing an interpolation body."""
    depth = 1
    while i < len(text):
        ch = text[i]
        if ch == '"':
            i = _skip_string(text, i)
            continue
        if ch == "'":
            i = _skip_repr_string(text, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise EvaluationError(f"Unterminated interpolation sequence in: {text}")


def tokenize(source: str) -> List[Token]:
    tokens = []
    i = 0
    length = len(source)
    while i < length:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "#" or source.startswith("//", i):
            end = source.find("\n", i)
            i = length if end == -1 else end + 1
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                raise EvaluationError(f"Unterminated comment in: {source}")
            i = end + 2
            continue
        if ch == '"':
            end = _skip_string(source, i)
            tokens.append(Token("STRING", source[i + 1:end - 1], i))
            i = end
            continue
        if ch == "'":
            end = _skip_repr_string(source, i)
            try:
                value = ast.literal_eval(source[i:end])
            except (ValueError, SyntaxError) as e:
                raise EvaluationError(
                    f"Invalid string literal at position {i} in expression: {source}"
                ) from e
            tokens.append(Token("VALUE", value, i))
            i = end
            continue
        if ch.isdigit():
            match = _NUMBER_RE.match(source, i)
            tokens.append(Token("NUMBER", match.group(0), i))
            i = match.end()
            continue
        match = _IDENT_RE.match(source, i)
        if match:
            tokens.append(Token("IDENT", match.group(0), i))
            i = match.end()
            continue
        for op in _OPERATORS:
            if source.startswith(op, i):
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise EvaluationError(
                f"Invalid character {ch!r} at position {i} in expression: {source}"
            )
    tokens.append(Token("EOF", "", length))
    return tokens


# ---------------------------------------------------------------------------
# Node tree
# ---------------------------------------------------------------------------


class Node:
    def evaluate(self, scope: Scope) -> Any:
        raise NotImplementedError


class Literal(Node):
    def __init__(self, value: Any):
        self.value = value

    def evaluate(self, scope: Scope) -> Any:
        return self.value


class Template(Node):
    """A string template; a template made of a single interpolation keeps its type."""

    def __init__(self, parts: List[Any]):
        self.parts = parts

    def evaluate(self, scope: Scope) -> Any:
        if len(self.parts) == 1 and isinstance(self.parts[0], Node):
            return self.parts[0].evaluate(scope)
        return self.render(scope)

    def render(self, scope: Scope) -> str:
        pieces = []
        for part in self.parts:
            if isinstance(part, Node):
                pieces.append(to_template_string(part.evaluate(scope)))
            else:
                pieces.append(part)
        return "".join(pieces)


class Variable(Node):
    def __init__(self, name: str):
        self.name = name

    def evaluate(self, scope: Scope) -> Any:
        return scope.lookup(self.name)


class GetAttr(Node):
    def __init__(self, target: Node, name: str):
        self.target = target
        self.name = name

    def evaluate(self, scope: Scope) -> Any:
        return get_attribute(self.target.evaluate(scope), self.name)


class Index(Node):
    def __init__(self, target: Node, key: Node):
        self.target = target
        self.key = key

    def evaluate(self, scope: Scope) -> Any:
        return get_index(self.target.evaluate(scope), self.key.evaluate(scope))


class Splat(Node):
    """``target[*].a.b`` or ``target.*.a``: applies the traversal to each element."""

    def __init__(self, target: Node, traversal: List[Tuple[str, Any]]):
        self.target = target
        self.traversal = traversal

    def evaluate(self, scope: Scope) -> Any:
        value = self.target.evaluate(scope)
        if value is None:
            return []
        items = value if isinstance(value, list) else [value]
        results = []
        for item in items:
            for kind, step in self.traversal:
                if kind == "attr":
                    item = get_attribute(item, step)
                else:
                    item = get_index(item, step.evaluate(scope))
            results.append(item)
        return results


class Call(Node):
    def __init__(self, name: str, args: List[Node], expand_last: bool = False):
        self.name = name
        self.args = args
        self.expand_last = expand_last

    def evaluate(self, scope: Scope) -> Any:
        if self.name == "try":
            return self._evaluate_try(scope)
        if self.name == "can":
            return self._evaluate_can(scope)

        function = scope.function(self.name)
        args = [arg.evaluate(scope) for arg in self.args]
        if self.expand_last and args:
            last = args.pop()
            if not isinstance(last, list):
                raise EvaluationError(
                    f"Invalid expanding argument to {self.name}(): expected a list"
                )
            args.extend(last)
        try:
            return function(*args)
        except EvaluationError:
            raise
        except (TypeError, ValueError, KeyError, IndexError) as e:
            raise FunctionCallError(f"Error in function call {self.name}(): {e}")

    def _evaluate_try(self, scope: Scope) -> Any:
        errors = []
        for arg in self.args:
            try:
                return arg.evaluate(scope)
            except UnresolvedLocalError:
                raise
            except EvaluationError as e:
                errors.append(str(e))
        raise EvaluationError(
            "No expression in try() succeeded: " + "; ".join(errors)
        )

    def _evaluate_can(self, scope: Scope) -> bool:
        if len(self.args) != 1:
            raise FunctionCallError("can() takes exactly one argument")
        try:
            self.args[0].evaluate(scope)
        except UnresolvedLocalError:
            raise
        except EvaluationError:
            return False
        return True


class Unary(Node):
    def __init__(self, op: str, operand: Node):
        self.op = op
        self.operand = operand

    def evaluate(self, scope: Scope) -> Any:
        value = self.operand.evaluate(scope)
        if self.op == "!":
            return not to_bool(value)
        return -to_number(value)


class Binary(Node):
    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right

    def evaluate(self, scope: Scope) -> Any:
        op = self.op
        if op == "&&":
            return to_bool(self.left.evaluate(scope)) and to_bool(
                self.right.evaluate(scope)
            )
        if op == "||":
            return to_bool(self.left.evaluate(scope)) or to_bool(
                self.right.evaluate(scope)
            )

        left = self.left.evaluate(scope)
        right = self.right.evaluate(scope)
        if op == "==":
            return _equals(left, right)
        if op == "!=":
            return not _equals(left, right)

        a = to_number(left)
        b = to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0:
                raise EvaluationError("Divide by zero")
            result = a / b
            return int(result) if result == int(result) else result
        if op == "%":
            if b == 0:
                raise EvaluationError("Divide by zero")
            return a % b
        if op == "<":
            return a < b
        if op == ">":
            return a > b
        if op == "<=":
            return a <= b
        if op == ">=":
            return a >= b
        raise EvaluationError(f"Unsupported operator {op}")


class Conditional(Node):
    def __init__(self, condition: Node, true_value: Node, false_value: Node):
        self.condition = condition
        self.true_value = true_value
        self.false_value = false_value

    def evaluate(self, scope: Scope) -> Any:
        if to_bool(self.condition.evaluate(scope)):
            return self.true_value.evaluate(scope)
        return self.false_value.evaluate(scope)


class TupleNode(Node):
    def __init__(self, items: List[Node]):
        self.items = items

    def evaluate(self, scope: Scope) -> Any:
        return [item.evaluate(scope) for item in self.items]


class ObjectNode(Node):
    def __init__(self, items: List[Tuple[Node, Node]]):
        self.items = items

    def evaluate(self, scope: Scope) -> Any:
        result = {}
        for key, value in self.items:
            result[to_template_string(key.evaluate(scope))] = value.evaluate(scope)
        return result


class ForExpression(Node):
    def __init__(
        self,
        key_var: Optional[str],
        value_var: str,
        collection: Node,
        value: Node,
        key: Optional[Node] = None,
        condition: Optional[Node] = None,
        grouping: bool = False,
    ):
        self.key_var = key_var
        self.value_var = value_var
        self.collection = collection
        self.value = value
        self.key = key
        self.condition = condition
        self.grouping = grouping

    def _iterate(self, scope: Scope):
        for k, v in _iteration_pairs(self.collection.evaluate(scope)):
            bindings = {self.value_var: v}
            if self.key_var:
                bindings[self.key_var] = k
            inner = scope.child(bindings)
            if self.condition is not None and not to_bool(
                self.condition.evaluate(inner)
            ):
                continue
            yield inner

    def evaluate(self, scope: Scope) -> Any:
        if self.key is None:
            return [self.value.evaluate(inner) for inner in self._iterate(scope)]

        result: Dict[str, Any] = {}
        for inner in self._iterate(scope):
            key = to_template_string(self.key.evaluate(inner))
            value = self.value.evaluate(inner)
            if self.grouping:
                result.setdefault(key, []).append(value)
            elif key in result:
                raise EvaluationError(
                    f"Duplicate object key '{key}' in for expression; "
                    "use the grouping mode (...) to collect values"
                )
            else:
                result[key] = value
        return result


def _iteration_pairs(collection: Any) -> List[Tuple[Any, Any]]:
    if isinstance(collection, Mapping):
        return [(k, collection[k]) for k in sorted(collection)]
    if isinstance(collection, (list, tuple, set)):
        return list(enumerate(collection))
    raise EvaluationError(
        f"Iteration over non-iterable value of type {type(collection).__name__}"
    )


class TemplateIf(Node):
    """``%{ if }`` directive; renders one of two branches."""

    def __init__(self, condition: Node, true_part: Template, false_part: Template):
        self.condition = condition
        self.true_part = true_part
        self.false_part = false_part

    def evaluate(self, scope: Scope) -> Any:
        if to_bool(self.condition.evaluate(scope)):
            return self.true_part.render(scope)
        return self.false_part.render(scope)


class TemplateFor(Node):
    """``%{ for }`` directive; renders the body once per element."""

    def __init__(self, key_var: Optional[str], value_var: str, collection: Node, body: Template):
        self.key_var = key_var
        self.value_var = value_var
        self.collection = collection
        self.body = body

    def evaluate(self, scope: Scope) -> Any:
        pieces = []
        for k, v in _iteration_pairs(self.collection.evaluate(scope)):
            bindings = {self.value_var: v}
            if self.key_var:
                bindings[self.key_var] = k
            pieces.append(self.body.render(scope.child(bindings)))
        return "".join(pieces)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _ExpressionParser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _peek(self, offset: int = 1) -> Token:
        position = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[position]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _expect_op(self, value: str) -> Token:
        token = self._advance()
        if not token.is_op(value):
            raise EvaluationError(
                f"Expected '{value}' but found {token.value or 'end of expression'!r} "
                f"at position {token.pos} in: {self.source}"
            )
        return token

    def _expect_ident(self, value: Optional[str] = None) -> Token:
        token = self._advance()
        if token.kind != "IDENT" or (value is not None and token.value != value):
            expected = value or "identifier"
            raise EvaluationError(
                f"Expected {expected} at position {token.pos} in: {self.source}"
            )
        return token

    def parse(self) -> Node:
        node = self.parse_expression()
        if self.current.kind != "EOF":
            raise EvaluationError(
                f"Unexpected {self.current.value!r} at position {self.current.pos} "
                f"in: {self.source}"
            )
        return node

    def parse_expression(self) -> Node:
        condition = self._parse_binary(0)
        if self.current.is_op("?"):
            self._advance()
            true_value = self.parse_expression()
            self._expect_op(":")
            false_value = self.parse_expression()
            return Conditional(condition, true_value, false_value)
        return condition

    _PRECEDENCE = [
        ("||",),
        ("&&",),
        ("==", "!="),
        ("<", ">", "<=", ">="),
        ("+", "-"),
        ("*", "/", "%"),
    ]

    def _parse_binary(self, level: int) -> Node:
        if level == len(self._PRECEDENCE):
            return self._parse_unary()
        operators = self._PRECEDENCE[level]
        left = self._parse_binary(level + 1)
        while self.current.kind == "OP" and self.current.value in operators:
            op = self._advance().value
            right = self._parse_binary(level + 1)
            left = Binary(op, left, right)
        return left

    def _parse_unary(self) -> Node:
        if self.current.is_op("!") or self.current.is_op("-"):
            op = self._advance().value
            return Unary(op, self._parse_unary())
        return self._parse_postfix(self._parse_primary())

    def _parse_postfix(self, node: Node) -> Node:
        while True:
            token = self.current
            if token.is_op("."):
                self._advance()
                nxt = self._advance()
                if nxt.kind == "IDENT":
                    node = GetAttr(node, nxt.value)
                elif nxt.kind == "NUMBER":
                    node = Index(node, Literal(int(float(nxt.value))))
                elif nxt.is_op("*"):
                    node = Splat(node, self._parse_splat_traversal(attr_only=True))
                else:
                    raise EvaluationError(
                        f"Invalid attribute name at position {nxt.pos} in: {self.source}"
                    )
            elif token.is_op("["):
                self._advance()
                if self.current.is_op("*") and self._peek().is_op("]"):
                    self._advance()
                    self._advance()
                    node = Splat(node, self._parse_splat_traversal(attr_only=False))
                else:
                    key = self.parse_expression()
                    self._expect_op("]")
                    node = Index(node, key)
            else:
                return node

    def _parse_splat_traversal(self, attr_only: bool) -> List[Tuple[str, Any]]:
        traversal: List[Tuple[str, Any]] = []
        while True:
            if self.current.is_op(".") and self._peek().kind == "IDENT":
                self._advance()
                traversal.append(("attr", self._advance().value))
            elif not attr_only and self.current.is_op("["):
                self._advance()
                key = self.parse_expression()
                self._expect_op("]")
                traversal.append(("index", key))
            else:
                return traversal

    def _parse_primary(self) -> Node:
        token = self._advance()
        if token.kind == "NUMBER":
            text = token.value
            if "." in text or "e" in text or "E" in text:
                value = float(text)
                return Literal(int(value) if value == int(value) and "." not in text else value)
            return Literal(int(text))
        if token.kind == "STRING":
            return parse_template(token.value, unescape=True)
        if token.kind == "VALUE":
            return _value_node(token.value)
        if token.kind == "IDENT":
            if token.value in _CONSTANTS:
                return Literal(_CONSTANTS[token.value])
            if self.current.is_op("("):
                return self._parse_call(token.value)
            return Variable(token.value)
        if token.is_op("("):
            node = self.parse_expression()
            self._expect_op(")")
            return node
        if token.is_op("["):
            if self.current.is_ident("for"):
                return self._parse_for(closing="]")
            return self._parse_tuple()
        if token.is_op("{"):
            if self.current.is_ident("for"):
                return self._parse_for(closing="}")
            return self._parse_object()
        raise EvaluationError(
            f"Unexpected {token.value or 'end of expression'!r} at position {token.pos} "
            f"in: {self.source}"
        )

    def _parse_call(self, name: str) -> Node:
        self._expect_op("(")
        args: List[Node] = []
        expand_last = False
        while not self.current.is_op(")"):
            args.append(self.parse_expression())
            if self.current.is_op("..."):
                self._advance()
                expand_last = True
            if self.current.is_op(","):
                self._advance()
            elif not self.current.is_op(")"):
                raise EvaluationError(
                    f"Expected ',' or ')' in call to {name}() at position "
                    f"{self.current.pos} in: {self.source}"
                )
        self._expect_op(")")
        return Call(name, args, expand_last)

    def _parse_tuple(self) -> Node:
        items: List[Node] = []
        while not self.current.is_op("]"):
            items.append(self.parse_expression())
            if self.current.is_op(","):
                self._advance()
            elif not self.current.is_op("]"):
                raise EvaluationError(
                    f"Expected ',' or ']' at position {self.current.pos} in: {self.source}"
                )
        self._expect_op("]")
        return TupleNode(items)

    def _parse_object(self) -> Node:
        items: List[Tuple[Node, Node]] = []
        while not self.current.is_op("}"):
            token = self.current
            if token.kind == "IDENT" and (
                self._peek().is_op("=") or self._peek().is_op(":")
            ):
                self._advance()
                key: Node = Literal(token.value)
            elif token.kind == "VALUE":
                # quoted keys keep their quotes in python-hcl2 output
                self._advance()
                text = token.value
                if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
                    text = text[1:-1]
                key = _value_node(text)
            else:
                key = self.parse_expression()
            if self.current.is_op("=") or self.current.is_op(":"):
                self._advance()
            else:
                raise EvaluationError(
                    f"Expected '=' after object key at position {self.current.pos} "
                    f"in: {self.source}"
                )
            items.append((key, self.parse_expression()))
            if self.current.is_op(","):
                self._advance()
        self._expect_op("}")
        return ObjectNode(items)

    def _parse_for(self, closing: str) -> Node:
        self._expect_ident("for")
        first = self._expect_ident().value
        key_var = None
        value_var = first
        if self.current.is_op(","):
            self._advance()
            key_var = first
            value_var = self._expect_ident().value
        self._expect_ident("in")
        collection = self.parse_expression()
        self._expect_op(":")

        key = None
        grouping = False
        if closing == "}":
            key = self.parse_expression()
            self._expect_op("=>")
        value = self.parse_expression()
        if closing == "}" and self.current.is_op("..."):
            self._advance()
            grouping = True
        condition = None
        if self.current.is_ident("if"):
            self._advance()
            condition = self.parse_expression()
        self._expect_op(closing)
        return ForExpression(key_var, value_var, collection, value, key, condition, grouping)


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


def _unescape(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in _ESCAPES:
                out.append(_ESCAPES[nxt])
                i += 2
                continue
            if nxt == "u" and i + 6 <= len(text):
                out.append(chr(int(text[i + 2:i + 6], 16)))
                i += 6
                continue
        out.append(ch)
        i += 1
    return "".join(out)


_DIRECTIVE_RE = re.compile(r"(if|else|endif|for|endfor)\b(.*)$", re.DOTALL)
_FOR_DIRECTIVE_RE = re.compile(
    r"([A-Za-z_][A-Za-z0-9_-]*)\s*(?:,\s*([A-Za-z_][A-Za-z0-9_-]*)\s*)?in\b(.*)$",
    re.DOTALL,
)


class _TemplateParser:
    """Splits template text into literals, interpolations and directives."""

    def __init__(self, text: str, unescape: bool):
        self.text = text
        self.unescape = unescape
        self.pos = 0
        self.strip_next = False

    def parse(self) -> Template:
        parts, _ = self._parse_parts(())
        return Template(parts or [""])

    def _flush(self, buffer: List[str], parts: List[Any], strip_right: bool = False) -> None:
        literal = "".join(buffer)
        if self.strip_next:
            literal = literal.lstrip()
            self.strip_next = False
        if strip_right:
            literal = literal.rstrip()
        if literal:
            parts.append(_unescape(literal) if self.unescape else literal)

    def _parse_parts(self, closers: Tuple[str, ...]) -> Tuple[List[Any], Optional[str]]:
        text = self.text
        parts: List[Any] = []
        buffer: List[str] = []
        while self.pos < len(text):
            i = self.pos
            if text.startswith("$${", i) or text.startswith("%%{", i):
                buffer.append(text[i + 1:i + 3])
                self.pos += 3
                continue
            if not (text.startswith("${", i) or text.startswith("%{", i)):
                buffer.append(text[i])
                self.pos += 1
                continue

            end = _skip_interpolation(text, i + 2)
            body = text[i + 2:end - 1].strip()
            strip_left = body.startswith("~")
            strip_right = body.endswith("~")
            body = body[1 if strip_left else 0:len(body) - 1 if strip_right else None].strip()
            self._flush(buffer, parts, strip_left)
            buffer = []
            self.pos = end
            self.strip_next = strip_right

            if text[i] == "$":
                parts.append(parse_expression(body))
                continue
            match = _DIRECTIVE_RE.match(body)
            if not match:
                raise EvaluationError(f"Invalid template directive %{{{body}}} in: {text}")
            keyword, rest = match.group(1), match.group(2).strip()
            if keyword in closers:
                return parts, keyword
            if keyword == "if":
                parts.append(self._parse_if(rest))
            elif keyword == "for":
                parts.append(self._parse_for(rest))
            else:
                raise EvaluationError(f"Unexpected %{{{keyword}}} in template: {text}")
        self._flush(buffer, parts)
        if closers:
            raise EvaluationError(f"Missing %{{{closers[-1]}}} in template: {text}")
        return parts, None

    def _parse_if(self, condition: str) -> Node:
        true_parts, closing = self._parse_parts(("else", "endif"))
        false_parts: List[Any] = []
        if closing == "else":
            false_parts, _ = self._parse_parts(("endif",))
        return TemplateIf(parse_expression(condition), Template(true_parts), Template(false_parts))

    def _parse_for(self, header: str) -> Node:
        match = _FOR_DIRECTIVE_RE.match(header)
        if not match:
            raise EvaluationError(f"Invalid for directive '{header}' in: {self.text}")
        first, second, collection = match.groups()
        key_var, value_var = (first, second) if second else (None, first)
        body, _ = self._parse_parts(("endfor",))
        return TemplateFor(key_var, value_var, parse_expression(collection.strip()), Template(body))


@lru_cache(maxsize=4096)
def parse_template(text: str, unescape: bool = False) -> Template:
    """Parse a string template into literal, interpolation and directive parts.

    ``%{ if }``/``%{ else }``/``%{ endif }`` and ``%{ for }``/``%{ endfor }``
    directives are supported, as are the ``~`` whitespace strip markers.

    Args:
        text: Template source without surrounding quotes.
        unescape: If True, process backslash escapes in literal parts. Strings
            nested inside expressions carry raw escapes; top-level values from
            python-hcl2 do not.

    Returns:
        Template node.

    Raises:
        EvaluationError: If an interpolation or directive is malformed.
    """
    return _TemplateParser(text, unescape).parse()


@lru_cache(maxsize=4096)
def parse_expression(source: str) -> Node:
    """Parse an HCL expression.

    Args:
        source: Expression source text.

    Returns:
        Root node of the expression.

    Raises:
        EvaluationError: If the expression cannot be parsed.
    """
    return _ExpressionParser(source).parse()


_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def _has_template(text: str) -> bool:
    return "${" in text or "%{" in text


def _value_node(text: str) -> Node:
    """Build the node for a string as python-hcl2 returns it."""
    if text.startswith("<<"):
        text = _strip_heredoc(text)
    if _has_template(text):
        return parse_template(text)
    return Literal(text)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def get_attribute(value: Any, name: str) -> Any:
    if value is None:
        raise EvaluationError(f"Attempt to get attribute '{name}' from a null value")
    if isinstance(value, Mapping):
        try:
            return value[name]
        except KeyError:
            raise EvaluationError(
                f"Unsupported attribute: this object does not have an attribute named \"{name}\""
            )
    raise EvaluationError(
        f"Unsupported attribute: cannot get attribute '{name}' of {type(value).__name__}"
    )


def get_index(value: Any, key: Any) -> Any:
    if value is None:
        raise EvaluationError("Attempt to index a null value")
    if isinstance(value, Mapping):
        try:
            return value[to_template_string(key)]
        except KeyError:
            raise EvaluationError(f"Invalid index: the given key \"{key}\" does not exist")
    if isinstance(value, (list, tuple)):
        position = int(to_number(key))
        if position < 0 or position >= len(value):
            raise EvaluationError(
                f"Invalid index: the given index {position} is out of range "
                f"for a list of {len(value)} elements"
            )
        return value[position]
    raise EvaluationError(f"Cannot index a value of type {type(value).__name__}")


def to_template_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value == int(value):
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    raise EvaluationError(
        f"Cannot include a value of type {type(value).__name__} in a string template"
    )


def to_number(value: Any) -> Any:
    if isinstance(value, bool):
        raise EvaluationError("A bool value cannot be used as a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                pass
    raise EvaluationError(f"A number is required, got {value!r}")


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value in ("true", "false"):
        return value == "true"
    raise EvaluationError(f"A bool is required, got {value!r}")


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


_HEREDOC_RE = re.compile(r"^<<(-?)([A-Za-z_][A-Za-z0-9_]*)\n(.*?)\n?[ \t]*\2\s*$", re.DOTALL)


def _strip_heredoc(text: str) -> str:
    match = _HEREDOC_RE.match(text)
    if not match:
        return text
    body = match.group(3)
    if match.group(1) == "-":
        lines = body.split("\n")
        indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
        margin = min(indents) if indents else 0
        body = "\n".join(line[margin:] for line in lines)
    return body + "\n"


def _normalize_key(key: Any, scope: Scope) -> str:
    if not isinstance(key, str):
        return to_template_string(key)
    if len(key) >= 2 and key.startswith('"') and key.endswith('"'):
        return key[1:-1]
    if "${" in key:
        return to_template_string(parse_template(key).evaluate(scope))
    return key


def evaluate_value(value: Any, scope: Scope) -> Any:
    """Evaluate a value as returned by python-hcl2.

    Strings are evaluated as templates, lists and dicts recursively; other
    values are returned unchanged.

    Args:
        value: Raw value from the HCL document.
        scope: Scope to evaluate against.

    Returns:
        The evaluated Python value.

    Raises:
        EvaluationError: If an expression cannot be evaluated.
    """
    if isinstance(value, str):
        if value.startswith("<<"):
            value = _strip_heredoc(value)
        if not _has_template(value):
            return value
        return parse_template(value).evaluate(scope)
    if isinstance(value, list):
        return [evaluate_value(item, scope) for item in value]
    if isinstance(value, dict):
        return {
            _normalize_key(key, scope): evaluate_value(item, scope)
            for key, item in value.items()
        }
    return value


def references(value: Any) -> List[str]:
    """Return the dotted variable references found in a raw value.

    Only the first two traversal steps are kept (``local.name``,
    ``dependency.vpc``), which is what callers need to decide evaluation order
    and visibility.
    """
    found: List[str] = []

    def walk_node(node: Any) -> None:
        if isinstance(node, GetAttr) and isinstance(node.target, Variable):
            found.append(f"{node.target.name}.{node.name}")
            return
        if isinstance(node, Variable):
            found.append(node.name)
            return
        for attr in vars(node).values() if isinstance(node, Node) else []:
            if isinstance(attr, Node):
                walk_node(attr)
            elif isinstance(attr, list):
                for item in attr:
                    if isinstance(item, Node):
                        walk_node(item)
                    elif isinstance(item, tuple):
                        for sub in item:
                            if isinstance(sub, Node):
                                walk_node(sub)

    def walk_value(raw: Any) -> None:
        if isinstance(raw, str) and _has_template(raw):
            for part in parse_template(raw).parts:
                if isinstance(part, Node):
                    walk_node(part)
        elif isinstance(raw, list):
            for item in raw:
                walk_value(item)
        elif isinstance(raw, dict):
            for key, item in raw.items():
                walk_value(key)
                walk_value(item)

    walk_value(value)
    return found
