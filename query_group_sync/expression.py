"""
Boolean expression language used for group queries.

Group administrators write queries such as ``department -eq 'sales'`` or
``office -eq 'Berlin' -and -not (title -like '*intern*')`` straight into a group
attribute. This module parses that text into a small AST and either evaluates
it against a user's attributes (secondary filters) or renders it as an LDAP
search filter (primary queries). Nothing is ever handed to a code evaluator.
"""

import re
import fnmatch
import logging
import operator
from collections import namedtuple
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)


class ExpressionError(Exception):
    """Raised when a query expression cannot be parsed or rendered."""
    pass


Value = Union[str, int, float, None]


@dataclass(frozen=True)
class Comparison:
    attribute: str
    operator: str
    value: Value


@dataclass(frozen=True)
class Presence:
    attribute: str


@dataclass(frozen=True)
class And:
    left: 'Node'
    right: 'Node'


@dataclass(frozen=True)
class Or:
    left: 'Node'
    right: 'Node'


@dataclass(frozen=True)
class Not:
    operand: 'Node'


@dataclass(frozen=True)
class Literal:
    value: bool


Node = Union[Comparison, Presence, And, Or, Not, Literal]

EQUALITY_OPERATORS = ('-eq', '-ne', '-ceq', '-cne')
PATTERN_OPERATORS = ('-like', '-notlike')
ORDERING_OPERATORS = ('-gt', '-ge', '-lt', '-le')
COMPARISON_OPERATORS = EQUALITY_OPERATORS + PATTERN_OPERATORS + ORDERING_OPERATORS
LOGICAL_OPERATORS = ('-and', '-or', '-not')

# negated operator -> positive operator it inverts
NEGATED_OPERATORS = {'-ne': '-eq', '-cne': '-ceq', '-notlike': '-like'}

_ORDERING = {
    '-gt': operator.gt,
    '-ge': operator.ge,
    '-lt': operator.lt,
    '-le': operator.le,
}

_VARIABLES = {'$true': 'TRUE', '$false': 'FALSE', '$null': None}

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<bang>!)
  | (?P<number>-?\d+(?:\.\d+)?(?![A-Za-z_]))
  | (?P<op>-[A-Za-z]+)
  | (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
  | (?P<variable>\$[A-Za-z_]+)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
""", re.VERBOSE)

Token = namedtuple('Token', ['kind', 'value', 'position'])


def tokenize(text: str) -> List[Token]:
    """Split expression text into tokens, dropping whitespace."""
    tokens = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match:
            raise ExpressionError(f"Unexpected character {text[position]!r} at position {position}")
        kind = match.lastgroup
        if kind != 'ws':
            value = match.group()
            if kind in ('op', 'variable'):
                value = value.lower()
            tokens.append(Token(kind, value, position))
        position = match.end()
    return tokens


def _unquote(literal: str) -> str:
    quote = literal[0]
    return literal[1:-1].replace(quote * 2, quote)


def _to_number(text: str) -> Union[int, float]:
    try:
        return int(text)
    except ValueError:
        return float(text)


class _Parser:
    """Recursive descent parser; ``-and`` binds tighter than ``-or``."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Expression is empty")
        node = self._parse_or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ExpressionError(f"Unexpected {token.value!r} at position {token.position}")
        return node

    def _peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression")
        self.index += 1
        return token

    def _at_operator(self, name: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == 'op' and token.value == name

    def _parse_or(self) -> Node:
        node = self._parse_and()
        while self._at_operator('-or'):
            self._advance()
            node = Or(node, self._parse_and())
        return node

    def _parse_and(self) -> Node:
        node = self._parse_unary()
        while self._at_operator('-and'):
            self._advance()
            node = And(node, self._parse_unary())
        return node

    def _parse_unary(self) -> Node:
        token = self._peek()
        if token is not None and (token.kind == 'bang' or (token.kind == 'op' and token.value == '-not')):
            self._advance()
            return Not(self._parse_unary())
        return self._parse_primary()

    def _parse_primary(self) -> Node:
        token = self._advance()

        if token.kind == 'lparen':
            node = self._parse_or()
            closing = self._advance()
            if closing.kind != 'rparen':
                raise ExpressionError(f"Expected ')' at position {closing.position}")
            return node

        if token.kind == 'variable':
            if token.value == '$true':
                return Literal(True)
            if token.value == '$false':
                return Literal(False)
            raise ExpressionError(f"{token.value} cannot be used as a condition")

        if token.kind == 'ident':
            following = self._peek()
            if following is not None and following.kind == 'op' and following.value not in LOGICAL_OPERATORS:
                self._advance()
                if following.value not in COMPARISON_OPERATORS:
                    raise ExpressionError(f"Unknown operator {following.value} at position {following.position}")
                value = self._parse_literal()
                if value is None and following.value in ORDERING_OPERATORS:
                    raise ExpressionError(f"{following.value} cannot compare against $null")
                return Comparison(token.value, following.value, value)
            return Presence(token.value)

        if token.kind == 'op':
            raise ExpressionError(f"Unexpected operator {token.value} at position {token.position}")
        raise ExpressionError(f"Unexpected {token.value!r} at position {token.position}")

    def _parse_literal(self) -> Value:
        token = self._advance()
        if token.kind == 'string':
            return _unquote(token.value)
        if token.kind == 'number':
            return _to_number(token.value)
        if token.kind == 'variable' and token.value in _VARIABLES:
            return _VARIABLES[token.value]
        if token.kind == 'ident':
            # PowerShell accepts bare words on the right-hand side
            return token.value
        raise ExpressionError(f"Expected a value at position {token.position}, got {token.value!r}")


def parse_expression(text: str) -> Node:
    """
    Parse expression text into an AST.

    Raises:
        ExpressionError: If the text is empty or malformed
    """
    return _Parser(text).parse()


def referenced_attributes(node: Node) -> List[str]:
    """Attribute names used by an expression, first spelling wins, in order of appearance."""
    names = []
    seen = set()

    def visit(current):
        if isinstance(current, (Comparison, Presence)):
            if current.attribute.lower() not in seen:
                seen.add(current.attribute.lower())
                names.append(current.attribute)
        elif isinstance(current, (And, Or)):
            visit(current.left)
            visit(current.right)
        elif isinstance(current, Not):
            visit(current.operand)

    visit(node)
    return names


def _as_number(value) -> Optional[Union[int, float]]:
    if isinstance(value, (int, float)):
        return value
    try:
        return _to_number(str(value).strip())
    except ValueError:
        return None


def _matches(op: str, actual: str, expected: Value) -> bool:
    if op == '-ceq':
        return actual == str(expected)
    if op == '-like':
        return fnmatch.fnmatchcase(actual.casefold(), str(expected).casefold())
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        left, right = actual.casefold(), str(expected).casefold()
    if op == '-eq':
        return left == right
    return _ORDERING[op](left, right)


def _compare(op: str, values: Sequence[str], expected: Value) -> bool:
    if expected is None:
        if op in NEGATED_OPERATORS:
            return bool(values)
        return not values
    if op in NEGATED_OPERATORS:
        positive = NEGATED_OPERATORS[op]
        return not any(_matches(positive, value, expected) for value in values)
    return any(_matches(op, value, expected) for value in values)


def evaluate(node: Node, lookup: Callable[[str], Sequence[str]]) -> bool:
    """
    Evaluate an AST against an attribute lookup.

    ``lookup`` returns the values of an attribute (empty when the attribute is not
    populated). Missing attributes never raise; they simply fail positive comparisons.
    """
    if isinstance(node, And):
        return evaluate(node.left, lookup) and evaluate(node.right, lookup)
    if isinstance(node, Or):
        return evaluate(node.left, lookup) or evaluate(node.right, lookup)
    if isinstance(node, Not):
        return not evaluate(node.operand, lookup)
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Presence):
        return any(str(value) != '' for value in lookup(node.attribute))
    if isinstance(node, Comparison):
        return _compare(node.operator, tuple(lookup(node.attribute)), node.value)
    raise ExpressionError(f"Unsupported expression node: {node!r}")


def _render_value(value: Value) -> str:
    return escape_filter_chars(str(value))


def _render_pattern(pattern: str) -> str:
    if '?' in pattern or '[' in pattern:
        raise ExpressionError(f"Pattern {pattern!r} uses wildcards a directory filter cannot express")
    return '*'.join(escape_filter_chars(part) for part in pattern.split('*'))


def _render_comparison(node: Comparison) -> str:
    attribute, op, value = node.attribute, node.operator, node.value
    if value is None:
        presence = f"({attribute}=*)"
        return presence if op in NEGATED_OPERATORS else f"(!{presence})"

    if op in PATTERN_OPERATORS:
        positive = f"({attribute}={_render_pattern(str(value))})"
    elif op in ORDERING_OPERATORS:
        rendered = _render_value(value)
        if op == '-ge':
            return f"({attribute}>={rendered})"
        if op == '-le':
            return f"({attribute}<={rendered})"
        bound = '>=' if op == '-gt' else '<='
        return f"(&({attribute}{bound}{rendered})(!({attribute}={rendered})))"
    else:
        positive = f"({attribute}={_render_value(value)})"

    if op in NEGATED_OPERATORS:
        return f"(!{positive})"
    return positive


def _collect(node: Node, kind: type) -> Iterable[Node]:
    """Flatten nested And/Or chains so they render as a single LDAP set."""
    if isinstance(node, kind):
        yield from _collect(node.left, kind)
        yield from _collect(node.right, kind)
    else:
        yield node


def to_ldap_filter(node: Node) -> str:
    """Render an AST as an RFC 4515 search filter."""
    if isinstance(node, Comparison):
        return _render_comparison(node)
    if isinstance(node, Presence):
        return f"({node.attribute}=*)"
    if isinstance(node, And):
        return '(&' + ''.join(to_ldap_filter(part) for part in _collect(node, And)) + ')'
    if isinstance(node, Or):
        return '(|' + ''.join(to_ldap_filter(part) for part in _collect(node, Or)) + ')'
    if isinstance(node, Not):
        return f"(!{to_ldap_filter(node.operand)})"
    if isinstance(node, Literal):
        return '(objectClass=*)' if node.value else '(!(objectClass=*))'
    raise ExpressionError(f"Unsupported expression node: {node!r}")


def primary_query_to_ldap(query: str) -> str:
    """
    Turn a stored primary query into an LDAP filter.

    Queries that already look like LDAP filters (leading parenthesis) are passed
    through untouched; anything else is parsed as an expression and rendered.
    """
    text = query.strip()
    if not text:
        raise ExpressionError("Primary query is empty")
    if text.startswith('('):
        return text
    return to_ldap_filter(parse_expression(text))


def resolve_attribute_names(names: Iterable[str],
                            known_attributes: Optional[Iterable[str]] = None) -> Tuple[List[str], List[str]]:
    """
    Match referenced names against the known attribute superset.

    Returns:
        Tuple of (canonical names to request, names that matched nothing)
    """
    names = list(names)
    known = list(known_attributes or [])
    if not known:
        return names, []

    canonical = {name.lower(): name for name in known}
    resolved, unresolved = [], []
    for name in names:
        match = canonical.get(name.lower())
        if match:
            resolved.append(match)
        else:
            unresolved.append(name)
    return resolved, unresolved


class CompiledFilter:
    """A parsed secondary filter together with the attributes it needs loaded."""

    def __init__(self, expression: str, tree: Node, attributes: List[str]):
        self.expression = expression
        self.tree = tree
        self.attributes = attributes

    def __call__(self, user) -> bool:
        return evaluate(self.tree, user.get_values)

    def __repr__(self):
        return f"CompiledFilter({self.expression!r}, attributes={self.attributes})"


def compile_filter(expression: Optional[str],
                   known_attributes: Optional[Iterable[str]] = None) -> Optional[CompiledFilter]:
    """
    Compile a secondary filter expression into a user predicate.

    Args:
        expression: Expression text; ``None`` or blank means no filtering
        known_attributes: Attribute superset sampled from the directory at startup

    Returns:
        CompiledFilter, or None when there is nothing to filter on

    Raises:
        ExpressionError: If the expression is malformed
    """
    if expression is None or not expression.strip():
        return None

    tree = parse_expression(expression)
    attributes, unresolved = resolve_attribute_names(referenced_attributes(tree), known_attributes)
    if unresolved:
        logger.warning(f"Filter {expression!r} references unknown attributes {unresolved}; "
                       f"they will be treated as not set")
    return CompiledFilter(expression, tree, attributes)
