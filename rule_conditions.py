"""
Rule Condition Language
Small boolean expression language for incentive adjustment rules.

Purpose: Parse rule conditions such as
    policyName === "Etouch" && paymentFrequency === "Monthly" && autopay === false
once into an expression tree, then evaluate the tree against a policy's
field values. Nothing is ever executed as code.

Usage:
    cond = compile_condition('ekyc === true || bfl === true')
    cond.evaluate({"ekyc": False, "bfl": True})    # True
    evaluate("paymentAmount >", fields)            # False (logged, never raises)
"""

import re
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Tuple

logger = logging.getLogger("RuleConditions")

# =============================================================================
# 1. ERRORS
# =============================================================================

class ConditionError(Exception):
    """Base error for rule conditions."""


class ConditionSyntaxError(ConditionError):
    """The condition text could not be parsed."""


class ConditionEvaluationError(ConditionError):
    """The condition parsed but could not be evaluated for these fields."""


# =============================================================================
# 2. TOKENIZER
# =============================================================================

@dataclass(frozen=True)
class Token:
    kind: str       # STRING, NUMBER, NAME, OP, LPAREN, RPAREN, END
    value: Any
    pos: int


TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?|\.\d+)
  | (?P<dstring>"(?:[^"\\]|\\.)*")
  | (?P<sstring>'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||<|>|!)
  | (?P<lparen>\()
  | (?P<rparen>\))
""", re.VERBOSE)

ESCAPE_RE = re.compile(r"\\(.)")


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = TOKEN_RE.match(text, pos)
        if not m:
            raise ConditionSyntaxError(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        raw = m.group()
        if kind == "number":
            tokens.append(Token("NUMBER", float(raw), pos))
        elif kind in ("dstring", "sstring"):
            tokens.append(Token("STRING", ESCAPE_RE.sub(r"\1", raw[1:-1]), pos))
        elif kind == "name":
            tokens.append(Token("NAME", raw, pos))
        elif kind == "op":
            tokens.append(Token("OP", raw, pos))
        elif kind == "lparen":
            tokens.append(Token("LPAREN", raw, pos))
        elif kind == "rparen":
            tokens.append(Token("RPAREN", raw, pos))
        pos = m.end()
    tokens.append(Token("END", None, len(text)))
    return tokens


# =============================================================================
# 3. EXPRESSION TREE
# =============================================================================

KEYWORD_LITERALS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, fields: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class FieldRef:
    name: str

    def evaluate(self, fields: Mapping[str, Any]) -> Any:
        if self.name not in fields:
            raise ConditionEvaluationError(f"Unknown field '{self.name}'")
        return fields[self.name]


@dataclass(frozen=True)
class Not:
    operand: Any

    def evaluate(self, fields: Mapping[str, Any]) -> Any:
        return not _truthy(self.operand.evaluate(fields))


@dataclass(frozen=True)
class BoolOp:
    op: str          # "&&" or "||"
    left: Any
    right: Any

    def evaluate(self, fields: Mapping[str, Any]) -> Any:
        left = _truthy(self.left.evaluate(fields))
        if self.op == "&&":
            return left and _truthy(self.right.evaluate(fields))
        return left or _truthy(self.right.evaluate(fields))


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any

    def evaluate(self, fields: Mapping[str, Any]) -> Any:
        a = self.left.evaluate(fields)
        b = self.right.evaluate(fields)
        if self.op == "===":
            return _strict_equals(a, b)
        if self.op == "!==":
            return not _strict_equals(a, b)
        if self.op == "==":
            return _loose_equals(a, b)
        if self.op == "!=":
            return not _loose_equals(a, b)
        return _ordered(self.op, a, b)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _truthy(value: Any) -> bool:
    if isinstance(value, float) and value != value:
        return False
    return bool(value)


def _strict_equals(a: Any, b: Any) -> bool:
    # Booleans never equal numbers, strings never equal numbers
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip() or 0)
        except ValueError:
            return None
    return None


def _loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    na, nb = _as_number(a), _as_number(b)
    if na is None or nb is None:
        return False
    return na == nb


def _ordered(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        left, right = _as_number(a), _as_number(b)
        if left is None or right is None:
            raise ConditionEvaluationError(f"Cannot compare {a!r} {op} {b!r}")
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


# =============================================================================
# 4. PARSER (recursive descent)
# =============================================================================
#   or       := and ( "||" and )*
#   and      := equality ( "&&" equality )*
#   equality := relation ( ("===" | "!==" | "==" | "!=") relation )*
#   relation := unary ( ("<" | "<=" | ">" | ">=") unary )*
#   unary    := "!" unary | primary
#   primary  := NUMBER | STRING | NAME | "(" or ")"

EQUALITY_OPS = ("===", "!==", "==", "!=")
RELATIONAL_OPS = ("<", "<=", ">", ">=")


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        tok = self.tokens[self.index]
        self.index += 1
        return tok

    def accept_op(self, ops: Tuple[str, ...]) -> Optional[str]:
        tok = self.peek()
        if tok.kind == "OP" and tok.value in ops:
            self.advance()
            return tok.value
        return None

    def parse(self):
        if self.peek().kind == "END":
            raise ConditionSyntaxError("Empty condition")
        node = self.parse_or()
        tok = self.peek()
        if tok.kind != "END":
            raise ConditionSyntaxError(f"Unexpected token {tok.value!r} at position {tok.pos}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.accept_op(("||",)):
            node = BoolOp("||", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_equality()
        while self.accept_op(("&&",)):
            node = BoolOp("&&", node, self.parse_equality())
        return node

    def parse_equality(self):
        node = self.parse_relation()
        while True:
            op = self.accept_op(EQUALITY_OPS)
            if not op:
                return node
            node = Compare(op, node, self.parse_relation())

    def parse_relation(self):
        node = self.parse_unary()
        while True:
            op = self.accept_op(RELATIONAL_OPS)
            if not op:
                return node
            node = Compare(op, node, self.parse_unary())

    def parse_unary(self):
        if self.accept_op(("!",)):
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self):
        tok = self.advance()
        if tok.kind in ("NUMBER", "STRING"):
            return Literal(tok.value)
        if tok.kind == "NAME":
            if tok.value in KEYWORD_LITERALS:
                return Literal(KEYWORD_LITERALS[tok.value])
            return FieldRef(tok.value)
        if tok.kind == "LPAREN":
            node = self.parse_or()
            closing = self.advance()
            if closing.kind != "RPAREN":
                raise ConditionSyntaxError(f"Missing ')' for '(' in {self.text!r}")
            return node
        if tok.kind == "END":
            raise ConditionSyntaxError(f"Unexpected end of condition {self.text!r}")
        raise ConditionSyntaxError(f"Unexpected token {tok.value!r} at position {tok.pos}")


# =============================================================================
# 5. PUBLIC API
# =============================================================================

@dataclass(frozen=True)
class Condition:
    source: str
    tree: Any

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        """Evaluate against a field mapping. Raises ConditionEvaluationError."""
        return _truthy(self.tree.evaluate(fields))

    def field_names(self) -> List[str]:
        """Names of all policy fields this condition reads, in order of appearance."""
        names: List[str] = []
        stack = [self.tree]
        while stack:
            node = stack.pop()
            if isinstance(node, FieldRef):
                if node.name not in names:
                    names.append(node.name)
            elif isinstance(node, Not):
                stack.append(node.operand)
            elif isinstance(node, (BoolOp, Compare)):
                stack.extend([node.right, node.left])
        return names


@lru_cache(maxsize=1024)
def compile_condition(source: str) -> Condition:
    """Parse condition text into a reusable Condition. Raises ConditionSyntaxError."""
    if not isinstance(source, str):
        raise ConditionSyntaxError(f"Condition must be text, got {type(source).__name__}")
    return Condition(source, _Parser(source).parse())


def _compile_text(source: Any) -> Condition:
    # non-text never reaches the cache
    if not isinstance(source, str):
        raise ConditionSyntaxError(f"Condition must be text, got {type(source).__name__}")
    return compile_condition(source)


def check_condition(source: str) -> Optional[str]:
    """Return a syntax problem description, or None when the condition parses."""
    try:
        _compile_text(source)
    except ConditionError as e:
        return str(e)
    return None


def evaluate(source: str, fields: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition string against policy fields.
    Malformed or unevaluable conditions are logged and count as not matching.
    """
    try:
        return _compile_text(source).evaluate(fields)
    except ConditionError as e:
        logger.warning(f"Failed to evaluate condition '{source}': {e}")
        return False
