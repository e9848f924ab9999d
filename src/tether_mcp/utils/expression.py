"""
Arithmetic expression evaluation without eval().

Grammar (lowest to highest precedence):

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "//" | "%") unary)*
    unary      := ("+" | "-") unary | power
    power      := atom (("**" | "^") unary)?
    atom       := NUMBER | NAME | NAME "(" [expression ("," expression)*] ")"
                | "(" expression ")"
"""

import math
import re
from typing import Callable, Dict, List, NamedTuple, Union

Number = Union[int, float]

MAX_EXPRESSION_LENGTH = 1000
MAX_EXPONENT = 1000
# Integer results are exact, so their size has to be bounded up front
MAX_RESULT_BITS = 4096
MAX_ROUND_DIGITS = 100

CONSTANTS: Dict[str, Number] = {
    "pi": math.pi,
    "e": math.e,
    "tau": math.tau,
}


def _round(value: Number, ndigits: int | None = None) -> Number:
    if ndigits is None:
        return round(value)
    if abs(ndigits) > MAX_ROUND_DIGITS:
        raise ValueError(f"ndigits must be within {MAX_ROUND_DIGITS}")
    return round(value, ndigits)


FUNCTIONS: Dict[str, Callable[..., Number]] = {
    "sqrt": math.sqrt,
    "abs": abs,
    "round": _round,
    "min": min,
    "max": max,
    "floor": math.floor,
    "ceil": math.ceil,
}

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<number>\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>\*\*|//|[-+*/%^(),]))"
)


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


def _check_bits(bits: int) -> None:
    if bits > MAX_RESULT_BITS:
        raise ExpressionError("Result is too large")


class Token(NamedTuple):
    kind: str
    value: str
    position: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    source = source.rstrip()
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if not match or match.end() == position:
            raise ExpressionError(f"Unexpected character at position {position}: {source[position]!r}")
        kind = match.lastgroup
        text = match.group(0).strip()
        tokens.append(Token(kind, text, match.start(kind)))
        position = match.end()
    tokens.append(Token("end", "", len(source)))
    return tokens


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _accept(self, *ops: str) -> str | None:
        token = self.current
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            raise ExpressionError(f"Expected {op!r} at position {self.current.position}")

    def parse(self) -> Number:
        value = self.expression()
        if self.current.kind != "end":
            raise ExpressionError(f"Unexpected {self.current.value!r} at position {self.current.position}")
        return value

    def expression(self) -> Number:
        value = self.term()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return value
            right = self.term()
            value = value + right if op == "+" else value - right

    def term(self) -> Number:
        value = self.unary()
        while True:
            op = self._accept("*", "/", "//", "%")
            if op is None:
                return value
            right = self.unary()
            if op == "*":
                if isinstance(value, int) and isinstance(right, int):
                    _check_bits(value.bit_length() + right.bit_length())
                value = value * right
                continue
            if right == 0:
                raise ExpressionError("Division by zero")
            if op == "/":
                value = value / right
            elif op == "//":
                value = value // right
            else:
                value = value % right

    def unary(self) -> Number:
        op = self._accept("+", "-")
        if op == "-":
            return -self.unary()
        if op == "+":
            return +self.unary()
        return self.power()

    def power(self) -> Number:
        base = self.atom()
        if self._accept("**", "^"):
            exponent = self.unary()
            if abs(exponent) > MAX_EXPONENT:
                raise ExpressionError(f"Exponent {exponent} is too large")
            if base == 0 and exponent < 0:
                raise ExpressionError("Division by zero")
            if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
                _check_bits(exponent * max(base.bit_length() - 1, 0))
            return base ** exponent
        return base

    def atom(self) -> Number:
        token = self.current
        if token.kind == "number":
            self.index += 1
            text = token.value
            if re.fullmatch(r"\d+", text):
                return int(text)
            return float(text)

        if token.kind == "name":
            self.index += 1
            if self._accept("("):
                return self._call(token)
            if token.value in CONSTANTS:
                return CONSTANTS[token.value]
            raise ExpressionError(f"Unknown name {token.value!r}")

        if self._accept("("):
            value = self.expression()
            self._expect(")")
            return value

        if token.kind == "end":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected {token.value!r} at position {token.position}")

    def _call(self, name: Token) -> Number:
        func = FUNCTIONS.get(name.value)
        if func is None:
            raise ExpressionError(f"Unknown function {name.value!r}")
        args: List[Number] = []
        if not self._accept(")"):
            args.append(self.expression())
            while self._accept(","):
                args.append(self.expression())
            self._expect(")")
        try:
            return func(*args)
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"{name.value}(): {exc}") from exc


def evaluate(source: str) -> Number:
    """
    Evaluate an arithmetic expression such as "2 * (3 + 4) ** 2".

    Raises:
        ExpressionError: If the expression is malformed or cannot be evaluated.
    """
    if not source or not source.strip():
        raise ExpressionError("Empty expression")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    try:
        return _Parser(tokenize(source)).parse()
    except OverflowError as exc:
        raise ExpressionError("Result is too large") from exc
