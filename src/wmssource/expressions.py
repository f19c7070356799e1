"""Bounding box expressions.

Each frame's bounding box is computed from six expressions that are evaluated
in a fixed order: ``xref``, ``yref``, ``x1``, ``x2``, ``y1``, ``y2``. Every result
is bound to its variable before the next expression is evaluated, so an
expression can use the variables that come before it. Variables that are
not computed yet are NaN. The frame time in seconds is available as ``t``.

The language covers arithmetic (``+ - * / %`` and ``^`` for power), the
``PI``, ``E``, and ``PHI`` constants, and the functions in ``FUNCTIONS``.
Evaluation follows IEEE semantics so ``1/0`` is ``inf`` and ``sqrt(-1)`` is NaN.
"""

from __future__ import annotations

import ast
import io
import math
import re
import tokenize
from dataclasses import astuple, dataclass, fields
from functools import lru_cache
from typing import Callable

import numpy as np

from wmssource.exceptions import ExpressionError

__all__ = ["BBoxExpressions", "BoundingBox", "Expression", "parse_expression", "evaluate"]

VARIABLES = ("xref", "yref", "x1", "x2", "y1", "y2", "t")
CONSTANTS = {"PI": math.pi, "E": math.e, "PHI": (1 + math.sqrt(5)) / 2}
# Function names that are Python keywords, renamed before parsing.
KEYWORDS = {"if": "if_"}
KEYWORD_RE = re.compile(r"\b(" + "|".join(KEYWORDS) + r")\b(?=\s*\()")


def _mod(a: float, b: float) -> float:
    return a - np.floor(a / b) * b


def _clip(x: float, lo: float, hi: float) -> float:
    if np.isnan(lo) or np.isnan(hi) or lo > hi:
        return np.nan
    return np.clip(x, lo, hi)


FUNCTIONS: dict[str, tuple[int, Callable[..., float]]] = {
    "sin": (1, np.sin),
    "cos": (1, np.cos),
    "tan": (1, np.tan),
    "asin": (1, np.arcsin),
    "acos": (1, np.arccos),
    "atan": (1, np.arctan),
    "atan2": (2, np.arctan2),
    "sinh": (1, np.sinh),
    "cosh": (1, np.cosh),
    "tanh": (1, np.tanh),
    "sqrt": (1, np.sqrt),
    "exp": (1, np.exp),
    "log": (1, np.log),
    "abs": (1, np.abs),
    "floor": (1, np.floor),
    "ceil": (1, np.ceil),
    "trunc": (1, np.trunc),
    "round": (1, lambda x: np.copysign(np.floor(np.abs(x) + 0.5), x)),
    "hypot": (2, np.hypot),
    "pow": (2, np.power),
    "min": (2, np.fmin),
    "max": (2, np.fmax),
    "mod": (2, _mod),
    "clip": (3, _clip),
    "between": (3, lambda x, lo, hi: float(lo <= x <= hi)),
    "lt": (2, lambda a, b: float(a < b)),
    "lte": (2, lambda a, b: float(a <= b)),
    "gt": (2, lambda a, b: float(a > b)),
    "gte": (2, lambda a, b: float(a >= b)),
    "eq": (2, lambda a, b: float(a == b)),
    "if_": (3, lambda c, a, b: a if c else b),
    "ifnot": (3, lambda c, a, b: b if c else a),
}

BINARY_OPERATORS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: np.add,
    ast.Sub: np.subtract,
    ast.Mult: np.multiply,
    ast.Div: np.divide,
    ast.Mod: _mod,
    ast.Pow: np.power,
}

UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: np.positive,
    ast.USub: np.negative,
}


def _tokenize(source: str) -> list[tuple[int, str]]:
    tokens = []
    for tok in tokenize.generate_tokens(io.StringIO(source).readline):
        if tok.type == tokenize.COMMENT:
            raise SyntaxError("comments are not allowed")
        if tok.type not in (tokenize.NEWLINE, tokenize.NL, tokenize.ENDMARKER):
            tokens.append((tok.type, tok.string))
    return tokens


def _primary(tokens: list[tuple[int, str]], i: int) -> tuple[str | None, int]:
    """Read a number, a name, a call, or a parenthesized group starting at ``i``."""
    if i >= len(tokens):
        return None, i
    kind, value = tokens[i]
    if value == "(":
        inner, i = _rewrite(tokens, i + 1)
        return f"({inner})", _closing(tokens, i)
    if kind == tokenize.NAME and i + 1 < len(tokens) and tokens[i + 1][1] == "(":
        inner, j = _rewrite(tokens, i + 2)
        return f"{value}({inner})", _closing(tokens, j)
    if kind in (tokenize.NAME, tokenize.NUMBER):
        return value, i + 1
    return None, i


def _closing(tokens: list[tuple[int, str]], i: int) -> int:
    if i >= len(tokens):
        raise SyntaxError("'(' was never closed")
    return i + 1


def _rewrite(tokens: list[tuple[int, str]], i: int) -> tuple[str, int]:
    parts = []
    while i < len(tokens) and tokens[i][1] != ")":
        unit, i = _primary(tokens, i)
        if unit is None:
            parts.append(tokens[i][1])
            i += 1
            continue
        while i < len(tokens) and tokens[i][1] == "^":
            j, sign = i + 1, ""
            while j < len(tokens) and tokens[j][1] in ("+", "-"):
                sign += tokens[j][1]
                j += 1
            exponent, j = _primary(tokens, j)
            if exponent is None:
                break
            unit = f"({unit}) ** ({sign}{exponent})"
            i = j
        parts.append(unit)
    return " ".join(parts), i


def _power_chains(source: str) -> str:
    """Translate ``^`` into ``**`` with left associativity.

    ``2^3^2`` is ``(2^3)^2`` and a leading sign applies to the whole chain,
    so ``-2^2`` is ``-4``. A sign right after ``^`` belongs to the exponent.

    Examples
    --------
    >>> _power_chains("2^3^-2")
    '((2) ** (3)) ** (-2)'
    """
    tokens = _tokenize(source)
    out, i = _rewrite(tokens, 0)
    if i != len(tokens):
        raise SyntaxError("unmatched ')'")
    return out


@dataclass(frozen=True)
class BoundingBox:
    """A bounding box; (west, south, east, north)."""

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)

    def __str__(self) -> str:
        return f"[({self.x1:f} {self.y1:f}), ({self.x2:f} {self.y2:f})]"


class Expression:
    """A parsed expression.

    Parameters
    ----------
    text : str
        The expression, e.g., ``x1 + 10 * sin(t)``.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        source = KEYWORD_RE.sub(lambda m: KEYWORDS[m.group(1)], text.strip())
        if not source:
            raise ExpressionError(text, "empty expression")
        try:
            tree = ast.parse(_power_chains(source), mode="eval")
            self._check(tree.body)
        except (SyntaxError, tokenize.TokenError) as ex:
            msg = ex.msg if isinstance(ex, SyntaxError) else ex.args[0]
            raise ExpressionError(text, f"invalid syntax ({msg})") from ex
        except (RecursionError, MemoryError) as ex:
            raise ExpressionError(text, "expression is too long or too deeply nested") from ex
        self._tree = tree.body

    def _check(self, node: ast.AST) -> None:
        """Reject anything that is not part of the expression language."""
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ExpressionError(self.text, f"invalid constant {node.value!r}")
        elif isinstance(node, ast.Name):
            if node.id not in VARIABLES and node.id not in CONSTANTS:
                raise ExpressionError(self.text, f"undefined constant '{node.id}'")
        elif isinstance(node, ast.BinOp):
            if type(node.op) not in BINARY_OPERATORS:
                raise ExpressionError(self.text, f"unsupported operator {type(node.op).__name__}")
            self._check(node.left)
            self._check(node.right)
        elif isinstance(node, ast.UnaryOp):
            if type(node.op) not in UNARY_OPERATORS:
                raise ExpressionError(self.text, f"unsupported operator {type(node.op).__name__}")
            self._check(node.operand)
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                name = getattr(node.func, "id", ast.unparse(node.func))
                raise ExpressionError(self.text, f"unknown function '{name}'")
            if node.keywords:
                raise ExpressionError(self.text, "keyword arguments are not supported")
            n_args = FUNCTIONS[node.func.id][0]
            if len(node.args) != n_args:
                raise ExpressionError(
                    self.text,
                    f"{node.func.id.rstrip('_')}() takes {n_args} argument(s),"
                    + f" got {len(node.args)}",
                )
            for arg in node.args:
                self._check(arg)
        else:
            raise ExpressionError(self.text, f"unsupported syntax {type(node).__name__}")

    def _eval(self, node: ast.AST, variables: dict[str, float]) -> float:
        if isinstance(node, ast.Constant):
            return np.float64(node.value)
        if isinstance(node, ast.Name):
            if node.id in variables:
                return variables[node.id]
            return np.float64(CONSTANTS[node.id])
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, variables)
            right = self._eval(node.right, variables)
            return BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            return UNARY_OPERATORS[type(node.op)](self._eval(node.operand, variables))
        if isinstance(node, ast.Call):
            func = FUNCTIONS[node.func.id][1]  # pyright: ignore[reportAttributeAccessIssue]
            return func(*(self._eval(a, variables) for a in node.args))
        raise ExpressionError(self.text, f"unsupported syntax {type(node).__name__}")

    def evaluate(self, variables: dict[str, float]) -> float:
        """Evaluate the expression with the given variable values."""
        with np.errstate(all="ignore"):
            try:
                return float(self._eval(self._tree, variables))
            except (TypeError, ValueError, OverflowError, RecursionError) as ex:
                raise ExpressionError(self.text, str(ex)) from ex

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"


@lru_cache(maxsize=256)
def parse_expression(text: str) -> Expression:
    """Parse an expression, parsed expressions are cached."""
    return Expression(text)


@dataclass(frozen=True)
class BBoxExpressions:
    """The expressions for computing a frame's bounding box.

    The field order is the evaluation order.

    Parameters
    ----------
    xref : str
        A reference x coordinate, defaults to ``0``.
    yref : str
        A reference y coordinate, defaults to ``0``.
    x1 : str
        West, defaults to ``-180``.
    x2 : str
        East, defaults to ``180``.
    y1 : str
        South, defaults to ``-90``.
    y2 : str
        North, defaults to ``90``.
    """

    xref: str = "0"
    yref: str = "0"
    x1: str = "-180"
    x2: str = "180"
    y1: str = "-90"
    y2: str = "90"

    def validate(self) -> None:
        """Parse all the expressions to catch syntax errors early."""
        for expr in astuple(self):
            parse_expression(expr)


def evaluate(exprs: BBoxExpressions, t: float) -> BoundingBox:
    """Compute the bounding box at a given time.

    Parameters
    ----------
    exprs : BBoxExpressions
        The expressions.
    t : float
        Frame time in seconds.

    Returns
    -------
    BoundingBox
        The bounding box from the final ``x1``, ``y1``, ``x2``, and ``y2`` values.

    Examples
    --------
    >>> evaluate(BBoxExpressions(x1="10", x2="x1+5"), 0.0).bounds
    (10.0, -90.0, 15.0, 90.0)
    """
    variables = dict.fromkeys(VARIABLES[:-1], np.nan)
    variables["t"] = np.float64(t)
    for f in fields(exprs):
        variables[f.name] = np.float64(parse_expression(getattr(exprs, f.name)).evaluate(variables))
    return BoundingBox(
        x1=float(variables["x1"]),
        y1=float(variables["y1"]),
        x2=float(variables["x2"]),
        y2=float(variables["y2"]),
    )
