"""Formula evaluator for grid cells.

Supports: +, -, *, /, numeric literals, full cell refs (A1) and bare
column refs (A) which bind to the row being evaluated.

Intentionally minimal: no parentheses, no functions, no ranges. A '-' or
'+' is only a sign when it leads a literal, i.e. at the start of the
expression or directly after another operator.

Resolution is best effort. A reference to a missing or non-numeric cell
counts as 0; only an expression that cannot be reduced to a number at all
evaluates to None. Division by zero follows IEEE floats and renders as
"Infinity", "-Infinity" or "NaN".
"""

import math
import re
from typing import Mapping, Optional


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all formula errors. Never escapes `evaluate`."""

class FormulaSyntaxError(FormulaError):
    pass


# ── Helpers ───────────────────────────────────────────────────────

_CELL_ID_RE = re.compile(r'^([A-Z]+)([1-9]\d*)$')
_TOKEN_RE = re.compile(r'(?P<ref>[A-Z]+\d*)|(?P<num>\d+\.?\d*|\.\d+)|(?P<op>[-+*/])')
_NUMERIC_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')


def index_to_col(idx: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA."""
    result = ""
    idx += 1
    while idx > 0:
        idx, rem = divmod(idx - 1, 26)
        result = chr(rem + ord('A')) + result
    return result


def parse_cell_id(cell_id: str) -> Optional[tuple[str, int]]:
    """'B12' -> ('B', 12). None unless LETTERS+ROW with row >= 1 and no leading zero."""
    m = _CELL_ID_RE.match(cell_id or "")
    if not m:
        return None
    return m.group(1), int(m.group(2))


def parse_number(text: Optional[str]) -> Optional[float]:
    """Parse a cell value as a number, or None if it is not one.

    Accepts plain decimals with optional sign and exponent plus the
    "Infinity" strings this module itself writes. Empty text is not a number.
    """
    if text is None:
        return None
    s = text.strip()
    if s in ("Infinity", "+Infinity"):
        return math.inf
    if s == "-Infinity":
        return -math.inf
    if _NUMERIC_RE.match(s):
        return float(s)
    return None


def format_result(value: float) -> str:
    """Format a numeric result for cell display."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == int(value) and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


# ── Tokenizing ────────────────────────────────────────────────────

def _resolve_ref(ref: str, row: int, cells: Mapping) -> float:
    cell_ref = ref if ref[-1].isdigit() else f"{ref}{row}"
    cell = cells.get(cell_ref)
    if cell is None:
        return 0.0
    value = parse_number(cell.value)
    if value is None or math.isnan(value):
        return 0.0
    return value


def _tokenize(expr: str, row: int, cells: Mapping) -> tuple[list[float], list[str]]:
    """Split an expression into alternating operands and operators.

    References are substituted with their numeric values on the way.
    """
    text = re.sub(r'\s+', '', expr)
    if not text:
        raise FormulaSyntaxError("Empty expression")

    operands: list[float] = []
    operators: list[str] = []
    pos = 0
    sign: Optional[float] = None
    expect_operand = True

    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise FormulaSyntaxError(f"Unexpected '{text[pos]}' at pos {pos}")
        pos = m.end()

        if m.group('op'):
            op = m.group('op')
            if expect_operand:
                # Sign only counts directly in front of a literal
                nxt = _TOKEN_RE.match(text, pos)
                if op in '+-' and sign is None and nxt and nxt.group('num'):
                    sign = -1.0 if op == '-' else 1.0
                    continue
                raise FormulaSyntaxError(f"Operator '{op}' without left operand")
            operators.append(op)
            expect_operand = True
            continue

        if not expect_operand:
            raise FormulaSyntaxError(f"Missing operator before pos {m.start()}")
        if m.group('num'):
            operands.append((sign or 1.0) * float(m.group('num')))
        else:
            operands.append(_resolve_ref(m.group('ref'), row, cells))
        sign = None
        expect_operand = False

    if expect_operand:
        raise FormulaSyntaxError("Expression ends with an operator")
    return operands, operators


# ── Arithmetic ────────────────────────────────────────────────────

def _apply(op: str, left: float, right: float) -> float:
    if op == '*':
        return left * right
    if op == '/':
        if right == 0:
            if left == 0 or math.isnan(left):
                return math.nan
            return math.copysign(math.inf, left) * math.copysign(1.0, right)
        return left / right
    if op == '+':
        return left + right
    return left - right


def _reduce_pass(operands: list[float], operators: list[str], ops: str) -> tuple[list[float], list[str]]:
    """Fold every operator in `ops` into its neighbours, left to right."""
    values = [operands[0]]
    remaining: list[str] = []
    for op, right in zip(operators, operands[1:]):
        if op in ops:
            values[-1] = _apply(op, values[-1], right)
        else:
            remaining.append(op)
            values.append(right)
    return values, remaining


def evaluate_expression(expr: str, row: int = 1, cells: Optional[Mapping] = None) -> float:
    """Evaluate an expression to a float. Raises FormulaSyntaxError when malformed."""
    operands, operators = _tokenize(expr, row, cells or {})
    operands, operators = _reduce_pass(operands, operators, '*/')
    operands, _ = _reduce_pass(operands, operators, '+-')
    return operands[0]


def evaluate(formula: str, row: int, cells: Mapping) -> Optional[str]:
    """Evaluate `formula` (without its leading '=') for `row` against `cells`.

    `cells` maps cell ids to objects with a string `value`. Returns the
    rendered result, or None when nothing numeric can be computed.
    """
    if formula is None:
        return None
    try:
        return format_result(evaluate_expression(formula.lstrip('='), row, cells))
    except FormulaError:
        return None
