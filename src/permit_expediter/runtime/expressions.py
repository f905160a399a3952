"""Safe expression evaluator for permit template calculations.

Expressions are parsed into a small AST and evaluated against a plain-dict
view of the canonical context. There is no access to Python builtins; only
the whitelisted functions in ``FUNCTIONS`` can be called.

Grammar (lowest to highest precedence)::

    expr       := or_expr
    or_expr    := and_expr ("or" and_expr)*
    and_expr   := not_expr ("and" not_expr)*
    not_expr   := "not" not_expr | comparison
    comparison := additive (("==" | "!=" | "<" | "<=" | ">" | ">=") additive)?
    additive   := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := "-" unary | primary
    primary    := number | string | "true" | "false" | "null"
                | "(" expr ")"
                | ident "(" [expr ("," expr)*] ")"     # function call
                | path                                 # dotted context path

``ref('a.b')`` is an alias for the bare path ``a.b``.

Evaluation rules:
    - a path that does not exist evaluates to ``None`` without an error;
    - arithmetic with a ``None`` operand evaluates to ``None`` without an error;
    - arithmetic or ordering on incompatible non-null types is a TYPE_ERROR;
    - whenever any error is recorded, the result value is ``None``.

Example:
    >>> evaluate("round(measurements.total_roof_area_sqft / 100, 1)", ctx).value
    24.5
"""

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

MAX_EXPRESSION_LENGTH = 4096
MAX_NESTING_DEPTH = 64


# =============================================================================
# RESULTS AND ERRORS
# =============================================================================


class EvalErrorCode(str, Enum):
    EMPTY_EXPRESSION = "EMPTY_EXPRESSION"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    UNKNOWN_FUNCTION = "UNKNOWN_FUNCTION"
    ARGUMENT_ERROR = "ARGUMENT_ERROR"
    TYPE_ERROR = "TYPE_ERROR"
    DIVISION_BY_ZERO = "DIVISION_BY_ZERO"
    FUNCTION_ERROR = "FUNCTION_ERROR"


@dataclass(frozen=True)
class EvalError:
    """Structured evaluation error."""

    code: EvalErrorCode
    message: str
    position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.position is not None:
            data["position"] = self.position
        return data


@dataclass
class EvalResult:
    value: Any = None
    errors: List[EvalError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ExpressionSyntaxError(Exception):
    """Raised by the tokenizer/parser for malformed expressions."""

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.position = position


# =============================================================================
# PATH LOOKUP
# =============================================================================


def lookup_path(data: Any, path: str) -> Any:
    """Resolve a dotted path against nested mappings and lists.

    Integer segments index into lists. Any missing segment yields ``None``.
    """
    if not path:
        return None
    current = data
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            if not part.isdigit():
                return None
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


# =============================================================================
# TOKENIZER
# =============================================================================

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")
_PATH_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*")
_OPERATORS = ("==", "!=", "<=", ">=", "<", ">", "+", "-", "*", "/", "%")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}
_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class Token:
    kind: str  # number | string | literal | ident | op | lparen | rparen | comma | eof
    value: Any
    position: int


def tokenize(expr: str) -> List[Token]:
    """Split an expression into tokens.

    Raises:
        ExpressionSyntaxError: On unterminated strings or unexpected characters.
    """
    tokens: List[Token] = []
    pos = 0
    length = len(expr)

    while pos < length:
        char = expr[pos]
        if char.isspace():
            pos += 1
            continue

        if char == "(":
            tokens.append(Token("lparen", char, pos))
            pos += 1
        elif char == ")":
            tokens.append(Token("rparen", char, pos))
            pos += 1
        elif char == ",":
            tokens.append(Token("comma", char, pos))
            pos += 1
        elif char in ("'", '"'):
            start = pos
            pos += 1
            chars = []
            while pos < length and expr[pos] != char:
                if expr[pos] == "\\" and pos + 1 < length:
                    pos += 1
                    chars.append(_ESCAPES.get(expr[pos], expr[pos]))
                else:
                    chars.append(expr[pos])
                pos += 1
            if pos >= length:
                raise ExpressionSyntaxError(f"Unterminated string at position {start}", start)
            pos += 1
            tokens.append(Token("string", "".join(chars), start))
        elif char.isdigit() or (char == "." and pos + 1 < length and expr[pos + 1].isdigit()):
            match = _NUMBER_RE.match(expr, pos)
            text = match.group(0)
            value: Union[int, float] = float(text) if "." in text else int(text)
            tokens.append(Token("number", value, pos))
            pos = match.end()
        elif char.isalpha() or char == "_":
            match = _PATH_RE.match(expr, pos)
            text = match.group(0)
            if text in _KEYWORD_LITERALS:
                tokens.append(Token("literal", _KEYWORD_LITERALS[text], pos))
            else:
                tokens.append(Token("ident", text, pos))
            pos = match.end()
        else:
            for op in _OPERATORS:
                if expr.startswith(op, pos):
                    tokens.append(Token("op", op, pos))
                    pos += len(op)
                    break
            else:
                raise ExpressionSyntaxError(f"Unexpected character '{char}' at position {pos}", pos)

    tokens.append(Token("eof", None, length))
    return tokens


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class LiteralNode:
    value: Any


@dataclass(frozen=True)
class PathNode:
    path: str


@dataclass(frozen=True)
class CallNode:
    fn: str
    args: Tuple[Any, ...]
    position: int


@dataclass(frozen=True)
class UnaryNode:
    op: str
    operand: Any
    position: int


@dataclass(frozen=True)
class BinaryNode:
    op: str
    left: Any
    right: Any
    position: int


Node = Union[LiteralNode, PathNode, CallNode, UnaryNode, BinaryNode]

_COMPARISON_OPS = ("==", "!=", "<", "<=", ">", ">=")
_RESERVED_WORDS = ("and", "or", "not")


# =============================================================================
# PARSER
# =============================================================================


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _is_word(self, token: Token, word: str) -> bool:
        return token.kind == "ident" and token.value == word

    def parse(self) -> Node:
        node = self.parse_or()
        token = self.peek()
        if token.kind != "eof":
            raise ExpressionSyntaxError(
                f"Unexpected token '{token.value}' at position {token.position}", token.position
            )
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self._is_word(self.peek(), "or") and self.peek(1).kind != "lparen":
            token = self.advance()
            node = BinaryNode("or", node, self.parse_and(), token.position)
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self._is_word(self.peek(), "and") and self.peek(1).kind != "lparen":
            token = self.advance()
            node = BinaryNode("and", node, self.parse_not(), token.position)
        return node

    def parse_not(self) -> Node:
        token = self.peek()
        if self._is_word(token, "not") and self.peek(1).kind != "lparen":
            self.advance()
            return UnaryNode("not", self._nested(self.parse_not), token.position)
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        node = self.parse_additive()
        token = self.peek()
        if token.kind == "op" and token.value in _COMPARISON_OPS:
            self.advance()
            node = BinaryNode(token.value, node, self.parse_additive(), token.position)
            following = self.peek()
            if following.kind == "op" and following.value in _COMPARISON_OPS:
                raise ExpressionSyntaxError(
                    f"Chained comparison at position {following.position}", following.position
                )
        return node

    def parse_additive(self) -> Node:
        node = self.parse_term()
        while self.peek().kind == "op" and self.peek().value in ("+", "-"):
            token = self.advance()
            node = BinaryNode(token.value, node, self.parse_term(), token.position)
        return node

    def parse_term(self) -> Node:
        node = self.parse_unary()
        while self.peek().kind == "op" and self.peek().value in ("*", "/", "%"):
            token = self.advance()
            node = BinaryNode(token.value, node, self.parse_unary(), token.position)
        return node

    def parse_unary(self) -> Node:
        token = self.peek()
        if token.kind == "op" and token.value == "-":
            self.advance()
            return UnaryNode("-", self._nested(self.parse_unary), token.position)
        return self.parse_primary()

    def parse_primary(self) -> Node:
        token = self.advance()

        if token.kind in ("number", "string", "literal"):
            return LiteralNode(token.value)

        if token.kind == "lparen":
            node = self._nested(self.parse_or)
            self._expect("rparen", "')'")
            return node

        if token.kind == "ident":
            if self.peek().kind == "lparen":
                return self._parse_call(token)
            if token.value in _RESERVED_WORDS:
                raise ExpressionSyntaxError(
                    f"Unexpected keyword '{token.value}' at position {token.position}",
                    token.position,
                )
            return PathNode(token.value)

        if token.kind == "eof":
            raise ExpressionSyntaxError("Unexpected end of expression", token.position)
        raise ExpressionSyntaxError(
            f"Unexpected token '{token.value}' at position {token.position}", token.position
        )

    def _parse_call(self, name_token: Token) -> Node:
        fn = name_token.value
        if "." in fn:
            raise ExpressionSyntaxError(
                f"Invalid function name '{fn}' at position {name_token.position}",
                name_token.position,
            )
        self.advance()  # '('
        args: List[Node] = []
        if self.peek().kind != "rparen":
            while True:
                args.append(self._nested(self.parse_or))
                if self.peek().kind == "comma":
                    self.advance()
                    continue
                break
        self._expect("rparen", f"')' to close '{fn}('")

        if fn == "ref":
            if len(args) != 1 or not isinstance(args[0], LiteralNode) or not isinstance(args[0].value, str):
                raise ExpressionSyntaxError(
                    "ref() requires exactly one string argument", name_token.position
                )
            return PathNode(args[0].value)
        return CallNode(fn, tuple(args), name_token.position)

    def _expect(self, kind: str, description: str) -> Token:
        token = self.peek()
        if token.kind != kind:
            raise ExpressionSyntaxError(
                f"Expected {description} at position {token.position}", token.position
            )
        return self.advance()

    def _nested(self, parse_fn: Callable[[], Node]) -> Node:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError("Expression nested too deeply")
        try:
            return parse_fn()
        finally:
            self.depth -= 1


@lru_cache(maxsize=512)
def compile_expression(expr: str) -> Node:
    """Parse an expression into an immutable AST (cached).

    Raises:
        ExpressionSyntaxError: If the expression is malformed.
    """
    if len(expr) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSyntaxError(
            f"Expression longer than {MAX_EXPRESSION_LENGTH} characters"
        )
    return _Parser(tokenize(expr)).parse()


# =============================================================================
# VALUE HELPERS
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "list"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if _is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _strict_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b) and not (a is None or b is None):
        return False
    return a == b


def _numbers(args: Tuple[Any, ...]) -> List[Union[int, float]]:
    return [a for a in args if _is_number(a)]


# =============================================================================
# WHITELISTED FUNCTIONS
# =============================================================================


def _fn_add(*args):
    nums = _numbers(args)
    return sum(nums) if nums else None


def _fn_sub(a, b):
    if not (_is_number(a) and _is_number(b)):
        return None
    return a - b


def _fn_mul(*args):
    nums = _numbers(args)
    if not nums:
        return None
    return math.prod(nums)


def _fn_div(a, b):
    if not (_is_number(a) and _is_number(b)):
        return None
    return a / b


def _fn_round(x, decimals=0):
    if not _is_number(x):
        return None
    places = int(decimals) if _is_number(decimals) else 0
    if places == 0:
        return int(math.floor(x + 0.5))
    multiplier = 10 ** places
    return math.floor(x * multiplier + 0.5) / multiplier


def _fn_ceil(x):
    return math.ceil(x) if _is_number(x) else None


def _fn_floor(x):
    return math.floor(x) if _is_number(x) else None


def _fn_abs(x):
    return abs(x) if _is_number(x) else None


def _fn_min(*args):
    nums = _numbers(args)
    return min(nums) if nums else None


def _fn_max(*args):
    nums = _numbers(args)
    return max(nums) if nums else None


def _fn_coalesce(*args):
    for arg in args:
        if arg is not None and arg != "":
            return arg
    return None


def _fn_is_empty(x):
    if x is None or x == "":
        return True
    if isinstance(x, (list, tuple, Mapping)) and len(x) == 0:
        return True
    return False


def _fn_upper(s):
    return None if s is None else _to_text(s).upper()


def _fn_lower(s):
    return None if s is None else _to_text(s).lower()


def _fn_trim(s):
    return None if s is None else _to_text(s).strip()


def _fn_to_number(x):
    if x is None:
        return None
    if isinstance(x, bool):
        return 1 if x else 0
    if _is_number(x):
        return x
    text = str(x).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def _compare_numbers(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a, b):
        if not (_is_number(a) and _is_number(b)):
            return False
        return op(a, b)

    return compare


# name -> (implementation, min_args, max_args or None for variadic)
FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int]]] = {
    # Math
    "add": (_fn_add, 0, None),
    "sub": (_fn_sub, 2, 2),
    "mul": (_fn_mul, 0, None),
    "div": (_fn_div, 2, 2),
    "round": (_fn_round, 1, 2),
    "ceil": (_fn_ceil, 1, 1),
    "floor": (_fn_floor, 1, 1),
    "abs": (_fn_abs, 1, 1),
    "min": (_fn_min, 0, None),
    "max": (_fn_max, 0, None),
    # Null/default handling
    "coalesce": (_fn_coalesce, 0, None),
    "is_null": (lambda x: x is None, 1, 1),
    "is_empty": (_fn_is_empty, 1, 1),
    # Strings
    "concat": (lambda *args: "".join(_to_text(a) for a in args), 0, None),
    "upper": (_fn_upper, 1, 1),
    "lower": (_fn_lower, 1, 1),
    "trim": (_fn_trim, 1, 1),
    # Parsing
    "to_number": (_fn_to_number, 1, 1),
    "to_string": (_to_text, 1, 1),
    # Conditionals
    "if": (lambda cond, then, otherwise=None: then if _truthy(cond) else otherwise, 2, 3),
    # Comparisons
    "eq": (_strict_equal, 2, 2),
    "ne": (lambda a, b: not _strict_equal(a, b), 2, 2),
    "gt": (_compare_numbers(lambda a, b: a > b), 2, 2),
    "gte": (_compare_numbers(lambda a, b: a >= b), 2, 2),
    "lt": (_compare_numbers(lambda a, b: a < b), 2, 2),
    "lte": (_compare_numbers(lambda a, b: a <= b), 2, 2),
    # Boolean
    "and": (lambda *args: all(_truthy(a) for a in args), 0, None),
    "or": (lambda *args: any(_truthy(a) for a in args), 0, None),
    "not": (lambda a: not _truthy(a), 1, 1),
}


def available_functions() -> List[str]:
    """Names of all callable functions, plus ``ref``."""
    return sorted(["ref", *FUNCTIONS])


# =============================================================================
# EVALUATOR
# =============================================================================


def _eval_call(node: CallNode, data: Any, errors: List[EvalError]) -> Any:
    entry = FUNCTIONS.get(node.fn)
    if entry is None:
        errors.append(
            EvalError(EvalErrorCode.UNKNOWN_FUNCTION, f"Unknown function: {node.fn}", node.position)
        )
        return None

    fn, min_args, max_args = entry
    count = len(node.args)
    if count < min_args or (max_args is not None and count > max_args):
        expected = str(min_args) if min_args == max_args else f"{min_args}..{max_args or 'n'}"
        errors.append(
            EvalError(
                EvalErrorCode.ARGUMENT_ERROR,
                f"{node.fn}() takes {expected} arguments, got {count}",
                node.position,
            )
        )
        return None

    args = [_eval(arg, data, errors) for arg in node.args]
    try:
        return fn(*args)
    except ZeroDivisionError:
        errors.append(EvalError(EvalErrorCode.DIVISION_BY_ZERO, "Division by zero", node.position))
    except (TypeError, ValueError, OverflowError) as e:
        errors.append(
            EvalError(EvalErrorCode.FUNCTION_ERROR, f"Error in function {node.fn}: {e}", node.position)
        )
    return None


def _type_error(op: str, left: Any, right: Any, position: int) -> EvalError:
    return EvalError(
        EvalErrorCode.TYPE_ERROR,
        f"Unsupported operand types for {op}: {_type_name(left)} and {_type_name(right)}",
        position,
    )


def _eval_arithmetic(node: BinaryNode, left: Any, right: Any, errors: List[EvalError]) -> Any:
    if left is None or right is None:
        return None
    if node.op == "+" and isinstance(left, str) and isinstance(right, str):
        return left + right
    if not (_is_number(left) and _is_number(right)):
        errors.append(_type_error(node.op, left, right, node.position))
        return None
    try:
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if node.op == "/":
            return left / right
        return left % right
    except ZeroDivisionError:
        errors.append(EvalError(EvalErrorCode.DIVISION_BY_ZERO, "Division by zero", node.position))
    except OverflowError as e:
        errors.append(EvalError(EvalErrorCode.FUNCTION_ERROR, str(e), node.position))
    return None


def _eval_ordering(node: BinaryNode, left: Any, right: Any, errors: List[EvalError]) -> Any:
    if left is None or right is None:
        return False
    comparable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not comparable:
        errors.append(_type_error(node.op, left, right, node.position))
        return None
    if node.op == "<":
        return left < right
    if node.op == "<=":
        return left <= right
    if node.op == ">":
        return left > right
    return left >= right


def _eval(node: Node, data: Any, errors: List[EvalError]) -> Any:
    if isinstance(node, LiteralNode):
        return node.value

    if isinstance(node, PathNode):
        return lookup_path(data, node.path)

    if isinstance(node, CallNode):
        return _eval_call(node, data, errors)

    if isinstance(node, UnaryNode):
        operand = _eval(node.operand, data, errors)
        if node.op == "not":
            return not _truthy(operand)
        if operand is None:
            return None
        if not _is_number(operand):
            errors.append(
                EvalError(
                    EvalErrorCode.TYPE_ERROR,
                    f"Unsupported operand type for unary -: {_type_name(operand)}",
                    node.position,
                )
            )
            return None
        return -operand

    if isinstance(node, BinaryNode):
        if node.op == "and":
            return _truthy(_eval(node.left, data, errors)) and _truthy(_eval(node.right, data, errors))
        if node.op == "or":
            return _truthy(_eval(node.left, data, errors)) or _truthy(_eval(node.right, data, errors))

        left = _eval(node.left, data, errors)
        right = _eval(node.right, data, errors)
        if node.op == "==":
            return _strict_equal(left, right)
        if node.op == "!=":
            return not _strict_equal(left, right)
        if node.op in ("<", "<=", ">", ">="):
            return _eval_ordering(node, left, right, errors)
        return _eval_arithmetic(node, left, right, errors)

    errors.append(EvalError(EvalErrorCode.SYNTAX_ERROR, f"Unknown node type: {type(node).__name__}"))
    return None


def _as_data(context: Any) -> Any:
    if hasattr(context, "as_lookup"):
        return context.as_lookup()
    if hasattr(context, "model_dump"):
        return context.model_dump(mode="json")
    return context


def evaluate(expression: str, context: Any) -> EvalResult:
    """Evaluate an expression against a context.

    Args:
        expression: Expression source text.
        context: Mapping (or canonical context model) that paths resolve against.

    Returns:
        EvalResult with the computed value, or ``None`` and at least one error.
    """
    if not expression or not expression.strip():
        return EvalResult(None, [EvalError(EvalErrorCode.EMPTY_EXPRESSION, "Empty expression")])

    try:
        ast = compile_expression(expression)
    except ExpressionSyntaxError as e:
        return EvalResult(None, [EvalError(EvalErrorCode.SYNTAX_ERROR, e.message, e.position)])

    errors: List[EvalError] = []
    value = _eval(ast, _as_data(context), errors)
    if errors:
        return EvalResult(None, errors)
    return EvalResult(value, [])


def _collect_calls(node: Node, found: List[CallNode]) -> None:
    if isinstance(node, CallNode):
        found.append(node)
        for arg in node.args:
            _collect_calls(arg, found)
    elif isinstance(node, UnaryNode):
        _collect_calls(node.operand, found)
    elif isinstance(node, BinaryNode):
        _collect_calls(node.left, found)
        _collect_calls(node.right, found)


def validate_expression(expression: str) -> List[EvalError]:
    """Check an expression for syntax errors and unknown functions without evaluating it."""
    if not expression or not expression.strip():
        return [EvalError(EvalErrorCode.EMPTY_EXPRESSION, "Empty expression")]
    try:
        ast = compile_expression(expression)
    except ExpressionSyntaxError as e:
        return [EvalError(EvalErrorCode.SYNTAX_ERROR, e.message, e.position)]

    calls: List[CallNode] = []
    _collect_calls(ast, calls)
    return [
        EvalError(EvalErrorCode.UNKNOWN_FUNCTION, f"Unknown function: {call.fn}", call.position)
        for call in calls
        if call.fn not in FUNCTIONS
    ]
