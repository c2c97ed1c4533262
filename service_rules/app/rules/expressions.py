"""
Restricted expression and script interpreter.

Guard conditions, CALCULATE and EXECUTE_SCRIPT all run caller-supplied text.
None of it is handed to ``eval``/``exec``: the text is parsed with ``ast``
and walked by a small interpreter that accepts a closed set of node types,
resolves names only from an explicit binding set, and calls only
whitelisted functions. There is no attribute access, no imports, no
``while`` and no way to reach the host environment. Every run is bounded by
a step budget, an optional wall-clock deadline and a cap on integer size.
"""

import ast
import copy
import json
import math
import operator
import re
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

MAX_STRING_LENGTH = 100_000
MAX_SEQUENCE_LENGTH = 10_000
MAX_EXPONENT = 100
MAX_INTEGER_BITS = 4096
_DEADLINE_CHECK_INTERVAL = 64

ARITHMETIC_ALLOWED = re.compile(r"[^0-9+\-*/(). ]")


class ExpressionError(Exception):
    """Raised when an expression or script cannot be evaluated."""


class ExpressionTimeout(ExpressionError):
    """Raised when evaluation runs past its deadline."""


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


def _bounded_range(*args: int) -> List[int]:
    values = range(*args)
    if len(values) > MAX_SEQUENCE_LENGTH:
        raise ExpressionError(f"range() longer than {MAX_SEQUENCE_LENGTH} items")
    return list(values)


# Integer operands are sized before multiplying so a single step stays cheap.

def _check_power(base: Any, exponent: Any) -> None:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise ExpressionError(f"Exponent larger than {MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0 and abs(base) > 1:
        if abs(base).bit_length() * exponent > MAX_INTEGER_BITS:
            raise ExpressionError(f"Power result larger than {MAX_INTEGER_BITS} bits")


def _check_product(left: Any, right: Any) -> None:
    if isinstance(left, int) and isinstance(right, int):
        if abs(left).bit_length() + abs(right).bit_length() > MAX_INTEGER_BITS + 1:
            raise ExpressionError(f"Product larger than {MAX_INTEGER_BITS} bits")


def _check_integer(value: Any) -> None:
    if isinstance(value, int) and value.bit_length() > MAX_INTEGER_BITS:
        raise ExpressionError(f"Integer result larger than {MAX_INTEGER_BITS} bits")


SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "ceil": math.ceil,
    "float": float,
    "floor": math.floor,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "range": _bounded_range,
    "round": round,
    "sorted": sorted,
    "sqrt": math.sqrt,
    "str": str,
    "sum": sum,
    "from_json": json.loads,
    "to_json": lambda value: json.dumps(value, default=str),
}

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


class SafeInterpreter:
    """Walks a whitelisted subset of the Python AST."""

    def __init__(self,
                 names: Optional[Mapping[str, Any]] = None,
                 functions: Optional[Mapping[str, Callable[..., Any]]] = None,
                 max_steps: int = 10_000,
                 deadline: Optional[float] = None):
        self.names = dict(names or {})
        self.functions = dict(SAFE_FUNCTIONS)
        if functions:
            self.functions.update(functions)
        self.locals: Dict[str, Any] = {}
        self.max_steps = max_steps
        self.deadline = deadline
        self.steps = 0

    # Entry points

    def evaluate(self, source: str) -> Any:
        """Evaluate a single expression."""
        tree = self._parse(source, "eval")
        return self._eval(tree.body)

    def run(self, source: str) -> Any:
        """Run a script; returns ``return`` value, ``result`` variable or last expression."""
        tree = self._parse(source, "exec")
        last_value = None
        try:
            for statement in tree.body:
                last_value = self._exec(statement)
        except _Return as ret:
            return ret.value
        except (_Break, _Continue):
            raise ExpressionError("'break' or 'continue' outside loop")
        if "result" in self.locals:
            return self.locals["result"]
        return last_value

    @staticmethod
    def _parse(source: str, mode: str) -> ast.AST:
        if not isinstance(source, str) or not source.strip():
            raise ExpressionError("Expression is empty")
        try:
            return ast.parse(source.strip() if mode == "eval" else source, mode=mode)
        except SyntaxError as e:
            raise ExpressionError(f"Syntax error: {e.msg}") from e

    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ExpressionError(f"Step budget of {self.max_steps} exceeded")
        if self.deadline is not None and self.steps % _DEADLINE_CHECK_INTERVAL == 0:
            if time.monotonic() > self.deadline:
                raise ExpressionTimeout("Evaluation deadline exceeded")

    # Statements

    def _exec(self, node: ast.stmt) -> Any:
        self._tick()
        if isinstance(node, ast.Expr):
            return self._eval(node.value)
        if isinstance(node, ast.Assign):
            value = self._eval(node.value)
            for target in node.targets:
                self._assign(target, value)
            return None
        if isinstance(node, ast.AugAssign):
            if not isinstance(node.target, ast.Name):
                raise ExpressionError("Augmented assignment only supports names")
            current = self._eval(node.target)
            self.locals[node.target.id] = self._binop(node.op, current, self._eval(node.value))
            return None
        if isinstance(node, ast.If):
            body = node.body if self._eval(node.test) else node.orelse
            return self._exec_block(body)
        if isinstance(node, ast.For):
            return self._exec_for(node)
        if isinstance(node, ast.Return):
            raise _Return(self._eval(node.value) if node.value is not None else None)
        if isinstance(node, ast.Break):
            raise _Break()
        if isinstance(node, ast.Continue):
            raise _Continue()
        if isinstance(node, ast.Pass):
            return None
        raise ExpressionError(f"Unsupported statement: {type(node).__name__}")

    def _exec_block(self, statements: List[ast.stmt]) -> Any:
        last_value = None
        for statement in statements:
            last_value = self._exec(statement)
        return last_value

    def _exec_for(self, node: ast.For) -> Any:
        if not isinstance(node.target, ast.Name):
            raise ExpressionError("Loop target must be a name")
        iterable = self._eval(node.iter)
        if not isinstance(iterable, (list, tuple, dict, str)):
            raise ExpressionError("Can only iterate over lists, tuples, dicts and strings")
        last_value = None
        for item in list(iterable):
            self.locals[node.target.id] = item
            try:
                last_value = self._exec_block(node.body)
            except _Break:
                return last_value
            except _Continue:
                continue
        else:
            if node.orelse:
                last_value = self._exec_block(node.orelse)
        return last_value

    def _assign(self, target: ast.expr, value: Any) -> None:
        if isinstance(target, ast.Name):
            self.locals[target.id] = value
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            if not isinstance(container, (dict, list)):
                raise ExpressionError("Item assignment only supports dicts and lists")
            container[self._eval(target.slice)] = value
        else:
            raise ExpressionError(f"Unsupported assignment target: {type(target).__name__}")

    # Expressions

    def _eval(self, node: ast.expr) -> Any:
        self._tick()
        if isinstance(node, ast.Constant):
            if not isinstance(node.value, (int, float, str, bool, type(None))):
                raise ExpressionError("Unsupported constant")
            return node.value
        if isinstance(node, ast.Name):
            return self._lookup(node.id)
        if isinstance(node, ast.BinOp):
            return self._binop(node.op, self._eval(node.left), self._eval(node.right))
        if isinstance(node, ast.UnaryOp):
            op = _UNARY_OPS.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
            return op(self._eval(node.operand))
        if isinstance(node, ast.BoolOp):
            return self._boolop(node)
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.IfExp):
            return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)
        if isinstance(node, ast.List):
            return [self._eval(item) for item in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._eval(item) for item in node.elts)
        if isinstance(node, ast.Dict):
            if any(key is None for key in node.keys):
                raise ExpressionError("Dict unpacking is not supported")
            return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}
        if isinstance(node, ast.Subscript):
            return self._subscript(node)
        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower) if node.lower else None,
                self._eval(node.upper) if node.upper else None,
                self._eval(node.step) if node.step else None,
            )
        if isinstance(node, ast.Call):
            return self._call(node)
        if isinstance(node, ast.Attribute):
            raise ExpressionError("Attribute access is not allowed")
        raise ExpressionError(f"Unsupported expression: {type(node).__name__}")

    def _lookup(self, name: str) -> Any:
        if name in self.locals:
            return self.locals[name]
        if name in self.names:
            return self.names[name]
        raise ExpressionError(f"Name '{name}' is not defined")

    def _binop(self, op_node: ast.operator, left: Any, right: Any) -> Any:
        op = _BIN_OPS.get(type(op_node))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(op_node).__name__}")
        if isinstance(op_node, ast.Pow):
            _check_power(left, right)
        if isinstance(op_node, ast.Mult):
            _check_product(left, right)
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > MAX_STRING_LENGTH:
                        raise ExpressionError("Sequence repetition too large")
        try:
            result = op(left, right)
        except ZeroDivisionError as e:
            raise ExpressionError("Division by zero") from e
        except OverflowError as e:
            raise ExpressionError(f"Numeric overflow: {e}") from e
        except TypeError as e:
            raise ExpressionError(str(e)) from e
        if isinstance(result, (str, list, tuple)) and len(result) > MAX_STRING_LENGTH:
            raise ExpressionError("Result too large")
        _check_integer(result)
        return result

    def _boolop(self, node: ast.BoolOp) -> Any:
        value = None
        if isinstance(node.op, ast.And):
            for operand in node.values:
                value = self._eval(operand)
                if not value:
                    return value
            return value
        for operand in node.values:
            value = self._eval(operand)
            if value:
                return value
        return value

    def _compare(self, node: ast.Compare) -> bool:
        left = self._eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            right = self._eval(comparator)
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            try:
                if not op(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e)) from e
            left = right
        return True

    def _subscript(self, node: ast.Subscript) -> Any:
        container = self._eval(node.value)
        if not isinstance(container, (dict, list, tuple, str)):
            raise ExpressionError("Subscript only supports dicts, lists, tuples and strings")
        key = self._eval(node.slice)
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Invalid subscript: {e}") from e

    def _call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in self.functions:
            name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            raise ExpressionError(f"Function '{name}' is not allowed")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError("Argument unpacking is not supported")
            args.append(self._eval(arg))
        try:
            return self.functions[node.func.id](*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise ExpressionError(f"{node.func.id}(): {e}") from e


class ArithmeticEvaluator:
    """Evaluates digits, ``+ - * /``, parentheses and decimal points only."""

    _ALLOWED_BIN_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
    _ALLOWED_UNARY_OPS = (ast.UAdd, ast.USub)

    @staticmethod
    def sanitize(expression: str) -> str:
        """Strip every character outside the arithmetic alphabet."""
        return ARITHMETIC_ALLOWED.sub("", expression)

    def evaluate(self, expression: str) -> float:
        sanitized = self.sanitize(expression).strip()
        if not sanitized:
            raise ExpressionError("Expression is empty after sanitization")
        try:
            tree = ast.parse(sanitized, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Syntax error in '{sanitized}': {e.msg}") from e
        return self._eval(tree.body)

    def _eval(self, node: ast.expr) -> float:
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return node.value
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, self._ALLOWED_UNARY_OPS):
            operand = self._eval(node.operand)
            return -operand if isinstance(node.op, ast.USub) else operand
        if isinstance(node, ast.BinOp) and isinstance(node.op, self._ALLOWED_BIN_OPS):
            left, right = self._eval(node.left), self._eval(node.right)
            if isinstance(node.op, ast.Mult):
                _check_product(left, right)
            try:
                result = _BIN_OPS[type(node.op)](left, right)
            except ZeroDivisionError as e:
                raise ExpressionError("Division by zero") from e
            except OverflowError as e:
                raise ExpressionError(f"Numeric overflow: {e}") from e
            _check_integer(result)
            return result
        raise ExpressionError(f"Unsupported arithmetic: {type(node).__name__}")


def evaluate_condition(condition: str,
                       names: Mapping[str, Any],
                       max_steps: int = 1_000,
                       deadline: Optional[float] = None) -> bool:
    """Evaluate a guard expression; raises ExpressionError on any failure."""
    interpreter = SafeInterpreter(names=names, max_steps=max_steps, deadline=deadline)
    return bool(interpreter.evaluate(condition))


def run_script(script: str,
               names: Mapping[str, Any],
               functions: Optional[Mapping[str, Callable[..., Any]]] = None,
               max_steps: int = 10_000,
               deadline: Optional[float] = None) -> Any:
    """Run a script against a private copy of ``names``."""
    interpreter = SafeInterpreter(
        names=copy.deepcopy(dict(names)),
        functions=functions,
        max_steps=max_steps,
        deadline=deadline,
    )
    return interpreter.run(script)
