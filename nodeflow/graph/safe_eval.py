"""
Safe expression evaluation using an AST whitelist.

Expressions are parsed with ``ast.parse(mode="eval")`` and interpreted node
by node. Anything not explicitly handled (lambdas, imports, walrus, starred
arguments) is rejected. Attribute access on dicts is a key lookup so that
``json.customer.email`` reads naturally; dunder attributes and string
formatting methods are blocked on every object.
"""

import ast
import operator
from typing import Any

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "any": any,
    "all": all,
}

SAFE_CONSTANTS: dict[str, Any] = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
}

BLOCKED_ATTRIBUTES = {"format", "format_map", "mro"}

# Reachable on dicts when no key of that name exists
DICT_METHODS = {"get", "keys", "values", "items"}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
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


class UnsafeExpressionError(ValueError):
    """The expression uses a construct outside the whitelist."""


# Guard against pathological exponentiation in user expressions
MAX_POWER = 10_000
MAX_INT_BITS = 100_000

# Longest str/bytes/list/tuple an expression may build by repetition or padding
MAX_SEQUENCE_LENGTH = 1_000_000

# Methods whose integer arguments set the length of the result
_SIZING_METHODS = {"zfill", "ljust", "rjust", "center", "expandtabs"}

_SEQUENCE_TYPES = (str, bytes, list, tuple)


def _check_operands(op: Any, left: Any, right: Any) -> None:
    if op is operator.pow:
        if isinstance(right, (int, float)) and abs(right) > MAX_POWER:
            raise UnsafeExpressionError("Exponent too large")
        if isinstance(left, int) and isinstance(right, int) and right > 0:
            if left.bit_length() * right > MAX_INT_BITS:
                raise UnsafeExpressionError("Result of ** too large")
    elif op is operator.mul:
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, _SEQUENCE_TYPES) and isinstance(count, int):
                if len(seq) * count > MAX_SEQUENCE_LENGTH:
                    raise UnsafeExpressionError("Repeated sequence too long")


def _check_call(func: Any, args: list[Any]) -> None:
    if getattr(func, "__name__", None) in _SIZING_METHODS:
        if any(isinstance(a, int) and a > MAX_SEQUENCE_LENGTH for a in args):
            raise UnsafeExpressionError(f"Argument to {func.__name__}() too large")


class _Evaluator(ast.NodeVisitor):
    def __init__(self, names: dict[str, Any]):
        self.scopes: list[dict[str, Any]] = [names]

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise UnsafeExpressionError(f"Unsupported expression construct: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        for scope in reversed(self.scopes):
            if node.id in scope:
                return scope[node.id]
        if node.id in SAFE_CONSTANTS:
            return SAFE_CONSTANTS[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise NameError(f"Name '{node.id}' is not defined")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        name = node.attr
        if name.startswith("_") or name in BLOCKED_ATTRIBUTES:
            raise UnsafeExpressionError(f"Access to attribute '{name}' is not allowed")
        value = self.visit(node.value)
        if isinstance(value, dict):
            if name in DICT_METHODS and name not in value:
                return getattr(value, name)
            return value.get(name)
        return getattr(value, name)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        return value[key]

    def visit_Slice(self, node: ast.Slice) -> slice:
        lower = self.visit(node.lower) if node.lower else None
        upper = self.visit(node.upper) if node.upper else None
        step = self.visit(node.step) if node.step else None
        return slice(lower, upper, step)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            raise UnsafeExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)
        _check_operands(op, left, right)
        return op(left, right)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise UnsafeExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise UnsafeExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node: ast.Set) -> set:
        return {self.visit(e) for e in node.elts}

    def visit_Dict(self, node: ast.Dict) -> dict:
        result = {}
        for key, value in zip(node.keys, node.values, strict=True):
            if key is None:
                result.update(self.visit(value))
            else:
                result[self.visit(key)] = self.visit(value)
        return result

    def visit_JoinedStr(self, node: ast.JoinedStr) -> str:
        return "".join(str(self.visit(v)) for v in node.values)

    def visit_FormattedValue(self, node: ast.FormattedValue) -> Any:
        if node.format_spec is not None or node.conversion != -1:
            raise UnsafeExpressionError("Format specifications are not allowed")
        return self.visit(node.value)

    def visit_Call(self, node: ast.Call) -> Any:
        func = self.visit(node.func)
        if not callable(func):
            raise TypeError(f"'{type(func).__name__}' object is not callable")
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise UnsafeExpressionError("Starred arguments are not allowed")
            args.append(self.visit(arg))
        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise UnsafeExpressionError("Keyword unpacking is not allowed")
            kwargs[keyword.arg] = self.visit(keyword.value)
        _check_call(func, [*args, *kwargs.values()])
        return func(*args, **kwargs)

    # Comprehensions

    def _comprehension(self, generators: list[ast.comprehension], emit) -> None:
        def loop(index: int) -> None:
            if index == len(generators):
                emit()
                return
            gen = generators[index]
            if gen.is_async:
                raise UnsafeExpressionError("Async comprehensions are not allowed")
            for value in self.visit(gen.iter):
                self._bind(gen.target, value)
                if all(self.visit(cond) for cond in gen.ifs):
                    loop(index + 1)

        self.scopes.append({})
        try:
            loop(0)
        finally:
            self.scopes.pop()

    def _bind(self, target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            self.scopes[-1][target.id] = value
        elif isinstance(target, ast.Tuple):
            values = list(value)
            if len(values) != len(target.elts):
                raise ValueError("Cannot unpack value in comprehension")
            for elt, v in zip(target.elts, values, strict=True):
                self._bind(elt, v)
        else:
            raise UnsafeExpressionError("Unsupported comprehension target")

    def visit_ListComp(self, node: ast.ListComp) -> list:
        result: list = []
        self._comprehension(node.generators, lambda: result.append(self.visit(node.elt)))
        return result

    def visit_GeneratorExp(self, node: ast.GeneratorExp) -> list:
        # Evaluated eagerly; the scope is gone once the comprehension returns
        return self.visit_ListComp(node)  # type: ignore[arg-type]

    def visit_SetComp(self, node: ast.SetComp) -> set:
        result: set = set()
        self._comprehension(node.generators, lambda: result.add(self.visit(node.elt)))
        return result

    def visit_DictComp(self, node: ast.DictComp) -> dict:
        result: dict = {}

        def emit() -> None:
            result[self.visit(node.key)] = self.visit(node.value)

        self._comprehension(node.generators, emit)
        return result


def safe_eval(expression: str, context: dict[str, Any] | None = None) -> Any:
    """
    Evaluate a Python-subset expression against a dict of names.

    Raises:
        SyntaxError: if the expression does not parse
        UnsafeExpressionError: if it uses a construct outside the whitelist
        Exception: whatever evaluation raises (KeyError, TypeError, ...)
    """
    tree = ast.parse(expression.strip(), mode="eval")
    return _Evaluator(dict(context or {})).visit(tree)
