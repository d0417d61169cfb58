# ============================================================================
#  File: function_runtime.py
#  Purpose: Restricted interpreter for TEXT_MANIPULATION function bodies
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import ast
import copy
import json
import operator
import re
import textwrap
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from sflflow.config import FUNCTION_STEP_LIMIT
from sflflow.data_store import stringify_value
from sflflow.errors import FunctionRuntimeError

ERROR_PREFIX = "Error in custom function"
MAX_SEQUENCE_LENGTH = 1_000_000
MAX_EXPONENT = 1_000

ALLOWED_NODES = (
    # statements
    ast.Expr, ast.Assign, ast.AugAssign, ast.If, ast.For, ast.While,
    ast.Break, ast.Continue, ast.Pass, ast.Return, ast.Raise,
    # expressions
    ast.Constant, ast.Name, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare,
    ast.IfExp, ast.Call, ast.keyword, ast.Attribute, ast.Subscript, ast.Slice,
    ast.List, ast.Tuple, ast.Dict, ast.Set, ast.Starred,
    ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp, ast.comprehension,
    ast.Lambda, ast.arguments, ast.arg, ast.JoinedStr, ast.FormattedValue,
    # contexts and operators
    ast.Load, ast.Store,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.UAdd, ast.USub, ast.Not, ast.And, ast.Or,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
)

BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

COMPARE_OPERATORS = {
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

ALLOWED_EXCEPTIONS = (ValueError, TypeError, KeyError, RuntimeError, Exception)


def _safe_range(*args):
    result = range(*args)
    if len(result) > MAX_SEQUENCE_LENGTH:
        raise ValueError("range is too large")
    return result


def _check_size(value, what: str = "result") -> None:
    if isinstance(value, (str, list, tuple, dict, set)) and len(value) > MAX_SEQUENCE_LENGTH:
        raise ValueError(f"{what} is too large")


def _sized_length(value) -> int:
    return len(value) if isinstance(value, (str, list, tuple, dict, set)) else 0


def _json_dumps(value, indent=None):
    return json.dumps(value, indent=indent, ensure_ascii=False, default=str)


SAFE_BUILTINS: Dict[str, Any] = {
    "len": len, "str": str, "int": int, "float": float, "round": round,
    "sorted": sorted, "sum": sum, "min": min, "max": max, "abs": abs,
    "range": _safe_range, "enumerate": enumerate, "zip": zip, "any": any,
    "all": all, "list": list, "dict": dict, "set": set, "tuple": tuple,
    "bool": bool, "map": map, "filter": filter, "reversed": reversed,
    "json_dumps": _json_dumps, "json_loads": json.loads,
}

SAFE_NAMES: Dict[str, Any] = {
    **SAFE_BUILTINS,
    "ValueError": ValueError, "TypeError": TypeError, "KeyError": KeyError,
    "RuntimeError": RuntimeError, "Exception": Exception, "Error": Exception,
    "True": True, "False": False, "None": None,
    "true": True, "false": False, "null": None, "undefined": None,
}
SAFE_CALLABLES = tuple(v for v in SAFE_NAMES.values() if callable(v))

METHODS_BY_TYPE = (
    (str, frozenset({
        "upper", "lower", "strip", "lstrip", "rstrip", "split", "rsplit",
        "splitlines", "replace", "startswith", "endswith", "find", "rfind",
        "index", "count", "join", "title", "capitalize", "casefold", "swapcase",
        "isdigit", "isalpha", "isalnum", "isspace", "isupper", "islower",
        "zfill", "center", "ljust", "rjust", "partition", "rpartition",
    })),
    (list, frozenset({
        "append", "extend", "insert", "pop", "remove", "index", "count",
        "sort", "reverse", "copy", "clear",
    })),
    (dict, frozenset({
        "get", "keys", "values", "items", "pop", "setdefault", "update", "copy",
    })),
    (set, frozenset({
        "add", "discard", "remove", "union", "intersection", "difference",
        "issubset", "issuperset", "copy",
    })),
)
#
# ============================================================================
# SECTION 2: Compatibility Aliases
# ============================================================================
# Workflow generators tend to author string/array helpers by their
# JavaScript names; these map onto the equivalent Python operations.
# ============================================================================
#
def _js_push(items: list, *values):
    items.extend(values)
    return len(items)


def _js_index_of(container, value):
    if isinstance(container, str):
        return container.find(value)
    return container.index(value) if value in container else -1


def _js_join(items: list, separator: str = ","):
    return separator.join("" if item is None else stringify_value(item) for item in items)


def _js_slice(container, start=None, end=None):
    return container[start:end]


def _js_map(items: list, func):
    return [func(item) for item in items]


def _js_filter(items: list, func):
    return [item for item in items if func(item)]


JS_METHOD_ALIASES = {
    str: {
        "toUpperCase": str.upper,
        "toLowerCase": str.lower,
        "trim": str.strip,
        "startsWith": str.startswith,
        "endsWith": str.endswith,
        "includes": lambda s, sub: sub in s,
        "indexOf": _js_index_of,
        "slice": _js_slice,
        "toString": str,
    },
    list: {
        "includes": lambda items, value: value in items,
        "join": _js_join,
        "push": _js_push,
        "indexOf": _js_index_of,
        "slice": _js_slice,
        "map": _js_map,
        "filter": _js_filter,
        "toString": _js_join,
    },
    dict: {"toString": stringify_value},
    int: {"toString": stringify_value},
    float: {"toString": stringify_value},
}
#
# ============================================================================
# SECTION 3: Interpreter Internals
# ============================================================================
#
class _ControlFlow(Exception):
    pass


class _Return(_ControlFlow):
    def __init__(self, value):
        super().__init__()
        self.value = value


class _Break(_ControlFlow):
    pass


class _Continue(_ControlFlow):
    pass


PADDING_METHODS = frozenset({"ljust", "rjust", "center", "zfill"})


def _check_joined_length(separator: str, items) -> None:
    total = len(separator) * max(len(items) - 1, 0)
    total += sum(len(item) for item in items if isinstance(item, str))
    if total > MAX_SEQUENCE_LENGTH:
        raise ValueError("joined string is too large")


class _BoundMethod:
    """
    An allow-listed method already bound to its receiver.

    Calls that would build an oversized string are refused up front; methods
    that grow their receiver in place are checked after the call.
    """

    def __init__(self, func: Callable, name: str, receiver: Any = None):
        self._func = func
        self.name = name
        self._receiver = receiver

    def __call__(self, *args, **kwargs):
        if isinstance(self._receiver, str):
            self._check_string_growth(args, kwargs)
        elif isinstance(self._receiver, list) and self.name in ("join", "toString"):
            separator = args[0] if args and isinstance(args[0], str) else ","
            _check_joined_length(separator, self._receiver)
        size = _sized_length(self._receiver)
        result = self._func(*args, **kwargs)
        if _sized_length(result) > size:
            _check_size(result)
        if _sized_length(self._receiver) > size:
            _check_size(self._receiver, type(self._receiver).__name__)
        return result

    def _check_string_growth(self, args, kwargs) -> None:
        text = self._receiver
        if self.name in PADDING_METHODS:
            width = args[0] if args else kwargs.get("width", 0)
            if isinstance(width, int) and width > MAX_SEQUENCE_LENGTH:
                raise ValueError("padded string is too large")
        elif self.name == "replace" and len(args) >= 2:
            old, new = args[0], args[1]
            if isinstance(old, str) and isinstance(new, str) and len(new) > len(old):
                count = text.count(old)
                limit = args[2] if len(args) > 2 else kwargs.get("count", -1)
                if isinstance(limit, int) and limit >= 0:
                    count = min(count, limit)
                if len(text) + count * (len(new) - len(old)) > MAX_SEQUENCE_LENGTH:
                    raise ValueError("replaced string is too large")
        elif self.name == "join" and args and isinstance(args[0], (list, tuple)):
            _check_joined_length(text, args[0])


class _Lambda:
    def __init__(self, interpreter: "_Interpreter", node: ast.Lambda, scope: Dict[str, Any]):
        self._interpreter = interpreter
        self._node = node
        self._scope = scope

    def __call__(self, *args):
        params = [a.arg for a in self._node.args.args]
        defaults = [self._interpreter.eval(d, self._scope) for d in self._node.args.defaults]
        if len(args) > len(params):
            raise TypeError(f"lambda takes {len(params)} arguments but {len(args)} were given")
        missing = len(params) - len(args)
        if missing > len(defaults):
            raise TypeError(f"lambda missing {missing - len(defaults)} required argument(s)")
        values = list(args) + defaults[len(defaults) - missing:] if missing else list(args)
        scope = dict(self._scope)
        scope.update(zip(params, values))
        return self._interpreter.eval(self._node.body, scope)


class _Interpreter:
    """Evaluates one parsed function body; holds the step budget for one run."""

    def __init__(self, step_limit: int):
        self.step_limit = step_limit
        self.steps = 0

    def _tick(self):
        self.steps += 1
        if self.steps > self.step_limit:
            raise RuntimeError(f"step limit of {self.step_limit} exceeded")

    # =========================================================================
    # Method 3.1: statements
    # =========================================================================
    def exec_block(self, statements: List[ast.stmt], scope: Dict[str, Any]) -> None:
        for statement in statements:
            self.exec(statement, scope)

    def exec(self, node: ast.stmt, scope: Dict[str, Any]) -> None:
        self._tick()
        if isinstance(node, ast.Expr):
            self.eval(node.value, scope)
        elif isinstance(node, ast.Assign):
            value = self.eval(node.value, scope)
            for target in node.targets:
                self.assign(target, value, scope)
        elif isinstance(node, ast.AugAssign):
            current = self.eval(_as_load(node.target), scope)
            value = self.binary(node.op, current, self.eval(node.value, scope))
            self.assign(node.target, value, scope)
        elif isinstance(node, ast.If):
            branch = node.body if self.eval(node.test, scope) else node.orelse
            self.exec_block(branch, scope)
        elif isinstance(node, ast.For):
            self.exec_for(node, scope)
        elif isinstance(node, ast.While):
            self.exec_while(node, scope)
        elif isinstance(node, ast.Break):
            raise _Break()
        elif isinstance(node, ast.Continue):
            raise _Continue()
        elif isinstance(node, ast.Pass):
            pass
        elif isinstance(node, ast.Return):
            raise _Return(self.eval(node.value, scope) if node.value is not None else None)
        elif isinstance(node, ast.Raise):
            self.exec_raise(node, scope)
        else:
            raise SyntaxError(f"'{type(node).__name__}' statements are not allowed")

    def exec_for(self, node: ast.For, scope: Dict[str, Any]) -> None:
        for item in self.eval(node.iter, scope):
            self.assign(node.target, item, scope)
            try:
                self.exec_block(node.body, scope)
            except _Break:
                return
            except _Continue:
                continue
        self.exec_block(node.orelse, scope)

    def exec_while(self, node: ast.While, scope: Dict[str, Any]) -> None:
        while self.eval(node.test, scope):
            try:
                self.exec_block(node.body, scope)
            except _Break:
                return
            except _Continue:
                continue
        self.exec_block(node.orelse, scope)

    def exec_raise(self, node: ast.Raise, scope: Dict[str, Any]) -> None:
        if node.exc is None:
            raise RuntimeError("No active exception to re-raise")
        exc = self.eval(node.exc, scope)
        if isinstance(exc, type) and exc in ALLOWED_EXCEPTIONS:
            raise exc()
        if isinstance(exc, ALLOWED_EXCEPTIONS) and type(exc) in ALLOWED_EXCEPTIONS:
            raise exc
        raise TypeError("exceptions must be one of ValueError, TypeError, KeyError, RuntimeError, Exception")

    def assign(self, target: ast.expr, value: Any, scope: Dict[str, Any]) -> None:
        if isinstance(target, ast.Name):
            scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ValueError(f"expected {len(target.elts)} values to unpack, got {len(values)}")
            for element, item in zip(target.elts, values):
                self.assign(element, item, scope)
        elif isinstance(target, ast.Subscript):
            container = self.eval(target.value, scope)
            container[self.eval(target.slice, scope)] = value
        elif isinstance(target, ast.Attribute):
            container = self.eval(target.value, scope)
            _check_attribute_name(target.attr)
            if not isinstance(container, dict):
                raise TypeError(f"cannot set attribute '{target.attr}' on {type(container).__name__}")
            container[target.attr] = value
        else:
            raise SyntaxError(f"cannot assign to {type(target).__name__}")

    # =========================================================================
    # Method 3.2: expressions
    # =========================================================================
    def eval(self, node: ast.expr, scope: Dict[str, Any]) -> Any:
        self._tick()
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in scope:
                return scope[node.id]
            if node.id in SAFE_NAMES:
                return SAFE_NAMES[node.id]
            raise NameError(f"name '{node.id}' is not defined")
        if isinstance(node, ast.BinOp):
            return self.binary(node.op, self.eval(node.left, scope), self.eval(node.right, scope))
        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand
        if isinstance(node, ast.BoolOp):
            result = None
            for value_node in node.values:
                result = self.eval(value_node, scope)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result
        if isinstance(node, ast.Compare):
            left = self.eval(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.eval(comparator, scope)
                if not COMPARE_OPERATORS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            return self.eval(node.body if self.eval(node.test, scope) else node.orelse, scope)
        if isinstance(node, ast.Call):
            return self.call(node, scope)
        if isinstance(node, ast.Attribute):
            return get_attribute(self.eval(node.value, scope), node.attr)
        if isinstance(node, ast.Subscript):
            return self.eval(node.value, scope)[self.eval(node.slice, scope)]
        if isinstance(node, ast.Slice):
            return slice(
                self.eval(node.lower, scope) if node.lower else None,
                self.eval(node.upper, scope) if node.upper else None,
                self.eval(node.step, scope) if node.step else None,
            )
        if isinstance(node, ast.List):
            return self.elements(node.elts, scope)
        if isinstance(node, ast.Tuple):
            return tuple(self.elements(node.elts, scope))
        if isinstance(node, ast.Set):
            return set(self.elements(node.elts, scope))
        if isinstance(node, ast.Dict):
            result = {}
            for key, value in zip(node.keys, node.values):
                if key is None:
                    result.update(self.eval(value, scope))
                else:
                    result[self.eval(key, scope)] = self.eval(value, scope)
            return result
        if isinstance(node, (ast.ListComp, ast.GeneratorExp)):
            out: List[Any] = []
            self.comprehension(node.generators, dict(scope), lambda s: out.append(self.eval(node.elt, s)))
            return out
        if isinstance(node, ast.SetComp):
            out_set = set()
            self.comprehension(node.generators, dict(scope), lambda s: out_set.add(self.eval(node.elt, s)))
            return out_set
        if isinstance(node, ast.DictComp):
            out_dict = {}
            self.comprehension(
                node.generators, dict(scope),
                lambda s: out_dict.__setitem__(self.eval(node.key, s), self.eval(node.value, s)),
            )
            return out_dict
        if isinstance(node, ast.Lambda):
            args = node.args
            if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
                raise SyntaxError("lambdas may only take plain positional arguments")
            return _Lambda(self, node, scope)
        if isinstance(node, ast.JoinedStr):
            return "".join(self.eval(value, scope) for value in node.values)
        if isinstance(node, ast.FormattedValue):
            value = self.eval(node.value, scope)
            if node.conversion == ord("r"):
                value = repr(value)
            elif node.conversion == ord("a"):
                value = ascii(value)
            elif node.conversion == ord("s"):
                value = str(value)
            spec = self.eval(node.format_spec, scope) if node.format_spec else ""
            if any(int(digits) > MAX_SEQUENCE_LENGTH for digits in re.findall(r"\d+", spec)):
                raise ValueError("format width is too large")
            return format(value, spec)
        raise SyntaxError(f"'{type(node).__name__}' expressions are not allowed")

    def elements(self, nodes: List[ast.expr], scope: Dict[str, Any]) -> List[Any]:
        values: List[Any] = []
        for element in nodes:
            if isinstance(element, ast.Starred):
                values.extend(self.eval(element.value, scope))
            else:
                values.append(self.eval(element, scope))
        return values

    def comprehension(self, generators, scope, emit, index=0) -> None:
        if index == len(generators):
            emit(scope)
            return
        generator = generators[index]
        if generator.is_async:
            raise SyntaxError("async comprehensions are not allowed")
        for item in self.eval(generator.iter, scope):
            self.assign(generator.target, item, scope)
            if all(self.eval(condition, scope) for condition in generator.ifs):
                self.comprehension(generators, scope, emit, index + 1)

    def binary(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ValueError("exponent is too large")
        if isinstance(op, ast.Mult):
            for sequence, count in ((left, right), (right, left)):
                if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
                    if len(sequence) * count > MAX_SEQUENCE_LENGTH:
                        raise ValueError("repeated sequence is too large")
        if isinstance(op, ast.Add) and isinstance(left, (str, list, tuple)) and isinstance(right, (str, list, tuple)):
            if len(left) + len(right) > MAX_SEQUENCE_LENGTH:
                raise ValueError("concatenated sequence is too large")
        return BINARY_OPERATORS[type(op)](left, right)

    def call(self, node: ast.Call, scope: Dict[str, Any]) -> Any:
        func = self.eval(node.func, scope)
        if not isinstance(func, (_BoundMethod, _Lambda)) and not any(func is c for c in SAFE_CALLABLES):
            raise TypeError(f"'{type(func).__name__}' object is not callable")
        args = self.elements(node.args, scope)
        kwargs: Dict[str, Any] = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                kwargs.update(self.eval(keyword.value, scope))
            else:
                kwargs[keyword.arg] = self.eval(keyword.value, scope)
        return func(*args, **kwargs)
#
# ============================================================================
# SECTION 4: Attribute Access
# ============================================================================
#
def _check_attribute_name(name: str) -> None:
    if name.startswith("_"):
        raise AttributeError(f"access to attribute '{name}' is not allowed")


def get_attribute(obj: Any, name: str) -> Any:
    """
    Attribute read with the restricted semantics used by task functions.

    Mapping attributes read keys (`inputs.topic`) and an absent key reads as
    None. Otherwise only allow-listed methods and the compatibility aliases
    are reachable.
    """
    _check_attribute_name(name)
    if isinstance(obj, dict) and name in obj:
        return obj[name]
    if name == "length" and isinstance(obj, (str, list, tuple, dict)):
        return len(obj)

    for value_type, methods in METHODS_BY_TYPE:
        if isinstance(obj, value_type) and name in methods:
            return _BoundMethod(getattr(obj, name), name, obj)

    for value_type, aliases in JS_METHOD_ALIASES.items():
        if isinstance(obj, value_type) and not isinstance(obj, bool) and name in aliases:
            return _BoundMethod(partial(aliases[name], obj), name, obj)

    if isinstance(obj, dict):
        return None
    raise AttributeError(f"'{type(obj).__name__}' object has no attribute '{name}'")


def _as_load(target: ast.expr) -> ast.expr:
    loaded = copy.copy(target)
    loaded.ctx = ast.Load()
    return loaded


def _to_plain(value: Any) -> Any:
    if isinstance(value, (_BoundMethod, _Lambda)):
        raise TypeError("task functions must return data, not a function")
    if isinstance(value, (tuple, set, frozenset)):
        return [_to_plain(v) for v in value]
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    return value
#
# ============================================================================
# SECTION 5: Runtime
# ============================================================================
# Class 5.1: RestrictedFunctionRuntime
# ============================================================================
#
class RestrictedFunctionRuntime:
    """
    Runs user supplied TEXT_MANIPULATION bodies without host privileges.

    A body is either a single expression (`inputs.text.upper()`) or the body
    of a function taking `inputs` (`return inputs.x.toUpperCase()`). Only
    the node types in ALLOWED_NODES are accepted; there are no imports,
    no private attributes and no calls beyond the allow-lists.
    """

    def __init__(self, step_limit: int = FUNCTION_STEP_LIMIT):
        self.step_limit = step_limit

    # =========================================================================
    # Method 5.1.1: run
    # =========================================================================
    def run(self, function_body: str, inputs: Dict[str, Any]) -> Any:
        """
        Evaluates `function_body` against a private copy of `inputs`.

        Args:
            function_body: Python expression or function body.
            inputs: Values keyed by input name.

        Returns:
            The expression value, or the value of the body's `return`.

        Raises:
            FunctionRuntimeError: on syntax errors, disallowed constructs
                or any exception raised while running the body.
        """
        try:
            expression, statements = self._parse(function_body)
            interpreter = _Interpreter(self.step_limit)
            scope = {"inputs": copy.deepcopy(inputs)}
            if expression is not None:
                return _to_plain(interpreter.eval(expression, scope))
            try:
                interpreter.exec_block(statements, scope)
            except _Return as ret:
                return _to_plain(ret.value)
            return None
        except _ControlFlow:
            raise FunctionRuntimeError(f"{ERROR_PREFIX}: 'break' or 'continue' outside loop")
        except FunctionRuntimeError:
            raise
        except Exception as e:
            logger.debug(f"Task function raised {type(e).__name__}: {e}")
            raise FunctionRuntimeError(f"{ERROR_PREFIX}: {e}") from e

    def _parse(self, function_body: str):
        source = textwrap.dedent(function_body or "").strip()
        if not source:
            raise SyntaxError("function body is empty")
        try:
            tree = ast.parse(source, mode="eval")
            expression: Optional[ast.expr] = tree.body
            nodes = [tree.body]
        except SyntaxError:
            wrapped = "def __task_function__(inputs):\n" + textwrap.indent(source, "    ")
            try:
                module = ast.parse(wrapped)
            except SyntaxError as e:
                line = (e.lineno or 1) - 1
                raise SyntaxError(f"invalid syntax on line {line}: {e.msg}") from None
            expression = None
            nodes = module.body[0].body

        for root in nodes:
            for node in ast.walk(root):
                if not isinstance(node, ALLOWED_NODES):
                    raise SyntaxError(f"'{type(node).__name__}' is not allowed in task functions")
        return expression, nodes

#
#
## End of Script
