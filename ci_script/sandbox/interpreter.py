"""Tree-walking evaluator for compiled scripts.

The interpreter only ever dispatches on the node types the engine accepted
at compile time. Every name a script can reach is resolved here: local
frames, the job scope, the engine's registrations and a short list of safe
builtins. Attribute access is resolved the same way, so host objects never
leak their Python internals into a script.
"""

from __future__ import annotations

import ast
import logging
import operator
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from ci_script.errors import CisError, ScriptExecutionError
from ci_script.sandbox.engine import Engine, Scope, StaticModule

_SCRIPT_LOGGER = logging.getLogger("ci_script.script")


def _print(*values: Any) -> None:
    _SCRIPT_LOGGER.info("%s", " ".join(str(value) for value in values))


SAFE_BUILTINS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "range": range,
    "sorted": sorted,
    "min": min,
    "max": max,
    "abs": abs,
    "list": list,
    "dict": dict,
    "any": any,
    "all": all,
    "enumerate": enumerate,
    "zip": zip,
    "print": _print,
}

# Methods of plain values a script may call. ``str.format`` is left out on
# purpose: its field syntax performs attribute lookups of its own.
VALUE_METHODS: Dict[type, frozenset] = {
    str: frozenset(
        """
        capitalize casefold center count endswith find index isalnum isalpha
        isdigit islower isspace isupper join ljust lower lstrip partition
        removeprefix removesuffix replace rfind rindex rjust rpartition rsplit
        rstrip split splitlines startswith strip swapcase title upper zfill
        """.split()
    ),
    list: frozenset(
        "append clear copy count extend index insert pop remove reverse sort".split()
    ),
    dict: frozenset("clear copy get items keys pop setdefault update values".split()),
    tuple: frozenset("count index".split()),
    set: frozenset(
        """
        add clear copy difference discard intersection issubset issuperset pop
        remove union update
        """.split()
    ),
}

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.LShift: operator.lshift,
    ast.RShift: operator.rshift,
    ast.BitOr: operator.or_,
    ast.BitXor: operator.xor,
    ast.BitAnd: operator.and_,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Invert: operator.invert,
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


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class _Return(Exception):
    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


class ScriptFunction:
    """A function defined by the script itself."""

    def __init__(self, interpreter: Interpreter, node: ast.FunctionDef) -> None:
        self._interpreter = interpreter
        self.node = node
        self.name = node.name
        self.params = [arg.arg for arg in node.args.args]

    def __call__(self, *args: Any) -> Any:
        return self._interpreter.call_function(self, list(args))

    def __repr__(self) -> str:
        return f"<fn {self.name}>"


class Interpreter:
    def __init__(self, engine: Engine, scope: Scope) -> None:
        self.engine = engine
        self.scope = scope
        self._frames: List[Dict[str, Any]] = []
        self._operations = 0

    # -- entry point ----------------------------------------------------------

    def run(self, tree: ast.Module) -> Any:
        try:
            self._exec_body(tree.body)
        except _Return as ret:
            return ret.value
        except (_Break, _Continue):
            raise ScriptExecutionError("break or continue outside a loop") from None
        return None

    # -- bookkeeping ----------------------------------------------------------

    def _tick(self, node: ast.AST) -> None:
        self._operations += 1
        limit = self.engine.max_operations
        if limit is not None and self._operations > limit:
            raise ScriptExecutionError(
                "Too many operations", getattr(node, "lineno", None)
            )

    def call_function(self, fn: ScriptFunction, args: List[Any]) -> Any:
        if len(args) != len(fn.params):
            raise ScriptExecutionError(
                f"Function {fn.name} takes {len(fn.params)} argument(s), "
                f"got {len(args)}",
                fn.node.lineno,
            )
        if len(self._frames) >= self.engine.max_call_depth:
            raise ScriptExecutionError("Call stack too deep", fn.node.lineno)
        self._frames.append(dict(zip(fn.params, args)))
        try:
            self._exec_body(fn.node.body)
        except _Return as ret:
            return ret.value
        except (_Break, _Continue):
            raise ScriptExecutionError(
                "break or continue outside a loop", fn.node.lineno
            ) from None
        finally:
            self._frames.pop()
        return None

    # -- names ----------------------------------------------------------------

    def _lookup(self, name: str, node: ast.AST) -> Any:
        if self._frames and name in self._frames[-1]:
            return self._frames[-1][name]
        if self.scope.contains(name):
            return self.scope.get(name)
        found, value = self.engine.lookup_global(name)
        if found:
            return value
        if name in SAFE_BUILTINS:
            return SAFE_BUILTINS[name]
        raise ScriptExecutionError(f"Variable not found: {name}", getattr(node, "lineno", None))

    def _bind(self, name: str, value: Any, node: ast.AST) -> None:
        if self.scope.is_constant(name):
            raise ScriptExecutionError(
                f"Cannot assign to constant '{name}'", getattr(node, "lineno", None)
            )
        if self._frames:
            self._frames[-1][name] = value
        else:
            self.scope.set(name, value)

    def _member(self, value: Any, attr: str, node: ast.AST) -> Any:
        line = getattr(node, "lineno", None)
        if isinstance(value, StaticModule):
            if not value.has(attr):
                raise ScriptExecutionError(
                    f"Variable not found: {value.name}::{attr}", line
                )
            return value.get(attr)
        info = self.engine.type_info(value)
        if info is not None:
            if attr in info.getters:
                return info.getters[attr](value)
            if attr in info.methods:
                return partial(info.methods[attr], value)
            raise ScriptExecutionError(f"Function not found: {info.name}.{attr}", line)
        allowed = VALUE_METHODS.get(type(value))
        if allowed is not None and attr in allowed:
            return getattr(value, attr)
        raise ScriptExecutionError(
            f"Function not found: {type(value).__name__}.{attr}", line
        )

    # -- statements -----------------------------------------------------------

    def _exec_body(self, body: List[ast.stmt]) -> None:
        for stmt in body:
            self._exec(stmt)

    def _exec(self, stmt: ast.stmt) -> None:
        self._tick(stmt)
        try:
            handler = getattr(self, f"_exec_{type(stmt).__name__}")
            handler(stmt)
        except (_Break, _Continue, _Return, CisError):
            raise
        except Exception as exc:
            # Host errors surface as script errors at the failing line.
            raise ScriptExecutionError(_describe(exc), stmt.lineno) from exc

    def _exec_Expr(self, stmt: ast.Expr) -> None:
        self._eval(stmt.value)

    def _exec_Assign(self, stmt: ast.Assign) -> None:
        value = self._eval(stmt.value)
        for target in stmt.targets:
            self._assign(target, value)

    def _assign(self, target: ast.expr, value: Any) -> None:
        if isinstance(target, ast.Name):
            self._bind(target.id, value, target)
        elif isinstance(target, (ast.Tuple, ast.List)):
            items = list(value)
            if len(items) != len(target.elts):
                raise ScriptExecutionError(
                    f"Expected {len(target.elts)} values to unpack, got {len(items)}",
                    target.lineno,
                )
            for elt, item in zip(target.elts, items):
                self._assign(elt, item)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            container[self._eval(target.slice)] = value
        else:
            raise ScriptExecutionError("Invalid assignment target", target.lineno)

    def _exec_AugAssign(self, stmt: ast.AugAssign) -> None:
        op = _BINARY_OPS.get(type(stmt.op))
        if op is None:
            raise ScriptExecutionError("Unsupported operator", stmt.lineno)
        target = stmt.target
        if isinstance(target, ast.Name):
            current = self._lookup(target.id, target)
            self._bind(target.id, op(current, self._eval(stmt.value)), target)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            index = self._eval(target.slice)
            container[index] = op(container[index], self._eval(stmt.value))
        else:
            raise ScriptExecutionError("Invalid assignment target", stmt.lineno)

    def _exec_If(self, stmt: ast.If) -> None:
        if self._eval(stmt.test):
            self._exec_body(stmt.body)
        else:
            self._exec_body(stmt.orelse)

    def _exec_For(self, stmt: ast.For) -> None:
        for item in self._eval(stmt.iter):
            self._tick(stmt)
            self._assign(stmt.target, item)
            try:
                self._exec_body(stmt.body)
            except _Break:
                break
            except _Continue:
                continue

    def _exec_While(self, stmt: ast.While) -> None:
        while self._eval(stmt.test):
            self._tick(stmt)
            try:
                self._exec_body(stmt.body)
            except _Break:
                break
            except _Continue:
                continue

    def _exec_Break(self, stmt: ast.Break) -> None:
        raise _Break()

    def _exec_Continue(self, stmt: ast.Continue) -> None:
        raise _Continue()

    def _exec_Pass(self, stmt: ast.Pass) -> None:
        return None

    def _exec_FunctionDef(self, stmt: ast.FunctionDef) -> None:
        self._bind(stmt.name, ScriptFunction(self, stmt), stmt)

    def _exec_Return(self, stmt: ast.Return) -> None:
        raise _Return(self._eval(stmt.value) if stmt.value is not None else None)

    def _exec_Assert(self, stmt: ast.Assert) -> None:
        if not self._eval(stmt.test):
            message = "Assertion failed"
            if stmt.msg is not None:
                message = f"{message}: {self._eval(stmt.msg)}"
            raise ScriptExecutionError(message, stmt.lineno)

    # -- expressions ----------------------------------------------------------

    def _eval(self, node: ast.expr) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ScriptExecutionError(
                f"{type(node).__name__} is not supported", getattr(node, "lineno", None)
            )
        return handler(node)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        return self._lookup(node.id, node)

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        return self._member(self._eval(node.value), node.attr, node)

    def _eval_Call(self, node: ast.Call) -> Any:
        func = self._eval(node.func)
        args = [self._eval(arg) for arg in node.args]
        kwargs = {kw.arg: self._eval(kw.value) for kw in node.keywords}
        self._tick(node)
        if isinstance(func, ScriptFunction):
            if kwargs:
                raise ScriptExecutionError(
                    f"Function {func.name} takes positional arguments only", node.lineno
                )
            return self.call_function(func, args)
        if not callable(func) or isinstance(func, StaticModule):
            raise ScriptExecutionError("Value is not a function", node.lineno)
        return func(*args, **kwargs)

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            raise ScriptExecutionError("Unsupported operator", node.lineno)
        return op(self._eval(node.left), self._eval(node.right))

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return _UNARY_OPS[type(node.op)](self._eval(node.operand))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        if isinstance(node.op, ast.And):
            for expr in node.values:
                value = self._eval(expr)
                if not value:
                    return value
            return value
        for expr in node.values:
            value = self._eval(expr)
            if value:
                return value
        return value

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self._eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self._eval(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)

    def _eval_List(self, node: ast.List) -> list:
        return [self._eval(elt) for elt in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self._eval(elt) for elt in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict:
        return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        return self._eval(node.value)[self._eval(node.slice)]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self._eval(node.lower) if node.lower is not None else None,
            self._eval(node.upper) if node.upper is not None else None,
            self._eval(node.step) if node.step is not None else None,
        )

    def _eval_JoinedStr(self, node: ast.JoinedStr) -> str:
        return "".join(str(self._eval(part)) for part in node.values)

    def _eval_FormattedValue(self, node: ast.FormattedValue) -> str:
        value = self._eval(node.value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion in (ord("s"), ord("a")):
            value = str(value) if node.conversion == ord("s") else ascii(value)
        spec = self._eval(node.format_spec) if node.format_spec is not None else ""
        return format(value, spec)


def _describe(exc: Exception) -> str:
    text = str(exc)
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


__all__ = ["Interpreter", "SAFE_BUILTINS", "ScriptFunction", "VALUE_METHODS"]
