"""Script engine: the registry of everything a script is allowed to touch."""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

from ci_script.errors import NoScriptFound, ScriptParseError
from ci_script.sandbox.syntax import desugar

_LOGGER = logging.getLogger(__name__)

# Node types a script may contain. Anything else fails compilation.
ALLOWED_NODES: Tuple[type, ...] = (
    ast.Module,
    ast.Expr,
    ast.Assign,
    ast.AugAssign,
    ast.If,
    ast.For,
    ast.While,
    ast.Break,
    ast.Continue,
    ast.Pass,
    ast.FunctionDef,
    ast.Return,
    ast.Assert,
    ast.arguments,
    ast.arg,
    ast.Constant,
    ast.Name,
    ast.Attribute,
    ast.Call,
    ast.keyword,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Subscript,
    ast.Slice,
    ast.JoinedStr,
    ast.FormattedValue,
    ast.Load,
    ast.Store,
    ast.operator,
    ast.unaryop,
    ast.boolop,
    ast.cmpop,
)

_REJECTED_HINTS = {
    ast.Import: "import is not supported",
    ast.ImportFrom: "import is not supported",
    ast.ClassDef: "class definitions are not supported",
    ast.Lambda: "lambda is not supported",
    ast.With: "with is not supported",
    ast.Try: "try is not supported",
    ast.Global: "global is not supported",
    ast.Nonlocal: "nonlocal is not supported",
    ast.Delete: "del is not supported",
}


class StaticModule:
    """A read-only namespace reachable as ``name::member`` from scripts."""

    def __init__(self, name: str, members: Optional[Mapping[str, Any]] = None) -> None:
        self.name = name
        self._members: Dict[str, Any] = dict(members or {})

    def set(self, member: str, value: Any) -> StaticModule:
        self._members[member] = value
        return self

    def has(self, member: str) -> bool:
        return member in self._members

    def get(self, member: str) -> Any:
        if member not in self._members:
            raise KeyError(f"{self.name}::{member}")
        return self._members[member]

    def __repr__(self) -> str:
        return f"<module {self.name}>"


@dataclass
class TypeInfo:
    name: str
    methods: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    getters: Dict[str, Callable[[Any], Any]] = field(default_factory=dict)


class Scope:
    """Variables and constants visible at the top level of a script."""

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self._constants: set[str] = set()

    def push(self, name: str, value: Any) -> Scope:
        self._values[name] = value
        return self

    def push_constant(self, name: str, value: Any) -> Scope:
        self._values[name] = value
        self._constants.add(name)
        return self

    def is_constant(self, name: str) -> bool:
        return name in self._constants

    def contains(self, name: str) -> bool:
        return name in self._values

    def get(self, name: str) -> Any:
        return self._values[name]

    def set(self, name: str, value: Any) -> None:
        if name in self._constants:
            raise ValueError(f"Cannot assign to constant '{name}'")
        self._values[name] = value

    def names(self) -> Iterator[str]:
        return iter(self._values)


@dataclass(frozen=True)
class Script:
    tree: ast.Module
    source: str


class Engine:
    """Holds the capability types, functions and modules exposed to scripts.

    Registration methods return the engine so they can be chained.
    """

    def __init__(self, *, max_operations: Optional[int] = None, max_call_depth: int = 64) -> None:
        self.max_operations = max_operations
        self.max_call_depth = max_call_depth
        self._types: Dict[type, TypeInfo] = {}
        self._globals: Dict[str, Callable[..., Any]] = {}
        self._modules: Dict[str, StaticModule] = {}
        self._syntax: Dict[str, Callable[..., Any]] = {}

    # -- registration -------------------------------------------------------

    def register_type(self, cls: type, name: Optional[str] = None) -> Engine:
        self._types.setdefault(cls, TypeInfo(name or cls.__name__))
        return self

    def _info(self, cls: type) -> TypeInfo:
        if cls not in self._types:
            self.register_type(cls)
        return self._types[cls]

    def register_fn(self, cls: type, name: str, fn: Callable[..., Any]) -> Engine:
        self._info(cls).methods[name] = fn
        return self

    def register_get(self, cls: type, name: str, fn: Callable[[Any], Any]) -> Engine:
        self._info(cls).getters[name] = fn
        return self

    def register_global(self, name: str, fn: Callable[..., Any]) -> Engine:
        self._globals[name] = fn
        return self

    def register_static_module(self, name: str, module: StaticModule) -> Engine:
        self._modules[name] = module
        return self

    def register_custom_syntax(self, keyword: str, fn: Callable[..., Any]) -> Engine:
        """Register ``keyword <expr>`` as a statement form calling ``fn(value)``."""
        self._syntax[keyword] = fn
        return self

    # -- lookups used by the interpreter -------------------------------------

    def type_info(self, value: Any) -> Optional[TypeInfo]:
        for cls in type(value).__mro__:
            info = self._types.get(cls)
            if info is not None:
                return info
        return None

    def lookup_global(self, name: str) -> Tuple[bool, Any]:
        if name in self._syntax:
            return True, self._syntax[name]
        if name in self._globals:
            return True, self._globals[name]
        if name in self._modules:
            return True, self._modules[name]
        return False, None

    # -- compilation --------------------------------------------------------

    def compile(self, source: str) -> Script:
        text = desugar(source, modules=self._modules, keywords=self._syntax)
        try:
            # The filename is fixed so no host path can appear in messages.
            tree = ast.parse(text, filename="<script>", mode="exec")
        except SyntaxError as exc:
            raise ScriptParseError(exc.msg or "invalid syntax", exc.lineno) from None
        _validate(tree)
        _LOGGER.debug("Compiled script with %d top-level statements", len(tree.body))
        return Script(tree=tree, source=source)

    def compile_file(self, path: Path) -> Script:
        try:
            source = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            raise NoScriptFound() from None
        return self.compile(source)

    def run(self, script: Script, scope: Scope) -> Any:
        from ci_script.sandbox.interpreter import Interpreter

        return Interpreter(self, scope).run(script.tree)


def _validate(tree: ast.Module) -> None:
    for node in ast.walk(tree):
        line = getattr(node, "lineno", None)
        if not isinstance(node, ALLOWED_NODES):
            hint = _REJECTED_HINTS.get(type(node))
            raise ScriptParseError(
                hint or f"{type(node).__name__} is not supported", line
            )
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ScriptParseError(f"Invalid name '{node.id}'", line)
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ScriptParseError(f"Invalid member '{node.attr}'", line)
        if isinstance(node, ast.Attribute) and isinstance(node.ctx, ast.Store):
            raise ScriptParseError(f"Cannot assign to member '{node.attr}'", line)
        if isinstance(node, ast.FunctionDef):
            args = node.args
            if (
                node.decorator_list
                or args.vararg
                or args.kwarg
                or args.kwonlyargs
                or args.posonlyargs
                or args.defaults
            ):
                raise ScriptParseError(
                    "functions take plain positional parameters only", line
                )
            if node.name.startswith("_"):
                raise ScriptParseError(f"Invalid name '{node.name}'", line)
            for arg in args.args:
                if arg.arg.startswith("_"):
                    raise ScriptParseError(f"Invalid name '{arg.arg}'", line)
        if isinstance(node, ast.keyword) and node.arg is None:
            raise ScriptParseError("** arguments are not supported", line)
        if isinstance(node, ast.Dict) and any(key is None for key in node.keys):
            raise ScriptParseError("** in dict literals is not supported", line)
        if isinstance(node, (ast.For, ast.While)) and node.orelse:
            raise ScriptParseError("else on loops is not supported", line)


__all__ = ["Engine", "Scope", "Script", "StaticModule", "TypeInfo"]
