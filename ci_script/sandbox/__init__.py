"""Capability-scoped script sandbox."""

from ci_script.sandbox.engine import Engine, Scope, Script, StaticModule
from ci_script.sandbox.syntax import desugar

__all__ = ["Engine", "Scope", "Script", "StaticModule", "desugar"]
