"""Strategy compiler: spec -> validated, content-addressed execution plan."""

from .compiler import Compiler, compile_spec

__all__ = ["Compiler", "compile_spec"]
