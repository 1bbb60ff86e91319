"""
Tools module: registry, invoker and built-in tools.
"""

from .base import (
    ProgressiveExecutor,
    SimpleExecutor,
    ToolExecutionResult,
    ToolParameter,
    ToolProgressEvent,
    ToolSpec,
    build_parameters_schema,
)
from .registry import ToolRegistry
from .invoker import ToolInvoker, ToolRun
from .builtin import create_builtin_tools, create_default_registry

__all__ = [
    "ProgressiveExecutor",
    "SimpleExecutor",
    "ToolExecutionResult",
    "ToolParameter",
    "ToolProgressEvent",
    "ToolSpec",
    "build_parameters_schema",
    "ToolRegistry",
    "ToolInvoker",
    "ToolRun",
    "create_builtin_tools",
    "create_default_registry",
]
