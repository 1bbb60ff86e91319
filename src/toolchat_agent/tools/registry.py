"""
Tool registry for managing available tools.
"""

import structlog

from ..llm.base import ToolDefinition
from .base import Executor, ToolSpec

logger = structlog.get_logger()


class ToolRegistry:
    """Registry mapping tool names to their spec and executor.

    Registration order is preserved and drives the order of the tool
    declarations sent to the provider.
    """

    def __init__(self):
        self._tools: dict[str, tuple[ToolSpec, Executor]] = {}

    def register(self, spec: ToolSpec, executor: Executor) -> None:
        """Register a tool. Re-registering a name replaces the previous entry."""
        if not spec.name:
            raise ValueError("Tool name must be a non-empty string")

        if spec.name in self._tools:
            logger.info("Tool overridden", tool_name=spec.name)
        self._tools[spec.name] = (spec, executor)
        logger.debug("Tool registered", tool_name=spec.name, kind=executor.kind)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.info("Tool unregistered", tool_name=name)

    def lookup(self, name: str) -> tuple[ToolSpec, Executor] | None:
        """Get a tool's spec and executor by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the provider."""
        return [
            ToolDefinition(
                name=spec.name,
                description=spec.description,
                parameters=spec.parameters,
            )
            for spec in self.list()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # Defined last: the method name shadows the builtin in the class body.
    def list(self) -> list[ToolSpec]:
        """List tool specs in registration order."""
        return [spec for spec, _ in self._tools.values()]
