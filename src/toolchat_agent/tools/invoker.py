"""
Tool invoker: runs a named tool and normalises both executor shapes into a
single ``ToolExecutionResult``. Nothing raised by a tool escapes this module.
"""

import time
from contextlib import aclosing
from typing import Any, AsyncIterator

import structlog

from .base import ProgressiveExecutor, SimpleExecutor, ToolExecutionResult
from .registry import ToolRegistry

logger = structlog.get_logger()


class ToolRun:
    """A single streaming invocation of a tool.

    Iterating yields the executor's progress lines. Once iteration is over,
    ``result`` holds the final result and ``elapsed_ms`` the wall time.
    """

    def __init__(self, registry: ToolRegistry, name: str, arguments: dict[str, Any]):
        self.registry = registry
        self.name = name
        self.arguments = arguments
        self.result: ToolExecutionResult | None = None
        self.elapsed_ms: float = 0.0
        self._started = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError(f"Tool run for '{self.name}' was already consumed")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncIterator[str]:
        started_at = time.perf_counter()
        try:
            entry = self.registry.lookup(self.name)
            if entry is None:
                logger.warning("Unknown tool requested", tool_name=self.name)
                self.result = ToolExecutionResult(
                    success=False,
                    error=f"Unknown tool: {self.name}",
                )
                return

            _, executor = entry
            logger.info("Executing tool", tool_name=self.name, arguments=self.arguments)

            try:
                if isinstance(executor, SimpleExecutor):
                    data = await executor.fn(**self.arguments)
                    self.result = ToolExecutionResult(success=True, data=str(data))
                else:
                    async for line in self._drain_progressive(executor):
                        yield line
            except Exception as e:
                logger.error("Tool execution error", tool_name=self.name, error=str(e))
                self.result = ToolExecutionResult(success=False, error=str(e))
            else:
                logger.info("Tool executed", tool_name=self.name, success=self.result.success)
        finally:
            self.elapsed_ms = (time.perf_counter() - started_at) * 1000

    async def _drain_progressive(self, executor: ProgressiveExecutor) -> AsyncIterator[str]:
        final: str | None = None

        async with aclosing(executor.fn(**self.arguments)) as events:
            async for event in events:
                if event.kind == "final":
                    final = event.text
                    break
                yield event.text

        if final is not None:
            self.result = ToolExecutionResult(success=True, data=final)
        elif executor.fallback is not None:
            logger.warning("Progressive tool ended without a result, using fallback", tool_name=self.name)
            data = await executor.fallback(**self.arguments)
            self.result = ToolExecutionResult(success=True, data=str(data))
        else:
            self.result = ToolExecutionResult(
                success=False,
                error=f"Tool {self.name} finished without a result",
            )


class ToolInvoker:
    """Executes tools from a registry."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def invoke_streaming(self, name: str, arguments: dict[str, Any]) -> ToolRun:
        """Start a streaming invocation; iterate it for progress lines."""
        return ToolRun(self.registry, name, arguments)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolExecutionResult:
        """Execute a tool and return its final result."""
        run = self.invoke_streaming(name, arguments)
        async for _ in run:
            pass
        if run.result is None:
            raise RuntimeError(f"Tool run for '{name}' ended without a result")
        return run.result
