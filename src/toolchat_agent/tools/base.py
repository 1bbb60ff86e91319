"""
Base classes for tools.

A tool is a ``ToolSpec`` (what the model sees) paired with an executor (what
runs). Executors come in two explicit shapes chosen at registration time:

- ``SimpleExecutor`` wraps ``async def fn(**args) -> str``.
- ``ProgressiveExecutor`` wraps ``async def fn(**args)`` generators that yield
  ``ToolProgressEvent`` items: any number of ``progress`` events followed by a
  single ``final`` event carrying the result.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal


@dataclass
class ToolExecutionResult:
    """Result from a tool execution."""

    success: bool
    data: str | None = None
    error: str | None = None

    def as_content(self) -> str:
        """Render the result as the text stored in a tool history entry."""
        if self.success:
            return self.data or ""
        return f"Error: {self.error}"


@dataclass(frozen=True)
class ToolProgressEvent:
    """One item of a progressive executor's output."""

    kind: Literal["progress", "final"]
    text: str

    @classmethod
    def progress(cls, text: str) -> "ToolProgressEvent":
        return cls(kind="progress", text=text)

    @classmethod
    def final(cls, text: str) -> "ToolProgressEvent":
        return cls(kind="final", text=text)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


def build_parameters_schema(
    parameters: list[ToolParameter],
    additional_properties: bool | None = None,
) -> dict[str, Any]:
    """Convert parameters to JSON Schema format."""
    properties = {}
    required = []

    for param in parameters:
        prop = {
            "type": param.param_type,
            "description": param.description,
        }
        if param.enum:
            prop["enum"] = param.enum
        if param.default is not None:
            prop["default"] = param.default

        properties[param.name] = prop

        if param.required:
            required.append(param.name)

    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "required": required,
    }
    if additional_properties is not None:
        schema["additionalProperties"] = additional_properties
    return schema


@dataclass(frozen=True)
class ToolSpec:
    """Declared schema of a tool. Immutable once registered."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


SimpleHandler = Callable[..., Awaitable[str]]
ProgressiveHandler = Callable[..., AsyncIterator[ToolProgressEvent]]


@dataclass(frozen=True)
class SimpleExecutor:
    """Executor returning a single string result."""

    fn: SimpleHandler

    kind = "simple"


@dataclass(frozen=True)
class ProgressiveExecutor:
    """Executor streaming progress events before a final result.

    ``fallback`` is consulted only when the stream ends without a ``final``
    event.
    """

    fn: ProgressiveHandler
    fallback: SimpleHandler | None = None

    kind = "progressive"


Executor = SimpleExecutor | ProgressiveExecutor
