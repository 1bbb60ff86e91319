"""
Built-in demo tools: time, calculator, weather and file search.
"""

import ast
import asyncio
import fnmatch
import operator
import re
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from .base import (
    ProgressiveExecutor,
    SimpleExecutor,
    ToolParameter,
    ToolProgressEvent,
    ToolSpec,
    build_parameters_schema,
)
from .registry import ToolRegistry

logger = structlog.get_logger()

# Anything outside this class is stripped before the expression is parsed.
# This is a weak filter, not a sandbox.
_EXPRESSION_DISALLOWED = re.compile(r"[^0-9+\-*/().\s]")

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

MAX_SEARCH_RESULTS = 20

# Simulated weather data, keyed by lowercase location
WEATHER_DATA: dict[str, dict[str, str]] = {
    "london, uk": {"temp": "15°C", "condition": "Cloudy", "humidity": "75%"},
    "new york, usa": {"temp": "22°C", "condition": "Sunny", "humidity": "60%"},
    "tokyo, japan": {"temp": "18°C", "condition": "Rainy", "humidity": "85%"},
    "seoul": {"temp": "20°C", "condition": "Clear", "humidity": "55%"},
    "seoul, korea": {"temp": "20°C", "condition": "Clear", "humidity": "55%"},
    "here": {"temp": "21°C", "condition": "Partly Cloudy", "humidity": "65%"},
}

_DEFAULT_WEATHER = {"temp": "19°C", "condition": "Clear", "humidity": "70%"}


def sanitize_expression(expression: str) -> str:
    """Strip every character that is not a digit, operator, paren, dot or space."""
    return _EXPRESSION_DISALLOWED.sub("", expression)


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        return _BINARY_OPERATORS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_expression(expression: str) -> str:
    """Evaluate an arithmetic expression and return ``"<expr> = <value>"``."""
    cleaned = sanitize_expression(expression).strip()
    try:
        if not cleaned:
            raise ValueError("empty expression")
        value = _evaluate(ast.parse(cleaned, mode="eval"))
    except (SyntaxError, ValueError, ZeroDivisionError, TypeError) as e:
        raise ValueError(f'Invalid expression "{expression}"') from e

    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{cleaned} = {value}"


def format_current_time(timezone: str = "UTC") -> str:
    """Format the current time in a timezone."""
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f'Invalid timezone "{timezone}"') from e

    now = datetime.now(zone)
    return now.strftime("%A, %B %d, %Y at %I:%M:%S %p %Z")


def lookup_weather(location: str) -> str:
    """Return simulated weather for a location."""
    key = (location or "here").lower()
    data = WEATHER_DATA.get(key)

    if data is None:
        for candidate, values in WEATHER_DATA.items():
            if candidate in key or key in candidate:
                data = values
                break

    if data is None:
        data = _DEFAULT_WEATHER
        return (
            f"Weather for {location}: {data['temp']}, {data['condition']}, "
            f"Humidity: {data['humidity']} (simulated data)"
        )
    return f"Weather in {location}: {data['temp']}, {data['condition']}, Humidity: {data['humidity']}"


def _search(pattern: str, path: str) -> list[str]:
    root = Path(path).expanduser()
    if not root.is_dir():
        raise ValueError(f"Directory not found: {path}")

    use_glob = any(ch in pattern for ch in "*?[")
    needle = pattern.lower()
    matches = []

    for candidate in sorted(root.rglob("*")):
        if any(part.startswith(".") for part in candidate.relative_to(root).parts):
            continue
        name = candidate.name
        hit = fnmatch.fnmatch(name, pattern) if use_glob else needle in name.lower()
        if hit:
            matches.append(str(candidate.relative_to(root)))
            if len(matches) >= MAX_SEARCH_RESULTS:
                break

    return matches


def create_builtin_tools(
    step_delay: float = 0.0,
) -> list[tuple[ToolSpec, SimpleExecutor | ProgressiveExecutor]]:
    """Create the built-in tools.

    Args:
        step_delay: Pause between progress steps, in seconds. Used to make
            progress visible to streaming clients.
    """

    async def pause() -> None:
        if step_delay > 0:
            await asyncio.sleep(step_delay)

    async def get_current_time(
        timezone: str = "UTC",
        locale: str | None = None,
    ) -> AsyncIterator[ToolProgressEvent]:
        yield ToolProgressEvent.progress("Getting timezone info...")
        await pause()
        yield ToolProgressEvent.progress("Formatting date...")
        await pause()
        yield ToolProgressEvent.final(format_current_time(timezone or "UTC"))

    async def get_current_time_simple(timezone: str = "UTC", locale: str | None = None) -> str:
        return format_current_time(timezone or "UTC")

    async def calculate(expression: str) -> AsyncIterator[ToolProgressEvent]:
        yield ToolProgressEvent.progress("Parsing expression...")
        await pause()
        yield ToolProgressEvent.progress("Computing result...")
        await pause()
        yield ToolProgressEvent.final(evaluate_expression(expression))

    async def calculate_simple(expression: str) -> str:
        return evaluate_expression(expression)

    async def get_weather(location: str = "here") -> AsyncIterator[ToolProgressEvent]:
        yield ToolProgressEvent.progress("Checking location...")
        await pause()
        yield ToolProgressEvent.progress("Fetching weather data...")
        await pause()
        yield ToolProgressEvent.progress("Processing weather information...")
        yield ToolProgressEvent.final(lookup_weather(location))

    async def search_files(pattern: str, path: str = ".") -> str:
        results = await asyncio.to_thread(_search, pattern, path)
        if not results:
            return "No matches found."
        lines = [f"Search Results ({len(results)} matches):"]
        lines.extend(f"- {r}" for r in results)
        return "\n".join(lines)

    time_spec = ToolSpec(
        name="get_current_time",
        description="Get the current date and time in a specific timezone",
        parameters=build_parameters_schema(
            [
                ToolParameter(
                    name="timezone",
                    param_type="string",
                    description=(
                        'The timezone to get the time for (e.g., "UTC", "America/New_York"). '
                        "Optional - defaults to UTC."
                    ),
                    required=False,
                    default="UTC",
                ),
                ToolParameter(
                    name="locale",
                    param_type="string",
                    description='Caller locale (e.g., "en-US"). Optional.',
                    required=False,
                ),
            ],
            additional_properties=False,
        ),
    )

    calculate_spec = ToolSpec(
        name="calculate",
        description="Perform basic mathematical calculations",
        parameters=build_parameters_schema(
            [
                ToolParameter(
                    name="expression",
                    param_type="string",
                    description='The mathematical expression to evaluate (e.g., "2 + 2 * 3")',
                ),
            ],
            additional_properties=False,
        ),
    )

    weather_spec = ToolSpec(
        name="get_weather",
        description=(
            "Get the current weather for any location. "
            "Use this when users ask about weather anywhere."
        ),
        parameters=build_parameters_schema(
            [
                ToolParameter(
                    name="location",
                    param_type="string",
                    description='The city name (e.g., "Seoul", "New York") or "here" for current location',
                ),
            ],
            additional_properties=False,
        ),
    )

    search_spec = ToolSpec(
        name="search_files",
        description="Search for files in the current directory",
        parameters=build_parameters_schema(
            [
                ToolParameter(
                    name="pattern",
                    param_type="string",
                    description='The search pattern (e.g., "*.py" or "test")',
                ),
                ToolParameter(
                    name="path",
                    param_type="string",
                    description="The directory path to search in. Optional - defaults to current directory.",
                    required=False,
                    default=".",
                ),
            ],
        ),
    )

    return [
        (time_spec, ProgressiveExecutor(get_current_time, fallback=get_current_time_simple)),
        (calculate_spec, ProgressiveExecutor(calculate, fallback=calculate_simple)),
        (weather_spec, ProgressiveExecutor(get_weather)),
        (search_spec, SimpleExecutor(search_files)),
    ]


def create_default_registry(step_delay: float = 0.0) -> ToolRegistry:
    """Create a registry populated with the built-in tools."""
    registry = ToolRegistry()
    for spec, executor in create_builtin_tools(step_delay=step_delay):
        registry.register(spec, executor)
    logger.info("Default tools registered", tools=registry.list_tools())
    return registry
