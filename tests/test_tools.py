"""
Tests for tools module.
"""

from unittest.mock import patch

import pytest

from toolchat_agent.tools import (
    ProgressiveExecutor,
    SimpleExecutor,
    ToolExecutionResult,
    ToolInvoker,
    ToolProgressEvent,
    ToolRegistry,
    ToolSpec,
    create_default_registry,
)
from toolchat_agent.tools.builtin import (
    evaluate_expression,
    format_current_time,
    lookup_weather,
    sanitize_expression,
)
from toolchat_agent.tools.invoker import ToolRun


async def _echo(text: str = "") -> str:
    return f"echo: {text}"


async def _steps(count: int = 2):
    for i in range(count):
        yield ToolProgressEvent.progress(f"step {i + 1}")
    yield ToolProgressEvent.final("done")


async def _no_final():
    yield ToolProgressEvent.progress("working...")


async def _boom(**kwargs) -> str:
    raise RuntimeError("kaboom")


def test_tool_result_content():
    """Test rendering results into tool history text."""
    assert ToolExecutionResult(success=True, data="42").as_content() == "42"
    assert ToolExecutionResult(success=False, error="bad").as_content() == "Error: bad"


def test_registry_preserves_order():
    """Test that definitions follow registration order."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="b", description="B"), SimpleExecutor(_echo))
    registry.register(ToolSpec(name="a", description="A"), SimpleExecutor(_echo))

    assert registry.list_tools() == ["b", "a"]
    assert [d.name for d in registry.get_definitions()] == ["b", "a"]
    assert "a" in registry
    assert len(registry) == 2


def test_registry_replaces_existing():
    """Test re-registering a name replaces the entry in place."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="first"), SimpleExecutor(_echo))
    registry.register(ToolSpec(name="echo", description="second"), SimpleExecutor(_echo))

    spec, _ = registry.lookup("echo")
    assert spec.description == "second"
    assert len(registry) == 1


def test_registry_rejects_empty_name():
    """Test that nameless tools are refused."""
    registry = ToolRegistry()
    with pytest.raises(ValueError):
        registry.register(ToolSpec(name="", description="x"), SimpleExecutor(_echo))


def test_registry_unregister():
    """Test removing a tool."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="x"), SimpleExecutor(_echo))
    registry.unregister("echo")
    registry.unregister("missing")

    assert registry.lookup("echo") is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_invoke_simple_tool():
    """Test invoking a simple executor."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="x"), SimpleExecutor(_echo))

    result = await ToolInvoker(registry).invoke("echo", {"text": "hi"})

    assert result.success is True
    assert result.data == "echo: hi"


@pytest.mark.asyncio
async def test_invoke_unknown_tool():
    """Test that unknown tools produce a failed result."""
    result = await ToolInvoker(ToolRegistry()).invoke("nope", {})

    assert result.success is False
    assert result.error == "Unknown tool: nope"


@pytest.mark.asyncio
async def test_invoke_tool_error_is_captured():
    """Test that exceptions raised by a tool become failed results."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="boom", description="x"), SimpleExecutor(_boom))

    result = await ToolInvoker(registry).invoke("boom", {})

    assert result.success is False
    assert "kaboom" in result.error


@pytest.mark.asyncio
async def test_invoke_unexpected_argument_is_captured():
    """Test that a bad argument name fails the tool instead of raising."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="x"), SimpleExecutor(_echo))

    result = await ToolInvoker(registry).invoke("echo", {"nonsense": 1})

    assert result.success is False


@pytest.mark.asyncio
async def test_streaming_progress_then_result():
    """Test progress lines are relayed before the final result."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="steps", description="x"), ProgressiveExecutor(_steps))

    run = ToolInvoker(registry).invoke_streaming("steps", {"count": 3})
    lines = [line async for line in run]

    assert lines == ["step 1", "step 2", "step 3"]
    assert run.result.success is True
    assert run.result.data == "done"
    assert run.elapsed_ms >= 0


@pytest.mark.asyncio
async def test_streaming_run_consumed_once():
    """Test that a tool run cannot be iterated twice."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="steps", description="x"), ProgressiveExecutor(_steps))

    run = ToolInvoker(registry).invoke_streaming("steps", {})
    async for _ in run:
        pass

    with pytest.raises(RuntimeError):
        run.__aiter__()


@pytest.mark.asyncio
async def test_invoke_raises_when_run_sets_no_result():
    """Test a run that ends without a result is reported, not returned as None."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="x"), SimpleExecutor(_echo))

    async def _silent(self):
        return
        yield

    with patch.object(ToolRun, "_run", _silent):
        with pytest.raises(RuntimeError, match="ended without a result"):
            await ToolInvoker(registry).invoke("echo", {})


@pytest.mark.asyncio
async def test_progressive_without_final_uses_fallback():
    """Test the fallback executor runs when no final event arrives."""
    registry = ToolRegistry()
    registry.register(
        ToolSpec(name="partial", description="x"),
        ProgressiveExecutor(_no_final, fallback=lambda: _echo("fallback")),
    )

    run = ToolInvoker(registry).invoke_streaming("partial", {})
    lines = [line async for line in run]

    assert lines == ["working..."]
    assert run.result.data == "echo: fallback"


@pytest.mark.asyncio
async def test_progressive_without_final_or_fallback_fails():
    """Test a progressive tool with no result reports failure."""
    registry = ToolRegistry()
    registry.register(ToolSpec(name="partial", description="x"), ProgressiveExecutor(_no_final))

    result = await ToolInvoker(registry).invoke("partial", {})

    assert result.success is False
    assert "without a result" in result.error


def test_default_registry_tools():
    """Test the built-in tools are registered in order."""
    registry = create_default_registry()

    assert registry.list_tools() == ["get_current_time", "calculate", "get_weather", "search_files"]
    spec, executor = registry.lookup("calculate")
    assert "expression" in spec.parameters["required"]
    assert executor.kind == "progressive"


def test_evaluate_expression():
    """Test the calculator follows operator precedence."""
    assert evaluate_expression("2 + 2 * 3") == "2 + 2 * 3 = 8"
    assert evaluate_expression("10 / 4") == "10 / 4 = 2.5"
    assert evaluate_expression("-(3 - 5)") == "-(3 - 5) = 2"


def test_evaluate_expression_strips_disallowed_characters():
    """Test letters and other symbols are removed before evaluation."""
    assert sanitize_expression("2 + abc 3") == "2 +  3"
    assert evaluate_expression("what is 6*7") == "6*7 = 42"


def test_evaluate_expression_invalid():
    """Test malformed expressions raise a descriptive error."""
    with pytest.raises(ValueError, match="Invalid expression"):
        evaluate_expression("2 +")

    with pytest.raises(ValueError):
        evaluate_expression("1 / 0")


def test_format_current_time_invalid_timezone():
    """Test an unknown timezone is rejected."""
    with pytest.raises(ValueError, match="Invalid timezone"):
        format_current_time("Mars/Olympus_Mons")


def test_lookup_weather():
    """Test known and unknown locations."""
    assert lookup_weather("Seoul") == "Weather in Seoul: 20°C, Clear, Humidity: 55%"
    assert "(simulated data)" in lookup_weather("Atlantis")


@pytest.mark.asyncio
async def test_builtin_calculate_progress():
    """Test the calculator streams its progress lines."""
    run = ToolInvoker(create_default_registry()).invoke_streaming(
        "calculate", {"expression": "2 + 2 * 3"}
    )
    lines = [line async for line in run]

    assert lines == ["Parsing expression...", "Computing result..."]
    assert run.result.data == "2 + 2 * 3 = 8"


@pytest.mark.asyncio
async def test_builtin_calculate_invalid_fails():
    """Test an invalid expression becomes a failed tool result."""
    result = await ToolInvoker(create_default_registry()).invoke("calculate", {"expression": "2 +"})

    assert result.success is False
    assert "Invalid expression" in result.error


@pytest.mark.asyncio
async def test_builtin_search_files(tmp_path):
    """Test searching files by substring and glob."""
    (tmp_path / "notes.txt").write_text("a")
    (tmp_path / "main.py").write_text("b")
    (tmp_path / ".hidden.py").write_text("c")

    invoker = ToolInvoker(create_default_registry())

    result = await invoker.invoke("search_files", {"pattern": "*.py", "path": str(tmp_path)})
    assert result.data == "Search Results (1 matches):\n- main.py"

    result = await invoker.invoke("search_files", {"pattern": "zzz", "path": str(tmp_path)})
    assert result.data == "No matches found."
