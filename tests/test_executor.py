from typing import Optional

import pytest
from pydantic import BaseModel

from querypilot.ai_feature.executor import ToolExecutor
from querypilot.ai_feature.registry import ToolFailure, ToolRegistry, ToolSpec


class EchoArgs(BaseModel):
    text: str
    repeat: int = 1


class OptionalArgs(BaseModel):
    note: Optional[str] = None


async def echo(args: EchoArgs):
    return {"echo": args.text * args.repeat}


async def refuse(args: OptionalArgs):
    raise ToolFailure("Nothing to do", {"suggestion": "Ask for something else"})


async def explode(args: OptionalArgs):
    raise RuntimeError("boom")


@pytest.fixture
def executor():
    registry = ToolRegistry(
        [
            ToolSpec("echo", "Echo text", EchoArgs, echo),
            ToolSpec("refuse", "Always fails", OptionalArgs, refuse),
            ToolSpec("explode", "Raises", OptionalArgs, explode),
            ToolSpec("finish", "Terminal", OptionalArgs, echo, terminal=True),
        ]
    )
    return ToolExecutor(registry)


@pytest.mark.asyncio
async def test_execute_returns_handler_data(executor):
    result = await executor.execute("echo", {"text": "ab", "repeat": 2})

    assert result.success is True
    assert result.data == {"echo": "abab"}


@pytest.mark.asyncio
async def test_unknown_tool_is_a_failure(executor):
    result = await executor.execute("drop_everything", {})

    assert result.success is False
    assert result.error == "Unknown tool: drop_everything"
    assert "echo" in result.data["suggestion"]


@pytest.mark.asyncio
async def test_invalid_arguments_are_a_failure(executor):
    result = await executor.execute("echo", {"repeat": "many"})

    assert result.success is False
    assert result.error.startswith("Invalid arguments for echo:")
    assert "text" in result.error
    assert "repeat" in result.error


@pytest.mark.asyncio
async def test_tool_failure_keeps_message_and_data(executor):
    result = await executor.execute("refuse")

    assert result.success is False
    assert result.error == "Nothing to do"
    assert result.data == {"suggestion": "Ask for something else"}


@pytest.mark.asyncio
async def test_unexpected_exception_is_captured(executor):
    result = await executor.execute("explode", {})

    assert result.success is False
    assert result.error == "boom"


def test_registry_definitions_and_terminal_flag(executor):
    registry = executor.registry
    definitions = {d["name"]: d for d in registry.definitions()}

    assert set(definitions) == {"echo", "refuse", "explode", "finish"}
    assert definitions["echo"]["input_schema"]["required"] == ["text"]
    assert registry.is_terminal("finish") is True
    assert registry.is_terminal("echo") is False
    assert registry.is_terminal("missing") is False
    assert "echo" in registry
    assert len(registry) == 4


def test_registry_rejects_duplicate_names():
    registry = ToolRegistry([ToolSpec("echo", "Echo text", EchoArgs, echo)])

    with pytest.raises(ValueError):
        registry.register(ToolSpec("echo", "Again", EchoArgs, echo))
