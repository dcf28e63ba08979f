"""Executor interface consumed by the admission queue."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from tool_warden.models.execution import ExecutionContext, ExecutorResult


class ToolExecutor(ABC):
    """Runs one tool call and reports success or a coded failure.

    Implementations should watch ``context.cancel_event`` when they can stop
    early; the admission queue finalises a cancelled execution either way.
    """

    @abstractmethod
    async def run(self, tool_name: str, tool_input: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        raise NotImplementedError


ToolFunction = Callable[[Dict[str, Any], ExecutionContext], Awaitable[Any]]


class CallableExecutor(ToolExecutor):
    """Dispatches to plain async functions registered per tool name."""

    def __init__(self, functions: Dict[str, ToolFunction] | None = None) -> None:
        self._functions: Dict[str, ToolFunction] = dict(functions or {})

    def register(self, tool_name: str, function: ToolFunction) -> None:
        self._functions[tool_name] = function

    async def run(self, tool_name: str, tool_input: Dict[str, Any], context: ExecutionContext) -> ExecutorResult:
        function = self._functions.get(tool_name)
        if function is None:
            return ExecutorResult(
                success=False,
                error_code="NO_IMPLEMENTATION",
                error_message=f"No implementation registered for tool '{tool_name}'.",
            )
        output = await function(tool_input, context)
        return ExecutorResult(success=True, output=output)
