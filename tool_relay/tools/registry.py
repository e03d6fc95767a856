"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from tool_relay.exceptions import ToolExecutionError, ToolNotFoundError
from tool_relay.logging import get_logger
from tool_relay.validation import ToolParameter

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def text(self) -> str:
        """Text handed back to the model."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def get_schema(self) -> list[ToolParameter]:
        """Parameter descriptors derived from the JSON-schema ``parameters``."""
        return ToolParameter.from_json_schema(self.parameters)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    def get_schema(self, name: str) -> list[ToolParameter]:
        """Parameter schema for one tool.

        Raises:
            ToolNotFoundError if not found
        """
        return self.get(name).get_schema()

    @staticmethod
    async def _discard(task: asyncio.Task[Any] | None) -> None:
        """Cancel a still-running task and wait for it to unwind."""
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    def _timeout_for(tool: Tool) -> float:
        return max(0.001, float(tool.timeout_seconds or 30.0))

    async def _race(
        self,
        tool: Tool,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None,
    ) -> ToolResult:
        """Run the tool against its timeout and the abort signal, whichever ends first."""
        timeout = self._timeout_for(tool)
        run = asyncio.create_task(tool.execute(**arguments))
        abort = asyncio.create_task(abort_event.wait()) if abort_event is not None else None
        try:
            pending = {run} if abort is None else {run, abort}
            done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if run in done:
                return run.result()
            if abort is not None and abort in done:
                raise ToolExecutionError(tool.name, "Execution aborted")
            label = int(timeout) if timeout.is_integer() else timeout
            raise ToolExecutionError(tool.name, f"Execution timed out after {label}s")
        finally:
            await self._discard(run)
            await self._discard(abort)

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name with already-validated arguments.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await self._race(tool, arguments, abort_event)
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
