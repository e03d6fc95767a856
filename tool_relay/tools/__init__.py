"""Tool registry and executor interfaces for Tool Relay."""

from tool_relay.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "set_tool_registry",
]
