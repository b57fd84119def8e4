"""Tools for the reminder assistant."""

from nudge.tools.base import ToolContext, ToolDefinition, ToolResult
from nudge.tools.registry import ToolsRegistry

__all__ = ["ToolContext", "ToolDefinition", "ToolResult", "ToolsRegistry"]
