"""Tools registry for managing AI assistant tools."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from nudge.errors import NudgeError
from nudge.models.llm import LLMToolSchema
from nudge.services.reminder_store import ReminderStore
from nudge.tools.base import ToolContext, ToolDefinition, ToolResult, failure
from nudge.tools.create_reminder import create_create_reminder_tool
from nudge.tools.list_reminders import create_list_reminders_tool
from nudge.tools.reminder_actions import create_delete_reminder_tool, create_update_reminder_tool
from nudge.utils.dates import utc_now
from nudge.utils.logging import get_logger, preview

logger = get_logger(__name__)


def format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic errors into one line the model can act on."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "input"
        parts.append(f"{location}: {item['msg']}")
    return "Invalid arguments: " + "; ".join(parts)


class ToolsRegistry:
    """Registry for managing AI assistant tools.

    Tools are stateless: the caller's identity arrives with every call as a
    ``ToolContext``. ``execute`` never raises; every failure becomes a
    structured result the model can read.
    """

    def __init__(self, reminder_store: ReminderStore, clock: Callable[[], datetime] = utc_now):
        """Initialize tools registry with service dependencies."""
        self.reminder_store = reminder_store
        self._clock = clock
        self._tools: dict[str, ToolDefinition] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        """Register the reminder management tools."""
        tools = [
            create_create_reminder_tool(self.reminder_store),
            create_list_reminders_tool(self.reminder_store),
            create_update_reminder_tool(self.reminder_store),
            create_delete_reminder_tool(self.reminder_store),
        ]

        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def get_tool_schemas(self) -> list[LLMToolSchema]:
        """Schemas advertised to the completion client."""
        return [
            LLMToolSchema(name=tool.name, description=tool.description, input_schema=tool.get_json_schema())
            for tool in self._tools.values()
        ]

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """Run one tool call on behalf of ``context``.

        Args:
            name: Registered tool name
            arguments: Raw arguments proposed by the model
            context: Caller the call acts for

        Returns:
            The tool's output, or a structured failure
        """
        tool = self._tools.get(name)
        if tool is None:
            logger.error(f"Unknown tool requested: {name}")
            return ToolResult(failure(f"Unknown tool {name}", code="unknown_tool"), is_error=True)

        logger.debug(f"Executing tool: {name} with input: {arguments}")
        try:
            params = tool.parse_input(arguments, now=self._clock())
            output = await tool.handler(params, context)
        except ValidationError as e:
            logger.info(f"Tool {name} rejected arguments: {e.error_count()} error(s)")
            return ToolResult(failure(format_validation_error(e), code="validation_error"), is_error=True)
        except NudgeError as e:
            logger.info(f"Tool {name} failed: {e}")
            return ToolResult(failure(str(e), code=e.code), is_error=True)
        except Exception as e:
            logger.error(f"Tool {name} raised unexpectedly: {e}", exc_info=True)
            return ToolResult(failure(f"Failed to run {name}: {e}", code="internal_error"), is_error=True)

        logger.info(f"Tool {name} succeeded: {preview(output, 100)}")
        return ToolResult(output)
