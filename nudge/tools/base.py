"""Base types and definitions for tools."""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationInfo

from nudge.utils.dates import is_future, parse_iso_datetime, utc_now


@dataclass(frozen=True)
class ToolContext:
    """Caller a tool call acts on behalf of."""

    user_id: str
    conversation_id: str
    phone_number: str | None = None


@dataclass
class ToolResult:
    """Output of one tool call as fed back to the model."""

    content: str
    is_error: bool = False


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[str]]


@dataclass
class ToolDefinition:
    """Definition of a tool available to the AI assistant."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any], now: datetime | None = None) -> BaseModel:
        """Parse and validate tool input against the instant of the call."""
        return self.input_schema_class.model_validate(raw_input, context={"now": now or utc_now()})


def success(message: str, **payload: Any) -> str:
    """Structured success result."""
    return json.dumps({"success": True, "message": message, **payload}, default=str)


def failure(error: str, code: str) -> str:
    """Structured failure result."""
    return json.dumps({"success": False, "error": error, "code": code})


def parse_scheduled_for(value: Any) -> Any:
    """Parse ISO 8601 strings before pydantic's own datetime coercion."""
    if isinstance(value, str):
        return parse_iso_datetime(value)
    return value


def require_future(value: datetime | None, info: ValidationInfo) -> datetime | None:
    """Reject instants at or before the time of the call."""
    if value is None:
        return value
    now = (info.context or {}).get("now") or utc_now()
    if not is_future(value, now):
        raise ValueError("scheduled_for must be in the future")
    return value
