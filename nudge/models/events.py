"""Events emitted by one agent run."""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

SSE_DONE = "data: [DONE]\n\n"


class TokenEvent(BaseModel):
    """Plain-text fragment of the assistant reply."""

    type: Literal["token"] = "token"
    data: str


class ToolEventData(BaseModel):
    name: str
    input: dict[str, Any] | None = None
    output: str | None = None


class ToolStartEvent(BaseModel):
    """A tool call is about to run."""

    type: Literal["tool_start"] = "tool_start"
    data: ToolEventData


class ToolEndEvent(BaseModel):
    """A tool call finished; ``data.output`` is what the model sees."""

    type: Literal["tool_end"] = "tool_end"
    data: ToolEventData


class ConversationIdEvent(BaseModel):
    """Identifier of the conversation the run is bound to."""

    type: Literal["conversation_id"] = "conversation_id"
    data: str


class ErrorEvent(BaseModel):
    """The run aborted."""

    type: Literal["error"] = "error"
    data: str


AgentEvent = Annotated[
    TokenEvent | ToolStartEvent | ToolEndEvent | ConversationIdEvent | ErrorEvent,
    Field(discriminator="type"),
]

agent_event_adapter: TypeAdapter[AgentEvent] = TypeAdapter(AgentEvent)


def tool_start(name: str, arguments: dict[str, Any]) -> ToolStartEvent:
    return ToolStartEvent(data=ToolEventData(name=name, input=arguments))


def tool_end(name: str, output: str) -> ToolEndEvent:
    return ToolEndEvent(data=ToolEventData(name=name, output=output))


def to_sse(event: BaseModel) -> str:
    """Encode an event as one text/event-stream frame."""
    payload = event.model_dump(mode="json", exclude_none=True)
    return f"data: {json.dumps(payload)}\n\n"
