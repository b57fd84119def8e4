"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    """Tool result content block, tagged with the id of the call it answers."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def text(self) -> str:
        """Concatenated text of the message."""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))


class LLMToolSchema(BaseModel):
    """Tool definition as advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


class ToolCall(BaseModel):
    """A tool invocation proposed by the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolCallDelta:
    """Fragment of a streamed tool call.

    ``index`` identifies the call within one response; ``id`` and ``name``
    usually arrive with the first fragment and ``arguments`` carries partial
    JSON text. ``done`` marks the end of the call.
    """

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    done: bool = False


@dataclass
class StreamDelta:
    """One incremental piece of a streamed completion."""

    content: str | None = None
    tool_call: ToolCallDelta | None = None


@dataclass
class LLMUsage:
    """Token usage information from the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "LLMUsage | None") -> None:
        """Accumulate another usage record into this one."""
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


@dataclass
class CompletionMessage:
    """Final assistant message of one completion round."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None
    usage: LLMUsage | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_llm_message(self) -> LLMMessage:
        """Assistant turn to append to the running prompt history."""
        blocks: list[ContentBlock] = []
        if self.text:
            blocks.append(TextBlock(text=self.text))
        blocks.extend(ToolUseBlock(id=call.id, name=call.name, input=call.arguments) for call in self.tool_calls)
        return LLMMessage(role="assistant", content=blocks)
