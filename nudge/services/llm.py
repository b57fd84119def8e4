"""Reduction of streamed completion deltas into a single message."""

import json
from dataclasses import dataclass, field

from nudge.models.llm import CompletionMessage, StreamDelta, ToolCall, ToolCallDelta
from nudge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""
    done: bool = False


@dataclass
class StreamAccumulator:
    """Fold a stream of deltas into one ``CompletionMessage``.

    Text deltas concatenate in arrival order. Tool-call deltas merge by call
    index: the id is taken from the first fragment that carries one, name and
    argument fragments are concatenated until the call is closed.
    """

    text_parts: list[str] = field(default_factory=list)
    _calls: dict[int, _PendingToolCall] = field(default_factory=dict)

    def add(self, delta: StreamDelta) -> str | None:
        """Apply one delta.

        Returns:
            Text to forward to the caller as a token, or None if the delta only
            carried tool-call data
        """
        if delta.tool_call is not None:
            self._merge_tool_call(delta.tool_call)
            return None

        if delta.content:
            self.text_parts.append(delta.content)
            return delta.content

        return None

    def _merge_tool_call(self, fragment: ToolCallDelta) -> None:
        call = self._calls.setdefault(fragment.index, _PendingToolCall())
        if call.done:
            logger.warning(f"Ignoring fragment for closed tool call at index {fragment.index}")
            return

        if fragment.id and not call.id:
            call.id = fragment.id
        if fragment.name:
            call.name += fragment.name
        call.arguments += fragment.arguments
        if fragment.done:
            call.done = True

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._calls)

    def result(self) -> CompletionMessage:
        """Build the message accumulated so far, tool calls in index order."""
        tool_calls: list[ToolCall] = []
        for index in sorted(self._calls):
            call = self._calls[index]
            if not call.name:
                logger.warning(f"Dropping tool call at index {index} without a name")
                continue
            tool_calls.append(
                ToolCall(
                    id=call.id or f"call_{index}",
                    name=call.name,
                    arguments=parse_arguments(call.arguments, call.name),
                )
            )

        return CompletionMessage(
            text=self.text,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
        )


def parse_arguments(raw: str, tool_name: str) -> dict:
    """Decode accumulated JSON arguments; malformed or non-object input becomes ``{}``."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Malformed arguments for tool {tool_name}: {raw[:100]}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"Arguments for tool {tool_name} are not an object")
        return {}
    return parsed
