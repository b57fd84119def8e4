"""Test doubles for the completion client, SMS channel and clock."""

import itertools
import json
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from nudge.clients.sms import SendResult
from nudge.models.llm import CompletionMessage, LLMMessage, LLMToolSchema, StreamDelta, ToolCall, ToolCallDelta

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
PHONE = "+15551234567"

_call_ids = itertools.count(1)


class MutableClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def text_reply(text: str) -> CompletionMessage:
    """A final answer with no tool calls."""
    return CompletionMessage(text=text, stop_reason="end_turn")


def tool_round(*calls: tuple[str, dict[str, Any]], text: str = "") -> CompletionMessage:
    """A round proposing the given ``(name, arguments)`` tool calls."""
    return CompletionMessage(
        text=text,
        tool_calls=[ToolCall(id=f"toolu_{next(_call_ids)}", name=name, arguments=args) for name, args in calls],
        stop_reason="tool_use",
    )


def to_deltas(message: CompletionMessage) -> list[StreamDelta]:
    """Split a message into the deltas a streaming provider would send."""
    deltas = [StreamDelta(content=word) for word in re.findall(r"\S+\s*|\s+", message.text)]
    for index, call in enumerate(message.tool_calls, start=1):
        arguments = json.dumps(call.arguments)
        middle = len(arguments) // 2
        deltas.append(StreamDelta(tool_call=ToolCallDelta(index=index, id=call.id, name=call.name)))
        deltas.append(StreamDelta(tool_call=ToolCallDelta(index=index, arguments=arguments[:middle])))
        deltas.append(StreamDelta(tool_call=ToolCallDelta(index=index, arguments=arguments[middle:])))
        deltas.append(StreamDelta(tool_call=ToolCallDelta(index=index, done=True)))
    return deltas


class FakeCompletionClient:
    """Completion client replaying scripted rounds.

    Each call to ``stream`` or ``invoke`` consumes the next scripted item. An
    exception in the script is raised instead of answering. Once the script
    runs out, ``default`` answers every further call.
    """

    def __init__(self, rounds: list[CompletionMessage | Exception] | None = None, default=None):
        self.rounds = list(rounds or [])
        self.default = default
        self.calls: list[list[LLMMessage]] = []
        self.system_prompts: list[str] = []
        self.tools: list[list[LLMToolSchema]] = []

    def script(self, *rounds: CompletionMessage | Exception) -> None:
        self.rounds.extend(rounds)

    def _next(self, messages, system_prompt, tools) -> CompletionMessage:
        self.calls.append(list(messages))
        self.system_prompts.append(system_prompt)
        self.tools.append(tools)

        item = self.rounds.pop(0) if self.rounds else self.default
        if item is None:
            raise AssertionError("No scripted completion left")
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, messages, system_prompt, tools):
        message = self._next(messages, system_prompt, tools)
        for delta in to_deltas(message):
            yield delta

    async def invoke(self, messages, system_prompt, tools) -> CompletionMessage:
        return self._next(messages, system_prompt, tools)


class FakeNotificationChannel:
    """Records sends; numbers in ``failing`` report a failure."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    async def send(self, phone_number: str, text: str) -> SendResult:
        if phone_number in self.failing:
            return SendResult(success=False, error="carrier rejected message")
        self.sent.append((phone_number, text))
        return SendResult(success=True, message_id=f"msg_{len(self.sent)}")
