"""Completion client interface."""

from collections.abc import AsyncIterator
from typing import Protocol

from nudge.models.llm import CompletionMessage, LLMMessage, LLMToolSchema, StreamDelta


class CompletionClient(Protocol):
    """Interface for language-model completion providers."""

    def stream(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
    ) -> AsyncIterator[StreamDelta]:
        """Stream one completion as content and tool-call deltas.

        The returned iterator is finite and cannot be restarted.
        """
        ...

    async def invoke(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
    ) -> CompletionMessage:
        """Produce one complete assistant message, possibly proposing tool calls."""
        ...
