"""Anthropic API client with rate limiting and error handling."""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIError, APIStatusError, AsyncAnthropic
from anthropic.types import Message
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from nudge.errors import CompletionError
from nudge.models.llm import (
    CompletionMessage,
    LLMMessage,
    LLMToolSchema,
    LLMUsage,
    StreamDelta,
    TextBlock,
    ToolCall,
    ToolCallDelta,
    ToolResultBlock,
    ToolUseBlock,
)
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1024
    temperature: float = 0.2
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 60.0

    # Token limits for truncation
    max_conversation_tokens: int = 200_000
    token_headroom: int = 2000  # Reserve tokens for response


class AnthropicRateLimiter:
    """Client-side rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the request and token windows."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicClient:
    """Completion client backed by the Anthropic Messages API."""

    tokenizer: tiktoken.Encoding | None = None

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        rate_limiter: AnthropicRateLimiter | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key
            config: Client configuration
            rate_limiter: Shared rate limiter (a private one is created if omitted)
        """
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is required")

        self.config = config or AnthropicConfig()
        self.client = AsyncAnthropic(api_key=api_key, timeout=self.config.timeout, max_retries=0)
        self.rate_limiter = rate_limiter or AnthropicRateLimiter()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            logger.warning("Tokenizer unavailable, falling back to character-based token estimates")
            self.tokenizer = None

    async def stream(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion as text and tool-call deltas.

        Text arrives as ``content`` deltas. Tool calls arrive as deltas keyed by
        the content block index: the first carries id and name, the following
        ones partial JSON arguments, and the last one ``done=True``.
        """
        request_params = await self._prepare_request(messages, system_prompt, tools)
        tool_indices: set[int] = set()

        try:
            async with self.client.messages.stream(**request_params) as stream:
                async for event in stream:
                    if event.type == "content_block_start" and event.content_block.type == "tool_use":
                        tool_indices.add(event.index)
                        yield StreamDelta(
                            tool_call=ToolCallDelta(
                                index=event.index,
                                id=event.content_block.id,
                                name=event.content_block.name,
                            )
                        )
                    elif event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield StreamDelta(content=event.delta.text)
                        elif event.delta.type == "input_json_delta":
                            yield StreamDelta(
                                tool_call=ToolCallDelta(index=event.index, arguments=event.delta.partial_json)
                            )
                    elif event.type == "content_block_stop" and event.index in tool_indices:
                        yield StreamDelta(tool_call=ToolCallDelta(index=event.index, done=True))
        except APIError as e:
            logger.error(f"Anthropic stream failed: {e}")
            raise CompletionError(f"Completion stream failed: {e}") from e

    async def invoke(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
    ) -> CompletionMessage:
        """Create a single, non-streamed completion."""
        request_params = await self._prepare_request(messages, system_prompt, tools)

        try:
            response: Message = await self._request_with_retries(
                lambda: self.client.messages.create(**request_params)
            )
        except APIError as e:
            logger.error(f"Anthropic request failed: {e}")
            raise CompletionError(f"Completion request failed: {e}") from e

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )
        return self._convert_response(response)

    async def _prepare_request(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
    ) -> dict[str, Any]:
        truncated_messages = self.truncate_conversation(messages, system_prompt, tools)

        estimated_tokens = self._estimate_tokens(truncated_messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [msg.model_dump() for msg in truncated_messages],
        }

        if tools:
            tool_dicts = [tool.model_dump() for tool in tools]
            # Cache control on the last tool caches every tool definition
            tool_dicts[-1]["cache_control"] = CacheControl().model_dump()
            request_params["tools"] = tool_dicts

        logger.debug(f"Prepared request with {len(truncated_messages)} messages, {len(tools)} tools")
        return request_params

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute an API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIStatusError as e:
                last_attempt = attempt >= self.config.max_retries - 1

                if e.status_code == 429 and not last_attempt:
                    retry_after = int(e.response.headers.get("retry-after", 60))
                    if retry_after < 120:
                        logger.warning(f"Rate limited by Anthropic, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif e.status_code >= 500 and not last_attempt:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                raise

            except APIError:
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue
                raise

        raise CompletionError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _convert_response(self, response: Message) -> CompletionMessage:
        """Convert an Anthropic message into a provider-agnostic completion."""
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))
            else:
                logger.warning(f"Unknown content block type: {block.type}")

        usage = None
        if response.usage:
            usage = LLMUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
                cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            )

        return CompletionMessage(
            text="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=response.stop_reason,
            usage=usage,
        )

    @staticmethod
    def _message_text(message: LLMMessage) -> str:
        if isinstance(message.content, str):
            return message.content

        parts: list[str] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                parts.append(block.name + json.dumps(block.input))
            elif isinstance(block, ToolResultBlock):
                parts.append(block.content)
        return "".join(parts)

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        text_content = system_prompt + "".join(self._message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single piece of text."""
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def truncate_conversation(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema] | None = None,
    ) -> list[LLMMessage]:
        """Drop the oldest messages until the conversation fits the context window.

        The result always starts with a plain user message so that tool
        results are never separated from the call that produced them.
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)

        if tools:
            tool_content = "".join(tool.name + tool.description + json.dumps(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        truncated_messages: list[LLMMessage] = []
        current_tokens = 0

        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(self._message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated_messages.insert(0, message)
            current_tokens += message_tokens

        while truncated_messages and not (
            truncated_messages[0].role == "user" and isinstance(truncated_messages[0].content, str)
        ):
            truncated_messages.pop(0)

        if len(truncated_messages) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages
