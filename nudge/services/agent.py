"""Agent loop orchestrating completions and reminder tool calls."""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from nudge.clients.base import CompletionClient
from nudge.errors import ConversationNotFoundError, MessageTooLongError
from nudge.models.conversation import Conversation, Message, MessageRole
from nudge.models.events import AgentEvent, ConversationIdEvent, ErrorEvent, TokenEvent, tool_end, tool_start
from nudge.models.llm import CompletionMessage, LLMMessage, LLMToolSchema, LLMUsage, ToolResultBlock, ToolUseBlock
from nudge.services.conversation_store import ConversationStore
from nudge.services.llm import StreamAccumulator
from nudge.services.prompts import build_system_prompt
from nudge.tools import ToolContext, ToolsRegistry
from nudge.utils.dates import utc_now
from nudge.utils.logging import get_logger, preview

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_MAX_MESSAGE_CHARS = 4000

BUDGET_EXHAUSTED_REPLY = (
    "I wasn't able to finish that request. Please try again, or check your reminders with "
    '"list my reminders" to see what was saved.'
)

EventSink = Callable[[AgentEvent], Awaitable[None]]


@dataclass
class AgentRunResult:
    """Outcome of one agent run."""

    response: str
    conversation_id: str
    rounds: int
    tool_calls: int = 0
    budget_exhausted: bool = False
    usage: LLMUsage = field(default_factory=LLMUsage)


class AgentService:
    """Drives the completion / tool-call cycle for one inbound user message.

    One loop serves both delivery modes: with an event sink every round is
    streamed and tokens and tool activity are emitted live; without one each
    round is a single-shot completion and only the final text is returned.
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        conversation_store: ConversationStore,
        tools_registry: ToolsRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the agent service.

        Args:
            completion_client: Model completion backend
            conversation_store: Conversation persistence
            tools_registry: Reminder tools
            max_iterations: Maximum completion rounds per inbound message
            max_message_chars: Maximum length of an inbound message
            clock: Source of the current instant
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.completion_client = completion_client
        self.conversation_store = conversation_store
        self.tools_registry = tools_registry
        self.max_iterations = max_iterations
        self.max_message_chars = max_message_chars
        self._clock = clock

    # ──────────────────────────────────────────────────────────────────
    # Conversations
    # ──────────────────────────────────────────────────────────────────
    async def create_conversation(self, user_id: str, phone_number: str | None = None) -> Conversation:
        """Explicitly start a new conversation."""
        return await self.conversation_store.create(user_id, phone_number)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Get a conversation owned by ``user_id``.

        Raises:
            ConversationNotFoundError: If it does not exist or belongs to someone else
        """
        conversation = await self.conversation_store.find_by_id(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def get_user_conversations(self, user_id: str) -> list[Conversation]:
        return await self.conversation_store.find_by_user_id(user_id)

    async def _resolve_conversation(
        self,
        user_id: str,
        phone_number: str | None,
        conversation_id: str | None,
    ) -> Conversation:
        if conversation_id:
            return await self.get_conversation(conversation_id, user_id)
        return await self.conversation_store.get_or_create(user_id, phone_number)

    def validate_message(self, message: str) -> None:
        """Reject empty or oversized inbound text.

        Raises:
            ValueError: If the message is blank
            MessageTooLongError: If the message exceeds ``max_message_chars``
        """
        if not message or not message.strip():
            raise ValueError("Message cannot be empty.")
        if len(message) > self.max_message_chars:
            raise MessageTooLongError(
                f"Your message is too long. Please keep messages under {self.max_message_chars} characters."
            )

    # ──────────────────────────────────────────────────────────────────
    # Agent loop
    # ──────────────────────────────────────────────────────────────────
    async def run(
        self,
        user_id: str,
        message: str,
        phone_number: str | None = None,
        conversation_id: str | None = None,
        sink: EventSink | None = None,
    ) -> AgentRunResult:
        """Process one inbound user message end to end.

        Args:
            user_id: Caller's user id
            message: Inbound user text
            phone_number: Caller's E.164 phone number, if known
            conversation_id: Existing conversation to continue
            sink: Receives live events; None selects single-shot completions

        Returns:
            The final reply and run metadata

        Raises:
            ValueError: If the message is empty or too long
            ConversationNotFoundError: If ``conversation_id`` is unknown to the caller
            CompletionError: If the completion backend fails
        """
        self.validate_message(message)

        conversation = await self._resolve_conversation(user_id, phone_number, conversation_id)
        logger.info(f"Processing message for user {user_id} in conversation {conversation.id}: {preview(message)}")
        await self._emit(sink, ConversationIdEvent(data=conversation.id))

        prior_history = conversation.history()
        if await self.conversation_store.append_message(conversation.id, MessageRole.USER, message) is None:
            raise ConversationNotFoundError(f"Conversation {conversation.id} not found")

        system_prompt, messages = self._build_prompt(prior_history, message, self._clock())
        tools = self.tools_registry.get_tool_schemas()
        context = ToolContext(
            user_id=user_id,
            conversation_id=conversation.id,
            phone_number=phone_number or conversation.phone_number,
        )

        usage = LLMUsage()
        tool_call_count = 0

        for round_number in range(1, self.max_iterations + 1):
            logger.info(f"Agent round {round_number}/{self.max_iterations} for conversation {conversation.id}")
            completion = await self._complete(messages, system_prompt, tools, sink)
            usage.add(completion.usage)

            if not completion.has_tool_calls:
                reply = completion.text
                if reply:
                    await self._persist_reply(conversation.id, reply)
                logger.info(f"Agent run completed in {round_number} round(s), {tool_call_count} tool call(s)")
                return AgentRunResult(
                    response=reply,
                    conversation_id=conversation.id,
                    rounds=round_number,
                    tool_calls=tool_call_count,
                    usage=usage,
                )

            # Text preceding tool calls is provisional; the model regenerates after seeing results
            messages.append(
                LLMMessage(
                    role="assistant",
                    content=[
                        ToolUseBlock(id=call.id, name=call.name, input=call.arguments)
                        for call in completion.tool_calls
                    ],
                )
            )

            results: list[ToolResultBlock] = []
            for call in completion.tool_calls:
                await self._emit(sink, tool_start(call.name, call.arguments))
                result = await self.tools_registry.execute(call.name, call.arguments, context)
                await self._emit(sink, tool_end(call.name, result.content))
                results.append(ToolResultBlock(tool_use_id=call.id, content=result.content, is_error=result.is_error))
                tool_call_count += 1

            messages.append(LLMMessage(role="user", content=results))

        logger.warning(
            f"Agent loop reached max rounds ({self.max_iterations}) for conversation {conversation.id} "
            "with tool calls still pending"
        )
        await self._emit(sink, TokenEvent(data=BUDGET_EXHAUSTED_REPLY))
        return AgentRunResult(
            response=BUDGET_EXHAUSTED_REPLY,
            conversation_id=conversation.id,
            rounds=self.max_iterations,
            tool_calls=tool_call_count,
            budget_exhausted=True,
            usage=usage,
        )

    async def _complete(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolSchema],
        sink: EventSink | None,
    ) -> CompletionMessage:
        """Run one completion round, streaming tokens to ``sink`` when present."""
        if sink is None:
            return await self.completion_client.invoke(list(messages), system_prompt, tools)

        accumulator = StreamAccumulator()
        async for delta in self.completion_client.stream(list(messages), system_prompt, tools):
            token = accumulator.add(delta)
            if token:
                await sink(TokenEvent(data=token))
        return accumulator.result()

    async def _persist_reply(self, conversation_id: str, reply: str) -> None:
        if await self.conversation_store.append_message(conversation_id, MessageRole.ASSISTANT, reply) is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

    @staticmethod
    async def _emit(sink: EventSink | None, event: AgentEvent) -> None:
        if sink is not None:
            await sink(event)

    @staticmethod
    def _build_prompt(history: list[Message], message: str, now: datetime) -> tuple[str, list[LLMMessage]]:
        """System prompt plus prior turns and the new user message."""
        system_notes = [m.content for m in history if m.role == MessageRole.SYSTEM]
        messages = [
            LLMMessage(role=m.role.value, content=m.content)
            for m in history
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]
        messages.append(LLMMessage(role="user", content=message))
        return build_system_prompt(now, extra_system=system_notes), messages

    # ──────────────────────────────────────────────────────────────────
    # Delivery modes
    # ──────────────────────────────────────────────────────────────────
    async def process_message(
        self,
        user_id: str,
        message: str,
        phone_number: str | None = None,
        conversation_id: str | None = None,
        timeout: float | None = None,
    ) -> AgentRunResult:
        """Non-streaming run bounded by ``timeout`` seconds."""
        async with asyncio.timeout(timeout):
            return await self.run(user_id, message, phone_number=phone_number, conversation_id=conversation_id)

    async def stream_events(
        self,
        user_id: str,
        message: str,
        phone_number: str | None = None,
        conversation_id: str | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Yield the events of one run as they happen.

        Failures are reported as a final ``error`` event. Closing the iterator
        early (client disconnect) cancels the run and its in-flight completion.
        """
        queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()

        async def produce() -> None:
            try:
                async with asyncio.timeout(timeout):
                    await self.run(
                        user_id,
                        message,
                        phone_number=phone_number,
                        conversation_id=conversation_id,
                        sink=queue.put,
                    )
            except TimeoutError:
                logger.error(f"Agent run for user {user_id} timed out after {timeout}s")
                await queue.put(ErrorEvent(data="The request took too long. Please try again."))
            except Exception as e:
                logger.error(f"Agent run for user {user_id} failed: {e}", exc_info=True)
                await queue.put(ErrorEvent(data=str(e)))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(produce())
        try:
            while (event := await queue.get()) is not None:
                yield event
        finally:
            if not task.done():
                logger.info(f"Event stream for user {user_id} closed early, cancelling agent run")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
