"""Conversation store interface and in-memory implementation."""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from cuid2 import cuid_wrapper

from nudge.models.conversation import DEFAULT_CONVERSATION_TITLE, Conversation, MessageRole
from nudge.utils.dates import utc_now
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class ConversationStore(Protocol):
    """Interface for conversation persistence."""

    async def create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        """Create an empty conversation with the default title."""
        ...

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by id.

        Args:
            conversation_id: The conversation's unique identifier

        Returns:
            The conversation, or None if it does not exist
        """
        ...

    async def find_by_user_id(self, user_id: str) -> list[Conversation]:
        """Get a user's conversations, most recently active first."""
        ...

    async def find_by_phone_number(self, phone_number: str) -> Conversation | None:
        """Get the conversation bound to a phone number, if any."""
        ...

    async def get_or_create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        """Return the phone number's conversation, or create a new one.

        Without a phone number a new conversation is always created.
        """
        ...

    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> Conversation | None:
        """Atomically append a message.

        Sets the title from the first message when it comes from the user.

        Returns:
            The updated conversation, or None if it does not exist
        """
        ...

    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation; True if it existed."""
        ...


class InMemoryConversationStore:
    """In-memory conversation store.

    A single lock serialises writes so concurrent appends to the same
    conversation never overwrite each other. Reads return copies.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _new_conversation(self, user_id: str, phone_number: str | None) -> Conversation:
        now = self._clock()
        return Conversation(
            id=cuid(),
            user_id=user_id,
            phone_number=phone_number,
            title=DEFAULT_CONVERSATION_TITLE,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )

    async def create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        conversation = self._new_conversation(user_id, phone_number)
        async with self._lock:
            self._conversations[conversation.id] = conversation
        logger.info(f"Conversation created with ID: {conversation.id}")
        return conversation.model_copy(deep=True)

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def find_by_user_id(self, user_id: str) -> list[Conversation]:
        conversations = [c for c in self._conversations.values() if c.user_id == user_id]
        conversations.sort(key=lambda c: c.last_message_at, reverse=True)
        return [c.model_copy(deep=True) for c in conversations]

    async def find_by_phone_number(self, phone_number: str) -> Conversation | None:
        for conversation in self._conversations.values():
            if conversation.phone_number == phone_number:
                return conversation.model_copy(deep=True)
        return None

    async def get_or_create(self, user_id: str, phone_number: str | None = None) -> Conversation:
        if not phone_number:
            return await self.create(user_id)

        async with self._lock:
            conversation = next(
                (c for c in self._conversations.values() if c.phone_number == phone_number),
                None,
            )
            if conversation is None:
                conversation = self._new_conversation(user_id, phone_number)
                self._conversations[conversation.id] = conversation
                logger.info(f"Conversation created with ID: {conversation.id}")
            return conversation.model_copy(deep=True)

    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> Conversation | None:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning(f"Conversation not found for message append: {conversation_id}")
                return None

            conversation.add_message(role, content, now=self._clock())
            snapshot = conversation.model_copy(deep=True)

        logger.info(f"Message appended to conversation: {conversation_id}")
        return snapshot

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            return self._conversations.pop(conversation_id, None) is not None
