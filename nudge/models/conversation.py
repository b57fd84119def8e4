"""Conversation and message data models."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from nudge.utils.dates import utc_now
from nudge.utils.phone import E164_PATTERN

DEFAULT_CONVERSATION_TITLE = "New Conversation"
TITLE_PREVIEW_CHARS = 50


class MessageRole(StrEnum):
    """Author of a stored conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A message in a conversation."""

    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class Conversation(BaseModel):
    """Ordered message history for one user (and optionally one phone number).

    Messages are append-only and kept in chronological order. The title is
    derived once, from the first message when it comes from the user.
    """

    id: str
    user_id: str
    phone_number: str | None = Field(default=None, pattern=E164_PATTERN)
    title: str = Field(default=DEFAULT_CONVERSATION_TITLE, min_length=1, max_length=200)
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_message_at: datetime = Field(default_factory=utc_now)

    def add_message(self, role: MessageRole, content: str, now: datetime | None = None) -> Message:
        """Append a message and refresh the activity timestamps."""
        timestamp = now or utc_now()
        if self.messages and timestamp < self.messages[-1].timestamp:
            timestamp = self.messages[-1].timestamp

        message = Message(role=role, content=content, timestamp=timestamp)
        self.messages.append(message)
        self.last_message_at = timestamp
        self.updated_at = timestamp

        if len(self.messages) == 1 and role == MessageRole.USER:
            self.title = generate_title(content)

        return message

    def history(self) -> list[Message]:
        """Copy of the message history."""
        return list(self.messages)


def generate_title(first_message: str) -> str:
    """Build a conversation title from the first user message.

    Takes the first line, cut to 50 characters, with ``...`` appended when
    anything was dropped.
    """
    first_line = first_message.split("\n")[0]
    title = first_line[:TITLE_PREVIEW_CHARS]
    if len(title) < len(first_message):
        title = f"{title}..."
    return title or DEFAULT_CONVERSATION_TITLE
