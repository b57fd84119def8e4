"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from nudge.models.conversation import Conversation, Message
from nudge.models.reminder import Reminder, ReminderStatus
from nudge.utils.phone import E164_PATTERN


class ChatRequest(BaseModel):
    """Request model for the chat endpoints."""

    user_id: str = Field(..., min_length=1)
    message: str
    phone_number: str | None = Field(default=None, pattern=E164_PATTERN)
    conversation_id: str | None = None


class ConversationResponse(BaseModel):
    """Response model for the non-streaming chat endpoint."""

    response: str
    conversation_id: str


class CreateConversationRequest(BaseModel):
    """Request model for explicitly starting a conversation."""

    user_id: str = Field(..., min_length=1)
    phone_number: str | None = Field(default=None, pattern=E164_PATTERN)


class ConversationSummary(BaseModel):
    """Conversation without its message history."""

    id: str
    title: str
    phone_number: str | None
    message_count: int
    created_at: datetime
    last_message_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            phone_number=conversation.phone_number,
            message_count=len(conversation.messages),
            created_at=conversation.created_at,
            last_message_at=conversation.last_message_at,
        )


class ConversationDetail(ConversationSummary):
    """Conversation with its full message history."""

    messages: list[Message]

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationDetail":
        summary = ConversationSummary.from_conversation(conversation)
        return cls(**summary.model_dump(), messages=conversation.history())


class ReminderResponse(BaseModel):
    """Public view of a reminder."""

    id: str
    conversation_id: str
    title: str
    description: str | None
    scheduled_for: datetime
    status: ReminderStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_reminder(cls, reminder: Reminder) -> "ReminderResponse":
        return cls.model_validate(reminder.model_dump())


class SchedulerStatusResponse(BaseModel):
    """Response model for scheduler introspection."""

    is_running: bool
    interval_seconds: int
    last_tick: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
