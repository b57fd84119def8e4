"""Tests for data models."""

import json
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from nudge.models.api import ChatRequest, ConversationDetail, ConversationResponse, HealthResponse, ReminderResponse
from nudge.models.conversation import Conversation, MessageRole, generate_title
from nudge.models.events import (
    SSE_DONE,
    ConversationIdEvent,
    TokenEvent,
    agent_event_adapter,
    to_sse,
    tool_end,
    tool_start,
)
from nudge.models.llm import CompletionMessage, LLMMessage, TextBlock, ToolCall, ToolResultBlock, ToolUseBlock
from nudge.models.reminder import Reminder, ReminderStatus, can_transition

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def make_reminder(**overrides) -> Reminder:
    fields = {
        "id": "rem-1",
        "user_id": "user-1",
        "conversation_id": "conv-1",
        "phone_number": "+15551234567",
        "title": "Call mom",
        "scheduled_for": NOW + timedelta(hours=1),
    }
    fields.update(overrides)
    return Reminder(**fields)


class TestApiModels:
    """Tests for HTTP request/response models."""

    def test_chat_request_valid(self):
        """Test valid chat request."""
        request = ChatRequest(user_id="user-1", message="Hello")
        assert request.message == "Hello"
        assert request.conversation_id is None
        assert request.phone_number is None

    def test_chat_request_from_json(self):
        """Test chat request parsing from JSON."""
        data = json.loads('{"user_id": "u", "message": "Hi", "phone_number": "+15551234567", "conversation_id": "c1"}')
        request = ChatRequest.model_validate(data)
        assert request.phone_number == "+15551234567"
        assert request.conversation_id == "c1"

    def test_chat_request_rejects_non_e164_phone(self):
        """Test that phone numbers must be E.164."""
        with pytest.raises(ValidationError):
            ChatRequest(user_id="u", message="Hi", phone_number="555-123-4567")

    def test_conversation_response_valid(self):
        """Test valid conversation response."""
        response = ConversationResponse(response="Done!", conversation_id="c1")
        assert response.response == "Done!"
        assert response.conversation_id == "c1"

    def test_health_response_valid(self):
        """Test valid health response."""
        response = HealthResponse(status="healthy", timestamp=NOW, version="0.1.0")
        assert response.status == "healthy"
        assert response.timestamp == NOW

    def test_conversation_detail_counts_messages(self):
        """Test that the detail view carries the history and its size."""
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.USER, "hi", now=NOW)
        conversation.add_message(MessageRole.ASSISTANT, "hello", now=NOW)

        detail = ConversationDetail.from_conversation(conversation)
        assert detail.message_count == 2
        assert [m.content for m in detail.messages] == ["hi", "hello"]

    def test_reminder_response_hides_internal_fields(self):
        """Test that claim bookkeeping is not exposed."""
        reminder = make_reminder(claimed_by="tick-1", claimed_at=NOW)
        payload = ReminderResponse.from_reminder(reminder).model_dump()
        assert "claimed_by" not in payload
        assert "user_id" not in payload
        assert payload["status"] == ReminderStatus.PENDING


class TestConversationModel:
    """Tests for conversation history and titles."""

    def test_long_first_message_is_truncated(self):
        """Test title truncation to 50 characters plus an ellipsis."""
        message = "Remind me to water the plants every single morning before work"
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.USER, message, now=NOW)

        assert conversation.title == message[:50] + "..."
        assert len(conversation.title) == 53

    def test_short_first_message_is_unchanged(self):
        """Test that short titles are used as-is."""
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.USER, "hi", now=NOW)
        assert conversation.title == "hi"

    def test_title_uses_first_line(self):
        """Test that only the first line becomes the title."""
        assert generate_title("Dentist\nbring the insurance card") == "Dentist..."

    def test_title_not_recomputed(self):
        """Test that later messages never change the title."""
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.USER, "first", now=NOW)
        conversation.add_message(MessageRole.USER, "second", now=NOW)
        assert conversation.title == "first"

    def test_assistant_first_message_keeps_default_title(self):
        """Test that a non-user first message does not set the title."""
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.ASSISTANT, "Welcome!", now=NOW)
        assert conversation.title == "New Conversation"

    def test_timestamps_never_decrease(self):
        """Test that a clock going backwards does not reorder history."""
        conversation = Conversation(id="c1", user_id="u")
        conversation.add_message(MessageRole.USER, "one", now=NOW)
        second = conversation.add_message(MessageRole.ASSISTANT, "two", now=NOW - timedelta(seconds=5))

        assert second.timestamp == NOW
        assert conversation.last_message_at == NOW

    def test_title_length_is_bounded(self):
        """Test that titles longer than 200 characters are rejected."""
        with pytest.raises(ValidationError):
            Conversation(id="c1", user_id="u", title="x" * 201)


class TestReminderModel:
    """Tests for the reminder model and its lifecycle."""

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (ReminderStatus.PENDING, ReminderStatus.SENT, True),
            (ReminderStatus.PENDING, ReminderStatus.CANCELLED, True),
            (ReminderStatus.SENT, ReminderStatus.PENDING, False),
            (ReminderStatus.CANCELLED, ReminderStatus.PENDING, False),
            (ReminderStatus.SENT, ReminderStatus.CANCELLED, False),
            (ReminderStatus.CANCELLED, ReminderStatus.SENT, False),
        ],
    )
    def test_transitions(self, current, target, allowed):
        """Test that only pending reminders can move, and only forward."""
        assert can_transition(current, target) is allowed

    def test_title_bounds(self):
        """Test title length validation."""
        with pytest.raises(ValidationError):
            make_reminder(title="")
        with pytest.raises(ValidationError):
            make_reminder(title="x" * 201)

    def test_description_bound(self):
        """Test description length validation."""
        with pytest.raises(ValidationError):
            make_reminder(description="x" * 1001)

    def test_is_due(self):
        """Test due detection around the scheduled instant."""
        reminder = make_reminder()
        assert not reminder.is_due(NOW)
        assert reminder.is_due(NOW + timedelta(hours=1))

    def test_claim_lease_expiry(self):
        """Test that a stale claim makes the reminder claimable again."""
        due_at = NOW + timedelta(hours=2)
        reminder = make_reminder(claimed_by="tick-1", claimed_at=due_at)
        lease = timedelta(minutes=5)

        assert not reminder.is_claimable(due_at + timedelta(minutes=1), lease)
        assert reminder.is_claimable(due_at + timedelta(minutes=5), lease)

    def test_summary_uses_iso_dates(self):
        """Test the compact representation handed to the model."""
        summary = make_reminder().summary()
        assert summary["scheduled_for"] == "2025-03-01T13:00:00Z"
        assert summary["status"] == "pending"


class TestLLMModels:
    """Tests for provider-agnostic LLM models."""

    def test_llm_message_text(self):
        """Test text extraction from mixed content blocks."""
        message = LLMMessage(
            role="assistant",
            content=[TextBlock(text="Let me "), ToolUseBlock(id="t1", name="x", input={}), TextBlock(text="check")],
        )
        assert message.text() == "Let me check"

    def test_tool_result_block(self):
        """Test tool result block defaults."""
        block = ToolResultBlock(tool_use_id="t1", content="{}")
        assert block.type == "tool_result"
        assert block.is_error is False

    def test_completion_to_llm_message(self):
        """Test conversion of a completion into an assistant turn."""
        completion = CompletionMessage(
            text="On it",
            tool_calls=[ToolCall(id="t1", name="list_reminders", arguments={})],
        )
        message = completion.to_llm_message()

        assert message.role == "assistant"
        assert [block.type for block in message.content] == ["text", "tool_use"]
        assert completion.has_tool_calls


class TestEvents:
    """Tests for agent events and their wire encoding."""

    def test_token_frame(self):
        """Test text/event-stream encoding of a token."""
        assert to_sse(TokenEvent(data="Hi")) == 'data: {"type": "token", "data": "Hi"}\n\n'

    def test_tool_events_omit_missing_fields(self):
        """Test that start events carry input and end events carry output."""
        start = json.loads(to_sse(tool_start("list_reminders", {"status": "pending"}))[len("data: ") :])
        end = json.loads(to_sse(tool_end("list_reminders", "ok"))[len("data: ") :])

        assert start == {"type": "tool_start", "data": {"name": "list_reminders", "input": {"status": "pending"}}}
        assert end == {"type": "tool_end", "data": {"name": "list_reminders", "output": "ok"}}

    def test_event_union_parses_by_type(self):
        """Test discriminated parsing of events."""
        event = agent_event_adapter.validate_python({"type": "conversation_id", "data": "c1"})
        assert isinstance(event, ConversationIdEvent)

    def test_done_sentinel(self):
        """Test the stream terminator."""
        assert SSE_DONE == "data: [DONE]\n\n"
