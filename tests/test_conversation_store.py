"""Tests for the in-memory conversation store."""

import asyncio

from nudge.models.conversation import MessageRole


class TestGetOrCreate:
    """Tests for conversation resolution."""

    async def test_creates_with_default_title(self, conversation_store):
        """Test that a new conversation gets the default title."""
        conversation = await conversation_store.get_or_create("user-1")
        assert conversation.title == "New Conversation"
        assert conversation.messages == []

    async def test_reuses_conversation_for_phone(self, conversation_store):
        """Test that a phone number maps to a single conversation."""
        first = await conversation_store.get_or_create("user-1", "+15551234567")
        second = await conversation_store.get_or_create("user-1", "+15551234567")
        assert first.id == second.id

    async def test_without_phone_always_creates(self, conversation_store):
        """Test that web conversations are never merged."""
        first = await conversation_store.get_or_create("user-1")
        second = await conversation_store.get_or_create("user-1")
        assert first.id != second.id

    async def test_concurrent_get_or_create_for_phone(self, conversation_store):
        """Test that racing lookups for one phone create one conversation."""
        results = await asyncio.gather(
            *(conversation_store.get_or_create("user-1", "+15551234567") for _ in range(10))
        )
        assert len({c.id for c in results}) == 1


class TestAppendMessage:
    """Tests for appending messages."""

    async def test_first_user_message_sets_title(self, conversation_store):
        """Test title generation on the first user message."""
        conversation = await conversation_store.create("user-1")
        message = "Remind me to water the plants every single morning before work"
        updated = await conversation_store.append_message(conversation.id, MessageRole.USER, message)
        assert updated.title == message[:50] + "..."

    async def test_updates_activity_timestamps(self, conversation_store, clock):
        """Test that appends move last_message_at forward."""
        conversation = await conversation_store.create("user-1")
        clock.advance(minutes=5)
        updated = await conversation_store.append_message(conversation.id, MessageRole.USER, "hi")

        assert updated.last_message_at == clock.now
        assert updated.updated_at == clock.now
        assert updated.messages[0].timestamp == clock.now

    async def test_missing_conversation_returns_none(self, conversation_store):
        """Test appending to an unknown conversation."""
        assert await conversation_store.append_message("missing", MessageRole.USER, "hi") is None

    async def test_concurrent_appends_are_not_lost(self, conversation_store):
        """Test that parallel appends all land, in a consistent order."""
        conversation = await conversation_store.create("user-1")
        await asyncio.gather(
            *(conversation_store.append_message(conversation.id, MessageRole.USER, f"m{i}") for i in range(20))
        )

        stored = await conversation_store.find_by_id(conversation.id)
        assert sorted(m.content for m in stored.messages) == sorted(f"m{i}" for i in range(20))

    async def test_returned_copies_do_not_alias_storage(self, conversation_store):
        """Test that mutating a returned conversation leaves the store alone."""
        conversation = await conversation_store.create("user-1")
        conversation.add_message(MessageRole.USER, "local only")

        stored = await conversation_store.find_by_id(conversation.id)
        assert stored.messages == []


class TestQueries:
    """Tests for lookups."""

    async def test_find_by_user_most_recent_first(self, conversation_store, clock):
        """Test ordering by last activity."""
        older = await conversation_store.create("user-1")
        newer = await conversation_store.create("user-1")
        await conversation_store.create("user-2")

        clock.advance(minutes=1)
        await conversation_store.append_message(older.id, MessageRole.USER, "bump")

        conversations = await conversation_store.find_by_user_id("user-1")
        assert [c.id for c in conversations] == [older.id, newer.id]

    async def test_find_by_phone_number(self, conversation_store):
        """Test lookup by phone number."""
        created = await conversation_store.create("user-1", "+15551234567")
        found = await conversation_store.find_by_phone_number("+15551234567")
        assert found.id == created.id
        assert await conversation_store.find_by_phone_number("+15550000000") is None

    async def test_delete(self, conversation_store):
        """Test deletion."""
        conversation = await conversation_store.create("user-1")
        assert await conversation_store.delete(conversation.id) is True
        assert await conversation_store.find_by_id(conversation.id) is None
        assert await conversation_store.delete(conversation.id) is False
