"""Shared fixtures."""

import pytest

from fakes import PHONE, FakeCompletionClient, FakeNotificationChannel, MutableClock
from nudge.services.agent import AgentService
from nudge.services.conversation_store import InMemoryConversationStore
from nudge.services.reminder_store import InMemoryReminderStore
from nudge.services.scheduler import ReminderScheduler
from nudge.tools import ToolContext, ToolsRegistry


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def conversation_store(clock):
    return InMemoryConversationStore(clock=clock)


@pytest.fixture
def reminder_store(clock):
    return InMemoryReminderStore(clock=clock)


@pytest.fixture
def registry(reminder_store, clock):
    return ToolsRegistry(reminder_store, clock=clock)


@pytest.fixture
def context():
    return ToolContext(user_id="user-1", conversation_id="conv-1", phone_number=PHONE)


@pytest.fixture
def completion_client():
    return FakeCompletionClient()


@pytest.fixture
def agent(completion_client, conversation_store, registry, clock):
    return AgentService(
        completion_client=completion_client,
        conversation_store=conversation_store,
        tools_registry=registry,
        clock=clock,
    )


@pytest.fixture
def channel():
    return FakeNotificationChannel()


@pytest.fixture
def scheduler(reminder_store, channel, clock):
    return ReminderScheduler(reminder_store, channel, interval_seconds=60, send_timeout_seconds=1.0, clock=clock)
