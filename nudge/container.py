"""Construction of the service's long-lived handles."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from nudge.clients.anthropic import AnthropicClient, AnthropicConfig
from nudge.clients.base import CompletionClient
from nudge.clients.sms import LoggingNotificationChannel, NotificationChannel, TelnyxNotificationChannel
from nudge.config import Settings
from nudge.services.agent import AgentService
from nudge.services.conversation_store import ConversationStore, InMemoryConversationStore
from nudge.services.reminder_store import InMemoryReminderStore, ReminderStore
from nudge.services.scheduler import ReminderScheduler
from nudge.services.sql_store import Database, SqlConversationStore, SqlReminderStore
from nudge.tools import ToolsRegistry
from nudge.utils.dates import utc_now
from nudge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Container:
    """Every handle the HTTP layer needs, built once per application."""

    settings: Settings
    conversation_store: ConversationStore
    reminder_store: ReminderStore
    channel: NotificationChannel
    tools_registry: ToolsRegistry
    agent: AgentService
    scheduler: ReminderScheduler
    database: Database | None = None
    clock: Callable[[], datetime] = utc_now

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.create_all()
        if self.settings.scheduler_enabled:
            self.scheduler.start()

    async def shutdown(self) -> None:
        if self.scheduler.is_running:
            self.scheduler.stop()
        if self.database is not None:
            await self.database.dispose()


def build_completion_client(settings: Settings) -> AnthropicClient:
    config = AnthropicConfig(
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        temperature=settings.anthropic_temperature,
    )
    return AnthropicClient(api_key=settings.anthropic_api_key, config=config)


def build_channel(settings: Settings) -> NotificationChannel:
    if settings.sms_enabled:
        return TelnyxNotificationChannel(api_key=settings.telnyx_api_key, from_number=settings.telnyx_from_number)

    logger.warning("Telnyx credentials not configured, SMS will only be logged")
    return LoggingNotificationChannel()


def build_container(
    settings: Settings,
    completion_client: CompletionClient | None = None,
    channel: NotificationChannel | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Container:
    """Wire stores, clients and services from settings.

    Args:
        settings: Runtime configuration
        completion_client: Overrides the Anthropic client
        channel: Overrides the SMS channel
        clock: Source of the current instant for every component

    Returns:
        The assembled container
    """
    database = None
    if settings.database_url:
        database = Database(settings.database_url)
        conversation_store: ConversationStore = SqlConversationStore(database, clock=clock)
        reminder_store: ReminderStore = SqlReminderStore(database, clock=clock)
        logger.info("Using SQL stores")
    else:
        conversation_store = InMemoryConversationStore(clock=clock)
        reminder_store = InMemoryReminderStore(clock=clock)
        logger.info("Using in-memory stores")

    channel = channel or build_channel(settings)
    tools_registry = ToolsRegistry(reminder_store, clock=clock)

    agent = AgentService(
        completion_client=completion_client or build_completion_client(settings),
        conversation_store=conversation_store,
        tools_registry=tools_registry,
        max_iterations=settings.agent_max_iterations,
        max_message_chars=settings.max_message_chars,
        clock=clock,
    )

    scheduler = ReminderScheduler(
        reminder_store,
        channel,
        interval_seconds=settings.reminder_check_interval_seconds,
        claim_lease_seconds=settings.reminder_claim_lease_seconds,
        batch_size=settings.reminder_batch_size,
        send_timeout_seconds=settings.reminder_send_timeout_seconds,
        clock=clock,
    )

    return Container(
        settings=settings,
        conversation_store=conversation_store,
        reminder_store=reminder_store,
        channel=channel,
        tools_registry=tools_registry,
        agent=agent,
        scheduler=scheduler,
        database=database,
        clock=clock,
    )
