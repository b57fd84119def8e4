"""Create reminder tool."""

from datetime import datetime

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from nudge.errors import ToolInputError
from nudge.models.reminder import Reminder, ReminderStatus
from nudge.services.reminder_store import ReminderStore, new_reminder_id
from nudge.tools.base import ToolContext, ToolDefinition, parse_scheduled_for, require_future, success
from nudge.utils.dates import ensure_utc, format_human, to_iso
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

DESCRIPTION = """Create a new reminder for the user. The reminder is sent via SMS at the scheduled time.

Required Information:
- title: Brief title for the reminder
- scheduled_for: ISO 8601 date/time (e.g. 2025-03-01T15:00:00Z), strictly in the future

Example Usage:
- User says: "Remind me to call mom tomorrow at 3pm"
- Convert "tomorrow at 3pm" to ISO 8601 using the current date and time
- Call: create_reminder(title="Call mom", scheduled_for="2025-03-01T15:00:00Z")
- Confirm the reminder to the user with the date in a readable form.

Important Notes:
- Natural language dates MUST be converted to ISO 8601 before calling this tool
- Times that are not in the future are rejected"""


class CreateReminderInput(BaseModel):
    """Input schema for creating a reminder."""

    title: str = Field(..., min_length=1, max_length=200, description="Brief title for the reminder")
    description: str | None = Field(
        default=None,
        max_length=1000,
        description="Optional detailed description of the reminder",
    )
    scheduled_for: datetime = Field(
        ...,
        description="ISO 8601 date/time for when the reminder should be sent (must be in the future)",
        examples=["2025-03-01T15:00:00Z"],
    )

    @field_validator("scheduled_for", mode="before")
    @classmethod
    def parse_date(cls, v):
        """Accept ISO 8601 strings with a ``Z`` suffix."""
        return parse_scheduled_for(v)

    @field_validator("scheduled_for")
    @classmethod
    def validate_future(cls, v: datetime, info: ValidationInfo) -> datetime:
        """Reject reminders that are not strictly in the future."""
        return require_future(v, info)


def create_create_reminder_tool(reminder_store: ReminderStore) -> ToolDefinition:
    async def create_reminder_handler(params: CreateReminderInput, context: ToolContext) -> str:
        if not context.phone_number:
            raise ToolInputError("No phone number on file for SMS delivery. Ask the user to text from their phone.")

        scheduled_for = ensure_utc(params.scheduled_for)
        logger.info(f"Creating reminder: {params.title} for {to_iso(scheduled_for)}")

        reminder = await reminder_store.create(
            Reminder(
                id=new_reminder_id(),
                user_id=context.user_id,
                conversation_id=context.conversation_id,
                phone_number=context.phone_number,
                title=params.title,
                description=params.description,
                scheduled_for=scheduled_for,
                status=ReminderStatus.PENDING,
            )
        )

        return success(
            f'Reminder created successfully! I\'ll send you a reminder "{reminder.title}" on '
            f"{format_human(reminder.scheduled_for)}.",
            reminder_id=reminder.id,
            scheduled_for=to_iso(reminder.scheduled_for),
        )

    return ToolDefinition(
        name="create_reminder",
        description=DESCRIPTION,
        input_schema_class=CreateReminderInput,
        handler=create_reminder_handler,
    )
