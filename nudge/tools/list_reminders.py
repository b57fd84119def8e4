"""List reminders tool."""

from pydantic import BaseModel, Field

from nudge.models.reminder import ReminderStatus
from nudge.services.reminder_store import ReminderStore
from nudge.tools.base import ToolContext, ToolDefinition, success
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

DESCRIPTION = """List the user's reminders, soonest first.

Parameters:
- status (optional): only return reminders with this status (pending, sent, cancelled)

Example Usage:
- User says: "What reminders do I have?" -> Call: list_reminders()
- User says: "Which reminders already went out?" -> Call: list_reminders(status="sent")

Important Notes:
- Includes reminder ids, which update_reminder and delete_reminder need"""


class ListRemindersInput(BaseModel):
    """Input schema for listing reminders."""

    status: ReminderStatus | None = Field(default=None, description="Optional filter by reminder status")


def create_list_reminders_tool(reminder_store: ReminderStore) -> ToolDefinition:
    async def list_reminders_handler(params: ListRemindersInput, context: ToolContext) -> str:
        label = params.status.value if params.status else "all"
        logger.info(f"Listing reminders for user {context.user_id} with status: {label}")

        reminders = await reminder_store.find_many(user_id=context.user_id, status=params.status)

        if not reminders:
            message = (
                f"You don't have any {params.status.value} reminders."
                if params.status
                else "You don't have any reminders yet."
            )
            return success(message, reminders=[])

        return success(
            f"Found {len(reminders)} reminder(s).",
            reminders=[reminder.summary() for reminder in reminders],
        )

    return ToolDefinition(
        name="list_reminders",
        description=DESCRIPTION,
        input_schema_class=ListRemindersInput,
        handler=list_reminders_handler,
    )
