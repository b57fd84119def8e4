"""Reminder update and cancellation tools."""

from datetime import datetime

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from nudge.errors import InvalidTransitionError, PermissionDeniedError, ReminderNotFoundError, ToolInputError
from nudge.models.reminder import Reminder, ReminderStatus
from nudge.services.reminder_store import ReminderStore
from nudge.tools.base import ToolContext, ToolDefinition, parse_scheduled_for, require_future, success
from nudge.utils.dates import ensure_utc
from nudge.utils.logging import get_logger

logger = get_logger(__name__)

UPDATE_DESCRIPTION = """Update an existing pending reminder. Change its title, description, or scheduled time.

PREREQUISITE: Know the reminder id. Use list_reminders first if you don't.

Example Usage:
- User says: "Actually make it 4pm"
- Find the reminder just created (its id is in the create_reminder result, or use list_reminders)
- Call: update_reminder(reminder_id="<id>", scheduled_for="2025-03-01T16:00:00Z")

Important Notes:
- Only provide the fields that change
- Pass an empty description ("") to remove the current one
- scheduled_for must be ISO 8601 and in the future
- Reminders that were already sent or cancelled cannot be changed"""

DELETE_DESCRIPTION = """Cancel a pending reminder so it is not sent.

PREREQUISITE: Know the reminder id. Use list_reminders first if you don't.

Example Usage:
- User says: "Cancel my reminder to call mom"
- Look up the id via list_reminders
- Call: delete_reminder(reminder_id="<id>")

Important Notes:
- Cancelled reminders stay in the user's history with status 'cancelled'
- Reminders that were already sent cannot be cancelled"""


class UpdateReminderInput(BaseModel):
    """Input schema for updating a reminder."""

    reminder_id: str = Field(..., min_length=1, description="The id of the reminder to update")
    title: str | None = Field(default=None, min_length=1, max_length=200, description="New title")
    description: str | None = Field(
        default=None, max_length=1000, description="New description, or an empty string to remove it"
    )
    scheduled_for: datetime | None = Field(
        default=None,
        description="New ISO 8601 date/time for when the reminder should be sent (must be in the future)",
    )

    @field_validator("scheduled_for", mode="before")
    @classmethod
    def parse_date(cls, v):
        return parse_scheduled_for(v)

    @field_validator("scheduled_for")
    @classmethod
    def validate_future(cls, v: datetime | None, info: ValidationInfo) -> datetime | None:
        return require_future(v, info)


class DeleteReminderInput(BaseModel):
    """Input schema for cancelling a reminder."""

    reminder_id: str = Field(..., min_length=1, description="The id of the reminder to cancel")


async def load_owned_pending(reminder_store: ReminderStore, reminder_id: str, context: ToolContext) -> Reminder:
    """Load a reminder the caller owns and may still change.

    Raises:
        ReminderNotFoundError: If no reminder has this id
        PermissionDeniedError: If the reminder belongs to another user
        InvalidTransitionError: If the reminder was already sent or cancelled
    """
    reminder = await reminder_store.find_by_id(reminder_id)
    if reminder is None:
        raise ReminderNotFoundError("Reminder not found.")

    if reminder.user_id != context.user_id:
        logger.warning(f"User {context.user_id} attempted to modify reminder {reminder_id} they do not own")
        raise PermissionDeniedError("You do not have permission to modify this reminder.")

    if not reminder.is_pending:
        raise InvalidTransitionError(f"This reminder was already {reminder.status.value} and can no longer be changed.")

    return reminder


def create_update_reminder_tool(reminder_store: ReminderStore) -> ToolDefinition:
    async def update_reminder_handler(params: UpdateReminderInput, context: ToolContext) -> str:
        logger.info(f"Updating reminder: {params.reminder_id}")
        await load_owned_pending(reminder_store, params.reminder_id, context)

        changes = params.model_dump(exclude={"reminder_id"}, exclude_none=True)
        if not changes:
            raise ToolInputError("No changes provided. Give a new title, description, or scheduled_for.")
        if "scheduled_for" in changes:
            changes["scheduled_for"] = ensure_utc(changes["scheduled_for"])
        if changes.get("description") == "":
            changes["description"] = None

        updated = await reminder_store.update(params.reminder_id, changes, expected_status=ReminderStatus.PENDING)
        if updated is None:
            # Sent or cancelled between the ownership check and the write
            raise InvalidTransitionError("This reminder is no longer pending and can no longer be changed.")

        return success("Reminder updated successfully!", reminder=updated.summary())

    return ToolDefinition(
        name="update_reminder",
        description=UPDATE_DESCRIPTION,
        input_schema_class=UpdateReminderInput,
        handler=update_reminder_handler,
    )


def create_delete_reminder_tool(reminder_store: ReminderStore) -> ToolDefinition:
    async def delete_reminder_handler(params: DeleteReminderInput, context: ToolContext) -> str:
        logger.info(f"Cancelling reminder: {params.reminder_id}")
        reminder = await load_owned_pending(reminder_store, params.reminder_id, context)

        cancelled = await reminder_store.update_status(params.reminder_id, ReminderStatus.CANCELLED)
        if cancelled is None:
            raise InvalidTransitionError("This reminder is no longer pending and can no longer be cancelled.")

        return success(f'Reminder "{reminder.title}" has been cancelled.', reminder_id=cancelled.id)

    return ToolDefinition(
        name="delete_reminder",
        description=DELETE_DESCRIPTION,
        input_schema_class=DeleteReminderInput,
        handler=delete_reminder_handler,
    )
