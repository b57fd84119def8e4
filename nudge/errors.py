"""Domain exceptions."""


class NudgeError(Exception):
    """Base class for errors raised by the reminder assistant."""

    code = "internal_error"


class ConversationNotFoundError(NudgeError):
    """Conversation does not exist or does not belong to the caller."""

    code = "not_found"


class ReminderNotFoundError(NudgeError):
    """Reminder does not exist."""

    code = "not_found"


class PermissionDeniedError(NudgeError):
    """Caller does not own the target record."""

    code = "permission_denied"


class InvalidTransitionError(NudgeError):
    """Requested status change is not a legal reminder transition."""

    code = "invalid_state"


class MessageTooLongError(ValueError):
    """Inbound user message exceeds the configured size."""


class CompletionError(NudgeError):
    """The completion provider failed to produce a response."""

    code = "completion_error"


class ToolInputError(NudgeError):
    """Tool arguments are well-formed but cannot be acted on."""

    code = "validation_error"


class WebhookSignatureError(NudgeError):
    """Inbound webhook signature is missing, stale or does not verify."""

    code = "bad_signature"
