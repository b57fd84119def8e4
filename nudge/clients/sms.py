"""SMS notification channels."""

import base64
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import telnyx
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from nudge.errors import WebhookSignatureError
from nudge.utils.logging import get_logger, preview

logger = get_logger(__name__)


@dataclass
class SendResult:
    """Outcome of a single outbound message."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationChannel(Protocol):
    """Interface for delivering text messages to a phone number."""

    async def send(self, phone_number: str, text: str) -> SendResult:
        """Send ``text`` to ``phone_number``; failures are reported, not raised."""
        ...


class TelnyxNotificationChannel:
    """Send SMS through the Telnyx messaging API."""

    def __init__(self, api_key: str, from_number: str, client: telnyx.AsyncTelnyx | None = None):
        self.from_number = from_number
        self.client = client or telnyx.AsyncTelnyx(api_key=api_key)
        logger.info("Telnyx notification channel initialized")

    async def send(self, phone_number: str, text: str) -> SendResult:
        logger.info(f"Sending SMS to {phone_number}: {preview(text)}")
        try:
            response = await self.client.messages.send(from_=self.from_number, to=phone_number, text=text)
        except telnyx.APIError as e:
            logger.error(f"Failed to send SMS to {phone_number}: {e}")
            return SendResult(success=False, error=str(e))

        message_id = getattr(response.data, "id", None) if response.data else None
        logger.info(f"SMS sent successfully. ID: {message_id}")
        return SendResult(success=True, message_id=message_id)


class LoggingNotificationChannel:
    """Development channel that only logs outbound messages."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number: str, text: str) -> SendResult:
        logger.info(f"[SMS] DEV mode: would send to {phone_number}: {preview(text)}")
        self.sent.append((phone_number, text))
        return SendResult(success=True)


def verify_webhook_signature(
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    public_key: str,
    now: datetime,
    tolerance_seconds: int = 300,
) -> None:
    """Check a Telnyx webhook against its ed25519 signature.

    Telnyx signs ``"{timestamp}|{body}"`` and sends the base64 signature in the
    ``telnyx-signature-ed25519`` header and the Unix timestamp in
    ``telnyx-timestamp``.

    Raises:
        WebhookSignatureError: If a header is missing, the timestamp is outside
            the tolerance, or the signature does not verify
    """
    if not signature or not timestamp:
        raise WebhookSignatureError("Missing Telnyx signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError as e:
        raise WebhookSignatureError("Invalid Telnyx timestamp") from e

    if abs(now.timestamp() - sent_at) > tolerance_seconds:
        raise WebhookSignatureError("Telnyx timestamp outside the allowed tolerance")

    try:
        verify_key = VerifyKey(base64.b64decode(public_key))
        verify_key.verify(timestamp.encode() + b"|" + raw_body, base64.b64decode(signature))
    except (BadSignatureError, ValueError) as e:
        raise WebhookSignatureError("Telnyx signature does not verify") from e
