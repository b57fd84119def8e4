"""API endpoints for the reminder assistant."""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, StreamingResponse

from nudge import __version__
from nudge.clients.sms import verify_webhook_signature
from nudge.container import Container
from nudge.errors import CompletionError, ConversationNotFoundError, WebhookSignatureError
from nudge.models.api import (
    ChatRequest,
    ConversationDetail,
    ConversationResponse,
    ConversationSummary,
    CreateConversationRequest,
    HealthResponse,
    ReminderResponse,
    SchedulerStatusResponse,
)
from nudge.models.events import SSE_DONE, to_sse
from nudge.models.reminder import ReminderStatus
from nudge.utils.logging import get_logger, preview
from nudge.utils.phone import format_phone_number, is_e164

logger = get_logger(__name__)

router = APIRouter()

APOLOGY = "I apologize, but I'm experiencing technical difficulties. Please try again."


def get_container(request: Request) -> Container:
    """Handles built by the application factory."""
    return request.app.state.container


# ──────────────────────────────────────────────────────────────────────
# Chat
# ──────────────────────────────────────────────────────────────────────
@router.post("/chat", tags=["Conversation"])
async def chat_stream(request: ChatRequest, container: Container = Depends(get_container)) -> StreamingResponse:
    """Stream agent events for one message as text/event-stream.

    Each frame is ``data: {"type": ..., "data": ...}``; the stream ends with
    ``data: [DONE]``. Failures arrive as an ``error`` event.
    """
    logger.info(f"Streaming chat for user {request.user_id}: {preview(request.message)}")

    async def event_stream() -> AsyncIterator[str]:
        async for event in container.agent.stream_events(
            request.user_id,
            request.message,
            phone_number=request.phone_number,
            conversation_id=request.conversation_id,
            timeout=container.settings.agent_timeout_seconds,
        ):
            yield to_sse(event)
        yield SSE_DONE

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/conversation", response_model=ConversationResponse, tags=["Conversation"])
async def handle_conversation(
    request: ChatRequest,
    container: Container = Depends(get_container),
) -> ConversationResponse:
    """Handle a message and return the final reply without streaming."""
    try:
        result = await container.agent.process_message(
            request.user_id,
            request.message,
            phone_number=request.phone_number,
            conversation_id=request.conversation_id,
            timeout=container.settings.agent_timeout_seconds,
        )
    except ConversationNotFoundError as e:
        logger.warning(f"Conversation lookup failed for user {request.user_id}: {e}")
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        logger.warning(f"Message validation error for user {request.user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (CompletionError, TimeoutError) as e:
        logger.error(f"Completion failed for user {request.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=APOLOGY) from e
    except Exception as e:
        logger.error(f"Conversation processing error for user {request.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=APOLOGY) from e

    logger.info(f"Generated response for conversation {result.conversation_id}: {preview(result.response)}")
    return ConversationResponse(response=result.response, conversation_id=result.conversation_id)


# ──────────────────────────────────────────────────────────────────────
# SMS
# ──────────────────────────────────────────────────────────────────────
async def reply_to_sms(container: Container, phone_number: str, text: str) -> None:
    """Run the agent for an inbound SMS and text the reply back."""
    try:
        result = await container.agent.process_message(
            phone_number,
            text,
            phone_number=phone_number,
            timeout=container.settings.agent_timeout_seconds,
        )
        reply = result.response
    except ValueError as e:
        reply = str(e)
    except Exception as e:
        logger.error(f"Failed to process SMS from {phone_number}: {e}", exc_info=True)
        reply = APOLOGY

    if not reply:
        logger.warning(f"No reply generated for SMS from {phone_number}")
        return

    send_result = await container.channel.send(phone_number, reply)
    if not send_result.success:
        logger.error(f"Failed to deliver SMS reply to {phone_number}: {send_result.error}")


@router.post("/sms/webhook", response_class=PlainTextResponse, tags=["SMS"])
async def sms_webhook(
    request: Request,
    background: BackgroundTasks,
    container: Container = Depends(get_container),
) -> PlainTextResponse:
    """Accept an inbound Telnyx message webhook.

    The reply is produced and sent in the background so Telnyx gets its
    acknowledgement immediately. When a Telnyx public key is configured the
    ed25519 signature is checked before the body is read.
    """
    raw_body = await request.body()
    public_key = container.settings.telnyx_public_key
    if public_key:
        try:
            verify_webhook_signature(
                raw_body,
                request.headers.get("telnyx-signature-ed25519"),
                request.headers.get("telnyx-timestamp"),
                public_key,
                container.clock(),
                container.settings.telnyx_webhook_tolerance_seconds,
            )
        except WebhookSignatureError as e:
            logger.warning(f"Rejected Telnyx webhook: {e}")
            raise HTTPException(status_code=400, detail="Bad signature") from e

    try:
        body = json.loads(raw_body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    data: dict[str, Any] = (body.get("data") or {}) if isinstance(body, dict) else {}
    payload: dict[str, Any] = data.get("payload") or {}

    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    event_type = data.get("event_type")
    if event_type and event_type != "message.received":
        logger.debug(f"Ignoring Telnyx event: {event_type}")
        return PlainTextResponse("IGNORED")

    sender = payload.get("from") or {}
    from_number = sender.get("phone_number")
    text = (payload.get("text") or "").strip()

    if not from_number or not text:
        return PlainTextResponse("IGNORED")

    phone_number = format_phone_number(from_number)
    if not is_e164(phone_number):
        logger.warning(f"Ignoring SMS from unparseable number: {from_number}")
        return PlainTextResponse("IGNORED")

    logger.info(f"Inbound SMS from {phone_number}: {preview(text)}")
    background.add_task(reply_to_sms, container, phone_number, text)
    return PlainTextResponse("OK")


# ──────────────────────────────────────────────────────────────────────
# Conversations and reminders
# ──────────────────────────────────────────────────────────────────────
@router.post(
    "/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
    tags=["Conversation"],
)
async def create_conversation(
    request: CreateConversationRequest,
    container: Container = Depends(get_container),
) -> ConversationSummary:
    conversation = await container.agent.create_conversation(request.user_id, request.phone_number)
    return ConversationSummary.from_conversation(conversation)


@router.get("/conversations", response_model=list[ConversationSummary], tags=["Conversation"])
async def list_conversations(
    user_id: str = Query(..., min_length=1),
    container: Container = Depends(get_container),
) -> list[ConversationSummary]:
    """A user's conversations, most recently active first."""
    conversations = await container.agent.get_user_conversations(user_id)
    return [ConversationSummary.from_conversation(c) for c in conversations]


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail, tags=["Conversation"])
async def get_conversation(
    conversation_id: str,
    user_id: str = Query(..., min_length=1),
    container: Container = Depends(get_container),
) -> ConversationDetail:
    try:
        conversation = await container.agent.get_conversation(conversation_id, user_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return ConversationDetail.from_conversation(conversation)


@router.get("/reminders", response_model=list[ReminderResponse], tags=["Reminders"])
async def list_reminders(
    user_id: str = Query(..., min_length=1),
    status_filter: ReminderStatus | None = Query(default=None, alias="status"),
    container: Container = Depends(get_container),
) -> list[ReminderResponse]:
    """A user's reminders, soonest first."""
    reminders = await container.reminder_store.find_many(user_id=user_id, status=status_filter)
    return [ReminderResponse.from_reminder(r) for r in reminders]


# ──────────────────────────────────────────────────────────────────────
# Scheduler and health
# ──────────────────────────────────────────────────────────────────────
@router.get("/scheduler/status", response_model=SchedulerStatusResponse, tags=["Scheduler"])
async def scheduler_status(container: Container = Depends(get_container)) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(**container.scheduler.get_status())


@router.post("/scheduler/trigger", tags=["Scheduler"])
async def trigger_scheduler(container: Container = Depends(get_container)) -> dict[str, Any]:
    """Run one delivery pass now."""
    result = await container.scheduler.trigger_check()
    return result.as_dict()


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
