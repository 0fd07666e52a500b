from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, StreamingResponse

from .conversations import ConversationRecord, LedgerUnavailableError, MessageRecord, retry_idempotent
from .live_updates import sse_message_stream
from .models import (
    ConversationItem,
    ConversationListResponse,
    ConversationReadResponse,
    MessageItem,
    MessageListResponse,
    MessageStoreRequest,
    MessageStoreResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from .normalizer import build_message, coerce_timestamp, parse_timestamp, provider_message_key
from .outbound import DuplicateSendError
from .phones import conversation_id_for
from .runtime import Runtime
from .webhook_security import verify_meta_signature, verify_subscription

logger = logging.getLogger(__name__)

EVENT_RECEIVED = "EVENT_RECEIVED"
STORE_UNAVAILABLE = "Message store unavailable"

router = APIRouter(tags=["whatsapp"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime  # type: ignore[no-any-return]


def _message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        id=record.message_id,
        provider_message_id=record.provider_message_id,
        conversation_id=record.conversation_id,
        content=record.content,
        message_type=record.message_type,
        timestamp=record.timestamp,
        sender=record.sender,
        status=record.status,
        recipient_id=record.recipient_id,
        contact_phone_number=record.contact_phone_number,
    )


def _conversation_item(record: ConversationRecord) -> ConversationItem:
    return ConversationItem(
        conversation_id=record.conversation_id,
        phone_number=record.phone_number,
        contact_name=record.contact_name,
        last_message=record.last_message,
        last_message_at=record.last_message_at,
        unread_count=record.unread_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _require_conversation_id(phone_number: str | None, conversation_id: str | None) -> str:
    raw = (conversation_id or "").strip() or (phone_number or "").strip()
    if not raw:
        raise HTTPException(400, "Valid conversation ID or phone number is required")
    try:
        return conversation_id_for(raw)
    except ValueError as exc:
        raise HTTPException(400, "Valid conversation ID or phone number is required") from exc


def _effective_limit(limit: int | None, *, default: int, maximum: int) -> int:
    if limit is None:
        return min(default, maximum)
    if limit < 1:
        raise HTTPException(400, "limit must be a positive integer")
    return min(limit, maximum)


@router.get("/webhook")
def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    runtime: Runtime = Depends(get_runtime),
) -> Response:
    challenge = verify_subscription(
        mode=hub_mode,
        token=hub_verify_token,
        challenge=hub_challenge,
        expected_token=runtime.settings.whatsapp_verify_token,
    )
    if challenge is None:
        logger.warning("webhook verification refused mode=%r", hub_mode)
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
    logger.info("webhook verified")
    return PlainTextResponse(challenge)


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_webhook(request: Request, runtime: Runtime = Depends(get_runtime)) -> PlainTextResponse:
    body = await request.body()
    verification = verify_meta_signature(settings=runtime.settings, body=body, headers=request.headers)
    if not verification.verified:
        if runtime.settings.webhook_signature_mode == "enforce":
            logger.warning("dropping webhook with invalid signature: %s", verification.reason)
            return PlainTextResponse(EVENT_RECEIVED)
        logger.warning("webhook signature check failed (log_only): %s", verification.reason)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("webhook body is not valid JSON; acknowledged and ignored")
        return PlainTextResponse(EVENT_RECEIVED)
    if not isinstance(payload, dict):
        logger.warning("webhook body is not a JSON object; acknowledged and ignored")
        return PlainTextResponse(EVENT_RECEIVED)

    try:
        await run_in_threadpool(runtime.ingestor.ingest, payload)
    except Exception:
        # The provider retries anything but a 200, so failures stay in the logs.
        logger.exception("webhook ingestion failed")
    return PlainTextResponse(EVENT_RECEIVED)


@router.get("/messages", response_model=MessageListResponse)
def list_messages(
    phone_number: str | None = Query(default=None, alias="phoneNumber"),
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    after_timestamp: str | None = Query(default=None, alias="afterTimestamp"),
    limit: int | None = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> MessageListResponse:
    target = _require_conversation_id(phone_number, conversation_id)
    effective_limit = _effective_limit(
        limit,
        default=runtime.settings.message_read_limit_default,
        maximum=runtime.settings.message_read_limit_max,
    )
    after: datetime | None = None
    if after_timestamp is not None and after_timestamp.strip():
        after = parse_timestamp(after_timestamp.strip())
        if after is None:
            raise HTTPException(400, "afterTimestamp is not a valid timestamp")

    try:
        records = retry_idempotent(
            lambda: runtime.ledger.get_messages(target, after=after, limit=effective_limit)
        )
    except LedgerUnavailableError as exc:
        logger.error("message read failed for %s: %s", target, exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc

    items = [_message_item(record) for record in records]
    return MessageListResponse(messages=items, count=len(items))


@router.post("/messages", response_model=MessageStoreResponse)
def store_message(payload: MessageStoreRequest, runtime: Runtime = Depends(get_runtime)) -> MessageStoreResponse:
    now = datetime.now(timezone.utc)
    incoming = payload.message
    body_text = incoming.text.body if incoming.text is not None else ""
    message_type = (incoming.type or "text").strip().lower() or "text"
    record = build_message(
        message_id=provider_message_key(now, incoming.id),
        conversation_id=conversation_id_for(payload.phone_number),
        content=body_text or incoming.content or "",
        message_type=message_type,
        timestamp=coerce_timestamp(incoming.timestamp, now=now),
        sender="user" if incoming.from_ == "user" else "contact",
        status=incoming.status or "delivered",
        provider_message_id=incoming.id,
        now=now,
    )

    try:
        stored = runtime.ledger.append(record)
    except LedgerUnavailableError as exc:
        logger.error("message store failed for %s: %s", record.conversation_id, exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc
    if stored is None:
        raise HTTPException(409, "Duplicate message")
    return MessageStoreResponse(message=_message_item(stored))


@router.put("/messages/status", response_model=StatusUpdateResponse)
def update_message_status(
    payload: StatusUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> StatusUpdateResponse:
    try:
        applied = retry_idempotent(lambda: runtime.ledger.update_status(payload.message_id, payload.status))
    except LedgerUnavailableError as exc:
        logger.error("status update failed for %s: %s", payload.message_id, exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc
    return StatusUpdateResponse(success=applied)


@router.get("/messages/stream")
async def stream_messages(
    request: Request,
    phone_number: str | None = Query(default=None, alias="phoneNumber"),
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    runtime: Runtime = Depends(get_runtime),
) -> StreamingResponse:
    target = _require_conversation_id(phone_number, conversation_id)
    return StreamingResponse(
        sse_message_stream(
            runtime.channel,
            target,
            is_disconnected=request.is_disconnected,
            keepalive_seconds=runtime.settings.live_keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/send-message", response_model=SendMessageResponse, status_code=status.HTTP_202_ACCEPTED)
def send_message(payload: SendMessageRequest, runtime: Runtime = Depends(get_runtime)) -> SendMessageResponse:
    try:
        pending = runtime.tracker.send(payload.phone_number, payload.text)
    except DuplicateSendError as exc:
        raise HTTPException(409, "Duplicate message") from exc
    except LedgerUnavailableError as exc:
        logger.error("outbound message could not be recorded: %s", exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc
    return SendMessageResponse(message=_message_item(pending))


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    limit: int | None = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> ConversationListResponse:
    effective_limit = _effective_limit(
        limit,
        default=runtime.settings.conversation_list_limit,
        maximum=runtime.settings.message_read_limit_max,
    )
    try:
        records = retry_idempotent(lambda: runtime.ledger.list_conversations(limit=effective_limit))
    except LedgerUnavailableError as exc:
        logger.error("conversation list failed: %s", exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc
    return ConversationListResponse(conversations=[_conversation_item(record) for record in records])


@router.put("/conversations/{conversation_id}/read", response_model=ConversationReadResponse)
def mark_conversation_read(conversation_id: str, runtime: Runtime = Depends(get_runtime)) -> ConversationReadResponse:
    target = _require_conversation_id(None, conversation_id)
    try:
        record = retry_idempotent(lambda: runtime.ledger.mark_conversation_read(target))
    except LedgerUnavailableError as exc:
        logger.error("mark read failed for %s: %s", target, exc)
        raise HTTPException(500, STORE_UNAVAILABLE) from exc
    if record is None:
        raise HTTPException(404, "Conversation not found")
    return ConversationReadResponse(conversation=_conversation_item(record))


@router.get("/healthz")
def healthz(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    return {
        "status": "ok",
        "store": runtime.settings.message_store_backend,
        "outbound_inflight": runtime.tracker.inflight_count(),
    }
