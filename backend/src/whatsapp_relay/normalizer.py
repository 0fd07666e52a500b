"""Turn raw provider message objects into canonical message records.

Everything here is a pure function of its inputs; callers that need a
deterministic clock pass ``now`` explicitly.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping
from uuid import uuid4

from .conversations import MessageRecord
from .models import MessageSender, MessageStatus
from .phones import conversation_id_for

MILLISECONDS_THRESHOLD = 9_999_999_999

_DIGITS_ONLY = re.compile(r"^[0-9]+$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch_number(value: float) -> datetime | None:
    try:
        if not math.isfinite(value):
            return None
        millis = value if value > MILLISECONDS_THRESHOLD else value * 1000
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_date_text(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00") if text.endswith("Z") else text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider timestamp, returning ``None`` when it is not a valid instant.

    Numbers above 9,999,999,999 are epoch milliseconds, anything at or below it is
    epoch seconds. Digit-only strings follow the same rule; other strings go
    through ISO-8601 and then RFC 2822 parsing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch_number(value)
    if isinstance(value, str):
        stripped = value.strip()
        if _DIGITS_ONLY.match(stripped):
            try:
                number = int(stripped)
            except ValueError:
                # Past the interpreter's int-string digit limit.
                return None
            return _from_epoch_number(number)
        return _parse_date_text(stripped)
    return None


def coerce_timestamp(value: Any, *, now: datetime | None = None) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is not None:
        return parsed
    return now or _now_utc()


def classify_message(raw: Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(message_type, content)`` for a raw provider message."""
    message_type = str(raw.get("type") or "").strip().lower()
    text = raw.get("text")
    if not message_type and isinstance(text, Mapping):
        message_type = "text"

    def _payload(key: str) -> Mapping[str, Any]:
        value = raw.get(key)
        return value if isinstance(value, Mapping) else {}

    if message_type == "text":
        body = _payload("text").get("body")
        return "text", str(body) if body is not None else ""
    if message_type == "image":
        caption = _payload("image").get("caption")
        return "image", str(caption) if caption else "Sent an image"
    if message_type == "audio":
        return "audio", "Sent an audio message"
    if message_type == "video":
        caption = _payload("video").get("caption")
        return "video", str(caption) if caption else "Sent a video"
    if message_type == "document":
        filename = _payload("document").get("filename")
        return "document", f"Sent attachment: {filename}" if filename else "Sent a document"
    if not message_type:
        return "unknown", "Unsupported message type: unknown"
    return message_type, f"Unsupported message type: {message_type}"


def provider_message_key(arrival: datetime, provider_message_id: str | None) -> str:
    arrival_ms = int(arrival.timestamp() * 1000)
    if provider_message_id:
        return f"{arrival_ms}_{provider_message_id}"
    return f"{arrival_ms}_generated_{uuid4().hex[:12]}"


def local_message_id() -> str:
    return f"msg_{uuid4().hex}"


def build_message(
    *,
    message_id: str,
    conversation_id: str,
    content: str,
    message_type: str,
    timestamp: datetime,
    sender: MessageSender,
    status: MessageStatus,
    provider_message_id: str | None,
    now: datetime | None = None,
) -> MessageRecord:
    created_at = now or _now_utc()
    return MessageRecord(
        message_id=message_id,
        conversation_id=conversation_id,
        content=content,
        message_type=message_type,
        timestamp=timestamp,
        sender=sender,
        status=status,
        recipient_id=conversation_id,
        contact_phone_number=conversation_id,
        provider_message_id=provider_message_id,
        created_at=created_at,
        updated_at=created_at,
    )


def normalize_inbound(
    raw: Mapping[str, Any],
    *,
    phone_number: str | None = None,
    now: datetime | None = None,
) -> MessageRecord:
    """Normalize one entry of a webhook ``value.messages`` array."""
    arrival = now or _now_utc()
    owner = phone_number or str(raw.get("from") or "")
    conversation_id = conversation_id_for(owner)

    provider_message_id = str(raw.get("id") or "").strip() or None
    message_type, content = classify_message(raw)
    return build_message(
        message_id=provider_message_key(arrival, provider_message_id),
        conversation_id=conversation_id,
        content=content,
        message_type=message_type,
        timestamp=coerce_timestamp(raw.get("timestamp"), now=arrival),
        sender="contact",
        status="delivered",
        provider_message_id=provider_message_id,
        now=arrival,
    )
