from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from .conversations import MessageRecord

DEDUP_WINDOW = timedelta(milliseconds=1000)


def is_same_message(candidate: MessageRecord, stored: MessageRecord) -> bool:
    # Provider ids are authoritative when both sides carry one.
    if candidate.provider_message_id and stored.provider_message_id:
        return candidate.provider_message_id == stored.provider_message_id
    return (
        candidate.content == stored.content
        and candidate.contact_phone_number == stored.contact_phone_number
        and abs(candidate.timestamp - stored.timestamp) < DEDUP_WINDOW
    )


def is_duplicate(candidate: MessageRecord, existing: Iterable[MessageRecord]) -> bool:
    """True when ``candidate`` repeats a message already present in ``existing``."""
    return any(is_same_message(candidate, stored) for stored in existing)
