from __future__ import annotations

import logging
from datetime import datetime
from threading import Lock

from .conversations import (
    ConversationRecord,
    DuplicateMessageError,
    MessageRecord,
    MessageStore,
)
from .dedup import DEDUP_WINDOW, is_duplicate
from .live_updates import LiveUpdateChannel
from .models import MessageStatus
from .status import can_transition

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


class ConversationLedger:
    """Single owner of stored messages.

    Duplicate checks and inserts for one conversation run under that
    conversation's lock stripe, so two concurrent deliveries of the same message can
    never both be stored. Reads come back ordered by ``(timestamp, id)``
    regardless of arrival order.
    """

    def __init__(self, *, store: MessageStore, channel: LiveUpdateChannel | None = None) -> None:
        self._store = store
        self._channel = channel
        # Conversations share a fixed set of locks so the set never grows.
        self._locks: tuple[Lock, ...] = tuple(Lock() for _ in range(_LOCK_STRIPES))

    def _lock_for(self, conversation_id: str) -> Lock:
        return self._locks[hash(conversation_id) % len(self._locks)]

    def _publish(self, message: MessageRecord) -> None:
        if self._channel is not None:
            self._channel.publish(message.conversation_id, message)

    def append(self, candidate: MessageRecord, *, contact_name: str | None = None) -> MessageRecord | None:
        if not candidate.conversation_id:
            raise ValueError("conversation_id is required to append a message")

        with self._lock_for(candidate.conversation_id):
            existing = self._store.find_similar_messages(
                candidate.conversation_id,
                provider_message_id=candidate.provider_message_id,
                content=candidate.content,
                window_start=candidate.timestamp - DEDUP_WINDOW,
                window_end=candidate.timestamp + DEDUP_WINDOW,
            )
            if is_duplicate(candidate, existing):
                logger.info(
                    "duplicate message skipped conversation=%s provider_message_id=%s",
                    candidate.conversation_id,
                    candidate.provider_message_id,
                )
                return None
            try:
                stored = self._store.insert_message(candidate, contact_name=contact_name)
            except DuplicateMessageError:
                logger.info(
                    "duplicate message rejected by store conversation=%s message_id=%s",
                    candidate.conversation_id,
                    candidate.message_id,
                )
                return None

        self._publish(stored)
        return stored

    def _resolve(self, message_ref: str) -> MessageRecord | None:
        message = self._store.get_message(message_ref)
        if message is None:
            message = self._store.find_by_provider_message_id(message_ref)
        return message

    def update_status(
        self,
        message_ref: str,
        status: MessageStatus,
        *,
        provider_message_id: str | None = None,
    ) -> bool:
        """Apply a status transition to the message with this local or provider id.

        Returns False for unknown messages and for transitions the state
        machine does not allow; neither case is an error.
        """
        located = self._resolve(message_ref)
        if located is None:
            logger.info("status %s for unknown message %s ignored", status, message_ref)
            return False

        with self._lock_for(located.conversation_id):
            current = self._store.get_message(located.message_id)
            if current is None:
                return False
            if not can_transition(current.status, status):
                logger.debug(
                    "status transition ignored message_id=%s current=%s requested=%s",
                    current.message_id,
                    current.status,
                    status,
                )
                return False
            try:
                updated = self._store.update_message(
                    current.message_id,
                    status=status,
                    provider_message_id=provider_message_id,
                )
            except DuplicateMessageError:
                logger.warning(
                    "provider message id %s already belongs to another message; status not applied to %s",
                    provider_message_id,
                    current.message_id,
                )
                return False

        self._publish(updated)
        return True

    def get_message(self, message_id: str) -> MessageRecord | None:
        return self._store.get_message(message_id)

    def get_messages(
        self,
        conversation_id: str,
        *,
        after: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        return self._store.list_messages(conversation_id, after=after, limit=limit)

    def list_conversations(self, *, limit: int = 50) -> list[ConversationRecord]:
        return self._store.list_conversations(limit=limit)

    def mark_conversation_read(self, conversation_id: str) -> ConversationRecord | None:
        return self._store.mark_conversation_read(conversation_id)

    def clear(self) -> None:
        self._store.reset()
