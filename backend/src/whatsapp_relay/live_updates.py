from __future__ import annotations

import asyncio
import json
import logging
from threading import Lock
from typing import AsyncIterator, Awaitable, Callable

from .conversations import MessageRecord

logger = logging.getLogger(__name__)

MessageListener = Callable[[MessageRecord], None]


class LiveUpdateChannel:
    """In-process fan-out of message updates, keyed by conversation id.

    Delivery is best-effort: each publish reaches the listeners registered at
    that moment, at most once each, and is dropped when nobody is listening.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: dict[str, list[MessageListener]] = {}

    def subscribe(self, conversation_id: str, listener: MessageListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(conversation_id, []).append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(conversation_id, listener)

        return _unsubscribe

    def unsubscribe(self, conversation_id: str, listener: MessageListener) -> None:
        with self._lock:
            listeners = self._listeners.get(conversation_id)
            if not listeners:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                del self._listeners[conversation_id]

    def listener_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(conversation_id, ()))

    def publish(self, conversation_id: str, message: MessageRecord) -> int:
        with self._lock:
            snapshot = tuple(self._listeners.get(conversation_id, ()))
        delivered = 0
        for listener in snapshot:
            try:
                listener(message)
            except Exception:
                logger.exception("live update listener failed for conversation %s", conversation_id)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


def message_event_payload(message: MessageRecord) -> dict[str, object]:
    return {
        "id": message.message_id,
        "providerMessageId": message.provider_message_id,
        "conversationId": message.conversation_id,
        "content": message.content,
        "messageType": message.message_type,
        "timestamp": message.timestamp.isoformat().replace("+00:00", "Z"),
        "sender": message.sender,
        "status": message.status,
        "recipientId": message.recipient_id,
        "contactPhoneNumber": message.contact_phone_number,
    }


def format_sse_event(message: MessageRecord) -> str:
    return f"data: {json.dumps(message_event_payload(message), separators=(',', ':'))}\n\n"


async def sse_message_stream(
    channel: LiveUpdateChannel,
    conversation_id: str,
    *,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield Server-Sent Events for one conversation until the client goes away.

    Publishes may happen on worker threads, so the listener hands messages to
    the event loop with ``call_soon_threadsafe``.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[MessageRecord] = asyncio.Queue()

    def _listener(message: MessageRecord) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    unsubscribe = channel.subscribe(conversation_id, _listener)
    try:
        yield ": connected\n\n"
        while not await is_disconnected():
            try:
                message = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse_event(message)
    finally:
        unsubscribe()
