from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from threading import Lock

from .conversations import LedgerUnavailableError, MessageRecord, retry_idempotent
from .ledger import ConversationLedger
from .models import MessageStatus
from .normalizer import build_message, local_message_id
from .phones import conversation_id_for
from .whatsapp import ProviderSendResult, WhatsAppSender, mask_phone_number

logger = logging.getLogger(__name__)


class DuplicateSendError(Exception):
    """Raised when an outbound message repeats one just recorded."""


class OutboundSendTracker:
    """Record a local send as ``pending`` and deliver it in the background.

    The pending message is visible in the ledger before the provider is
    called. The provider result moves it to ``sent``/``delivered`` or
    ``failed``; a failed send is retried by sending a new message.
    """

    def __init__(
        self,
        *,
        ledger: ConversationLedger,
        sender: WhatsAppSender,
        max_workers: int = 4,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="wa-send")
        self._inflight_lock = Lock()
        self._inflight: dict[str, Future[None]] = {}

    def send(self, phone_number: str, text: str) -> MessageRecord:
        conversation_id = conversation_id_for(phone_number)
        now = datetime.now(timezone.utc)
        pending = build_message(
            message_id=local_message_id(),
            conversation_id=conversation_id,
            content=text,
            message_type="text",
            timestamp=now,
            sender="user",
            status="pending",
            provider_message_id=None,
            now=now,
        )
        stored = self._ledger.append(pending)
        if stored is None:
            # Local ids are unique, so only an identical send within the dedup window lands here.
            raise DuplicateSendError(conversation_id)

        future = self._executor.submit(self._deliver, stored)
        with self._inflight_lock:
            self._inflight[stored.message_id] = future
        future.add_done_callback(lambda done: self._forget(stored.message_id, done))
        return stored

    def _forget(self, message_id: str, future: Future[None]) -> None:
        with self._inflight_lock:
            self._inflight.pop(message_id, None)
        exc = None if future.cancelled() else future.exception()
        if exc is not None:
            logger.error("background send for message %s raised", message_id, exc_info=exc)

    def _deliver(self, message: MessageRecord) -> None:
        try:
            result = self._sender.send_text(message.conversation_id, message.content)
        except Exception as exc:
            logger.exception(
                "provider send raised for message %s to %s",
                message.message_id,
                mask_phone_number(message.conversation_id),
            )
            result = ProviderSendResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="sender_exception",
                error_message=str(exc),
            )
        self._record_result(message, result)

    def _record_result(self, message: MessageRecord, result: ProviderSendResult) -> None:
        if result.status == "failed":
            logger.warning(
                "send failed for message %s to %s: %s %s",
                message.message_id,
                mask_phone_number(message.conversation_id),
                result.error_code,
                result.error_message,
            )
            self._write_status(message, "failed")
            return

        applied = self._write_status(message, result.status, provider_message_id=result.provider_message_id)
        logger.info(
            "send %s for message %s provider_message_id=%s applied=%s",
            result.status,
            message.message_id,
            result.provider_message_id,
            applied,
        )

    def _write_status(
        self,
        message: MessageRecord,
        status: MessageStatus,
        *,
        provider_message_id: str | None = None,
    ) -> bool:
        # Status updates are monotonic, so a repeated write is harmless.
        try:
            return retry_idempotent(
                lambda: self._ledger.update_status(
                    message.message_id,
                    status,
                    provider_message_id=provider_message_id,
                )
            )
        except LedgerUnavailableError:
            logger.exception("could not record %s for message %s", status, message.message_id)
            return False

    def inflight_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight sends; returns False if some are still running."""
        with self._inflight_lock:
            pending = list(self._inflight.values())
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
