from __future__ import annotations

import logging
from typing import Any, Mapping

from .conversations import retry_idempotent
from .ledger import ConversationLedger
from .status import map_provider_status

logger = logging.getLogger(__name__)


class StatusReconciler:
    """Apply provider delivery receipts to stored messages.

    Receipts arrive at least once and in any order; anything the state machine
    rejects is dropped without raising.
    """

    def __init__(self, *, ledger: ConversationLedger) -> None:
        self._ledger = ledger

    def apply(self, message_ref: str, provider_status: str | None) -> bool:
        target = map_provider_status(provider_status)
        if target is None:
            logger.info("ignoring unknown provider status %r for %s", provider_status, message_ref)
            return False
        applied = retry_idempotent(lambda: self._ledger.update_status(message_ref, target))
        if not applied:
            logger.debug("status %s not applied to %s", target, message_ref)
        return applied

    def apply_event(self, event: Mapping[str, Any]) -> bool:
        """Apply one entry of a webhook ``value.statuses`` array."""
        message_ref = str(event.get("id") or "").strip()
        if not message_ref:
            raise ValueError("status event is missing the message id")
        provider_status = event.get("status")
        if isinstance(provider_status, str) and provider_status.strip().lower() == "failed":
            errors = event.get("errors") or []
            logger.warning("provider reported delivery failure for %s: %s", message_ref, errors)
        return self.apply(message_ref, provider_status if isinstance(provider_status, str) else None)
