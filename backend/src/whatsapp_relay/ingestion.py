from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from .ledger import ConversationLedger
from .normalizer import normalize_inbound
from .reconciler import StatusReconciler
from .whatsapp import WhatsAppSender, mask_phone_number

logger = logging.getLogger(__name__)

BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"
MESSAGES_FIELD = "messages"


@dataclass
class IngestionSummary:
    stored: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
    statuses_ignored: int = 0
    errors: int = 0
    ignored: bool = False


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _message_values(payload: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    for entry in _as_list(payload.get("entry")):
        for change in _as_list(_as_mapping(entry).get("changes")):
            change_map = _as_mapping(change)
            if change_map.get("field") != MESSAGES_FIELD:
                continue
            yield _as_mapping(change_map.get("value"))


def _contact_names(value: Mapping[str, Any]) -> dict[str, str]:
    names: dict[str, str] = {}
    for contact in _as_list(value.get("contacts")):
        contact_map = _as_mapping(contact)
        wa_id = str(contact_map.get("wa_id") or "").strip()
        name = str(_as_mapping(contact_map.get("profile")).get("name") or "").strip()
        if wa_id and name:
            names[wa_id] = name
    return names


class WebhookIngestor:
    """Turn one WhatsApp Business webhook delivery into ledger writes.

    Each message and status in the envelope is handled on its own; a bad unit
    is logged and counted, and the rest of the batch still goes through.
    """

    def __init__(
        self,
        *,
        ledger: ConversationLedger,
        reconciler: StatusReconciler,
        sender: WhatsAppSender | None = None,
        mark_read_enabled: bool = False,
    ) -> None:
        self._ledger = ledger
        self._reconciler = reconciler
        self._sender = sender
        self._mark_read_enabled = mark_read_enabled and sender is not None

    def ingest(self, payload: Mapping[str, Any], *, now: datetime | None = None) -> IngestionSummary:
        summary = IngestionSummary()
        if payload.get("object") != BUSINESS_ACCOUNT_OBJECT:
            logger.info("ignoring webhook for object %r", payload.get("object"))
            summary.ignored = True
            return summary

        arrival = now or datetime.now(timezone.utc)
        for value in _message_values(payload):
            names = _contact_names(value)
            for raw_message in _as_list(value.get("messages")):
                self._ingest_message(_as_mapping(raw_message), names, arrival, summary)
            for raw_status in _as_list(value.get("statuses")):
                self._ingest_status(_as_mapping(raw_status), summary)

        logger.info(
            "webhook processed stored=%s duplicates=%s statuses=%s errors=%s",
            summary.stored,
            summary.duplicates,
            summary.statuses_applied,
            summary.errors,
        )
        return summary

    def _ingest_message(
        self,
        raw: Mapping[str, Any],
        names: Mapping[str, str],
        arrival: datetime,
        summary: IngestionSummary,
    ) -> None:
        sender_phone = str(raw.get("from") or "").strip()
        try:
            message = normalize_inbound(raw, now=arrival)
            stored = self._ledger.append(message, contact_name=names.get(sender_phone))
        except Exception:
            summary.errors += 1
            logger.exception(
                "failed to ingest message %s from %s",
                raw.get("id"),
                mask_phone_number(sender_phone),
            )
            return

        if stored is None:
            summary.duplicates += 1
            return
        summary.stored += 1
        if self._mark_read_enabled and stored.provider_message_id:
            self._mark_read(stored.provider_message_id)

    def _mark_read(self, provider_message_id: str) -> None:
        sender = self._sender
        if sender is None:
            return
        try:
            acknowledged = sender.mark_as_read(provider_message_id)
        except Exception:
            logger.exception("mark-as-read raised for %s", provider_message_id)
            return
        if not acknowledged:
            logger.warning("mark-as-read was not acknowledged for %s", provider_message_id)

    def _ingest_status(self, raw: Mapping[str, Any], summary: IngestionSummary) -> None:
        try:
            applied = self._reconciler.apply_event(raw)
        except Exception:
            summary.errors += 1
            logger.exception("failed to apply status event %s", raw.get("id"))
            return
        if applied:
            summary.statuses_applied += 1
        else:
            summary.statuses_ignored += 1
