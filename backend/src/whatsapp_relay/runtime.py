from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .conversations import MessageStore, create_message_store
from .ingestion import WebhookIngestor
from .ledger import ConversationLedger
from .live_updates import LiveUpdateChannel
from .outbound import OutboundSendTracker
from .reconciler import StatusReconciler
from .whatsapp import HttpWhatsAppSender, StubWhatsAppSender, WhatsAppSender


@dataclass
class Runtime:
    settings: Settings
    store: MessageStore
    channel: LiveUpdateChannel
    ledger: ConversationLedger
    reconciler: StatusReconciler
    sender: WhatsAppSender
    tracker: OutboundSendTracker
    ingestor: WebhookIngestor

    def close(self) -> None:
        self.tracker.shutdown(wait_for_pending=True)
        self.channel.clear()


def create_sender(settings: Settings) -> WhatsAppSender:
    if settings.whatsapp_sender_type == "http":
        return HttpWhatsAppSender(
            base_url=settings.whatsapp_api_base_url,
            api_version=settings.whatsapp_api_version,
            phone_number_id=settings.whatsapp_phone_number_id,
            access_token=settings.whatsapp_access_token,
            timeout_seconds=settings.whatsapp_send_timeout_seconds,
        )
    return StubWhatsAppSender(enabled=True)


def build_runtime(
    settings: Settings,
    *,
    sender: WhatsAppSender | None = None,
    store: MessageStore | None = None,
) -> Runtime:
    """Wire the ledger and its collaborators for one application instance."""
    message_store = store or create_message_store(
        backend=settings.message_store_backend,
        database_url=settings.database_url,
        timeout_seconds=settings.store_timeout_seconds,
    )
    channel = LiveUpdateChannel()
    ledger = ConversationLedger(store=message_store, channel=channel)
    reconciler = StatusReconciler(ledger=ledger)
    provider_sender = sender or create_sender(settings)
    tracker = OutboundSendTracker(
        ledger=ledger,
        sender=provider_sender,
        max_workers=settings.outbound_max_workers,
    )
    ingestor = WebhookIngestor(
        ledger=ledger,
        reconciler=reconciler,
        sender=provider_sender,
        mark_read_enabled=settings.whatsapp_mark_read_enabled,
    )
    return Runtime(
        settings=settings,
        store=message_store,
        channel=channel,
        ledger=ledger,
        reconciler=reconciler,
        sender=provider_sender,
        tracker=tracker,
        ingestor=ingestor,
    )
