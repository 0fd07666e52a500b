from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

from whatsapp_relay.conversations import InMemoryMessageStore
from whatsapp_relay.ingestion import WebhookIngestor
from whatsapp_relay.ledger import ConversationLedger
from whatsapp_relay.reconciler import StatusReconciler

ARRIVAL = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def _ingestor(*, sender: object = None, mark_read_enabled: bool = False) -> tuple[WebhookIngestor, ConversationLedger]:
    ledger = ConversationLedger(store=InMemoryMessageStore())
    ingestor = WebhookIngestor(
        ledger=ledger,
        reconciler=StatusReconciler(ledger=ledger),
        sender=sender,  # type: ignore[arg-type]
        mark_read_enabled=mark_read_enabled,
    )
    return ingestor, ledger


def _payload(messages: list[dict[str, object]], statuses: list[dict[str, object]] | None = None) -> dict[str, object]:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-001",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "contacts": [{"profile": {"name": "Grace"}, "wa_id": "15550001111"}],
                            "messages": messages,
                            "statuses": statuses or [],
                        },
                    }
                ],
            }
        ],
    }


def test_summary_counts_each_outcome() -> None:
    ingestor, ledger = _ingestor()
    payload = _payload(
        [
            {"from": "15550001111", "id": "wamid.1", "timestamp": "1700000000", "type": "text", "text": {"body": "a"}},
            {"from": "15550001111", "id": "wamid.1", "timestamp": "1700000000", "type": "text", "text": {"body": "a"}},
            {"id": "wamid.2", "type": "text", "text": {"body": "no sender"}},
        ],
        statuses=[{"id": "wamid.1", "status": "read"}, {"id": "wamid.404", "status": "read"}, {"status": "sent"}],
    )

    summary = ingestor.ingest(payload, now=ARRIVAL)

    assert summary.ignored is False
    assert summary.stored == 1
    assert summary.duplicates == 1
    assert summary.statuses_applied == 1
    assert summary.statuses_ignored == 1
    assert summary.errors == 2
    assert ledger.list_conversations()[0].contact_name == "Grace"


def test_inbound_id_combines_arrival_and_provider_id() -> None:
    ingestor, ledger = _ingestor()
    ingestor.ingest(
        _payload([{"from": "15550001111", "id": "wamid.1", "timestamp": "1700000000", "type": "text", "text": {"body": "a"}}]),
        now=ARRIVAL,
    )

    stored = ledger.get_messages("+15550001111")[0]
    assert stored.message_id == f"{int(ARRIVAL.timestamp() * 1000)}_wamid.1"


def test_other_objects_are_ignored() -> None:
    ingestor, _ = _ingestor()
    summary = ingestor.ingest({"object": "instagram", "entry": []})
    assert summary.ignored is True
    assert summary.stored == 0


def test_mark_read_failures_do_not_block_storage() -> None:
    sender = MagicMock()
    sender.mark_as_read.side_effect = RuntimeError("provider down")
    ingestor, ledger = _ingestor(sender=sender, mark_read_enabled=True)

    summary = ingestor.ingest(
        _payload([{"from": "15550001111", "id": "wamid.1", "timestamp": "1700000000", "type": "text", "text": {"body": "a"}}]),
        now=ARRIVAL,
    )

    assert summary.stored == 1
    assert summary.errors == 0
    sender.mark_as_read.assert_called_once_with("wamid.1")
    assert len(ledger.get_messages("+15550001111")) == 1
