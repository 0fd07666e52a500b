from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from whatsapp_relay.conversations import (
    InMemoryMessageStore,
    LedgerUnavailableError,
    MessageRecord,
    MessageStore,
    SqlAlchemyMessageStore,
    create_message_store,
    retry_idempotent,
)
from whatsapp_relay.ledger import ConversationLedger
from whatsapp_relay.live_updates import LiveUpdateChannel
from whatsapp_relay.normalizer import build_message

BASE = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
PHONE = "+15551234567"


def _message(
    message_id: str,
    *,
    content: str = "hi",
    offset_seconds: float = 0,
    provider_message_id: str | None = None,
    sender: str = "contact",
    status: str = "delivered",
    phone: str = PHONE,
) -> MessageRecord:
    return build_message(
        message_id=message_id,
        conversation_id=phone,
        content=content,
        message_type="text",
        timestamp=BASE + timedelta(seconds=offset_seconds),
        sender=sender,  # type: ignore[arg-type]
        status=status,  # type: ignore[arg-type]
        provider_message_id=provider_message_id,
        now=BASE,
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> MessageStore:
    if request.param == "inmemory":
        return InMemoryMessageStore()
    return SqlAlchemyMessageStore(f"sqlite:///{tmp_path / 'messages.db'}")


@pytest.fixture
def ledger(store: MessageStore) -> ConversationLedger:
    return ConversationLedger(store=store)


def test_append_then_retry_keeps_single_record(ledger: ConversationLedger) -> None:
    first = ledger.append(_message("1_wamid.ABC", provider_message_id="wamid.ABC"))
    retried = ledger.append(_message("2_wamid.ABC", provider_message_id="wamid.ABC", offset_seconds=30))

    assert first is not None
    assert retried is None
    assert [item.message_id for item in ledger.get_messages(PHONE)] == ["1_wamid.ABC"]


def test_content_window_dedup_without_provider_ids(ledger: ConversationLedger) -> None:
    assert ledger.append(_message("a", content="same")) is not None
    assert ledger.append(_message("b", content="same", offset_seconds=0.5)) is None
    assert ledger.append(_message("c", content="same", offset_seconds=5)) is not None
    assert len(ledger.get_messages(PHONE)) == 2


def test_messages_come_back_in_timestamp_order(ledger: ConversationLedger) -> None:
    ledger.append(_message("late", content="third", offset_seconds=20))
    ledger.append(_message("early", content="first", offset_seconds=0))
    ledger.append(_message("middle", content="second", offset_seconds=10))

    assert [item.content for item in ledger.get_messages(PHONE)] == ["first", "second", "third"]


def test_equal_timestamps_are_ordered_by_id(ledger: ConversationLedger) -> None:
    ledger.append(_message("b", content="two", provider_message_id="wamid.2"))
    ledger.append(_message("a", content="one", provider_message_id="wamid.1"))

    assert [item.message_id for item in ledger.get_messages(PHONE)] == ["a", "b"]


def test_after_and_limit_window(ledger: ConversationLedger) -> None:
    for index in range(5):
        ledger.append(_message(f"m{index}", content=f"body {index}", offset_seconds=index * 10))

    after = ledger.get_messages(PHONE, after=BASE + timedelta(seconds=10), limit=2)
    assert [item.message_id for item in after] == ["m2", "m3"]

    latest = ledger.get_messages(PHONE, limit=2)
    assert [item.message_id for item in latest] == ["m3", "m4"]

    assert ledger.get_messages("+19999999999") == []


def test_status_updates_are_monotonic(ledger: ConversationLedger) -> None:
    ledger.append(_message("out-1", sender="user", status="sent", provider_message_id="wamid.OUT"))

    assert ledger.update_status("wamid.OUT", "delivered") is True
    assert ledger.update_status("wamid.OUT", "read") is True
    assert ledger.update_status("wamid.OUT", "delivered") is False

    stored = ledger.get_message("out-1")
    assert stored is not None
    assert stored.status == "read"


def test_read_before_delivered_is_accepted(ledger: ConversationLedger) -> None:
    ledger.append(_message("out-1", sender="user", status="sent", provider_message_id="wamid.OUT"))

    assert ledger.update_status("wamid.OUT", "read") is True
    assert ledger.update_status("wamid.OUT", "delivered") is False
    stored = ledger.get_message("out-1")
    assert stored is not None and stored.status == "read"


def test_update_status_for_unknown_message_is_a_no_op(ledger: ConversationLedger) -> None:
    assert ledger.update_status("wamid.MISSING", "read") is False


def test_update_status_attaches_provider_id(ledger: ConversationLedger) -> None:
    ledger.append(_message("msg_local", sender="user", status="pending"), contact_name=None)

    assert ledger.update_status("msg_local", "sent", provider_message_id="wamid.NEW") is True
    stored = ledger.get_message("msg_local")
    assert stored is not None
    assert stored.provider_message_id == "wamid.NEW"
    assert ledger.update_status("wamid.NEW", "delivered") is True


def test_conversation_summary_tracks_unread_and_last_message(ledger: ConversationLedger) -> None:
    ledger.append(_message("a", content="hello", offset_seconds=0), contact_name="Ada")
    ledger.append(_message("b", content="again", offset_seconds=10))
    ledger.append(_message("c", content="older", offset_seconds=-10))
    ledger.append(_message("d", content="reply", offset_seconds=20, sender="user", status="sent"))

    conversations = ledger.list_conversations()
    assert len(conversations) == 1
    summary = conversations[0]
    assert summary.conversation_id == PHONE
    assert summary.contact_name == "Ada"
    assert summary.unread_count == 3
    assert summary.last_message == "reply"
    assert summary.last_message_at == BASE + timedelta(seconds=20)

    cleared = ledger.mark_conversation_read(PHONE)
    assert cleared is not None
    assert cleared.unread_count == 0
    assert ledger.mark_conversation_read("+10000000000") is None


def test_conversations_are_listed_most_recent_first(ledger: ConversationLedger) -> None:
    ledger.append(_message("a", phone="+15550000001", offset_seconds=0))
    ledger.append(_message("b", phone="+15550000002", offset_seconds=60))

    assert [item.conversation_id for item in ledger.list_conversations()] == ["+15550000002", "+15550000001"]
    assert len(ledger.list_conversations(limit=1)) == 1


def test_append_requires_conversation_id(ledger: ConversationLedger) -> None:
    with pytest.raises(ValueError):
        ledger.append(_message("x", phone=""))


def test_concurrent_duplicate_deliveries_store_one_record(ledger: ConversationLedger) -> None:
    barrier = threading.Barrier(8)
    results: list[MessageRecord | None] = []
    results_lock = threading.Lock()

    def _deliver(index: int) -> None:
        candidate = _message(f"{index}_wamid.RACE", provider_message_id="wamid.RACE")
        barrier.wait()
        stored = ledger.append(candidate)
        with results_lock:
            results.append(stored)

    threads = [threading.Thread(target=_deliver, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for item in results if item is not None) == 1
    assert len(ledger.get_messages(PHONE)) == 1


def test_append_and_status_changes_are_published() -> None:
    channel = LiveUpdateChannel()
    ledger = ConversationLedger(store=InMemoryMessageStore(), channel=channel)
    received: list[MessageRecord] = []
    channel.subscribe(PHONE, received.append)

    ledger.append(_message("out-1", content="one", sender="user", status="pending"), contact_name=None)
    assert ledger.append(_message("out-2", content="one", sender="user", status="pending")) is None
    ledger.append(_message("out-3", content="other", phone="+15550000000", sender="user", status="pending"), contact_name=None)
    ledger.update_status("out-1", "sent")

    assert [(item.message_id, item.status) for item in received] == [
        ("out-1", "pending"),
        ("out-1", "sent"),
    ]


def test_clear_empties_the_store(ledger: ConversationLedger) -> None:
    ledger.append(_message("a"))
    ledger.clear()
    assert ledger.get_messages(PHONE) == []
    assert ledger.list_conversations() == []


def test_retry_idempotent_retries_once_then_raises() -> None:
    calls: list[int] = []

    def _flaky() -> str:
        calls.append(1)
        if len(calls) == 1:
            raise LedgerUnavailableError("timeout")
        return "ok"

    assert retry_idempotent(_flaky, delay_seconds=0) == "ok"
    assert len(calls) == 2

    def _down() -> str:
        raise LedgerUnavailableError("down")

    with pytest.raises(LedgerUnavailableError):
        retry_idempotent(_down, delay_seconds=0)


def test_create_message_store_rejects_unknown_backend() -> None:
    assert isinstance(create_message_store(backend="inmemory", database_url=""), InMemoryMessageStore)
    with pytest.raises(RuntimeError):
        create_message_store(backend="mongodb", database_url="")
    with pytest.raises(RuntimeError):
        create_message_store(backend="sql", database_url="")


def test_concurrent_content_duplicates_store_one_record(ledger: ConversationLedger) -> None:
    barrier = threading.Barrier(4)

    def _deliver(index: int) -> None:
        candidate = _message(f"generated-{index}", content="same words", offset_seconds=index * 0.1)
        barrier.wait()
        ledger.append(candidate)

    threads = [threading.Thread(target=_deliver, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ledger.get_messages(PHONE)) == 1


def test_changed_provider_id_releases_the_old_one(store: MessageStore) -> None:
    original = _message("m1", provider_message_id="wamid.OLD", sender="user", status="pending")
    store.insert_message(original, contact_name=None)

    store.update_message("m1", status="sent", provider_message_id="wamid.NEW")

    assert store.find_by_provider_message_id("wamid.OLD") is None
    found = store.find_by_provider_message_id("wamid.NEW")
    assert found is not None and found.message_id == "m1"
    replacement = _message("m2", content="other", offset_seconds=5, provider_message_id="wamid.OLD")
    store.insert_message(replacement, contact_name=None)
    reused = store.find_by_provider_message_id("wamid.OLD")
    assert reused is not None and reused.message_id == "m2"


def test_conversation_locks_stay_bounded(ledger: ConversationLedger) -> None:
    lock_count = len(ledger._locks)
    for index in range(200):
        ledger.append(_message(f"m{index}", phone=f"+1555000{index:04d}"))

    assert len(ledger._locks) == lock_count
    assert ledger._lock_for("+15550000001") is ledger._lock_for("+15550000001")
