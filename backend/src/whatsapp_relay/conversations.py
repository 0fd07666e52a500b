from __future__ import annotations

import bisect
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterator, Protocol, TypeVar

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import MessageSender, MessageStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNKNOWN_CONTACT_NAME = "Unknown"


class DuplicateMessageError(Exception):
    """Raised by a store when a message id or provider message id is already taken."""


class LedgerUnavailableError(Exception):
    """Raised when the backing store cannot be reached or times out."""


class MessageNotFoundError(KeyError):
    """Raised when an operation references a message id that does not exist."""


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    content: str
    message_type: str
    timestamp: datetime
    sender: MessageSender
    status: MessageStatus
    recipient_id: str
    contact_phone_number: str
    provider_message_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    phone_number: str
    contact_name: str
    last_message: str
    last_message_at: datetime | None
    unread_count: int
    created_at: datetime
    updated_at: datetime


class MessageStore(Protocol):
    def reset(self) -> None: ...

    def insert_message(self, record: MessageRecord, *, contact_name: str | None) -> MessageRecord: ...

    def get_message(self, message_id: str) -> MessageRecord | None: ...

    def find_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def find_similar_messages(
        self,
        conversation_id: str,
        *,
        provider_message_id: str | None,
        content: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[MessageRecord]: ...

    def update_message(
        self,
        message_id: str,
        *,
        status: MessageStatus,
        provider_message_id: str | None,
    ) -> MessageRecord: ...

    def list_messages(
        self,
        conversation_id: str,
        *,
        after: datetime | None,
        limit: int | None,
    ) -> list[MessageRecord]: ...

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]: ...

    def mark_conversation_read(self, conversation_id: str) -> ConversationRecord | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _preview(body_text: str, *, limit: int = 120) -> str:
    clean = " ".join(body_text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def _order_key(record: MessageRecord) -> tuple[datetime, str]:
    return (record.timestamp, record.message_id)


def _take_window(ordered: list[MessageRecord], *, after: datetime | None, limit: int | None) -> list[MessageRecord]:
    if after is not None:
        selected = [item for item in ordered if item.timestamp > after]
        return selected if limit is None else selected[:limit]
    if limit is None:
        return list(ordered)
    return ordered[-limit:] if limit > 0 else []


def retry_idempotent(operation: Callable[[], T], *, attempts: int = 2, delay_seconds: float = 0.1) -> T:
    """Run an idempotent store operation, retrying on transient unavailability."""
    total = max(1, attempts)
    for attempt in range(1, total + 1):
        try:
            return operation()
        except LedgerUnavailableError as exc:
            if attempt >= total:
                raise
            logger.warning("message store unavailable (attempt %d/%d): %s", attempt, total, exc)
            time.sleep(delay_seconds)
    raise LedgerUnavailableError("retry attempts exhausted")


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._messages_by_conversation: dict[str, list[MessageRecord]] = {}
        self._messages_by_id: dict[str, MessageRecord] = {}
        self._message_id_by_provider_id: dict[str, str] = {}
        self._conversations: dict[str, ConversationRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._messages_by_conversation.clear()
            self._messages_by_id.clear()
            self._message_id_by_provider_id.clear()
            self._conversations.clear()

    def insert_message(self, record: MessageRecord, *, contact_name: str | None) -> MessageRecord:
        with self._lock:
            if record.message_id in self._messages_by_id:
                raise DuplicateMessageError(record.message_id)
            if record.provider_message_id and record.provider_message_id in self._message_id_by_provider_id:
                raise DuplicateMessageError(record.provider_message_id)

            ordered = self._messages_by_conversation.setdefault(record.conversation_id, [])
            bisect.insort(ordered, record, key=_order_key)
            self._messages_by_id[record.message_id] = record
            if record.provider_message_id:
                self._message_id_by_provider_id[record.provider_message_id] = record.message_id
            self._touch_conversation(record, contact_name=contact_name)
            return record

    def _touch_conversation(self, record: MessageRecord, *, contact_name: str | None) -> None:
        now = _now_utc()
        existing = self._conversations.get(record.conversation_id)
        inbound = 1 if record.sender == "contact" else 0
        if existing is None:
            self._conversations[record.conversation_id] = ConversationRecord(
                conversation_id=record.conversation_id,
                phone_number=record.contact_phone_number,
                contact_name=contact_name or UNKNOWN_CONTACT_NAME,
                last_message=_preview(record.content),
                last_message_at=record.timestamp,
                unread_count=inbound,
                created_at=now,
                updated_at=now,
            )
            return

        newer = existing.last_message_at is None or record.timestamp >= existing.last_message_at
        self._conversations[record.conversation_id] = replace(
            existing,
            contact_name=contact_name or existing.contact_name,
            last_message=_preview(record.content) if newer else existing.last_message,
            last_message_at=record.timestamp if newer else existing.last_message_at,
            unread_count=existing.unread_count + inbound,
            updated_at=now,
        )

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._lock:
            return self._messages_by_id.get(message_id)

    def find_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._lock:
            message_id = self._message_id_by_provider_id.get(provider_message_id)
            return self._messages_by_id.get(message_id) if message_id is not None else None

    def find_similar_messages(
        self,
        conversation_id: str,
        *,
        provider_message_id: str | None,
        content: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[MessageRecord]:
        with self._lock:
            ordered = self._messages_by_conversation.get(conversation_id, [])
            return [
                item
                for item in ordered
                if (provider_message_id and item.provider_message_id == provider_message_id)
                or (item.content == content and window_start <= item.timestamp <= window_end)
            ]

    def update_message(
        self,
        message_id: str,
        *,
        status: MessageStatus,
        provider_message_id: str | None,
    ) -> MessageRecord:
        with self._lock:
            current = self._messages_by_id.get(message_id)
            if current is None:
                raise MessageNotFoundError(message_id)
            if (
                provider_message_id
                and provider_message_id != current.provider_message_id
                and provider_message_id in self._message_id_by_provider_id
            ):
                raise DuplicateMessageError(provider_message_id)

            updated = replace(
                current,
                status=status,
                provider_message_id=provider_message_id or current.provider_message_id,
                updated_at=_now_utc(),
            )
            ordered = self._messages_by_conversation[current.conversation_id]
            index = bisect.bisect_left(ordered, _order_key(current), key=_order_key)
            ordered[index] = updated
            self._messages_by_id[message_id] = updated
            if current.provider_message_id and current.provider_message_id != updated.provider_message_id:
                self._message_id_by_provider_id.pop(current.provider_message_id, None)
            if updated.provider_message_id:
                self._message_id_by_provider_id[updated.provider_message_id] = message_id
            return updated

    def list_messages(
        self,
        conversation_id: str,
        *,
        after: datetime | None,
        limit: int | None,
    ) -> list[MessageRecord]:
        with self._lock:
            ordered = self._messages_by_conversation.get(conversation_id, [])
            return _take_window(ordered, after=after, limit=limit)

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._lock:
            ordered = sorted(
                self._conversations.values(),
                key=lambda value: (value.last_message_at or value.created_at, value.updated_at),
                reverse=True,
            )
            return ordered[:limit]

    def mark_conversation_read(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is None:
                return None
            updated = replace(existing, unread_count=0, updated_at=_now_utc())
            self._conversations[conversation_id] = updated
            return updated


class MessagesBase(DeclarativeBase):
    pass


class _MessageRow(MessagesBase):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationRow(MessagesBase):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(256), nullable=False, default=UNKNOWN_CONTACT_NAME)
    last_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _engine_options(database_url: str, timeout_seconds: float) -> dict:
    options: dict = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"timeout": timeout_seconds, "check_same_thread": False}
        return options
    options["pool_timeout"] = timeout_seconds
    if database_url.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return options


class SqlAlchemyMessageStore:
    def __init__(self, database_url: str, *, timeout_seconds: float = 10.0) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for MESSAGE_STORE_BACKEND=sql")
        self._engine = create_engine(database_url, **_engine_options(database_url, timeout_seconds))
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessagesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            raise DuplicateMessageError(str(exc.orig)) from exc
        except DBAPIError as exc:
            raise LedgerUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(str(exc)) from exc

    def reset(self) -> None:
        with self._translate_errors(), self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))

    def insert_message(self, record: MessageRecord, *, contact_name: str | None) -> MessageRecord:
        with self._translate_errors(), self._session() as session:
            with session.begin():
                session.add(
                    _MessageRow(
                        message_id=record.message_id,
                        provider_message_id=record.provider_message_id,
                        conversation_id=record.conversation_id,
                        content=record.content,
                        message_type=record.message_type,
                        timestamp=_coerce_utc(record.timestamp),
                        sender=record.sender,
                        status=record.status,
                        recipient_id=record.recipient_id,
                        contact_phone_number=record.contact_phone_number,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
                self._touch_conversation(session, record, contact_name=contact_name)
                session.flush()
        return record

    @staticmethod
    def _touch_conversation(session, record: MessageRecord, *, contact_name: str | None) -> None:
        now = _now_utc()
        inbound = 1 if record.sender == "contact" else 0
        row = session.get(_ConversationRow, record.conversation_id)
        if row is None:
            session.add(
                _ConversationRow(
                    conversation_id=record.conversation_id,
                    phone_number=record.contact_phone_number,
                    contact_name=contact_name or UNKNOWN_CONTACT_NAME,
                    last_message=_preview(record.content),
                    last_message_at=_coerce_utc(record.timestamp),
                    unread_count=inbound,
                    created_at=now,
                    updated_at=now,
                )
            )
            return
        last_at = _coerce_utc(row.last_message_at) if row.last_message_at is not None else None
        if last_at is None or record.timestamp >= last_at:
            row.last_message = _preview(record.content)
            row.last_message_at = _coerce_utc(record.timestamp)
        row.contact_name = contact_name or row.contact_name
        row.unread_count += inbound
        row.updated_at = now

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._translate_errors(), self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def find_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._translate_errors(), self._session() as session:
            row = session.scalar(
                select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id)
            )
            return self._message_record(row) if row is not None else None

    def find_similar_messages(
        self,
        conversation_id: str,
        *,
        provider_message_id: str | None,
        content: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[MessageRecord]:
        content_match = (
            (_MessageRow.content == content)
            & (_MessageRow.timestamp >= _coerce_utc(window_start))
            & (_MessageRow.timestamp <= _coerce_utc(window_end))
        )
        condition = content_match
        if provider_message_id:
            condition = or_(content_match, _MessageRow.provider_message_id == provider_message_id)
        with self._translate_errors(), self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .where(condition)
            ).all()
            return [self._message_record(row) for row in rows]

    def update_message(
        self,
        message_id: str,
        *,
        status: MessageStatus,
        provider_message_id: str | None,
    ) -> MessageRecord:
        with self._translate_errors(), self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id)
                if row is None:
                    raise MessageNotFoundError(message_id)
                row.status = status
                if provider_message_id:
                    row.provider_message_id = provider_message_id
                row.updated_at = _now_utc()
                session.flush()
                return self._message_record(row)

    def list_messages(
        self,
        conversation_id: str,
        *,
        after: datetime | None,
        limit: int | None,
    ) -> list[MessageRecord]:
        query = select(_MessageRow).where(_MessageRow.conversation_id == conversation_id)
        if after is not None:
            query = query.where(_MessageRow.timestamp > _coerce_utc(after)).order_by(
                _MessageRow.timestamp.asc(), _MessageRow.message_id.asc()
            )
        else:
            query = query.order_by(_MessageRow.timestamp.desc(), _MessageRow.message_id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self._translate_errors(), self._session() as session:
            records = [self._message_record(row) for row in session.scalars(query).all()]
        if after is None:
            records.reverse()
        return records

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._translate_errors(), self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .order_by(_ConversationRow.last_message_at.desc(), _ConversationRow.updated_at.desc())
                .limit(limit)
            ).all()
            return [self._conversation_record(row) for row in rows]

    def mark_conversation_read(self, conversation_id: str) -> ConversationRecord | None:
        with self._translate_errors(), self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    return None
                row.unread_count = 0
                row.updated_at = _now_utc()
                session.flush()
                return self._conversation_record(row)

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            content=row.content,
            message_type=row.message_type,
            timestamp=_coerce_utc(row.timestamp),
            sender=row.sender,  # type: ignore[arg-type]
            status=row.status,  # type: ignore[arg-type]
            recipient_id=row.recipient_id,
            contact_phone_number=row.contact_phone_number,
            provider_message_id=row.provider_message_id,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            phone_number=row.phone_number,
            contact_name=row.contact_name,
            last_message=row.last_message,
            last_message_at=_coerce_utc(row.last_message_at) if row.last_message_at is not None else None,
            unread_count=row.unread_count,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_message_store(*, backend: str, database_url: str, timeout_seconds: float = 10.0) -> MessageStore:
    normalized = backend.strip().lower()
    if normalized in {"sql", "postgres", "sqlite"}:
        return SqlAlchemyMessageStore(database_url, timeout_seconds=timeout_seconds)
    if normalized == "inmemory":
        return InMemoryMessageStore()
    raise RuntimeError(f"unsupported MESSAGE_STORE_BACKEND: {backend}")
