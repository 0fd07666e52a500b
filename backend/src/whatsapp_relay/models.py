from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .phones import conversation_id_for

MessageStatus = Literal["pending", "sent", "delivered", "read", "failed", "queued"]
MessageSender = Literal["user", "contact"]


def _lower_status(value: object) -> object:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _require_phone_digits(value: str) -> str:
    # ValueError surfaces as a 400 validation error.
    return conversation_id_for(value)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageItem(_CamelModel):
    id: str
    provider_message_id: str | None = None
    conversation_id: str
    content: str
    message_type: str
    timestamp: datetime
    sender: MessageSender
    status: MessageStatus
    recipient_id: str
    contact_phone_number: str


class MessageListResponse(_CamelModel):
    success: bool = True
    messages: list[MessageItem]
    count: int


class IncomingMessageText(_CamelModel):
    body: str = ""


class IncomingMessagePayload(_CamelModel):
    id: str | None = Field(default=None, max_length=256)
    text: IncomingMessageText | None = None
    content: str | None = None
    timestamp: int | float | str | None = None
    from_: str | None = Field(default=None, alias="from")
    status: MessageStatus | None = None
    type: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        return _lower_status(value)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class MessageStoreRequest(_CamelModel):
    phone_number: str = Field(min_length=1, max_length=64)
    message: IncomingMessagePayload

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return _require_phone_digits(value)


class MessageStoreResponse(_CamelModel):
    success: bool = True
    message: MessageItem


class StatusUpdateRequest(_CamelModel):
    message_id: str = Field(min_length=1, max_length=256)
    status: MessageStatus

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        return _lower_status(value)


class StatusUpdateResponse(_CamelModel):
    success: bool


class SendMessageRequest(_CamelModel):
    phone_number: str = Field(min_length=1, max_length=64)
    text: str = Field(min_length=1, max_length=4096)

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return _require_phone_digits(value)

    @field_validator("text")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class SendMessageResponse(_CamelModel):
    success: bool = True
    message: MessageItem


class ConversationItem(_CamelModel):
    conversation_id: str
    phone_number: str
    contact_name: str
    last_message: str
    last_message_at: datetime | None = None
    unread_count: int
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(_CamelModel):
    success: bool = True
    conversations: list[ConversationItem]


class ConversationReadResponse(_CamelModel):
    success: bool = True
    conversation: ConversationItem
