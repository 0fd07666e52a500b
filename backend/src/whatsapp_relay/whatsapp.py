from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

ProviderResultStatus = Literal["sent", "delivered", "failed"]


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class WhatsAppSender(Protocol):
    def send_text(self, recipient: str, body: str) -> ProviderSendResult: ...

    def mark_as_read(self, provider_message_id: str) -> bool: ...


def format_recipient(phone_number: str) -> str:
    normalized = phone_number.strip()
    return normalized if normalized.startswith("+") else f"+{normalized}"


class StubWhatsAppSender:
    """Offline sender used in development and tests."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[tuple[str, str]] = []
        self.read_receipts: list[str] = []

    def send_text(self, recipient: str, body: str) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sender_disabled",
                error_message="WhatsApp live delivery is disabled",
            )

        self.sent.append((format_recipient(recipient), body))
        digits = "".join(ch for ch in recipient if ch.isdigit())
        message_id = f"wamid.stub-{digits}-{int(attempted_at.timestamp() * 1000)}-{len(self.sent)}"
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)

    def mark_as_read(self, provider_message_id: str) -> bool:
        self.read_receipts.append(provider_message_id)
        return self._enabled


class _WhatsAppSendError(Exception):
    """Internal error raised when a Cloud API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpWhatsAppSender:
    """Cloud API sender that posts to ``/{version}/{phone_number_id}/messages``."""

    def __init__(
        self,
        *,
        base_url: str,
        api_version: str,
        phone_number_id: str,
        access_token: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        stripped_phone_id = phone_number_id.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not stripped_phone_id:
            raise ValueError("phone_number_id must not be empty")
        self._endpoint = f"{stripped_url}/{api_version.strip().strip('/')}/{stripped_phone_id}/messages"
        self._access_token = stripped_token
        self._timeout_seconds = timeout_seconds

    def send_text(self, recipient: str, body: str) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": format_recipient(recipient),
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }

        try:
            response_data = self._post(request_payload)
        except _WhatsAppSendError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_phone_number(recipient)})",
            )

        messages = response_data.get("messages") or []
        message_id = None
        if messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id,
        )

    def mark_as_read(self, provider_message_id: str) -> bool:
        try:
            response_data = self._post(
                {
                    "messaging_product": "whatsapp",
                    "status": "read",
                    "message_id": provider_message_id,
                }
            )
        except _WhatsAppSendError:
            return False
        return bool(response_data.get("success", True))

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send a POST request to the Cloud API messages endpoint."""
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            self._endpoint,
            data=data,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(
                request, timeout=self._timeout_seconds
            ) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _WhatsAppSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _WhatsAppSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _WhatsAppSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _WhatsAppSendError(
                error_code="invalid_response",
                message=f"Response was not JSON: {exc}",
            ) from exc


def mask_phone_number(phone_number: str) -> str:
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if not digits:
        return "***"
    return "*" * len(digits)
