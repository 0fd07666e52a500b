from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_signature(value: str) -> str:
    normalized = value.strip()
    if normalized.startswith("sha256="):
        normalized = normalized.removeprefix("sha256=").strip()
    return normalized.lower()


def verify_subscription(
    *,
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str | None:
    """Return the challenge to echo back, or None when the handshake is refused."""
    if mode != "subscribe" or token is None or challenge is None:
        return None
    if not expected_token:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge


def verify_meta_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")

    provided = _header_value(headers, SIGNATURE_HEADER)
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(_normalize_signature(provided), expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
