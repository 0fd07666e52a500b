from __future__ import annotations

import hashlib
import hmac

from whatsapp_relay.config import Settings
from whatsapp_relay.webhook_security import verify_meta_signature, verify_subscription


def _settings(mode: str, secret: str = "app-secret") -> Settings:
    return Settings(webhook_signature_mode=mode, whatsapp_app_secret=secret)


def test_verify_subscription_requires_mode_token_and_challenge() -> None:
    assert verify_subscription(mode="subscribe", token="t", challenge="42", expected_token="t") == "42"
    assert verify_subscription(mode="subscribe", token="x", challenge="42", expected_token="t") is None
    assert verify_subscription(mode="subscribe", token="t", challenge=None, expected_token="t") is None
    assert verify_subscription(mode=None, token="t", challenge="42", expected_token="t") is None
    assert verify_subscription(mode="subscribe", token="", challenge="42", expected_token="") is None


def test_signature_check_is_skipped_when_off() -> None:
    result = verify_meta_signature(settings=_settings("off"), body=b"{}", headers={})
    assert result.verified is True


def test_signature_check_accepts_valid_digest_case_insensitively() -> None:
    body = b'{"object":"whatsapp_business_account"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest().upper()
    result = verify_meta_signature(
        settings=_settings("enforce"),
        body=body,
        headers={"x-hub-signature-256": f"sha256={digest}"},
    )
    assert result.verified is True


def test_signature_check_reasons() -> None:
    missing_secret = verify_meta_signature(settings=_settings("enforce", secret=""), body=b"{}", headers={})
    missing_header = verify_meta_signature(settings=_settings("enforce"), body=b"{}", headers={})
    mismatch = verify_meta_signature(
        settings=_settings("log_only"),
        body=b"{}",
        headers={"X-Hub-Signature-256": "sha256=00"},
    )

    assert missing_secret.reason == "app_secret_missing"
    assert missing_header.reason == "signature_missing"
    assert mismatch.verified is False
    assert mismatch.reason == "signature_mismatch"
