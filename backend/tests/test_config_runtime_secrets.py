from __future__ import annotations

import os

from whatsapp_relay.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_reads_environment() -> None:
    overrides = {
        "WHATSAPP_TOKEN": "token-001",
        "WHATSAPP_PHONE_NUMBER_ID": "1098765",
        "WHATSAPP_SENDER_TYPE": "HTTP",
        "WHATSAPP_MARK_READ_ENABLED": "yes",
        "WEBHOOK_SIGNATURE_MODE": "enforce",
        "MESSAGE_STORE_BACKEND": "sqlite",
        "MESSAGE_READ_LIMIT_MAX": "50",
        "STORE_TIMEOUT_SECONDS": "2.5",
        "CORS_ALLOWED_ORIGINS": "https://a.example, https://b.example,",
    }
    previous = {key: _set_env(key, value) for key, value in overrides.items()}
    try:
        settings = get_settings()
        assert settings.whatsapp_access_token == "token-001"
        assert settings.whatsapp_sender_type == "http"
        assert settings.whatsapp_mark_read_enabled is True
        assert settings.webhook_signature_mode == "enforce"
        assert settings.uses_sql_store is True
        assert settings.message_read_limit_max == 50
        assert settings.store_timeout_seconds == 2.5
        assert settings.cors_allowed_origins == ("https://a.example", "https://b.example")
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_invalid_values_fall_back_to_defaults() -> None:
    overrides = {
        "WHATSAPP_SENDER_TYPE": "carrier-pigeon",
        "WEBHOOK_SIGNATURE_MODE": "strict",
        "MESSAGE_READ_LIMIT_DEFAULT": "twenty",
        "LIVE_KEEPALIVE_SECONDS": "soon",
        "RUNTIME_SECRET_GUARD_MODE": None,
    }
    previous = {key: _set_env(key, value) for key, value in overrides.items()}
    try:
        settings = get_settings()
        assert settings.whatsapp_sender_type == "stub"
        assert settings.webhook_signature_mode == "off"
        assert settings.message_read_limit_default == 20
        assert settings.live_keepalive_seconds == 15.0
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_default_settings_flag_placeholder_verify_token_only() -> None:
    issues = runtime_secret_issues(Settings())
    assert issues == ("WHATSAPP_VERIFY_TOKEN is empty or uses a development placeholder",)


def test_http_sender_requires_token_and_phone_number_id() -> None:
    issues = runtime_secret_issues(Settings(whatsapp_verify_token="prod-verify-001", whatsapp_sender_type="http"))
    assert "WHATSAPP_TOKEN is required when WHATSAPP_SENDER_TYPE=http" in issues
    assert "WHATSAPP_PHONE_NUMBER_ID is required when WHATSAPP_SENDER_TYPE=http" in issues


def test_enforced_signatures_and_sql_store_need_their_secrets() -> None:
    issues = runtime_secret_issues(
        Settings(
            whatsapp_verify_token="prod-verify-001",
            webhook_signature_mode="enforce",
            message_store_backend="postgres",
        )
    )
    assert "WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce" in issues
    assert "DATABASE_URL is required when MESSAGE_STORE_BACKEND=postgres" in issues


def test_complete_production_settings_have_no_issues() -> None:
    settings = Settings(
        whatsapp_verify_token="prod-verify-001",
        whatsapp_sender_type="http",
        whatsapp_access_token="token-001",
        whatsapp_phone_number_id="1098765",
        webhook_signature_mode="enforce",
        whatsapp_app_secret="app-secret-001",
        message_store_backend="sql",
        database_url="postgresql://relay@localhost/relay",
    )
    assert runtime_secret_issues(settings) == ()
