from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "WhatsApp Relay"
    api_prefix: str = "/api"
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = "dev-verify-token"
    whatsapp_app_secret: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_api_version: str = "v18.0"
    whatsapp_sender_type: str = "stub"
    whatsapp_send_timeout_seconds: float = 10.0
    whatsapp_mark_read_enabled: bool = False
    webhook_signature_mode: str = "off"
    message_store_backend: str = "inmemory"
    database_url: str = ""
    store_timeout_seconds: float = 10.0
    message_read_limit_default: int = 20
    message_read_limit_max: int = 200
    conversation_list_limit: int = 50
    outbound_max_workers: int = 4
    live_keepalive_seconds: float = 15.0
    cors_allowed_origins: tuple[str, ...] = ()
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def uses_sql_store(self) -> bool:
        return self.message_store_backend in {"sql", "postgres", "sqlite"}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RELAY_APP_NAME", "WhatsApp Relay"),
        api_prefix=os.getenv("API_PREFIX", "/api"),
        whatsapp_access_token=os.getenv("WHATSAPP_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "dev-verify-token"),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com"),
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v18.0"),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        whatsapp_send_timeout_seconds=_as_float(os.getenv("WHATSAPP_SEND_TIMEOUT_SECONDS"), 10.0),
        whatsapp_mark_read_enabled=_as_bool(os.getenv("WHATSAPP_MARK_READ_ENABLED"), False),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="off",
            allowed={"off", "log_only", "enforce"},
        ),
        message_store_backend=_normalize_mode(
            os.getenv("MESSAGE_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "sql", "postgres", "sqlite"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        store_timeout_seconds=_as_float(os.getenv("STORE_TIMEOUT_SECONDS"), 10.0),
        message_read_limit_default=_as_int(os.getenv("MESSAGE_READ_LIMIT_DEFAULT"), 20),
        message_read_limit_max=_as_int(os.getenv("MESSAGE_READ_LIMIT_MAX"), 200),
        conversation_list_limit=_as_int(os.getenv("CONVERSATION_LIST_LIMIT"), 50),
        outbound_max_workers=_as_int(os.getenv("OUTBOUND_MAX_WORKERS"), 4),
        live_keepalive_seconds=_as_float(os.getenv("LIVE_KEEPALIVE_SECONDS"), 15.0),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_json=_as_bool(os.getenv("LOG_JSON"), False),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.whatsapp_verify_token,
        defaults={"dev-verify-token", "change-me-in-production"},
    ):
        issues.append("WHATSAPP_VERIFY_TOKEN is empty or uses a development placeholder")
    if settings.whatsapp_sender_type == "http":
        if not settings.whatsapp_access_token.strip():
            issues.append("WHATSAPP_TOKEN is required when WHATSAPP_SENDER_TYPE=http")
        if not settings.whatsapp_phone_number_id.strip():
            issues.append("WHATSAPP_PHONE_NUMBER_ID is required when WHATSAPP_SENDER_TYPE=http")
    if settings.webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.uses_sql_store and not settings.database_url.strip():
        issues.append(
            f"DATABASE_URL is required when MESSAGE_STORE_BACKEND={settings.message_store_backend}"
        )
    return tuple(issues)
