from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
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


@dataclass(frozen=True)
class Settings:
    app_name: str = "Client Reminder Engine"
    api_prefix: str = "/api/v1"
    cors_allow_origins: str = "http://localhost:3000"
    # Outbound messaging transport.
    transport_type: str = "stub"
    transport_enabled: bool = False
    transport_timeout_seconds: int = 30
    whatsapp_graph_base_url: str = "https://graph.facebook.com"
    whatsapp_graph_version: str = "v18.0"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""
    whatsapp_template_language: str = "en_US"
    twilio_base_url: str = "https://api.twilio.com"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    dispatch_delay_ms: int = 300
    # Storage.
    store_backend: str = "inmemory"
    database_url: str = ""
    # Automation.
    automation_allow_today_override: bool = False
    scheduler_enabled: bool = False
    scheduler_timezone: str = "UTC"
    default_organization_name: str = "YourOrg"
    default_renewal_link: str = ""
    runtime_secret_guard_mode: str = "warn"

    @property
    def dispatch_delay_seconds(self) -> float:
        return max(self.dispatch_delay_ms, 0) / 1000.0


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Client Reminder Engine"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api/v1"),
        cors_allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000"),
        transport_type=_normalize_mode(
            os.getenv("TRANSPORT_TYPE"),
            default="stub",
            allowed={"stub", "whatsapp_cloud", "twilio"},
        ),
        transport_enabled=_as_bool(os.getenv("TRANSPORT_ENABLED"), False),
        transport_timeout_seconds=_as_int(os.getenv("TRANSPORT_TIMEOUT_SECONDS"), 30),
        whatsapp_graph_base_url=os.getenv("WHATSAPP_GRAPH_BASE_URL", "https://graph.facebook.com"),
        whatsapp_graph_version=os.getenv("WHATSAPP_GRAPH_VERSION", "v18.0"),
        whatsapp_phone_number_id=os.getenv("PHONE_NUMBER_ID", ""),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_template_language=os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en_US"),
        twilio_base_url=os.getenv("TWILIO_BASE_URL", "https://api.twilio.com"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", ""),
        dispatch_delay_ms=_as_int(os.getenv("DISPATCH_DELAY_MS"), 300),
        store_backend=os.getenv("STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        automation_allow_today_override=_as_bool(os.getenv("AUTOMATION_ALLOW_TODAY_OVERRIDE"), False),
        scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), False),
        scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE", "UTC"),
        default_organization_name=os.getenv("DEFAULT_ORGANIZATION_NAME", "YourOrg"),
        default_renewal_link=os.getenv("DEFAULT_RENEWAL_LINK", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def transport_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.transport_type == "whatsapp_cloud":
        if not settings.whatsapp_access_token.strip():
            issues.append("WHATSAPP_ACCESS_TOKEN is required when TRANSPORT_TYPE=whatsapp_cloud")
        if not settings.whatsapp_phone_number_id.strip():
            issues.append("PHONE_NUMBER_ID is required when TRANSPORT_TYPE=whatsapp_cloud")
        if not settings.whatsapp_graph_version.strip():
            issues.append("WHATSAPP_GRAPH_VERSION must not be empty")
    if settings.transport_type == "twilio":
        if not settings.twilio_account_sid.strip():
            issues.append("TWILIO_ACCOUNT_SID is required when TRANSPORT_TYPE=twilio")
        if not settings.twilio_auth_token.strip():
            issues.append("TWILIO_AUTH_TOKEN is required when TRANSPORT_TYPE=twilio")
        if not settings.twilio_whatsapp_from.strip():
            issues.append("TWILIO_WHATSAPP_FROM is required when TRANSPORT_TYPE=twilio")
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when STORE_BACKEND=postgres")
    try:
        resolve_timezone(settings.scheduler_timezone)
    except ConfigurationError as exc:
        issues.append(str(exc))
    return tuple(issues)


class ConfigurationError(RuntimeError):
    """Raised when the engine cannot run because required settings are missing."""


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"SCHEDULER_TIMEZONE is not a known IANA timezone: {name!r}") from exc
