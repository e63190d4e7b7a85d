"""
Configuration loader for the messaging engine.
Reads settings from a YAML file with environment variable substitution,
then applies the META_* / DATABASE_URL environment overrides.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import yaml


class ConfigurationError(Exception):
    """Required configuration is missing or malformed."""


@dataclass
class WhatsAppConfig:
    api_version: str = "v22.0"
    graph_base_url: str = "https://graph.facebook.com"
    phone_number_id: str = ""
    access_token: str = ""
    business_account_id: str = ""      # derived from phone_number_id when empty
    webhook_verify_token: str = ""
    app_id: str = ""
    app_secret: str = ""
    timeout_seconds: float = 30.0

    _resolved_business_account_id: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def api_base(self) -> str:
        return f"{self.graph_base_url.rstrip('/')}/{self.api_version}"

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/{self.phone_number_id}/messages"

    def validate(self) -> None:
        """Fail fast before any network call."""
        missing = []
        if not self.phone_number_id:
            missing.append("META_WHATSAPP_PHONE_NUMBER_ID")
        if not self.access_token:
            missing.append("META_WHATSAPP_ACCESS_TOKEN")
        if missing:
            raise ConfigurationError(
                f"Missing WhatsApp credentials: {', '.join(missing)}"
            )

    async def resolve_business_account_id(
        self, lookup: Callable[[], Awaitable[str]],
    ) -> str:
        """
        Return the business account id, calling `lookup` at most once.
        Recomputing is idempotent, so no lock is taken.
        """
        if self.business_account_id:
            return self.business_account_id
        if self._resolved_business_account_id is None:
            resolved = await lookup()
            if not resolved:
                raise ConfigurationError(
                    "Unable to derive the WhatsApp business account id; "
                    "set META_WHATSAPP_BUSINESS_ACCOUNT_ID"
                )
            self._resolved_business_account_id = resolved
        return self._resolved_business_account_id

    def status(self) -> dict[str, Any]:
        return {
            "has_phone_number_id": bool(self.phone_number_id),
            "has_access_token": bool(self.access_token),
            "has_business_account_id": bool(self.business_account_id or self._resolved_business_account_id),
            "has_app_id": bool(self.app_id),
            "has_app_secret": bool(self.app_secret),
            "has_webhook_token": bool(self.webhook_verify_token),
            "api_version": self.api_version,
            "is_fully_configured": bool(self.phone_number_id and self.access_token),
            "has_production_auth": bool(self.app_id and self.app_secret),
        }


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./messaging.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory"


@dataclass
class DispatchConfig:
    schedule_threshold_seconds: float = 1.0     # schedule_for closer than this sends now
    process_due_batch_size: int = 50
    poll_interval_seconds: float = 60.0
    automation_batch_size: int = 50
    max_automation_depth: int = 3
    retry_attempts: int = 3
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 10.0
    session_ttl_hours: int = 24
    webhook_timeout_seconds: float = 15.0
    poller_enabled: bool = False              # run ScheduledMessagePoller inside the API process
    campaign_max_retries: int = 3              # retryable recipient failures before giving up


@dataclass
class Settings:
    app_name: str = "MessagingEngine"
    debug: bool = False
    timezone: str = "UTC"
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)


_settings: Optional[Settings] = None

# environment variable → (section, attribute)
_ENV_OVERRIDES = {
    "META_GRAPH_API_VERSION": ("whatsapp", "api_version"),
    "META_WHATSAPP_PHONE_NUMBER_ID": ("whatsapp", "phone_number_id"),
    "META_WHATSAPP_ACCESS_TOKEN": ("whatsapp", "access_token"),
    "META_WHATSAPP_BUSINESS_ACCOUNT_ID": ("whatsapp", "business_account_id"),
    "META_WEBHOOK_VERIFY_TOKEN": ("whatsapp", "webhook_verify_token"),
    "META_APP_ID": ("whatsapp", "app_id"),
    "META_APP_SECRET": ("whatsapp", "app_secret"),
    "DATABASE_URL": ("database", "url"),
    "STORE_BACKEND": ("database", "store_backend"),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_section(target: Any, raw: dict[str, Any]) -> None:
    for key, value in raw.items():
        if key.startswith("_") or not hasattr(target, key):
            continue
        if value is None or value == "":
            continue
        setattr(target, key, value)


def _apply_env_overrides(settings: Settings, environ: dict[str, str]) -> None:
    for var, (section, attr) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            setattr(getattr(settings, section), attr, value)


def load_settings(config_path: str = None, environ: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "MESSAGING_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )
    environ = os.environ if environ is None else environ

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "whatsapp" in raw:
            _apply_section(settings.whatsapp, raw["whatsapp"] or {})
        if "database" in raw:
            _apply_section(settings.database, raw["database"] or {})
        if "dispatch" in raw:
            _apply_section(settings.dispatch, raw["dispatch"] or {})

    _apply_env_overrides(settings, environ)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
