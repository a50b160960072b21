"""
Configuration loader for the ReviewBox service.
Reads settings from YAML file with environment variable substitution.

Every section is a frozen dataclass. Components receive the section they
need at construction time; only the application bootstrap calls
get_settings().
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigurationError(Exception):
    """Raised at startup when a required setting is missing."""


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///./reviewbox.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                        # "sql" | "memory"


@dataclass(frozen=True)
class WhatsAppConfig:
    base_url: str = "https://alots.io/v20.0"
    phone_number_id: str = ""
    api_key: str = ""
    language_code: str = "en"

    day0_template: str = "dreamers_solar_msg_1"
    day1_template: str = "review_reminder_day1"
    day3_template: str = "review_reminder_day3"
    day0_style: str = "image"                         # "image" | "text"
    day0_header_image_link: str = ""
    day0_header_image_id: str = ""
    template_languages: dict[str, str] = field(default_factory=dict)

    # Some gateways reject a bare text before the template (error 131049)
    send_opening_text: bool = False
    opening_text: str = "Hi"

    timeout_seconds: float = 30.0
    retry_delay_seconds: float = 2.0
    require_credentials: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key.strip()) and bool(self.phone_number_id.strip())


@dataclass(frozen=True)
class ScheduleConfig:
    polling_interval_seconds: float = 3600          # dev: 30
    stage1_delay_minutes: int = 1440                # dev: 2
    stage2_delay_minutes: int = 4320                # dev: 5
    shutdown_grace_seconds: float = 35.0


@dataclass(frozen=True)
class PhoneConfig:
    country_code: str = "91"


@dataclass(frozen=True)
class Settings:
    app_name: str = "ReviewBox"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    phone: PhoneConfig = field(default_factory=PhoneConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} or ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name) or (default or "")
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


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _section(raw: dict[str, Any], cls, casts: dict[str, Any] = None):
    """Build a frozen section from a raw dict, keeping defaults for missing keys."""
    defaults = cls()
    casts = casts or {}
    kwargs = {}
    for name in cls.__dataclass_fields__:
        if name not in raw:
            continue
        value = raw[name]
        cast = casts.get(name)
        if cast is bool:
            value = _as_bool(value, getattr(defaults, name))
        elif cast is not None and value not in (None, ""):
            value = cast(value)
        elif value is None:
            continue
        kwargs[name] = value
    return cls(**kwargs)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "REVIEWBOX_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

    settings = Settings(
        app_name=raw.get("app_name", "ReviewBox"),
        debug=_as_bool(raw.get("debug"), False),
        database=_section(raw.get("database") or {}, DatabaseConfig),
        whatsapp=_section(raw.get("whatsapp") or {}, WhatsAppConfig, casts={
            "phone_number_id": str,
            "send_opening_text": bool,
            "require_credentials": bool,
            "timeout_seconds": float,
            "retry_delay_seconds": float,
            "template_languages": dict,
        }),
        schedule=_section(raw.get("schedule") or {}, ScheduleConfig, casts={
            "polling_interval_seconds": float,
            "stage1_delay_minutes": int,
            "stage2_delay_minutes": int,
            "shutdown_grace_seconds": float,
        }),
        phone=_section(raw.get("phone") or {}, PhoneConfig, casts={"country_code": str}),
    )

    _settings = settings
    return settings


def validate_settings(settings: Settings) -> None:
    """Fail fast on settings the process cannot run without."""
    if settings.database.store_backend == "sql" and not settings.database.url.strip():
        raise ConfigurationError("database.url is required for the sql store backend")
    if settings.whatsapp.require_credentials and not settings.whatsapp.has_credentials:
        raise ConfigurationError("whatsapp.api_key and whatsapp.phone_number_id are required")


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
