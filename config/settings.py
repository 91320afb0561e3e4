"""
Configuration loader for the flow engine service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    business_phone: str = ""               # fallback when a webhook carries no display number
    access_token: str = ""                 # empty → mock sender
    verify_token: str = ""
    app_secret: str = ""
    api_version: str = "v21.0"
    base_url: str = "https://graph.facebook.com"
    signature_mode: str = "enforce"        # "enforce" | "warn"
    timeout_s: float = 15.0


@dataclass
class FormsConfig:
    private_key_path: str = ""
    private_key_pem: str = ""
    private_key_passphrase: str = ""
    flip_response_iv: bool = False
    screens: dict[str, Any] = field(default_factory=dict)   # form_id → screen routing


@dataclass
class EngineConfig:
    max_steps: int = 100
    default_http_timeout_s: float = 30.0
    business_display_name: str = "Business"
    form_timeout_min: float = 10           # waiting on a form expires after this (0 = never)
    question_timeout_min: float = 0
    expiry_sweep_interval_s: float = 60


@dataclass
class DatabaseConfig:
    backend: str = "memory"                # "memory" | "file" | "sqlite" | "postgres"
    url: str = "sqlite:///./flow_engine.db"
    data_dir: str = "./data"               # directory for file backend
    flush_interval_s: float = 0
    echo: bool = False
    pool_size: int = 10


@dataclass
class CalendarConfig:
    provider: str = "mock"                 # "mock" | "rest"
    base_url: str = ""
    api_key: str = ""
    timeout_s: float = 10.0
    work_start: str = "09:00"
    work_end: str = "18:00"
    slot_duration_min: int = 30


@dataclass
class HarnessConfig:
    default_test_phone: str = "+905551234567"
    max_node_visits: int = 10
    max_total_steps: int = 100
    max_finished_sessions: int = 100


@dataclass
class FlowsConfig:
    definitions_dir: str = ""
    active_flow_id: str = ""


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    timezone: str = "UTC"
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    forms: FormsConfig = field(default_factory=FormsConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    harness: HarnessConfig = field(default_factory=HarnessConfig)
    flows: FlowsConfig = field(default_factory=FlowsConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if var_name in os.environ:
            return os.environ[var_name]
        return default if default is not None else match.group(0)
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


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _section(cls, raw: dict[str, Any]):
    """Build a dataclass section, ignoring unknown keys and coercing scalars."""
    defaults = cls()
    kwargs = {}
    for name in cls.__dataclass_fields__:
        if name not in raw:
            continue
        value = raw[name]
        current = getattr(defaults, name)
        if isinstance(current, bool):
            value = _as_bool(value)
        elif isinstance(current, int) and isinstance(value, str):
            value = int(value)
        elif isinstance(current, float) and isinstance(value, str):
            value = float(value)
        kwargs[name] = value
    return cls(**kwargs)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        settings.timezone = raw.get("timezone", settings.timezone)

        sections = {
            "whatsapp": WhatsAppConfig,
            "forms": FormsConfig,
            "engine": EngineConfig,
            "database": DatabaseConfig,
            "calendar": CalendarConfig,
            "harness": HarnessConfig,
            "flows": FlowsConfig,
        }
        for name, cls in sections.items():
            if isinstance(raw.get(name), dict):
                setattr(settings, name, _section(cls, raw[name]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
