"""
Configuration loader for the FlowRunner service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    max_steps_per_tick: int = 50        # synchronous node visits per advance
    max_retries: int = 2                # retries after the first external attempt
    retry_backoff_base: float = 1.0     # seconds, doubled per retry
    retry_backoff_max: float = 30.0
    http_timeout: float = 10.0
    inactivity_timeout_minutes: int = 30
    webhook_timeout_seconds: int = 300
    quick_reply_reprompts: int = 1      # re-sends before an unmatched reply drops
    interaction_dedup_window_ms: int = 1
    sweep_interval_seconds: int = 30

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(minutes=self.inactivity_timeout_minutes)


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrationsConfig:
    booking_url: str = ""               # appointment booking service
    email_api_url: str = ""
    email_api_key: str = ""
    email_from: str = "noreply@example.com"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowrunner.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class Settings:
    app_name: str = "FlowRunner"
    debug: bool = False
    timezone: str = "UTC"
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    integrations: IntegrationsConfig = field(default_factory=IntegrationsConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    bots: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return os.environ.get(var_name, match.group(0))
        return os.environ.get(var_name) or default
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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWRUNNER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "engine" in raw:
            eng = raw["engine"] or {}
            defaults = EngineConfig()
            settings.engine = EngineConfig(
                max_steps_per_tick=int(eng.get("max_steps_per_tick", defaults.max_steps_per_tick)),
                max_retries=int(eng.get("max_retries", defaults.max_retries)),
                retry_backoff_base=float(eng.get("retry_backoff_base", defaults.retry_backoff_base)),
                retry_backoff_max=float(eng.get("retry_backoff_max", defaults.retry_backoff_max)),
                http_timeout=float(eng.get("http_timeout", defaults.http_timeout)),
                inactivity_timeout_minutes=int(
                    eng.get("inactivity_timeout_minutes", defaults.inactivity_timeout_minutes)
                ),
                webhook_timeout_seconds=int(
                    eng.get("webhook_timeout_seconds", defaults.webhook_timeout_seconds)
                ),
                quick_reply_reprompts=int(eng.get("quick_reply_reprompts", defaults.quick_reply_reprompts)),
                interaction_dedup_window_ms=int(
                    eng.get("interaction_dedup_window_ms", defaults.interaction_dedup_window_ms)
                ),
                sweep_interval_seconds=int(eng.get("sweep_interval_seconds", defaults.sweep_interval_seconds)),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "integrations" in raw:
            integ = raw["integrations"] or {}
            settings.integrations = IntegrationsConfig(
                booking_url=integ.get("booking_url", ""),
                email_api_url=integ.get("email_api_url", ""),
                email_api_key=integ.get("email_api_key", ""),
                email_from=integ.get("email_from", settings.integrations.email_from),
            )

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                ch_data = ch_data or {}
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

        settings.bots = raw.get("bots", []) or []

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
