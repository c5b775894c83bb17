"""
Configuration loader for the call reconciliation service.
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
class DatabaseConfig:
    url: str = "sqlite:///./calls.db"                 # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class VapiConfig:
    api_key: str = ""
    phone_number_id: str = ""
    assistant_id: str = ""
    base_url: str = "https://api.vapi.ai"
    webhook_secret: str = ""
    # Accept unsigned webhooks when no secret is set. Development only.
    allow_unsigned_webhooks: bool = False
    timeout_seconds: float = 30.0


@dataclass
class ReaperConfig:
    enabled: bool = True
    timeout_seconds: int = 600          # transient calls older than this are failed
    interval_seconds: int = 300         # seconds between sweeps


@dataclass
class Settings:
    app_name: str = "CallReconciler"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    vapi: VapiConfig = field(default_factory=VapiConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _unresolved(value: Any) -> Any:
    """Blank out ${VAR} placeholders whose variable was not set."""
    if isinstance(value, str) and re.fullmatch(r'\$\{\w+\}', value):
        return ""
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CALL_RECONCILER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "vapi" in raw:
            v = raw["vapi"] or {}
            settings.vapi = VapiConfig(
                api_key=_unresolved(v.get("api_key", "")),
                phone_number_id=_unresolved(v.get("phone_number_id", "")),
                assistant_id=_unresolved(v.get("assistant_id", "")),
                base_url=v.get("base_url", settings.vapi.base_url),
                webhook_secret=_unresolved(v.get("webhook_secret", "")),
                allow_unsigned_webhooks=_as_bool(v.get("allow_unsigned_webhooks", False)),
                timeout_seconds=float(v.get("timeout_seconds", settings.vapi.timeout_seconds)),
            )

        if "reaper" in raw:
            r = raw["reaper"] or {}
            settings.reaper = ReaperConfig(
                enabled=_as_bool(r.get("enabled", True)),
                timeout_seconds=int(r.get("timeout_seconds", 600)),
                interval_seconds=int(r.get("interval_seconds", 300)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
