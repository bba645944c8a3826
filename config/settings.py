"""
Configuration loader for the flow engine.
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
class EngineConfig:
    max_hops: int = 50                          # auto-advance ceiling per inbound event
    api_timeout_seconds: float = 10.0
    idle_timeout_seconds: float = 86400.0       # watchdog for suspended conversations
    input_max_retries: int = 3
    send_max_attempts: int = 3
    send_backoff_base: float = 0.5              # seconds, doubled per attempt
    send_backoff_max: float = 8.0
    processed_event_window: int = 200           # event ids kept for deduplication
    store_transcripts: bool = True              # honour end.storeConversation


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory" | "file"
    store_file_dir: str = "./data"              # directory for file backend


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    timezone: str = "UTC"
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    flow_paths: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)   # global-tier defaults


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), match.group(0))
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


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed config mapping."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)
    settings.timezone = raw.get("timezone", settings.timezone)

    if "engine" in raw:
        eng = raw["engine"] or {}
        defaults = EngineConfig()
        settings.engine = EngineConfig(
            max_hops=int(eng.get("max_hops", defaults.max_hops)),
            api_timeout_seconds=float(eng.get("api_timeout_seconds", defaults.api_timeout_seconds)),
            idle_timeout_seconds=float(eng.get("idle_timeout_seconds", defaults.idle_timeout_seconds)),
            input_max_retries=int(eng.get("input_max_retries", defaults.input_max_retries)),
            send_max_attempts=int(eng.get("send_max_attempts", defaults.send_max_attempts)),
            send_backoff_base=float(eng.get("send_backoff_base", defaults.send_backoff_base)),
            send_backoff_max=float(eng.get("send_backoff_max", defaults.send_backoff_max)),
            processed_event_window=int(eng.get("processed_event_window", defaults.processed_event_window)),
            store_transcripts=bool(eng.get("store_transcripts", defaults.store_transcripts)),
        )

    if "database" in raw:
        db = raw["database"] or {}
        settings.database = DatabaseConfig(
            url=db.get("url", settings.database.url),
            store_backend=db.get("store_backend", settings.database.store_backend),
            store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
        )

    for ch_name, ch_data in (raw.get("channels") or {}).items():
        ch_data = ch_data or {}
        settings.channels[ch_name] = ChannelConfig(
            enabled=ch_data.get("enabled", False),
            credentials=ch_data.get("credentials", {}),
        )

    flows = raw.get("flows") or []
    settings.flow_paths = [flows] if isinstance(flows, str) else list(flows)
    settings.variables = dict(raw.get("variables") or {})
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = settings_from_dict(raw)
    return _settings


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
