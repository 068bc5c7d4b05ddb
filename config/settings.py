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
    max_choice_retries: int = 3              # invalid choices tolerated before termination
    reprompt_on_invalid_choice: bool = True
    max_steps_per_event: int = 500           # node visits per event before the session is cut off
    default_session_timeout_minutes: int = 5
    recent_message_window: int = 20          # inbound ids remembered per session; older redeliveries are reprocessed


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                    # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                   # directory for file backend


@dataclass
class TimerConfig:
    poll_interval_seconds: float = 1.0
    lease_seconds: int = 60              # how long a claimed timer stays invisible to other pollers
    batch_size: int = 100


@dataclass
class DispatcherConfig:
    mailbox_size: int = 100
    idle_timeout_seconds: float = 30.0   # a contact's worker exits after this long without events


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    timers: TimerConfig = field(default_factory=TimerConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


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


def _section(cls, raw: dict[str, Any]):
    """Build a dataclass section, ignoring keys it does not declare."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"])
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "timers" in raw:
            settings.timers = _section(TimerConfig, raw["timers"])
        if "dispatcher" in raw:
            settings.dispatcher = _section(DispatcherConfig, raw["dispatcher"])

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (used by tests)."""
    global _settings
    _settings = None
