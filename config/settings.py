"""
Configuration loader for the Profile Relay service.
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
class StoreConfig:
    backend: str = "file"               # "file" | "memory"
    data_dir: str = "./data"
    flush_debounce_s: float = 1.0       # write-back delay after a set()


@dataclass
class LifecycleConfig:
    connecting_timeout_s: float = 30.0
    reconnect_delay_s: float = 5.0      # recoverable disconnect
    logged_out_restart_delay_s: float = 2.0
    connect_failure_retry_s: float = 5.0
    terminal_disconnect_codes: list[int] = field(default_factory=lambda: [401])
    mailbox_size: int = 1000


@dataclass
class WebhookConfig:
    tick_interval_s: float = 1.0
    persist_interval_s: float = 3.0
    max_attempts: int = 3
    backoff_base_ms: int = 2000
    request_timeout_s: float = 10.0
    user_agent: str = "ProfileRelay-Webhook/1.0"
    event_header: str = "X-Relay-Event"


@dataclass
class FlowConfig:
    session_ttl_s: float = 86400.0
    sweep_interval_s: float = 3600.0
    expiry_notice: str = "Session expired due to inactivity."
    reprompt_message: str = "Please select one of the options by typing the number or the text."
    max_steps: int = 100


@dataclass
class Settings:
    app_name: str = "ProfileRelay"
    debug: bool = False
    profiles: list[str] = field(default_factory=list)
    store: StoreConfig = field(default_factory=StoreConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    flows: FlowConfig = field(default_factory=FlowConfig)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(node: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree; unset vars stay as written."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    return node


def _section(cls, raw: dict[str, Any]):
    """Build a dataclass section, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _expand_env(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))
        settings.profiles = [str(p) for p in raw.get("profiles", [])]

        if "store" in raw:
            settings.store = _section(StoreConfig, raw["store"])
        if "lifecycle" in raw:
            settings.lifecycle = _section(LifecycleConfig, raw["lifecycle"])
        if "webhooks" in raw:
            settings.webhooks = _section(WebhookConfig, raw["webhooks"])
        if "flows" in raw:
            settings.flows = _section(FlowConfig, raw["flows"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
