"""
Configuration loader for the bot host.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_BOT_MARKER = "[default]"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./bothost.db"           # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                  # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                 # directory for file backend


@dataclass
class ServicesConfig:
    directline_url: str = "https://directline.botframework.com/v3/directline/tokens/generate"
    speech_token_url: str = "https://westus.api.cognitive.microsoft.com/sts/v1.0/issueToken"
    http_timeout_s: float = 10.0
    oauth_resource: str = "https://graph.microsoft.com"


@dataclass
class PackagesConfig:
    system: list[str] = field(default_factory=lambda: ["capabilities.core:create_package"])
    apps: list[str] = field(default_factory=list)


@dataclass
class Settings:
    app_name: str = "BotHost"
    debug: bool = False
    default_bot_id: str = ""
    default_locale: str = "en-US"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    packages: PackagesConfig = field(default_factory=PackagesConfig)
    instances: list[dict[str, Any]] = field(default_factory=list)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOTHOST_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.default_bot_id = raw.get("default_bot_id", settings.default_bot_id)
        settings.default_locale = raw.get("default_locale", settings.default_locale)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "services" in raw:
            svc = raw["services"]
            defaults = ServicesConfig()
            settings.services = ServicesConfig(
                directline_url=svc.get("directline_url", defaults.directline_url),
                speech_token_url=svc.get("speech_token_url", defaults.speech_token_url),
                http_timeout_s=float(svc.get("http_timeout_s", defaults.http_timeout_s)),
                oauth_resource=svc.get("oauth_resource", defaults.oauth_resource),
            )

        if "packages" in raw:
            pk = raw["packages"]
            settings.packages = PackagesConfig(
                system=pk.get("system", PackagesConfig().system),
                apps=pk.get("apps", []),
            )

        settings.instances = raw.get("instances", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
