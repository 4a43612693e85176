"""Client settings.

Settings are layered: built-in defaults, then ``settings.json`` in the user
config directory, then ``CANVASLINK_*`` environment variables (a ``.env`` file
in the config directory or the working directory is loaded first).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from canvaslink.paths import env_file, settings_file

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:4097"
DEFAULT_MODEL = "github-copilot/gpt-4o"
ENV_PREFIX = "CANVASLINK_"


class ClientSettings(BaseModel):
    """Connection, timing and logging options for the sync layer."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    server_url: str = DEFAULT_SERVER_URL
    health_interval: float = Field(default=3.0, gt=0)
    health_backoff_interval: float = Field(default=10.0, gt=0)
    health_backoff_after: int = Field(default=5, ge=1)
    health_timeout: float = Field(default=5.0, gt=0)
    reconnect_delay: float = Field(default=2.0, ge=0)
    flush_interval: float = Field(default=0.08, gt=0)
    activity_throttle: float = Field(default=2.0, ge=0)
    default_model: str | None = DEFAULT_MODEL
    log_level: str = "INFO"

    @field_validator("server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def server_url_valid(self) -> bool:
        parsed = urlparse(self.server_url)
        try:
            port = parsed.port
        except ValueError:
            return False
        return parsed.scheme in {"http", "https"} and bool(parsed.hostname) and port != 0


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a JSON object", path)
        return {}
    return data


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in ClientSettings.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            overrides[name] = raw
    return overrides


def load_settings(path: Path | None = None, **overrides: Any) -> ClientSettings:
    """Resolve settings from file, environment and explicit keyword overrides."""

    load_dotenv(env_file(), override=False)
    load_dotenv(find_dotenv(usecwd=True), override=False)

    values = _read_settings_file(path or settings_file())
    values.update(_env_overrides())
    values.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return ClientSettings(**values)
    except ValidationError as exc:
        logger.warning("Invalid settings, falling back to defaults: %s", exc)
        return ClientSettings(**{k: v for k, v in overrides.items() if v is not None})


def save_settings(settings: ClientSettings, path: Path | None = None) -> Path:
    target = path or settings_file()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings.model_dump(), indent=2), encoding="utf-8")
    return target
