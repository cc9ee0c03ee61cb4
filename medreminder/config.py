"""
Configuration

YAML-backed settings with dot-notation access:

    config = load_config()
    config.get("notifications.snooze_minutes", 15)

Remote store credentials are read from the environment first
(MEDREMINDER_SUPABASE_URL / MEDREMINDER_SUPABASE_KEY) so they never have
to live in config.yaml.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml

from medreminder.errors import ConfigurationError


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_ENV_OVERRIDES = {
    "remote.url": "MEDREMINDER_SUPABASE_URL",
    "remote.key": "MEDREMINDER_SUPABASE_KEY",
    "logging.level": "MEDREMINDER_LOG_LEVEL",
}


class Config:
    """Dot-notation view over a nested settings dict."""

    def __init__(self, data: Optional[dict] = None, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._data = data or {}

    @classmethod
    def from_file(cls, path) -> "Config":
        path = Path(path)
        if not path.exists():
            return cls({}, path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")
        return cls(data, path)

    def get(self, key: str, default: Any = None) -> Any:
        env_name = _ENV_OVERRIDES.get(key)
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]

        node = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any):
        """Set a dotted key, creating intermediate sections as needed."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    def validate(self):
        """Check the remote store settings before anything talks to it.

        Raises ConfigurationError describing the first problem found.
        """
        url = self.get("remote.url")
        if not url:
            raise ConfigurationError("remote.url is missing or empty")
        if not str(url).startswith("https://"):
            raise ConfigurationError(
                f"remote.url must be an https:// URL (got {url!r})"
            )

        key = self.get("remote.key")
        if not key:
            raise ConfigurationError("remote.key is missing or empty")
        # Anon keys are JWTs
        if not str(key).startswith("eyJ"):
            raise ConfigurationError("remote.key does not look like a valid JWT")

    def as_dict(self) -> dict:
        return dict(self._data)


def load_config(path=None) -> Config:
    """Load config.yaml (or the file named by MEDREMINDER_CONFIG)."""
    if path is None:
        path = os.environ.get("MEDREMINDER_CONFIG") or DEFAULT_CONFIG_PATH
    return Config.from_file(path)
