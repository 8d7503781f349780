"""Persistent workbench configuration stored as a JSON document."""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, PrivateAttr, ValidationError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "workbench"
CONFIG_FILE_NAME = "config.json"

# Overrides the platform default location
CONFIG_PATH_ENV = "WORKBENCH_CONFIG"

# Flags that only ever flip from False to True on update
_STICKY_FLAGS = ("n8n_installed", "ollama_installed")


def config_path() -> Path:
    """Determine the per-user config file path for this platform."""
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override).expanduser()

    if sys.platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        xdg = os.environ.get("XDG_CONFIG_HOME")
        base = Path(xdg) if xdg else Path.home() / ".config"
    return base / APP_DIR_NAME / CONFIG_FILE_NAME


class AppConfig(BaseModel):
    """Discovered tool versions/paths and the allocated port pair."""

    node_version: str | None = None
    npm_version: str | None = None
    n8n_installed: bool = False
    n8n_path: str | None = None
    n8n_port: int | None = None
    ollama_installed: bool = False
    ollama_path: str | None = None
    ollama_version: str | None = None
    ollama_port: int | None = None
    ollama_default_model: str | None = None

    _path: Path | None = PrivateAttr(default=None)
    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    @classmethod
    def load(cls, path: Path | str | None = None) -> AppConfig:
        """Load existing configuration, or create and save a default one.

        A missing, unreadable or corrupt file is treated as "no prior config".

        Args:
            path: Config file location (defaults to config_path())

        Returns:
            AppConfig bound to the path it was loaded from
        """
        path = Path(path) if path else config_path()
        cfg: AppConfig | None = None

        if path.exists():
            try:
                cfg = cls.model_validate(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Ignoring unreadable config at {path}: {e}")

        if cfg is None:
            cfg = cls()
            cfg._path = path
            cfg.save()
        else:
            cfg._path = path
        return cfg

    @property
    def path(self) -> Path:
        return self._path or config_path()

    def save(self) -> None:
        """Write the whole document back to disk.

        Write failures are logged, not raised: a lost write only costs the
        next start its cached values.
        """
        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save config to {path}: {e}")

    def update(self, **fields: Any) -> AppConfig:
        """Merge a partial update and persist.

        Fields passed as None are left untouched; install flags are OR-ed.

        Args:
            **fields: AppConfig field names and new values

        Returns:
            self, for chaining
        """
        unknown = set(fields) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        with self._lock:
            for name, value in fields.items():
                if value is None:
                    continue
                if name in _STICKY_FLAGS:
                    value = getattr(self, name) or bool(value)
                setattr(self, name, value)
            self.save()
        return self

    def reload(self) -> AppConfig:
        """Re-read the file this config was loaded from."""
        return type(self).load(self.path)
