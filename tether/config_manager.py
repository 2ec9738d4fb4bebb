from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from tether.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"


class ConfigError(ValueError):
    pass


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate(config: AppConfig) -> None:
    try:
        ZoneInfo(config.refresh.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {config.refresh.timezone}") from exc


class ConfigManager:
    """YAML settings file for the CalDAV account, refresh window and reminder behaviour."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as exc:
            logger.warning("Config %s is not valid YAML, using defaults: %s", self.config_path, exc)
            return {}
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning("Config %s does not hold a mapping, using defaults", self.config_path)
            return {}
        return data

    def load(self) -> AppConfig:
        with self._lock:
            try:
                return AppConfig.from_dict(self._read())
            except (TypeError, ValueError) as exc:
                logger.warning("Config %s has invalid values, using defaults: %s", self.config_path, exc)
                return default_app_config()

    def _write_yaml(self, path: Path, data: dict[str, Any]) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write_yaml(tmp_path, data)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                self._write_yaml(self.config_path, data)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored settings and persist the result.

        Raises ConfigError, leaving the file untouched, when the merged
        settings cannot be used.
        """
        if not isinstance(payload, dict):
            raise ConfigError("Config update must be a mapping")
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            try:
                config = AppConfig.from_dict(merged)
            except (TypeError, ValueError) as exc:
                raise ConfigError(str(exc)) from exc
            _validate(config)
            self.save(config)
        logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no sections")
        return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        if data["caldav"].get("password"):
            data["caldav"]["password"] = MASK
        return data
