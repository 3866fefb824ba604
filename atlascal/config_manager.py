from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from atlascal.errors import InvalidPayload
from atlascal.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("ai", "api_key"),)
CONFIG_SECTIONS = tuple(item.name for item in fields(AppConfig))


def write_text_atomic(path: Path, text: str) -> None:
    """Writes through a sibling temp file; falls back to an in-place write on EBUSY."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        path.write_text(text, encoding="utf-8")
        if tmp_path.exists():
            tmp_path.unlink()


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _strip_masked_secrets(payload: dict[str, Any]) -> dict[str, Any]:
    cleaned = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        values = cleaned.get(section)
        if isinstance(values, dict) and str(values.get(key, "")).strip() in {"", MASK}:
            values.pop(key, None)
    return cleaned


class ConfigManager:
    """The YAML config file shared by the server and the sync client."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise InvalidPayload(f"{self.config_path} does not hold a mapping")
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            write_text_atomic(self.config_path, text)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merges ``payload`` into the stored config.

        Unknown sections are rejected; an empty or masked secret keeps the
        stored value.
        """
        unknown = sorted(set(payload) - set(CONFIG_SECTIONS))
        if unknown:
            raise InvalidPayload(f"Unknown config section(s): {', '.join(unknown)}")
        for section, values in payload.items():
            if not isinstance(values, dict):
                raise InvalidPayload(f"Config section {section!r} must be a mapping")
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), _strip_masked_secrets(payload))
            config = AppConfig.from_dict(merged)
            self.save(config)
        logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no sections")
        return config

    def masked(self, config: AppConfig | None = None) -> dict[str, Any]:
        data = (config or self.load()).to_dict()
        for section, key in SECRET_FIELDS:
            if data.get(section, {}).get(key):
                data[section][key] = MASK
        return data
