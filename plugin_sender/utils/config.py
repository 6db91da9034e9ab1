#!/usr/bin/env python3
# Plugin Sender (GRBL G-code job engine)
# Copyright (C) 2026 Bob Kolbasowski
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
# Optional (not required by the license): If you make improvements, please consider
# contributing them back upstream (e.g., via a pull request) so others can benefit.
#
# SPDX-License-Identifier: GPL-3.0-or-later

"""Configuration management for Plugin Sender.

Settings live in a single JSON file. Plugin settings are stored in the
same file under ``plugin_settings.<plugin_id>`` and are opaque to the
engine: plugins read and replace whole objects.
"""

import copy
import json
import logging
import os
import shutil
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    ACK_TIMEOUT_DEFAULT,
    BAUD_DEFAULT,
    BROADCAST_QUEUE_MAXSIZE,
    HOOK_TIMEOUT_DEFAULT,
    SETTINGS_BACKUP_SUFFIX,
    SETTINGS_FILENAME,
    SETTINGS_TEMP_SUFFIX,
    VALID_BAUD_RATES,
)
from .exceptions import (
    SettingsLoadError,
    SettingsSaveError,
    SettingsValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "ack_timeout": ACK_TIMEOUT_DEFAULT,
    "baud_rate": BAUD_DEFAULT,
    "broadcast_queue_size": BROADCAST_QUEUE_MAXSIZE,
    "elide_same_tool_changes": False,
    "hook_timeout": HOOK_TIMEOUT_DEFAULT,
    "initial_tool": None,
    "last_port": "",
    "plugin_dirs": [],
    "plugin_settings": {},
}


def _deep_merge_defaults(defaults: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for key, default_val in defaults.items():
        if key in loaded:
            loaded_val = loaded[key]
            if isinstance(default_val, dict) and isinstance(loaded_val, dict):
                merged[key] = _deep_merge_defaults(default_val, loaded_val)
            else:
                merged[key] = loaded_val
        else:
            merged[key] = copy.deepcopy(default_val)
    for key, loaded_val in loaded.items():
        if key not in merged:
            merged[key] = loaded_val
    return merged


def get_default_settings_dir() -> str:
    """Get default directory for settings storage.

    Returns:
        Path to settings directory
    """
    env_dir = os.getenv("PLUGIN_SENDER_CONFIG_DIR")
    if env_dir:
        return env_dir

    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    else:
        base = os.getenv("XDG_CONFIG_HOME")

    if not base:
        base = os.path.expanduser("~")

    return os.path.join(base, "PluginSender")


def get_settings_path() -> str:
    """Get path to settings file.

    Creates the directory if it doesn't exist, falling back to
    ``~/.plugin_sender`` when the default location is not writable.
    """
    base_dir = get_default_settings_dir()

    try:
        os.makedirs(base_dir, exist_ok=True)
    except OSError as e:
        logger.warning(f"Failed to create settings directory: {e}")
        fallback_dir = os.path.join(os.path.expanduser("~"), ".plugin_sender")
        try:
            os.makedirs(fallback_dir, exist_ok=True)
            base_dir = fallback_dir
        except OSError:
            base_dir = os.getcwd()

    return os.path.join(base_dir, SETTINGS_FILENAME)


class Settings:
    """JSON settings file with defaults, dot-path access and atomic saves.

    Example:
        settings = Settings()
        settings.load()
        settings.set("last_port", "/dev/ttyUSB0")
        settings.save()
    """

    def __init__(self, filepath: Optional[str] = None):
        self.filepath = filepath or get_settings_path()
        self.data: Dict[str, Any] = self._get_defaults()
        self._lock = threading.RLock()
        logger.info(f"Settings file: {self.filepath}")

    def _get_defaults(self) -> Dict[str, Any]:
        return copy.deepcopy(DEFAULT_SETTINGS)

    def load(self) -> bool:
        """Merge the settings file over the defaults.

        Returns:
            True if a file was read, False if none exists yet

        Raises:
            SettingsLoadError: If the file exists but is unreadable or not a JSON object
        """
        path = Path(self.filepath)
        if not path.exists():
            logger.info("No settings file yet; keeping defaults")
            return False

        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Settings file is not valid JSON: {e}")
            raise SettingsLoadError(f"Invalid JSON: {e}")
        except OSError as e:
            logger.error(f"Cannot read settings file: {e}")
            raise SettingsLoadError(f"Cannot read {path}: {e}")

        if not isinstance(loaded, dict):
            raise SettingsLoadError("Settings file must contain a JSON object")

        with self._lock:
            self.data = _deep_merge_defaults(self._get_defaults(), loaded)
        logger.info(f"Loaded settings from {path}")
        return True

    def save(self) -> None:
        """Write settings through a temp file, keeping the previous file as ``.bak``.

        Raises:
            SettingsSaveError: If the file cannot be written
        """
        path = Path(self.filepath)
        temp_path = path.with_name(path.name + SETTINGS_TEMP_SUFFIX)
        backup_path = path.with_name(path.name + SETTINGS_BACKUP_SUFFIX)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                payload = json.dumps(self.data, indent=2, sort_keys=True)
            temp_path.write_text(payload, encoding="utf-8")

            if path.exists():
                try:
                    shutil.copy2(path, backup_path)
                except OSError as e:
                    logger.warning(f"Settings backup failed: {e}")

            temp_path.replace(path)
            logger.debug(f"Saved settings to {path}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Saving settings failed: {e}")
            if backup_path.exists() and not path.exists():
                try:
                    shutil.copy2(backup_path, path)
                    logger.info("Restored settings from backup")
                except OSError as restore_error:
                    logger.error(f"Restoring settings backup failed: {restore_error}")
            raise SettingsSaveError(f"Failed to save: {e}")
        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove {temp_path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value; ``key`` may be a dot path (``"plugin_settings.x"``)."""
        with self._lock:
            node: Any = self.data
            for part in key.split("."):
                if not isinstance(node, dict) or part not in node:
                    return default
                node = node[part]
            return node

    def set(self, key: str, value: Any) -> None:
        """Write a value, creating intermediate objects along a dot path."""
        *parents, leaf = key.split(".")
        with self._lock:
            node = self.data
            for part in parents:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = node[part] = {}
                node = child
            node[leaf] = value

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self.data)

    def reset_to_defaults(self) -> None:
        with self._lock:
            self.data = self._get_defaults()
        logger.info("Settings reset to defaults")

    def validate(self) -> bool:
        """Check types and ranges of the known keys.

        Raises:
            SettingsValidationError: On the first invalid value
        """
        data = self.data
        if not isinstance(data, dict):
            raise SettingsValidationError("Settings root must be an object")

        if data.get("baud_rate") not in VALID_BAUD_RATES:
            raise SettingsValidationError(f"Invalid baud rate: {data.get('baud_rate')}")

        for key in ("ack_timeout", "hook_timeout"):
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise SettingsValidationError(f"Invalid {key}: {value}")

        size = data.get("broadcast_queue_size")
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise SettingsValidationError(f"Invalid broadcast_queue_size: {size}")

        tool = data.get("initial_tool")
        if tool is not None and (isinstance(tool, bool) or not isinstance(tool, int) or tool < 0):
            raise SettingsValidationError(f"Invalid initial_tool: {tool}")

        if not isinstance(data.get("plugin_dirs"), list):
            raise SettingsValidationError("plugin_dirs must be a list")

        if not isinstance(data.get("plugin_settings"), dict):
            raise SettingsValidationError("plugin_settings must be an object")

        return True


class PluginSettingsStore:
    """Per-plugin settings objects backed by :class:`Settings`.

    Values are deep-copied in both directions so a plugin never holds a
    live reference into the shared settings tree. Plugin ids are used as
    plain keys under ``plugin_settings`` (ids may contain dots).
    """

    def __init__(self, settings: Settings, *, autosave: bool = True):
        self.settings = settings
        self.autosave = autosave

    def _bucket(self) -> Dict[str, Any]:
        bucket = self.settings.data.get("plugin_settings")
        if not isinstance(bucket, dict):
            bucket = {}
            self.settings.data["plugin_settings"] = bucket
        return bucket

    def get(self, plugin_id: str) -> Dict[str, Any]:
        with self.settings._lock:
            value = self._bucket().get(plugin_id, {})
            if not isinstance(value, dict):
                return {}
            return copy.deepcopy(value)

    def set(self, plugin_id: str, values: Dict[str, Any]) -> None:
        if not isinstance(values, dict):
            raise SettingsValidationError(
                f"Settings for plugin '{plugin_id}' must be a mapping"
            )
        with self.settings._lock:
            self._bucket()[plugin_id] = copy.deepcopy(values)
        if self.autosave:
            self.settings.save()

    def clear(self, plugin_id: str) -> None:
        with self.settings._lock:
            removed = self._bucket().pop(plugin_id, None) is not None
        if removed and self.autosave:
            self.settings.save()
