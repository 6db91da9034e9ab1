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

"""Plugin host: load, unload and reload plugin modules.

A plugin is a Python module exposing ``on_load(ctx)`` and optionally
``on_unload(ctx)``, described by a manifest (a ``__plugin__`` mapping when
loaded from a file). Each loaded plugin gets its own :class:`PluginContext`
carrying an explicit state object that is passed as the first argument to
every hook handler the plugin registers.
"""

from __future__ import annotations

import importlib.util
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from types import ModuleType, SimpleNamespace
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from plugin_sender import __version__

from .event_broadcaster import EventBroadcaster
from .hook_registry import HookRegistry
from .types import HookFault, HookRegistration, PluginStatus
from .utils.config import PluginSettingsStore
from .utils.constants import HOOK_EVENTS, HOOK_FAULT_LOG_SIZE, PLUGIN_ERROR_EVENT
from .utils.exceptions import (
    InvalidParameterError,
    PluginException,
    PluginLoadError,
    PluginNotFoundError,
    PluginVersionError,
)
from .utils.logging_config import PLUGINS_LOGGER_NAME
from .utils.validation import validate_event_name, version_at_least

logger = logging.getLogger(__name__)

_MODULE_NAME_PAT = re.compile(r"[^0-9A-Za-z_]")


@dataclass(frozen=True)
class PluginManifest:
    plugin_id: str
    name: str = ""
    version: str = "0.0.0"
    events: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()
    min_app_version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PluginManifest":
        """Build a manifest from a mapping.

        Accepts both ``plugin_id``/``min_app_version`` and the
        ``id``/``minAppVersion`` keys used by plugin packages.
        """
        if not isinstance(data, Mapping):
            raise PluginLoadError("Plugin manifest must be a mapping")
        plugin_id = data.get("plugin_id") or data.get("id")
        if not isinstance(plugin_id, str) or not plugin_id.strip():
            raise PluginLoadError("Plugin manifest has no id")
        min_version = data.get("min_app_version", data.get("minAppVersion"))
        return cls(
            plugin_id=plugin_id.strip(),
            name=str(data.get("name") or plugin_id),
            version=str(data.get("version") or "0.0.0"),
            events=tuple(data.get("events") or ()),
            permissions=tuple(data.get("permissions") or ()),
            min_app_version=str(min_version) if min_version else None,
        )


class PluginContext:
    """Capabilities handed to a plugin's ``on_load``.

    Attributes:
        plugin_id: Owning plugin
        state: Per-plugin state object, first argument of every hook handler
        logger: Logger under ``plugin_sender.plugins.<plugin_id>``
    """

    def __init__(self, host: "PluginHost", manifest: PluginManifest):
        self._host = host
        self.manifest = manifest
        self.plugin_id = manifest.plugin_id
        self.state = SimpleNamespace()
        self.logger = logging.getLogger(f"{PLUGINS_LOGGER_NAME}.{self.plugin_id}")
        self._registrations: List[HookRegistration] = []

    def register_event_handler(
        self,
        event_name: str,
        handler: Callable[..., Any],
    ) -> HookRegistration:
        """Register a hook handler, called as ``handler(state, *args)``."""
        event_name = validate_event_name(event_name)
        if event_name not in HOOK_EVENTS:
            logger.warning(f"Plugin {self.plugin_id} registered unknown hook event {event_name}")
        elif self.manifest.events and event_name not in self.manifest.events:
            logger.debug(f"Plugin {self.plugin_id} registered {event_name} not listed in its manifest")
        registration = self._host.hooks.register(
            event_name,
            self.plugin_id,
            partial(handler, self.state),
        )
        self._registrations.append(registration)
        return registration

    def send_gcode(self, line: str, options: Optional[Mapping[str, Any]] = None) -> str:
        """Send a line to the controller and wait for its acknowledgment."""
        sender = self._host.gcode_sender
        if sender is None:
            raise PluginException("No controller attached")
        self.logger.debug(f"send_gcode {line!r}")
        return sender(line, options)

    def broadcast(self, event_name: str, payload: Any = None) -> int:
        return self._host.broadcaster.publish(event_name, payload)

    def get_settings(self) -> Dict[str, Any]:
        store = self._host.settings_store
        return store.get(self.plugin_id) if store is not None else {}

    def set_settings(self, values: Dict[str, Any]) -> None:
        store = self._host.settings_store
        if store is None:
            raise PluginException("No settings store attached")
        store.set(self.plugin_id, values)

    def on_websocket_event(
        self,
        event_name: str,
        handler: Callable[[Any], Any],
    ) -> Callable[[], None]:
        """Subscribe to a broadcast event; torn down when the plugin unloads."""
        return self._host.broadcaster.subscribe(event_name, handler, owner=self.plugin_id)


@dataclass
class PluginHandle:
    plugin_id: str
    manifest: PluginManifest
    module: Any
    context: PluginContext
    status: PluginStatus = PluginStatus.LOADED
    source_path: Optional[str] = None
    errors: Deque[str] = field(default_factory=lambda: deque(maxlen=HOOK_FAULT_LOG_SIZE))


class PluginHost:
    """Owns loaded plugins and their hook registrations.

    Args:
        hooks: Registry the plugins register into
        broadcaster: Broadcaster backing ``broadcast`` and ``on_websocket_event``
        settings_store: Backing store for ``get_settings``/``set_settings``
        gcode_sender: Callable used by ``send_gcode`` (normally
            ``JobEngine.send_gcode``)
        app_version: Version checked against ``min_app_version``
    """

    def __init__(
        self,
        hooks: HookRegistry,
        broadcaster: EventBroadcaster,
        *,
        settings_store: Optional[PluginSettingsStore] = None,
        gcode_sender: Optional[Callable[[str, Optional[Mapping[str, Any]]], str]] = None,
        app_version: str = __version__,
    ):
        self.hooks = hooks
        self.broadcaster = broadcaster
        self.settings_store = settings_store
        self.gcode_sender = gcode_sender
        self.app_version = app_version
        self._plugins: Dict[str, PluginHandle] = {}
        self.hooks.set_fault_listener(self._on_hook_fault)

    def _on_hook_fault(self, fault: HookFault) -> None:
        handle = self._plugins.get(fault.plugin_id)
        if handle is not None:
            handle.errors.append(f"{fault.event_name}: {fault.error}")
        self.broadcaster.publish(
            PLUGIN_ERROR_EVENT,
            {
                "plugin_id": fault.plugin_id,
                "event_name": fault.event_name,
                "error": fault.error,
                "timed_out": fault.timed_out,
            },
        )

    # ========================================================================
    # LOADING
    # ========================================================================

    def load_plugin(
        self,
        manifest: PluginManifest | Mapping[str, Any],
        module: Any,
        *,
        source_path: Optional[str] = None,
    ) -> PluginHandle:
        """Activate a plugin module and run its ``on_load``.

        Raises:
            PluginVersionError: Plugin needs a newer application version
            PluginLoadError: Already loaded, invalid ``minAppVersion``, no
                ``on_load``, or ``on_load`` failed
        """
        if not isinstance(manifest, PluginManifest):
            manifest = PluginManifest.from_dict(manifest)
        plugin_id = manifest.plugin_id

        if plugin_id in self._plugins and self._plugins[plugin_id].status is PluginStatus.LOADED:
            raise PluginLoadError(f"Plugin {plugin_id} is already loaded")
        try:
            compatible = version_at_least(self.app_version, manifest.min_app_version)
        except InvalidParameterError as exc:
            raise PluginLoadError(
                f"Plugin {plugin_id} has an invalid minAppVersion "
                f"{manifest.min_app_version!r}: {exc}"
            ) from exc
        if not compatible:
            raise PluginVersionError(plugin_id, str(manifest.min_app_version), self.app_version)
        if not callable(getattr(module, "on_load", None)):
            raise PluginLoadError(f"Plugin {plugin_id} has no on_load(ctx)")

        context = PluginContext(self, manifest)
        self._activate(plugin_id, module, context)

        handle = PluginHandle(
            plugin_id=plugin_id,
            manifest=manifest,
            module=module,
            context=context,
            source_path=source_path,
        )
        self._plugins[plugin_id] = handle
        logger.info(f"Loaded plugin {plugin_id} v{manifest.version}")
        return handle

    def _activate(self, plugin_id: str, module: Any, context: PluginContext) -> None:
        try:
            module.on_load(context)
        except Exception as exc:
            self.hooks.unregister_all(plugin_id)
            self.broadcaster.unsubscribe_owner(plugin_id)
            logger.error(f"Plugin {plugin_id} on_load failed: {exc}", exc_info=True)
            raise PluginLoadError(f"Plugin {plugin_id} failed to load: {exc}") from exc

    def load_plugin_from_file(self, path: str | Path) -> PluginHandle:
        """Import a plugin from a ``.py`` file and load it.

        The module must define a ``__plugin__`` manifest mapping.
        """
        module = self._import_file(path)
        manifest = getattr(module, "__plugin__", None)
        if manifest is None:
            raise PluginLoadError(f"{path} has no __plugin__ manifest")
        return self.load_plugin(manifest, module, source_path=str(path))

    @staticmethod
    def _import_file(path: str | Path) -> ModuleType:
        target = Path(path).resolve()
        if not target.is_file():
            raise PluginLoadError(f"Plugin file {path} does not exist")
        module_name = f"plugin_sender_plugins.{_MODULE_NAME_PAT.sub('_', target.stem)}"
        spec = importlib.util.spec_from_file_location(module_name, target)
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"Unable to load plugin module at {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise PluginLoadError(f"Failed to import plugin {path}: {exc}") from exc
        return module

    def load_plugins_from_dirs(self, directories: List[str]) -> List[PluginHandle]:
        """Load every ``*.py`` plugin in the given directories. Failures are logged."""
        handles: List[PluginHandle] = []
        for directory in directories:
            root = Path(directory).expanduser()
            if not root.is_dir():
                logger.warning(f"Plugin directory not found: {directory}")
                continue
            for path in sorted(root.glob("*.py")):
                if path.name.startswith("_"):
                    continue
                try:
                    handles.append(self.load_plugin_from_file(path))
                except PluginException as exc:
                    logger.error(f"Skipping plugin {path.name}: {exc}")
        return handles

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def unload_plugin(self, plugin_id: str) -> PluginHandle:
        """Run ``on_unload`` and remove the plugin's hooks and subscriptions."""
        handle = self.get_plugin(plugin_id)
        self._deactivate(handle, reserve=False)
        self._plugins.pop(plugin_id, None)
        handle.status = PluginStatus.UNLOADED
        logger.info(f"Unloaded plugin {plugin_id}")
        return handle

    def reload_plugin(self, plugin_id: str) -> PluginHandle:
        """Reload a plugin with a fresh state object.

        Handlers the plugin registers again keep their previous positions in
        each event's handler list. File-based plugins are re-imported.
        """
        handle = self.get_plugin(plugin_id)
        module = handle.module
        if handle.source_path:
            module = self._import_file(handle.source_path)

        self._deactivate(handle, reserve=True)
        context = PluginContext(self, handle.manifest)
        try:
            self._activate(plugin_id, module, context)
        except PluginLoadError:
            self.hooks.release_reserved(plugin_id)
            self._plugins.pop(plugin_id, None)
            handle.status = PluginStatus.UNLOADED
            raise
        self.hooks.release_reserved(plugin_id)

        handle.module = module
        handle.context = context
        handle.status = PluginStatus.LOADED
        logger.info(f"Reloaded plugin {plugin_id}")
        return handle

    def disable_plugin(self, plugin_id: str) -> PluginHandle:
        """Deactivate a plugin but keep its slots for ``enable_plugin``."""
        handle = self.get_plugin(plugin_id)
        if handle.status is PluginStatus.DISABLED:
            return handle
        self._deactivate(handle, reserve=True)
        handle.status = PluginStatus.DISABLED
        logger.info(f"Disabled plugin {plugin_id}")
        return handle

    def enable_plugin(self, plugin_id: str) -> PluginHandle:
        handle = self.get_plugin(plugin_id)
        if handle.status is not PluginStatus.DISABLED:
            return handle
        context = PluginContext(self, handle.manifest)
        try:
            self._activate(plugin_id, handle.module, context)
        finally:
            self.hooks.release_reserved(plugin_id)
        handle.context = context
        handle.status = PluginStatus.LOADED
        logger.info(f"Enabled plugin {plugin_id}")
        return handle

    def _deactivate(self, handle: PluginHandle, *, reserve: bool) -> None:
        if handle.status is PluginStatus.LOADED:
            on_unload = getattr(handle.module, "on_unload", None)
            if callable(on_unload):
                try:
                    on_unload(handle.context)
                except Exception as exc:
                    logger.error(f"Plugin {handle.plugin_id} on_unload failed: {exc}", exc_info=True)
        self.hooks.unregister_all(handle.plugin_id, reserve=reserve)
        self.broadcaster.unsubscribe_owner(handle.plugin_id)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_plugin(self, plugin_id: str) -> PluginHandle:
        handle = self._plugins.get(plugin_id)
        if handle is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not loaded")
        return handle

    def list_plugins(self) -> List[PluginHandle]:
        return list(self._plugins.values())
