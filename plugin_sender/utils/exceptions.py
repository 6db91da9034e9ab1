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

"""Custom exceptions for Plugin Sender.

The job engine treats anything derived from ``SerialException`` or
``GrblException`` as a transport fault that ends the current job. Hook and
plugin exceptions stay inside the hook registry and the plugin host.
"""

from typing import Any, Optional


class PluginSenderException(Exception):
    """Base exception for all Plugin Sender errors."""
    pass


# ============================================================================
# SERIAL COMMUNICATION EXCEPTIONS
# ============================================================================

class SerialException(PluginSenderException):
    """Base exception for serial communication errors."""
    pass


class SerialConnectionError(SerialException):
    """Failed to connect to serial port."""
    pass


class SerialDisconnectError(SerialException):
    """Unexpected disconnection from serial port."""
    pass


class SerialTimeoutError(SerialException):
    """Serial write or acknowledgment wait timed out."""
    pass


class SerialWriteError(SerialException):
    """Failed to write data to serial port."""
    pass


# ============================================================================
# GRBL EXCEPTIONS
# ============================================================================

class GrblException(PluginSenderException):
    """Base exception for GRBL-related errors."""
    pass


class GrblNotConnectedException(GrblException):
    """Attempted operation while not connected to GRBL."""
    pass


class GrblAlarmException(GrblException):
    """GRBL is in alarm state."""

    def __init__(self, message: str, alarm_code: Optional[str] = None):
        super().__init__(message)
        self.alarm_code = alarm_code


class GrblErrorException(GrblException):
    """GRBL returned an error response."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class GrblBusyError(GrblException):
    """The controller link is owned by a running job."""
    pass


# ============================================================================
# JOB EXCEPTIONS
# ============================================================================

class JobException(PluginSenderException):
    """Base exception for job engine errors."""
    pass


class JobBusyError(JobException):
    """A job was submitted while another job is active."""
    pass


# ============================================================================
# HOOK EXCEPTIONS
# ============================================================================

class HookException(PluginSenderException):
    """Base exception for plugin handler faults."""

    def __init__(self, message: str, plugin_id: str, event_name: str):
        super().__init__(message)
        self.plugin_id = plugin_id
        self.event_name = event_name


class HookTimeoutError(HookException):
    """A plugin handler did not finish within the hook timeout."""
    pass


class HookResultError(HookException):
    """A plugin handler returned a value the event cannot accept."""
    pass


# ============================================================================
# PLUGIN EXCEPTIONS
# ============================================================================

class PluginException(PluginSenderException):
    """Base exception for plugin host errors."""
    pass


class PluginLoadError(PluginException):
    """Plugin module could not be loaded or its on_load failed."""
    pass


class PluginVersionError(PluginException):
    """Plugin requires a newer application version."""

    def __init__(self, plugin_id: str, required: str, running: str):
        self.plugin_id = plugin_id
        self.required = required
        self.running = running
        super().__init__(
            f"Plugin '{plugin_id}' requires version {required} (running {running})"
        )


class PluginNotFoundError(PluginException):
    """No plugin with the given id is known to the host."""
    pass


# ============================================================================
# SETTINGS EXCEPTIONS
# ============================================================================

class SettingsException(PluginSenderException):
    """Base exception for settings errors."""
    pass


class SettingsLoadError(SettingsException):
    """Failed to load settings file."""
    pass


class SettingsSaveError(SettingsException):
    """Failed to save settings file."""
    pass


class SettingsValidationError(SettingsException):
    """Settings validation failed."""
    pass


# ============================================================================
# VALIDATION EXCEPTIONS
# ============================================================================

class ValidationException(PluginSenderException):
    """Base exception for validation errors."""
    pass


class InvalidParameterError(ValidationException):
    """Invalid parameter value."""

    def __init__(self, parameter_name: str, value: Any, reason: Optional[str] = None):
        self.parameter_name = parameter_name
        self.value = value
        self.reason = reason

        message = f"Invalid value for '{parameter_name}': {value}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
