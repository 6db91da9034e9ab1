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

"""Constants and configuration values for Plugin Sender.

This module centralizes the magic numbers, default values and event names
used by the job engine, the hook pipeline and the GRBL transport.
"""

# ============================================================================
# SERIAL COMMUNICATION CONSTANTS
# ============================================================================

BAUD_DEFAULT = 115200
"""Default baud rate for GRBL serial communication."""

VALID_BAUD_RATES = (9600, 19200, 38400, 57600, 115200, 230400)
"""Baud rates accepted for GRBL connections."""

SERIAL_TIMEOUT = 0.1
"""Serial read timeout (seconds); keeps the RX loop responsive to stop."""

SERIAL_WRITE_TIMEOUT = 1.0
"""Serial write timeout (seconds)."""

SERIAL_CONNECT_DELAY = 2.0
"""Delay after opening the port while GRBL resets (seconds)."""

THREAD_JOIN_TIMEOUT = 1.0
"""Maximum wait when joining worker threads (seconds)."""

MAX_LINE_LENGTH = 80
"""Maximum G-code line length for GRBL 1.1h (including newline)."""

# ============================================================================
# GRBL REAL-TIME COMMAND BYTES
# ============================================================================

RT_RESET = b"\x18"
"""Ctrl-X soft reset."""

RT_STATUS = b"?"
"""Status report query."""

RT_HOLD = b"!"
"""Feed hold (pause)."""

RT_RESUME = b"~"
"""Cycle start / resume."""

ALARM_ALLOWED_PREFIXES = ("$X", "$H")
"""Commands accepted while the controller is in alarm."""

# ============================================================================
# JOB ENGINE
# ============================================================================

ACK_TIMEOUT_DEFAULT = 30.0
"""Seconds to wait for the controller to acknowledge a line."""

HOOK_TIMEOUT_DEFAULT = 5.0
"""Seconds a single plugin handler may run before it counts as failed."""

JOB_WAIT_POLL_INTERVAL = 0.05
"""Polling interval (seconds) used while waiting on job or queue state."""

HOOK_FAULT_LOG_SIZE = 200
"""Number of handler faults kept in the registry fault log."""

# ============================================================================
# EVENT BROADCASTER
# ============================================================================

BROADCAST_QUEUE_MAXSIZE = 1000
"""Per-subscriber queue depth before events are dropped for that subscriber."""

BROADCAST_DROP_NOTICE_INTERVAL = 1.0
"""Minimum seconds between dropped-event summary log entries."""

BROADCAST_WILDCARD = "*"
"""Subscription name that receives every published event."""

# ============================================================================
# EVENT NAMES
# ============================================================================

EVENT_BEFORE_JOB_START = "onBeforeJobStart"
EVENT_BEFORE_GCODE_LINE = "onBeforeGcodeLine"
EVENT_AFTER_GCODE_LINE = "onAfterGcodeLine"
EVENT_AFTER_JOB_END = "onAfterJobEnd"

HOOK_EVENTS = (
    EVENT_BEFORE_JOB_START,
    EVENT_BEFORE_GCODE_LINE,
    EVENT_AFTER_GCODE_LINE,
    EVENT_AFTER_JOB_END,
)
"""Hook points invoked by the job engine."""

TELEMETRY_DATA = "cnc-data"
TELEMETRY_SYSTEM_MESSAGE = "cnc-system-message"
TELEMETRY_RESPONSE = "cnc-response"
TELEMETRY_STATUS_REPORT = "cnc-status-report"

JOB_STATE_EVENT = "job-state"
JOB_PROGRESS_EVENT = "job-progress"
JOB_END_EVENT = "job-end"
TOOL_CHANGE_EVENT = "tool-change"
PLUGIN_ERROR_EVENT = "plugin-error"

# ============================================================================
# SETTINGS FILES
# ============================================================================

SETTINGS_FILENAME = "plugin_sender_settings.json"
SETTINGS_TEMP_SUFFIX = ".tmp"
SETTINGS_BACKUP_SUFFIX = ".bak"
