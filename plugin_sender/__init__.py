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
"""Plugin Sender - GRBL G-code job engine with a plugin hook pipeline.

Streams G-code to a GRBL controller one acknowledged line at a time while
plugins rewrite lines and react to job events.
"""

__version__ = "1.0"
__author__ = "Bob Kolbasowski"

from .event_broadcaster import EventBroadcaster
from .grbl_transport import GrblSerialTransport
from .hook_registry import HookRegistry
from .job_engine import JobEngine
from .plugin_host import PluginContext, PluginHost, PluginManifest
from .tool_change import check_same_tool_change, parse_m6_command, strip_tool_change
from .types import JobContext, JobOutcome, JobReason, JobState
from .utils import PluginSettingsStore, Settings

__all__ = [
    "EventBroadcaster",
    "GrblSerialTransport",
    "HookRegistry",
    "JobContext",
    "JobEngine",
    "JobOutcome",
    "JobReason",
    "JobState",
    "PluginContext",
    "PluginHost",
    "PluginManifest",
    "PluginSettingsStore",
    "Settings",
    "check_same_tool_change",
    "parse_m6_command",
    "strip_tool_change",
]
