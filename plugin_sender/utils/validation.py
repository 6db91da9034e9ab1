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

"""Input validation utilities for Plugin Sender.

This module provides validation functions for connection parameters,
timeouts, hook event names and plugin version requirements.
"""

import re
from typing import Optional, Tuple

from .constants import VALID_BAUD_RATES
from .exceptions import InvalidParameterError

_VERSION_PAT = re.compile(r"^\s*v?(\d+(?:\.\d+)*)")


def validate_port_name(port: str) -> str:
    """Validate serial port name.

    Args:
        port: Serial port name (e.g., "COM3" or "/dev/ttyUSB0")

    Returns:
        The validated port name

    Raises:
        InvalidParameterError: If port name is invalid
    """
    if not port or not isinstance(port, str):
        raise InvalidParameterError("port", port, "must be non-empty string")

    port = port.strip()
    if not port:
        raise InvalidParameterError("port", port, "must be non-empty")

    return port


def validate_baud_rate(baud: int) -> int:
    """Validate baud rate.

    Args:
        baud: Baud rate value

    Returns:
        The validated baud rate

    Raises:
        InvalidParameterError: If baud rate is invalid
    """
    try:
        baud = int(baud)
    except (TypeError, ValueError):
        raise InvalidParameterError("baud_rate", baud, "must be integer")

    if baud not in VALID_BAUD_RATES:
        raise InvalidParameterError(
            "baud_rate",
            baud,
            f"must be one of {list(VALID_BAUD_RATES)}"
        )

    return baud


def validate_interval(
    interval: Optional[float],
    min_val: float = 0.0,
    name: str = "interval",
) -> Optional[float]:
    """Validate a timeout or interval in seconds.

    ``None`` means "no limit" and is passed through.

    Raises:
        InvalidParameterError: If interval is not numeric or below ``min_val``
    """
    if interval is None:
        return None
    try:
        interval = float(interval)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, interval, "must be numeric")

    if interval < min_val:
        raise InvalidParameterError(name, interval, f"must be >= {min_val}")

    return interval


def validate_event_name(event_name: str) -> str:
    """Validate a hook or broadcast event name."""
    if not isinstance(event_name, str) or not event_name.strip():
        raise InvalidParameterError("event_name", event_name, "must be non-empty string")
    return event_name.strip()


def validate_tool_number(tool: Optional[int]) -> Optional[int]:
    """Validate a tool number (``None`` means no tool loaded)."""
    if tool is None or tool == "":
        return None
    try:
        value = int(tool)
    except (TypeError, ValueError):
        raise InvalidParameterError("tool_number", tool, "must be integer")
    if value < 0:
        raise InvalidParameterError("tool_number", tool, "must be non-negative")
    return value


def parse_version(version: str) -> Tuple[int, ...]:
    """Parse a dotted version string ("1.2", "v2.0.1-beta") into a tuple.

    Raises:
        InvalidParameterError: If no numeric version can be read
    """
    match = _VERSION_PAT.match(str(version or ""))
    if not match:
        raise InvalidParameterError("version", version, "expected dotted numeric version")
    parts = [int(p) for p in match.group(1).split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def version_at_least(running: str, required: Optional[str]) -> bool:
    """Return True if ``running`` satisfies the ``required`` minimum version."""
    if not required:
        return True
    return parse_version(running) >= parse_version(required)
