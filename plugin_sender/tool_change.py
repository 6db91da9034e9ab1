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

"""Tool change (M6) recognition.

Recognizes ``M6``/``M06`` tool change commands in free-form G-code text and
extracts the tool number from the accompanying ``T`` word, whichever order
the two words appear in. Used by the job engine for tool tracking and the
optional same-tool elision policy, and available to plugins.
"""

from __future__ import annotations

import re
from typing import Optional

from .types import SameToolCheck, ToolChangeMatch

# Group 1: tool number from the "M6 T#" form.
# Group 2: tool number from the "T# M6" form.
# M6 must not be followed by another digit (M60, M61, M600) or letter (M6R2),
# except the T word of the first form.
M6_PATTERN = re.compile(
    r"(?<![A-Z])M0*6(?:\s*T0*(\d+)|(?![0-9A-Z]))"
    r"|(?<![A-Z])T0*(\d+)\s*M0*6(?![0-9A-Z])",
    re.IGNORECASE,
)


def _normalize(command: object) -> Optional[str]:
    if not command or not isinstance(command, str):
        return None
    return command.strip().upper()


def parse_m6_command(command: object) -> Optional[ToolChangeMatch]:
    """Parse an M6 tool change command.

    Returns:
        None when the text is not a tool change; otherwise a match whose
        ``tool_number`` is None for a bare ``M6``.

    Example:
        parse_m6_command("M6 T2")   # ToolChangeMatch(tool_number=2)
        parse_m6_command("T2M6")    # ToolChangeMatch(tool_number=2)
        parse_m6_command("M6")      # ToolChangeMatch(tool_number=None)
        parse_m6_command("M60")     # None
    """
    text = _normalize(command)
    if text is None:
        return None
    match = M6_PATTERN.search(text)
    if not match:
        return None
    digits = match.group(1) or match.group(2)
    return ToolChangeMatch(tool_number=int(digits) if digits else None, matched=True)


def is_m6_command(command: object) -> bool:
    """Check whether the text is an M6 tool change command."""
    text = _normalize(command)
    if text is None:
        return False
    return M6_PATTERN.search(text) is not None


def get_m6_pattern() -> re.Pattern[str]:
    """Return the compiled M6 pattern (expects trimmed, upper-cased text)."""
    return M6_PATTERN


def check_same_tool_change(command: object, current_tool: Optional[int]) -> SameToolCheck:
    """Compare a tool change against the currently loaded tool.

    A bare ``M6`` without a tool number cannot be compared and reports
    ``matched=False``.
    """
    parsed = parse_m6_command(command)
    if parsed is None or parsed.tool_number is None:
        return SameToolCheck(is_same_tool=False, tool_number=None, matched=False)
    return SameToolCheck(
        is_same_tool=current_tool is not None and parsed.tool_number == current_tool,
        tool_number=parsed.tool_number,
        matched=True,
    )


def strip_tool_change(command: str) -> str:
    """Remove the M6/T words from a block, keeping any other words.

    Example:
        strip_tool_change("G53 G0 Z-5 M6 T2")  # "G53 G0 Z-5"
        strip_tool_change("T2 M6")             # ""
    """
    return " ".join(M6_PATTERN.sub(" ", command).split())
