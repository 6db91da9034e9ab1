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

"""Program text helpers: split a job into lines, clean a line for sending."""

import re
from typing import List

PAREN_COMMENT_PAT = re.compile(r"\(.*?\)")


def clean_gcode_line(line: str) -> str:
    """Strip comments and whitespace; keep simple + safe."""
    line = line.replace("\ufeff", "")
    line = PAREN_COMMENT_PAT.sub("", line)
    if ";" in line:
        line = line.split(";", 1)[0]
    line = line.strip()
    if line.startswith("%"):
        return ""
    return line


def split_program(source_text: str) -> List[str]:
    """Split program text into lines.

    Handles ``\\n``, ``\\r\\n`` and ``\\r`` endings. A trailing newline does
    not produce an extra empty line; blank lines inside the program are kept
    so line numbers match the source file.
    """
    if not source_text:
        return []
    return source_text.splitlines()


def encode_line_payload(line: str) -> bytes:
    """Encode a cleaned line for the wire (ASCII, newline terminated)."""
    return (line + "\n").encode("ascii")
