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

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol


class JobState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.STOPPED, JobState.ERRORED)


class JobReason(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


class PluginStatus(str, Enum):
    LOADED = "loaded"
    UNLOADED = "unloaded"
    DISABLED = "disabled"


@dataclass
class JobContext:
    """Identity and position of the active job.

    Only the job engine mutates ``line_number``; hooks get snapshots.
    """
    source_id: Optional[str] = None
    filename: Optional[str] = None
    file_path: Optional[str] = None
    line_number: int = 0
    total_lines: int = 0

    def snapshot(self) -> "JobContext":
        return replace(self)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class JobOutcome:
    reason: JobReason
    total_lines: int
    lines_processed: int = 0
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "total_lines": self.total_lines,
            "lines_processed": self.lines_processed,
            "error": self.error,
        }


@dataclass(frozen=True)
class ToolChangeMatch:
    tool_number: Optional[int]
    matched: bool = True


@dataclass(frozen=True)
class SameToolCheck:
    is_same_tool: bool
    tool_number: Optional[int]
    matched: bool


@dataclass(frozen=True)
class HookRegistration:
    event_name: str
    plugin_id: str
    handler: Optional[Callable[..., Any]]

    @property
    def reserved(self) -> bool:
        """Placeholder slot kept for a plugin that is reloading."""
        return self.handler is None


@dataclass(frozen=True)
class HookFault:
    plugin_id: str
    event_name: str
    error: str
    timed_out: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EventMessage:
    event_name: str
    payload: Any = None


@dataclass(frozen=True)
class ControllerResponse:
    line: str
    response: str
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.response.strip().lower() == "ok"


class ControllerTransport(Protocol):
    """Link to the motion controller used by the job engine."""

    def is_connected(self) -> bool: ...

    def send_line(self, line: str, timeout: Optional[float] = None) -> ControllerResponse:
        """Send one line and block until the controller acknowledges it.

        Raises a ``SerialException`` or ``GrblException`` subclass when the
        link fails or the controller reports an error or alarm.
        """
        ...


class EventPublisher(Protocol):
    def publish(self, event_name: str, payload: Any = None) -> int: ...
