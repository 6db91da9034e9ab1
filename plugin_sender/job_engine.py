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

"""Job execution state machine.

One job at a time per engine: ``idle -> starting -> running`` and then one of
``completed``, ``stopped`` or ``errored`` before returning to ``idle``. Each
line goes through ``onBeforeGcodeLine``, the send/ack handshake and
``onAfterGcodeLine`` before the next line starts. ``onAfterJobEnd`` fires
exactly once per job whatever the outcome.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

from .gcode_lines import clean_gcode_line, split_program
from .hook_registry import HookRegistry
from .tool_change import check_same_tool_change, strip_tool_change
from .types import (
    ControllerTransport,
    EventPublisher,
    JobContext,
    JobOutcome,
    JobReason,
    JobState,
)
from .utils.constants import (
    ACK_TIMEOUT_DEFAULT,
    EVENT_AFTER_GCODE_LINE,
    EVENT_AFTER_JOB_END,
    EVENT_BEFORE_GCODE_LINE,
    EVENT_BEFORE_JOB_START,
    JOB_END_EVENT,
    JOB_PROGRESS_EVENT,
    JOB_STATE_EVENT,
    THREAD_JOIN_TIMEOUT,
    TOOL_CHANGE_EVENT,
)
from .utils.exceptions import (
    GrblBusyError,
    GrblException,
    GrblNotConnectedException,
    JobBusyError,
    SerialException,
)
from .utils.validation import validate_interval, validate_tool_number

logger = logging.getLogger(__name__)


def _is_text(value: Any) -> bool:
    return isinstance(value, str)


class JobEngine:
    """Drive G-code jobs through the hook pipeline and the controller link.

    Args:
        transport: Controller link (``is_connected`` / ``send_line``)
        hooks: Registry holding the plugins' hook handlers
        broadcaster: Optional publisher for job-state/progress events
        ack_timeout: Seconds to wait for each acknowledgment
        elide_same_tool_changes: Skip sending a tool change for the tool
            that is already loaded
        initial_tool: Tool assumed loaded before the first job
    """

    def __init__(
        self,
        transport: ControllerTransport,
        hooks: HookRegistry,
        broadcaster: Optional[EventPublisher] = None,
        *,
        ack_timeout: Optional[float] = ACK_TIMEOUT_DEFAULT,
        elide_same_tool_changes: bool = False,
        initial_tool: Optional[int] = None,
    ):
        self.transport = transport
        self.hooks = hooks
        self.broadcaster = broadcaster
        self.ack_timeout = validate_interval(ack_timeout, name="ack_timeout")
        self.elide_same_tool_changes = bool(elide_same_tool_changes)
        self._current_tool = validate_tool_number(initial_tool)

        self._state = JobState.IDLE
        self._state_lock = threading.Lock()
        # Held by the job for each send/ack round trip and by send_gcode
        self._transport_lock = threading.Lock()
        self._hook_phase = threading.Event()
        self._stop_evt = threading.Event()
        self._done_evt = threading.Event()
        self._done_evt.set()
        self._job_thread: Optional[threading.Thread] = None
        self._context: Optional[JobContext] = None
        self._last_outcome: Optional[JobOutcome] = None

    # ========================================================================
    # STATE
    # ========================================================================

    @property
    def state(self) -> JobState:
        return self._state

    def is_busy(self) -> bool:
        return self._state is not JobState.IDLE

    @property
    def current_tool(self) -> Optional[int]:
        return self._current_tool

    def set_current_tool(self, tool: Optional[int]) -> None:
        """Seed the tracked tool (e.g. after a manual tool change)."""
        self._current_tool = validate_tool_number(tool)

    @property
    def last_outcome(self) -> Optional[JobOutcome]:
        return self._last_outcome

    def context(self) -> Optional[JobContext]:
        """Snapshot of the active job's context, or None when idle."""
        ctx = self._context
        return ctx.snapshot() if ctx is not None else None

    def _set_state(self, state: JobState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        if previous is not state:
            logger.debug(f"Job state {previous.value} -> {state.value}")
            self._publish(JOB_STATE_EVENT, {"state": state.value, "previous": previous.value})

    # ========================================================================
    # JOB CONTROL
    # ========================================================================

    def start_job(
        self,
        source_text: str,
        *,
        filename: Optional[str] = None,
        file_path: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> JobContext:
        """Submit a job and run it on a background thread.

        Returns:
            Snapshot of the new job's context

        Raises:
            JobBusyError: If a job is already active
        """
        context = self._claim(source_id, filename, file_path)
        self._job_thread = threading.Thread(
            target=self._run,
            args=(source_text, context),
            daemon=True,
            name="Job-Runner",
        )
        self._job_thread.start()
        return context.snapshot()

    def run_job(
        self,
        source_text: str,
        *,
        filename: Optional[str] = None,
        file_path: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> JobOutcome:
        """Run a job to completion on the calling thread."""
        context = self._claim(source_id, filename, file_path)
        return self._run(source_text, context)

    def stop_job(self) -> bool:
        """Request a stop at the next line boundary.

        Returns:
            True if a job was active
        """
        if self._state in (JobState.STARTING, JobState.RUNNING):
            self._stop_evt.set()
            logger.info("Stop requested")
            return True
        return False

    def wait(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        """Block until the active job ends. Returns its outcome, or None on timeout."""
        if not self._done_evt.wait(timeout):
            return None
        thread = self._job_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
        return self._last_outcome

    def _claim(
        self,
        source_id: Optional[str],
        filename: Optional[str],
        file_path: Optional[str],
    ) -> JobContext:
        with self._state_lock:
            if self._state is not JobState.IDLE:
                raise JobBusyError(f"Job already active ({self._state.value})")
            self._state = JobState.STARTING
            self._stop_evt.clear()
            self._done_evt.clear()
            context = JobContext(source_id=source_id, filename=filename, file_path=file_path)
            self._context = context
        logger.info(f"Job starting: {filename or source_id or '<unnamed>'}")
        self._publish(JOB_STATE_EVENT, {"state": JobState.STARTING.value, "previous": JobState.IDLE.value})
        return context

    # ========================================================================
    # JOB LOOP
    # ========================================================================

    def _run(self, source_text: str, context: JobContext) -> JobOutcome:
        outcome: Optional[JobOutcome] = None
        try:
            outcome = self._execute(source_text, context)
        except Exception as exc:
            logger.error(f"Job failed unexpectedly: {exc}", exc_info=True)
            outcome = self._outcome(context, JobReason.ERROR, f"Internal error: {exc}")
        finally:
            if outcome is None:
                outcome = self._outcome(context, JobReason.ERROR, "Job aborted")
            self._finish(context, outcome)
        return outcome

    def _execute(self, source_text: str, context: JobContext) -> JobOutcome:
        if not self.transport.is_connected():
            return self._outcome(context, JobReason.ERROR, "Controller not connected")

        program = self._with_hooks(
            self.hooks.invoke,
            EVENT_BEFORE_JOB_START,
            source_text or "",
            context.snapshot(),
            accept=_is_text,
        )
        lines = split_program(program)
        context.total_lines = len(lines)

        if self._stop_evt.is_set():
            return self._outcome(context, JobReason.STOPPED)
        self._set_state(JobState.RUNNING)
        logger.info(f"Job running: {len(lines)} lines")

        for line_number, raw_line in enumerate(lines, start=1):
            if self._stop_evt.is_set():
                return self._outcome(context, JobReason.STOPPED)
            context.line_number = line_number

            line = self._with_hooks(
                self.hooks.invoke,
                EVENT_BEFORE_GCODE_LINE,
                raw_line,
                context.snapshot(),
                accept=_is_text,
            )
            response, error = self._transmit(line, line_number)
            if error is not None:
                return self._outcome(context, JobReason.ERROR, error)
            if response is False:
                context.line_number = line_number - 1
                return self._outcome(context, JobReason.STOPPED)

            self._with_hooks(
                self.hooks.notify,
                EVENT_AFTER_GCODE_LINE,
                line,
                response,
                context.snapshot(),
            )
            self._publish(
                JOB_PROGRESS_EVENT,
                {"line_number": line_number, "total_lines": context.total_lines},
            )

        return self._outcome(context, JobReason.COMPLETED)

    def _transmit(self, line: str, line_number: int) -> tuple[Any, Optional[str]]:
        """Send one line. Returns ``(response, error)``.

        ``response`` is None for lines that were not sent (blank, comment-only
        or elided) and False when a stop arrived before sending.
        """
        cleaned = clean_gcode_line(line)
        if not cleaned:
            return None, None

        check = check_same_tool_change(cleaned, self._current_tool)
        if check.is_same_tool and self.elide_same_tool_changes:
            logger.info(f"Line {line_number}: T{check.tool_number} already loaded, skipping tool change")
            self._publish(
                TOOL_CHANGE_EVENT,
                {"tool_number": check.tool_number, "line_number": line_number, "elided": True},
            )
            # other words in the block still go out
            cleaned = strip_tool_change(cleaned)
            if not cleaned:
                return None, None
            check = check_same_tool_change(cleaned, self._current_tool)

        if self._stop_evt.is_set():
            return False, None

        try:
            with self._transport_lock:
                result = self.transport.send_line(cleaned, timeout=self.ack_timeout)
        except (SerialException, GrblException) as exc:
            logger.error(f"Line {line_number} failed: {exc}")
            return None, f"Line {line_number}: {exc}"

        if check.matched:
            previous = self._current_tool
            self._current_tool = check.tool_number
            logger.info(f"Tool change T{previous} -> T{check.tool_number} at line {line_number}")
            self._publish(
                TOOL_CHANGE_EVENT,
                {
                    "tool_number": check.tool_number,
                    "previous_tool": previous,
                    "line_number": line_number,
                    "elided": False,
                },
            )
        return result.response, None

    def _with_hooks(self, call, *args: Any, **kwargs: Any) -> Any:
        self._hook_phase.set()
        try:
            return call(*args, **kwargs)
        finally:
            self._hook_phase.clear()

    def _outcome(
        self,
        context: JobContext,
        reason: JobReason,
        error: Optional[str] = None,
    ) -> JobOutcome:
        if reason is JobReason.COMPLETED:
            processed = context.total_lines
        else:
            processed = max(0, context.line_number - (0 if reason is JobReason.STOPPED else 1))
        return JobOutcome(
            reason=reason,
            total_lines=context.total_lines,
            lines_processed=processed,
            error=error,
        )

    def _finish(self, context: JobContext, outcome: JobOutcome) -> None:
        terminal = {
            JobReason.COMPLETED: JobState.COMPLETED,
            JobReason.STOPPED: JobState.STOPPED,
            JobReason.ERROR: JobState.ERRORED,
        }[outcome.reason]
        self._set_state(terminal)
        if outcome.error:
            logger.error(f"Job ended with error: {outcome.error}")
        else:
            logger.info(
                f"Job {outcome.reason.value}: {outcome.lines_processed}/{outcome.total_lines} lines"
            )

        try:
            self._with_hooks(self.hooks.notify, EVENT_AFTER_JOB_END, context.snapshot(), outcome)
        finally:
            self._last_outcome = outcome
            self._publish(JOB_END_EVENT, {**context.as_dict(), **outcome.as_dict()})
            self._context = None
            self._stop_evt.clear()
            self._set_state(JobState.IDLE)
            self._done_evt.set()

    # ========================================================================
    # PLUGIN COMMANDS
    # ========================================================================

    def send_gcode(self, line: str, options: Optional[Mapping[str, Any]] = None) -> str:
        """Send a line on behalf of a plugin and wait for its acknowledgment.

        While a job is active this is only allowed from inside a hook
        handler (between acknowledgments); the job owns the link otherwise.

        Args:
            line: G-code or ``$`` command
            options: ``{"timeout": seconds}`` overrides the ack timeout

        Returns:
            The controller's response text

        Raises:
            GrblBusyError: A job owns the link right now
            GrblNotConnectedException: Not connected
        """
        options = dict(options or {})
        timeout = validate_interval(options.get("timeout", self.ack_timeout), name="timeout")
        cleaned = clean_gcode_line(line or "")
        if not cleaned:
            raise GrblException("Empty G-code line")
        if not self.transport.is_connected():
            raise GrblNotConnectedException("Not connected to controller")

        if self._state is JobState.IDLE:
            acquired = self._transport_lock.acquire()
        elif self._hook_phase.is_set():
            acquired = self._transport_lock.acquire(blocking=False)
        else:
            acquired = False
        if not acquired:
            raise GrblBusyError(f"Controller busy with job; cannot send '{cleaned}'")

        try:
            result = self.transport.send_line(cleaned, timeout=timeout)
        finally:
            self._transport_lock.release()
        return result.response

    def _publish(self, event_name: str, payload: Any) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(event_name, payload)
        except Exception as e:
            logger.error(f"Failed to publish {event_name}: {e}")
