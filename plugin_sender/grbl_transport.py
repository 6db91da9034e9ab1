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

"""GRBL serial transport.

Strict send-one/wait-for-ack link to a GRBL controller. A background RX
thread reads controller output, completes the outstanding line on ``ok`` /
``error:N`` / ``ALARM:N``, and pushes every line to the event broadcaster as
telemetry (``cnc-data``, ``cnc-response``, ``cnc-status-report``,
``cnc-system-message``).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

import serial
from serial.tools import list_ports

from .gcode_lines import encode_line_payload
from .types import ControllerResponse, EventPublisher
from .utils.constants import (
    ACK_TIMEOUT_DEFAULT,
    ALARM_ALLOWED_PREFIXES,
    BAUD_DEFAULT,
    MAX_LINE_LENGTH,
    RT_HOLD,
    RT_RESET,
    RT_RESUME,
    RT_STATUS,
    SERIAL_CONNECT_DELAY,
    SERIAL_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
    TELEMETRY_DATA,
    TELEMETRY_RESPONSE,
    TELEMETRY_STATUS_REPORT,
    TELEMETRY_SYSTEM_MESSAGE,
    THREAD_JOIN_TIMEOUT,
)
from .utils.exceptions import (
    GrblAlarmException,
    GrblErrorException,
    GrblException,
    GrblNotConnectedException,
    SerialConnectionError,
    SerialDisconnectError,
    SerialTimeoutError,
    SerialWriteError,
)
from .utils.grbl_errors import describe_controller_fault, parse_controller_code
from .utils.logging_config import SERIAL_LOGGER_NAME
from .utils.validation import validate_baud_rate, validate_interval, validate_port_name

logger = logging.getLogger(__name__)
serial_logger = logging.getLogger(SERIAL_LOGGER_NAME)


def _coerce_status_value(text: str) -> Any:
    values: list[Any] = []
    for part in text.split(","):
        try:
            values.append(float(part))
        except ValueError:
            values.append(part)
    return values[0] if len(values) == 1 else values


def parse_status_report(line: str) -> dict[str, Any]:
    """Parse a GRBL ``<State|Key:v1,v2|...>`` report into a dict.

    Example:
        parse_status_report("<Idle|MPos:0.000,1.000,2.000|FS:0,0>")
        # {"state": "Idle", "MPos": [0.0, 1.0, 2.0], "FS": [0.0, 0.0], ...}
    """
    parts = line.strip().strip("<>").split("|")
    state = parts[0] if parts else ""
    report: dict[str, Any] = {"state": state.split(":", 1)[0], "raw": line}
    if ":" in state:
        report["substate"] = state.split(":", 1)[1]
    for part in parts[1:]:
        if ":" not in part:
            continue
        key, value = part.split(":", 1)
        report[key] = _coerce_status_value(value)
    return report


class _PendingLine:
    def __init__(self, line: str):
        self.line = line
        self.sent_ts = time.monotonic()
        self.done = threading.Event()
        self.response: Optional[str] = None
        self.error: Optional[BaseException] = None


class GrblSerialTransport:
    """Serial link to a GRBL controller with a one-line ack handshake.

    Thread-safe and usable as a context manager.

    Example:
        with GrblSerialTransport(broadcaster) as transport:
            transport.connect("/dev/ttyUSB0")
            transport.send_line("G21")
    """

    def __init__(
        self,
        broadcaster: Optional[EventPublisher] = None,
        *,
        ack_timeout: Optional[float] = ACK_TIMEOUT_DEFAULT,
        connect_delay: float = SERIAL_CONNECT_DELAY,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        self.broadcaster = broadcaster
        self.ack_timeout = validate_interval(ack_timeout, name="ack_timeout")
        self.connect_delay = float(connect_delay)
        self._serial_factory = serial_factory or serial.Serial
        self.ser: Any = None
        self.port: Optional[str] = None

        self._rx_thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()

        # _send_lock: one outstanding line; _write_lock: bytes on the wire
        self._send_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: Optional[_PendingLine] = None
        # acks still owed for lines abandoned after a timeout
        self._stale_acks = 0

        self._ready = False
        self._alarm_active = False
        self._alarm_message: Optional[str] = None
        self._last_status: dict[str, Any] = {}

    # ========================================================================
    # CONTEXT MANAGER SUPPORT
    # ========================================================================

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.disconnect()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
        return False

    # ========================================================================
    # CONNECTION MANAGEMENT
    # ========================================================================

    @staticmethod
    def list_ports() -> list[str]:
        """Get list of available serial port device names."""
        return [p.device for p in list_ports.comports()]

    def connect(self, port: str, baud: int = BAUD_DEFAULT) -> None:
        """Open the serial port and start the RX thread.

        Raises:
            SerialConnectionError: If the port cannot be opened
            InvalidParameterError: If port or baud rate is invalid
        """
        port = validate_port_name(port)
        baud = validate_baud_rate(baud)

        if self.is_connected():
            self.disconnect()

        self._stop_evt = threading.Event()
        self._ready = False
        self._alarm_active = False
        self._alarm_message = None
        self._last_status = {}
        self._forget_stale_acks()

        try:
            self.ser = self._serial_factory(
                port,
                baudrate=baud,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_WRITE_TIMEOUT,
            )
        except (serial.SerialException, OSError) as e:
            self.ser = None
            raise SerialConnectionError(f"Failed to connect to {port}: {e}")

        # Give GRBL time to reset (some boards reset on connection)
        if self.connect_delay > 0:
            time.sleep(self.connect_delay)

        try:
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
        except serial.SerialException as e:
            logger.warning(f"Failed to reset buffers: {e}")

        self.port = port
        stop_evt = self._stop_evt
        self._rx_thread = threading.Thread(
            target=self._rx_loop,
            args=(stop_evt,),
            daemon=True,
            name="GRBL-RX",
        )
        self._rx_thread.start()

        self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": "connected", "port": port, "baud": baud})
        logger.info(f"Connected to {port} at {baud} baud")

    def disconnect(self) -> None:
        """Close the port and stop the RX thread. Idempotent."""
        self._stop_evt.set()
        self._fail_pending(SerialDisconnectError("Disconnected"))

        was_connected = self.ser is not None
        if self.ser is not None:
            try:
                self.ser.close()
                logger.info("Serial port closed")
            except (serial.SerialException, OSError) as e:
                logger.error(f"Error closing serial port: {e}")
            finally:
                self.ser = None

        thread = self._rx_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not terminate")
        self._rx_thread = None
        self._ready = False
        self._alarm_active = False

        if was_connected:
            self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": "disconnected", "reason": None})

    def is_connected(self) -> bool:
        ser = self.ser
        return ser is not None and bool(getattr(ser, "is_open", False))

    def is_ready(self) -> bool:
        """True once the GRBL banner or a status report has been seen."""
        return self._ready

    def is_alarm_active(self) -> bool:
        return self._alarm_active

    def _signal_disconnect(self, reason: str) -> None:
        """Handle an unexpected loss of the serial link."""
        self._stop_evt.set()
        ser = self.ser
        self.ser = None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Error closing port after disconnect: {e}")
        self._ready = False
        self._alarm_active = False
        self._fail_pending(SerialDisconnectError(reason))
        logger.error(f"Controller disconnected: {reason}")
        self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": "disconnected", "reason": reason})

    # ========================================================================
    # COMMAND EXECUTION
    # ========================================================================

    def send_line(self, line: str, timeout: Optional[float] = None) -> ControllerResponse:
        """Send one line and block until the controller acknowledges it.

        Args:
            line: Cleaned G-code or ``$`` command
            timeout: Ack timeout in seconds (defaults to ``ack_timeout``)

        Returns:
            The controller's ``ok`` response

        Raises:
            GrblNotConnectedException: Not connected
            GrblAlarmException: Controller is (or went) into alarm
            GrblErrorException: Controller rejected the line
            SerialDisconnectError: Link lost while waiting
            SerialTimeoutError: No acknowledgment in time
            SerialWriteError: Write failed
        """
        text = (line or "").strip()
        if not text:
            raise GrblErrorException("Empty line")
        if not self.is_connected():
            raise GrblNotConnectedException("Not connected to controller")
        if self._alarm_active and not text.upper().startswith(ALARM_ALLOWED_PREFIXES):
            raise GrblAlarmException(
                f"Controller in alarm: {self._alarm_message or 'ALARM'}",
                alarm_code=self._alarm_code(),
            )
        try:
            payload = encode_line_payload(text)
        except UnicodeEncodeError:
            raise GrblErrorException(f"Non-ASCII characters in line: {text}")
        if len(payload) > MAX_LINE_LENGTH:
            raise GrblErrorException(f"Line too long ({len(payload)} > {MAX_LINE_LENGTH}): {text}")

        wait_s = self.ack_timeout if timeout is None else timeout
        with self._send_lock:
            pending = _PendingLine(text)
            with self._pending_lock:
                self._pending = pending
            try:
                self._write(payload)
            except Exception:
                self._clear_pending(pending)
                raise
            serial_logger.debug(f">> {text}")

            if not pending.done.wait(wait_s) and self._abandon_pending(pending):
                raise SerialTimeoutError(
                    f"No acknowledgment for '{text}' within {wait_s}s"
                )
            self._clear_pending(pending)

        if pending.error is not None:
            raise pending.error
        response = pending.response or ""
        if response.lower().startswith("error"):
            info = parse_controller_code(response)
            raise GrblErrorException(
                f"{describe_controller_fault(response)} | {text}",
                error_code=str(info.code) if info else None,
            )
        return ControllerResponse(text, response, time.monotonic() - pending.sent_ts)

    def send_realtime(self, command: bytes) -> None:
        """Send a real-time command byte (no newline, no acknowledgment)."""
        if not self.is_connected():
            raise GrblNotConnectedException("Not connected to controller")
        self._write(command)
        serial_logger.debug(f">> realtime {command!r}")

    def request_status(self) -> None:
        self.send_realtime(RT_STATUS)

    def get_status(self) -> dict[str, Any]:
        """Last parsed status report (empty until one arrives)."""
        return dict(self._last_status)

    def hold(self) -> None:
        self.send_realtime(RT_HOLD)

    def resume(self) -> None:
        self.send_realtime(RT_RESUME)

    def soft_reset(self) -> None:
        """Send Ctrl-X and fail any line still waiting for its ack."""
        self.send_realtime(RT_RESET)
        self._ready = False
        self._forget_stale_acks()
        self._fail_pending(GrblException("Controller reset"))

    def unlock(self) -> ControllerResponse:
        """Send ``$X`` to clear an alarm lock."""
        response = self.send_line("$X")
        self._alarm_active = False
        self._alarm_message = None
        return response

    def _write(self, payload: bytes) -> None:
        ser = self.ser
        if ser is None:
            raise GrblNotConnectedException("Not connected to controller")
        try:
            with self._write_lock:
                total = 0
                length = len(payload)
                while total < length:
                    written = ser.write(payload[total:])
                    if not written:
                        raise serial.SerialTimeoutException("Write returned 0 bytes")
                    total += written
        except serial.SerialTimeoutException as e:
            logger.error(f"Write timeout: {e}")
            self._signal_disconnect(f"Serial write timeout: {e}")
            raise SerialWriteError(f"Write timeout: {e}")
        except (serial.SerialException, OSError) as e:
            logger.error(f"Serial write error: {e}")
            self._signal_disconnect(f"Serial write error: {e}")
            raise SerialDisconnectError(f"Serial write error: {e}")

    # ========================================================================
    # PENDING LINE
    # ========================================================================

    def _clear_pending(self, pending: _PendingLine) -> None:
        with self._pending_lock:
            if self._pending is pending:
                self._pending = None

    def _abandon_pending(self, pending: _PendingLine) -> bool:
        """Give up on a timed-out line. False if its ack landed meanwhile."""
        with self._pending_lock:
            if self._pending is not pending:
                return not pending.done.is_set()
            self._pending = None
            self._stale_acks += 1
        return True

    def _forget_stale_acks(self) -> None:
        with self._pending_lock:
            self._stale_acks = 0

    def _complete_pending(self, response: str) -> Optional[str]:
        with self._pending_lock:
            if self._stale_acks:
                self._stale_acks -= 1
                logger.debug(f"Discarding late response for a timed-out line: {response}")
                return None
            pending = self._pending
            self._pending = None
        if pending is None:
            return None
        pending.response = response
        pending.done.set()
        return pending.line

    def _fail_pending(self, error: BaseException) -> None:
        with self._pending_lock:
            pending = self._pending
            self._pending = None
        if pending is None:
            return
        pending.error = error
        pending.done.set()

    # ========================================================================
    # RX HANDLING
    # ========================================================================

    def _rx_loop(self, stop_evt: threading.Event) -> None:
        logger.debug("RX thread started")
        buf = b""
        try:
            while not stop_evt.is_set():
                ser = self.ser
                if ser is None:
                    break
                try:
                    chunk = ser.read(256)
                except serial.SerialTimeoutException:
                    continue
                except (serial.SerialException, OSError) as e:
                    if not stop_evt.is_set():
                        logger.error(f"Serial read error: {e}")
                        self._signal_disconnect(f"Serial read error: {e}")
                    break

                if not chunk:
                    continue

                buf += chunk
                while b"\n" in buf:
                    raw, buf = buf.split(b"\n", 1)
                    line = raw.decode("utf-8", errors="replace").strip()
                    if line:
                        self._handle_rx_line(line)

        except Exception as e:
            logger.error(f"RX thread error: {e}", exc_info=True)
            self._signal_disconnect(f"RX thread error: {e}")

        finally:
            logger.debug("RX thread stopped")

    def _handle_rx_line(self, line: str) -> None:
        serial_logger.debug(f"<< {line}")
        self._publish(TELEMETRY_DATA, line)
        lower = line.lower()

        if lower == "ok" or lower.startswith("error"):
            sent = self._complete_pending(line)
            if sent is None:
                logger.debug(f"Unsolicited response: {line}")
            self._publish(TELEMETRY_RESPONSE, {"line": sent, "response": line})
            return

        if line.startswith("<") and line.endswith(">"):
            self._ready = True
            report = parse_status_report(line)
            self._last_status = report
            state = str(report.get("state", ""))
            if state.lower().startswith("alarm"):
                if not self._alarm_active:
                    self._handle_alarm(state)
            elif self._alarm_active:
                self._alarm_active = False
                self._alarm_message = None
            self._publish(TELEMETRY_STATUS_REPORT, report)
            return

        if lower.startswith("grbl"):
            self._ready = True
            self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": "banner", "message": line})
            logger.info(f"Controller ready: {line}")
            # A banner while a line is outstanding means the controller reset.
            self._forget_stale_acks()
            self._fail_pending(GrblException(f"Controller reset while waiting for ack: {line}"))
            return

        if lower.startswith("alarm:"):
            self._handle_alarm(line)
            return

        if "[msg:" in lower and "reset to continue" in lower:
            self._handle_alarm(line)
            return

        if line.startswith("["):
            kind = "message" if lower.startswith("[msg:") else "feedback"
            self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": kind, "message": line})

    def _handle_alarm(self, message: str) -> None:
        message = describe_controller_fault(message)
        logger.warning(f"GRBL ALARM: {message}")
        self._alarm_active = True
        self._alarm_message = message
        self._fail_pending(GrblAlarmException(message, alarm_code=self._alarm_code()))
        self._publish(TELEMETRY_SYSTEM_MESSAGE, {"type": "alarm", "message": message})

    def _alarm_code(self) -> Optional[str]:
        info = parse_controller_code(self._alarm_message)
        return str(info.code) if info and info.kind == "alarm" else None

    def _publish(self, event_name: str, payload: Any) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(event_name, payload)
        except Exception as e:
            logger.error(f"Failed to publish {event_name}: {e}")
