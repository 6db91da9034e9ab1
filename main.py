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
"""
    Plugin Sender - headless GRBL job runner

    Connects to the controller, loads plugins and streams one G-code file.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from plugin_sender import __version__
from plugin_sender.event_broadcaster import EventBroadcaster
from plugin_sender.grbl_transport import GrblSerialTransport
from plugin_sender.hook_registry import HookRegistry
from plugin_sender.job_engine import JobEngine
from plugin_sender.plugin_host import PluginHost
from plugin_sender.types import JobReason
from plugin_sender.utils import PluginSettingsStore, Settings, setup_logging
from plugin_sender.utils.constants import (
    JOB_PROGRESS_EVENT,
    TELEMETRY_SYSTEM_MESSAGE,
    TOOL_CHANGE_EVENT,
)
from plugin_sender.utils.exceptions import (
    PluginException,
    PluginSenderException,
    SettingsException,
)

logger = logging.getLogger("plugin_sender.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plugin-sender",
        description="Stream a G-code file to a GRBL controller through the plugin hook pipeline",
    )
    parser.add_argument("gcode_file", nargs="?", help="G-code program to run")
    parser.add_argument("--port", help="serial port (default: last used port)")
    parser.add_argument("--baud", type=int, help="baud rate (default: from settings)")
    parser.add_argument(
        "--plugin",
        action="append",
        default=[],
        metavar="FILE",
        help="plugin .py file to load (repeatable)",
    )
    parser.add_argument(
        "--elide-tool-changes",
        action="store_true",
        help="skip tool changes to the tool that is already loaded",
    )
    parser.add_argument("--list-ports", action="store_true", help="list serial ports and exit")
    parser.add_argument("--settings", help="settings file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _load_settings(path: Optional[str]) -> Settings:
    settings = Settings(path)
    try:
        settings.load()
        settings.validate()
    except SettingsException as exc:
        logger.warning(f"Settings problem ({exc}); using defaults")
        settings.reset_to_defaults()
    return settings


def _print_event(prefix: str):
    def handler(payload) -> None:
        print(f"[{prefix}] {payload}")
    return handler


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.list_ports:
        ports = GrblSerialTransport.list_ports()
        for port in ports:
            print(port)
        if not ports:
            print("No serial ports found")
        return 0

    if not args.gcode_file:
        print("error: a G-code file is required", file=sys.stderr)
        return 2

    try:
        with open(args.gcode_file, "r", encoding="utf-8", errors="replace") as f:
            source_text = f.read()
    except OSError as exc:
        print(f"error: cannot read {args.gcode_file}: {exc}", file=sys.stderr)
        return 2

    settings = _load_settings(args.settings)
    port = args.port or settings.get("last_port")
    baud = args.baud or settings.get("baud_rate")
    if not port:
        print("error: no serial port given (use --port)", file=sys.stderr)
        return 2

    broadcaster = EventBroadcaster(settings.get("broadcast_queue_size"))
    hooks = HookRegistry(settings.get("hook_timeout"))
    transport = GrblSerialTransport(broadcaster, ack_timeout=settings.get("ack_timeout"))
    engine = JobEngine(
        transport,
        hooks,
        broadcaster,
        ack_timeout=settings.get("ack_timeout"),
        elide_same_tool_changes=args.elide_tool_changes or settings.get("elide_same_tool_changes"),
        initial_tool=settings.get("initial_tool"),
    )
    host = PluginHost(
        hooks,
        broadcaster,
        settings_store=PluginSettingsStore(settings),
        gcode_sender=engine.send_gcode,
    )

    broadcaster.subscribe(TELEMETRY_SYSTEM_MESSAGE, _print_event("controller"))
    broadcaster.subscribe(TOOL_CHANGE_EVENT, _print_event("tool"))
    if args.verbose:
        broadcaster.subscribe(JOB_PROGRESS_EVENT, _print_event("progress"))

    host.load_plugins_from_dirs(settings.get("plugin_dirs") or [])
    for path in args.plugin:
        try:
            host.load_plugin_from_file(path)
        except PluginException as exc:
            print(f"error: {exc}", file=sys.stderr)
            broadcaster.close()
            return 2

    try:
        transport.connect(port, baud)
    except PluginSenderException as exc:
        print(f"error: {exc}", file=sys.stderr)
        broadcaster.close()
        return 1

    settings.set("last_port", port)
    settings.set("baud_rate", baud)
    try:
        settings.save()
    except SettingsException as exc:
        logger.warning(f"Could not save settings: {exc}")

    try:
        engine.start_job(
            source_text,
            filename=os.path.basename(args.gcode_file),
            file_path=os.path.abspath(args.gcode_file),
            source_id=args.gcode_file,
        )
        try:
            outcome = engine.wait()
        except KeyboardInterrupt:
            print("Stopping after the current line...")
            engine.stop_job()
            outcome = engine.wait()
    finally:
        for handle in host.list_plugins():
            try:
                host.unload_plugin(handle.plugin_id)
            except PluginException as exc:
                logger.error(f"Unload failed for {handle.plugin_id}: {exc}")
        transport.disconnect()
        broadcaster.flush(timeout=1.0)
        broadcaster.close()

    if outcome is None:
        print("Job did not finish")
        return 1
    print(
        f"Job {outcome.reason.value}: {outcome.lines_processed}/{outcome.total_lines} lines"
        + (f" ({outcome.error})" if outcome.error else "")
    )
    return 0 if outcome.reason is JobReason.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
