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

"""Ordered plugin hook registry.

Handlers for an event run one at a time in registration order. Transform
events thread a value through the chain: each handler receives the current
value and may return a replacement, ``None`` keeps the previous value.
A handler that raises, returns an unacceptable value or exceeds the hook
timeout is recorded as a fault and skipped; the chain continues with the
last good value.

Registration lists are copy-on-write tuples, so an invocation in progress
always iterates the list as it was when the event fired.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
from collections import deque
from typing import Any, Callable, Optional

from .types import HookFault, HookRegistration
from .utils.constants import HOOK_FAULT_LOG_SIZE, HOOK_TIMEOUT_DEFAULT
from .utils.exceptions import (
    HookException,
    HookResultError,
    HookTimeoutError,
    InvalidParameterError,
)
from .utils.validation import validate_event_name, validate_interval

logger = logging.getLogger(__name__)

FaultListener = Callable[[HookFault], None]

# CancelledError is a BaseException; a handler raising it is still a fault.
HANDLER_FAULTS = (Exception, asyncio.CancelledError)


def _resolve(result: Any) -> Any:
    """Run an awaitable handler result to completion on the calling thread."""
    if not inspect.isawaitable(result):
        return result

    async def _await() -> Any:
        return await result

    return asyncio.run(_await())


class HookRegistry:
    """Per-event ordered handler lists with isolated invocation.

    Attributes:
        timeout_s: Seconds each handler may run; None or 0 runs handlers
            inline on the caller's thread without a limit
    """

    def __init__(
        self,
        timeout_s: Optional[float] = HOOK_TIMEOUT_DEFAULT,
        *,
        fault_log_size: int = HOOK_FAULT_LOG_SIZE,
        fault_listener: Optional[FaultListener] = None,
    ):
        self.timeout_s = validate_interval(timeout_s, name="hook_timeout")
        self._hooks: dict[str, tuple[HookRegistration, ...]] = {}
        self._lock = threading.Lock()
        self._faults: deque[HookFault] = deque(maxlen=max(1, int(fault_log_size)))
        self._fault_listener = fault_listener

    def set_fault_listener(self, listener: Optional[FaultListener]) -> None:
        self._fault_listener = listener

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register(
        self,
        event_name: str,
        plugin_id: str,
        handler: Callable[..., Any],
    ) -> HookRegistration:
        """Append a handler to the event's list.

        If the plugin left a reserved slot for this event (see
        :meth:`unregister_all`), the first such slot is filled instead so the
        handler keeps its previous position.
        """
        event_name = validate_event_name(event_name)
        if not callable(handler):
            raise InvalidParameterError("handler", handler, "must be callable")
        registration = HookRegistration(event_name, str(plugin_id), handler)

        with self._lock:
            current = self._hooks.get(event_name, ())
            for idx, existing in enumerate(current):
                if existing.reserved and existing.plugin_id == registration.plugin_id:
                    updated = current[:idx] + (registration,) + current[idx + 1:]
                    break
            else:
                updated = current + (registration,)
            self._hooks[event_name] = updated

        logger.debug(f"Registered {event_name} handler for plugin {plugin_id}")
        return registration

    def unregister(self, registration: HookRegistration) -> bool:
        """Remove a single registration. Returns True if it was present."""
        with self._lock:
            current = self._hooks.get(registration.event_name, ())
            updated = tuple(r for r in current if r is not registration)
            if len(updated) == len(current):
                return False
            self._store(registration.event_name, updated)
        return True

    def unregister_all(self, plugin_id: str, *, reserve: bool = False) -> int:
        """Remove every registration owned by a plugin.

        Args:
            plugin_id: Owning plugin
            reserve: Leave placeholder slots that the plugin's next
                registrations fill in place (used while reloading)

        Returns:
            Number of live handlers removed
        """
        removed = 0
        with self._lock:
            for event_name, current in list(self._hooks.items()):
                kept: list[HookRegistration] = []
                for registration in current:
                    if registration.plugin_id != plugin_id:
                        kept.append(registration)
                        continue
                    if not registration.reserved:
                        removed += 1
                    if reserve:
                        kept.append(HookRegistration(event_name, plugin_id, None))
                self._store(event_name, tuple(kept))
        if removed:
            logger.debug(f"Removed {removed} handler(s) for plugin {plugin_id}")
        return removed

    def release_reserved(self, plugin_id: str) -> int:
        """Drop reserved slots the plugin did not re-register."""
        released = 0
        with self._lock:
            for event_name, current in list(self._hooks.items()):
                kept = tuple(
                    r for r in current
                    if not (r.reserved and r.plugin_id == plugin_id)
                )
                released += len(current) - len(kept)
                self._store(event_name, kept)
        return released

    def _store(self, event_name: str, registrations: tuple[HookRegistration, ...]) -> None:
        if registrations:
            self._hooks[event_name] = registrations
        else:
            self._hooks.pop(event_name, None)

    def registrations(self, event_name: str) -> tuple[HookRegistration, ...]:
        """Live registrations for an event, in invocation order."""
        with self._lock:
            current = self._hooks.get(event_name, ())
        return tuple(r for r in current if not r.reserved)

    def has_handlers(self, event_name: str) -> bool:
        return bool(self.registrations(event_name))

    def plugin_ids(self) -> set[str]:
        with self._lock:
            return {
                r.plugin_id
                for regs in self._hooks.values()
                for r in regs
                if not r.reserved
            }

    # ========================================================================
    # INVOCATION
    # ========================================================================

    def invoke(
        self,
        event_name: str,
        value: Any,
        *args: Any,
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Run a transform event and return the final value.

        Each handler is called as ``handler(value, *args)``.

        Args:
            event_name: Hook event
            value: Initial value threaded through the chain
            accept: Optional predicate; a non-None result it rejects counts
                as a handler fault
        """
        for registration in self.registrations(event_name):
            try:
                result = self._call(registration, (value,) + args)
            except HANDLER_FAULTS as exc:
                self._record_fault(registration, exc)
                continue
            if result is None:
                continue
            if accept is not None and not accept(result):
                self._record_fault(
                    registration,
                    HookResultError(
                        f"Unacceptable return value of type {type(result).__name__}",
                        registration.plugin_id,
                        event_name,
                    ),
                )
                continue
            value = result
        return value

    def notify(self, event_name: str, *args: Any) -> int:
        """Run a side-effect event. Returns the number of handlers that succeeded."""
        succeeded = 0
        for registration in self.registrations(event_name):
            try:
                self._call(registration, args)
            except HANDLER_FAULTS as exc:
                self._record_fault(registration, exc)
                continue
            succeeded += 1
        return succeeded

    def _call(self, registration: HookRegistration, args: tuple[Any, ...]) -> Any:
        handler = registration.handler
        assert handler is not None
        if not self.timeout_s:
            return _resolve(handler(*args))

        result_q: queue.Queue[tuple[bool, Any]] = queue.Queue(maxsize=1)

        def runner() -> None:
            try:
                result_q.put((True, _resolve(handler(*args))))
            except BaseException as exc:
                result_q.put((False, exc))

        worker = threading.Thread(
            target=runner,
            daemon=True,
            name=f"Hook-{registration.plugin_id}-{registration.event_name}",
        )
        worker.start()
        try:
            ok, value = result_q.get(timeout=self.timeout_s)
        except queue.Empty:
            # The worker cannot be killed; a late result lands in a queue nobody reads.
            raise HookTimeoutError(
                f"Handler timed out after {self.timeout_s}s",
                registration.plugin_id,
                registration.event_name,
            )
        if not ok:
            raise value
        return value

    # ========================================================================
    # FAULT LOG
    # ========================================================================

    def _record_fault(self, registration: HookRegistration, exc: BaseException) -> None:
        timed_out = isinstance(exc, HookTimeoutError)
        if isinstance(exc, HookException):
            detail = str(exc)
        else:
            detail = f"{type(exc).__name__}: {exc}"
        fault = HookFault(
            plugin_id=registration.plugin_id,
            event_name=registration.event_name,
            error=detail,
            timed_out=timed_out,
        )
        self._faults.append(fault)

        if isinstance(exc, HookException):
            logger.warning(
                f"Plugin {registration.plugin_id} {registration.event_name}: {detail}"
            )
        else:
            logger.warning(
                f"Plugin {registration.plugin_id} {registration.event_name} failed: {detail}",
                exc_info=exc,
            )

        listener = self._fault_listener
        if listener is not None:
            try:
                listener(fault)
            except Exception as e:
                logger.error(f"Hook fault listener failed: {e}")

    def faults(self) -> list[HookFault]:
        return list(self._faults)

    def clear_faults(self) -> None:
        self._faults.clear()
