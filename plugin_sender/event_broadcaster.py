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

"""Event fan-out to plugin and UI subscribers.

Every subscriber owns a bounded queue drained by its own dispatcher thread,
so a slow or failing subscriber only delays itself. ``publish`` never blocks:
when a subscriber's queue is full the event is dropped for that subscriber
and counted. The broadcaster knows nothing about jobs; the transport pushes
controller telemetry into it and the engine and plugins publish their own
named events.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Hashable, Optional

from .types import EventMessage
from .utils.constants import (
    BROADCAST_DROP_NOTICE_INTERVAL,
    BROADCAST_QUEUE_MAXSIZE,
    BROADCAST_WILDCARD,
    JOB_WAIT_POLL_INTERVAL,
)
from .utils.exceptions import InvalidParameterError
from .utils.validation import validate_event_name

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class _Subscriber:
    def __init__(
        self,
        broadcaster: "EventBroadcaster",
        event_name: str,
        handler: Callable[[Any], Any],
        owner: Optional[Hashable],
        maxsize: int,
    ):
        self.broadcaster = broadcaster
        self.event_name = event_name
        self.handler = handler
        self.owner = owner
        self.queue: queue.Queue[EventMessage] = queue.Queue(maxsize=maxsize)
        self._stop_evt = threading.Event()
        self.thread = threading.Thread(
            target=self._dispatch_loop,
            daemon=True,
            name=f"Broadcast-{event_name}",
        )

    def start(self) -> None:
        self.thread.start()

    def stop(self) -> None:
        self._stop_evt.set()
        self._drain()

    def _drain(self) -> None:
        discarded = 0
        while True:
            try:
                self.queue.get_nowait()
            except queue.Empty:
                break
            discarded += 1
        if discarded:
            self.broadcaster._delivered(discarded)

    def offer(self, message: EventMessage) -> bool:
        if self._stop_evt.is_set():
            return False
        try:
            self.queue.put_nowait(message)
        except queue.Full:
            return False
        if self._stop_evt.is_set():
            # stop() may have drained before the put landed
            self._drain()
        return True

    def _dispatch_loop(self) -> None:
        while not self._stop_evt.is_set():
            try:
                message = self.queue.get(timeout=JOB_WAIT_POLL_INTERVAL)
            except queue.Empty:
                continue
            if self._stop_evt.is_set():
                self.broadcaster._delivered(1)
                break
            try:
                if self.event_name == BROADCAST_WILDCARD:
                    self.handler(message)
                else:
                    self.handler(message.payload)
            except Exception as e:
                logger.error(
                    f"Subscriber for '{message.event_name}' failed: {e}",
                    exc_info=True,
                )
            finally:
                self.broadcaster._delivered(1)


class EventBroadcaster:
    """Publish/subscribe hub for telemetry and custom events.

    Example:
        broadcaster = EventBroadcaster()
        unsubscribe = broadcaster.subscribe("cnc-data", print)
        broadcaster.publish("cnc-data", "ok")
        unsubscribe()
    """

    def __init__(
        self,
        queue_size: int = BROADCAST_QUEUE_MAXSIZE,
        *,
        drop_notice_interval: float = BROADCAST_DROP_NOTICE_INTERVAL,
    ):
        self._queue_size = max(1, int(queue_size))
        self._drop_notice_interval = float(drop_notice_interval)
        self._subscribers: dict[str, tuple[_Subscriber, ...]] = {}
        self._lock = threading.Lock()
        self._pending = 0
        self._pending_cond = threading.Condition()
        self._drop_counts: dict[str, int] = {}
        self._last_drop_notice = 0.0
        self._closed = False

    def subscribe(
        self,
        event_name: str,
        handler: Callable[[Any], Any],
        *,
        owner: Optional[Hashable] = None,
    ) -> Unsubscribe:
        """Deliver every future ``event_name`` payload to ``handler``.

        Subscribing to ``"*"`` delivers every event as an
        :class:`EventMessage` instead of the bare payload.

        Returns:
            Callable that removes the subscription (idempotent)
        """
        event_name = validate_event_name(event_name)
        if not callable(handler):
            raise InvalidParameterError("handler", handler, "must be callable")
        subscriber = _Subscriber(self, event_name, handler, owner, self._queue_size)
        with self._lock:
            if self._closed:
                raise RuntimeError("EventBroadcaster is closed")
            self._subscribers[event_name] = self._subscribers.get(event_name, ()) + (subscriber,)
        subscriber.start()

        def unsubscribe() -> None:
            self._remove(lambda s: s is subscriber)

        return unsubscribe

    def unsubscribe_owner(self, owner: Hashable) -> int:
        """Remove every subscription registered with ``owner``."""
        return self._remove(lambda s: s.owner is not None and s.owner == owner)

    def _remove(self, predicate: Callable[[_Subscriber], bool]) -> int:
        removed: list[_Subscriber] = []
        with self._lock:
            for event_name, current in list(self._subscribers.items()):
                kept = tuple(s for s in current if not predicate(s))
                removed.extend(s for s in current if predicate(s))
                if kept:
                    self._subscribers[event_name] = kept
                else:
                    self._subscribers.pop(event_name, None)
        for subscriber in removed:
            subscriber.stop()
        return len(removed)

    def publish(self, event_name: str, payload: Any = None) -> int:
        """Queue an event for every matching subscriber.

        Returns:
            Number of subscribers the event was queued for
        """
        with self._lock:
            if self._closed:
                return 0
            targets = self._subscribers.get(event_name, ()) + self._subscribers.get(
                BROADCAST_WILDCARD, ()
            )
        if not targets:
            return 0

        message = EventMessage(event_name, payload)
        queued = 0
        for subscriber in targets:
            with self._pending_cond:
                self._pending += 1
            if subscriber.offer(message):
                queued += 1
            else:
                self._delivered(1)
                self._record_drop(event_name)

        summary = self._pop_drop_summary()
        if summary:
            logger.warning(summary)
        return queued

    def subscriber_count(self, event_name: Optional[str] = None) -> int:
        with self._lock:
            if event_name is None:
                return sum(len(subs) for subs in self._subscribers.values())
            return len(self._subscribers.get(event_name, ()))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been delivered or dropped."""
        with self._pending_cond:
            return self._pending_cond.wait_for(lambda: self._pending <= 0, timeout)

    def close(self) -> None:
        """Stop all dispatchers. Later publishes are ignored."""
        with self._lock:
            self._closed = True
        self._remove(lambda s: True)

    def _delivered(self, count: int) -> None:
        with self._pending_cond:
            self._pending = max(0, self._pending - count)
            if self._pending <= 0:
                self._pending_cond.notify_all()

    def _record_drop(self, event_name: str) -> None:
        with self._lock:
            self._drop_counts[event_name] = self._drop_counts.get(event_name, 0) + 1

    def _pop_drop_summary(self, now: Optional[float] = None) -> Optional[str]:
        now = time.monotonic() if now is None else now
        with self._lock:
            if not self._drop_counts:
                return None
            if (now - self._last_drop_notice) < self._drop_notice_interval:
                return None
            total = sum(self._drop_counts.values())
            parts = [f"{name}={count}" for name, count in sorted(self._drop_counts.items())]
            self._drop_counts = {}
            self._last_drop_notice = now
        return f"[broadcast] Dropped {total} event(s) for slow subscribers: " + ", ".join(parts)
