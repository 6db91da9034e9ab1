"""
Tests for the event broadcaster.
"""

import threading

import pytest

from plugin_sender.event_broadcaster import EventBroadcaster, _Subscriber
from plugin_sender.types import EventMessage

from conftest import wait_until


class TestPublishSubscribe:
    """Delivery and subscription lifecycle."""

    def test_delivers_payload(self, broadcaster):
        received = []
        broadcaster.subscribe("cnc-data", received.append)
        assert broadcaster.publish("cnc-data", "ok") == 1
        assert broadcaster.flush(timeout=2.0)
        assert received == ["ok"]

    def test_preserves_order_per_subscriber(self, broadcaster):
        received = []
        broadcaster.subscribe("cnc-data", received.append)
        for i in range(50):
            broadcaster.publish("cnc-data", i)
        assert broadcaster.flush(timeout=2.0)
        assert received == list(range(50))

    def test_no_subscribers(self, broadcaster):
        assert broadcaster.publish("nobody-listens", {"x": 1}) == 0

    def test_unsubscribe(self, broadcaster):
        received = []
        unsubscribe = broadcaster.subscribe("cnc-data", received.append)
        unsubscribe()
        unsubscribe()
        assert broadcaster.publish("cnc-data", "ok") == 0
        assert broadcaster.subscriber_count("cnc-data") == 0

    def test_wildcard_receives_event_messages(self, broadcaster):
        received = []
        broadcaster.subscribe("*", received.append)
        broadcaster.publish("cnc-data", "ok")
        broadcaster.publish("custom", {"a": 1})
        assert broadcaster.flush(timeout=2.0)
        assert received == [EventMessage("cnc-data", "ok"), EventMessage("custom", {"a": 1})]

    def test_unsubscribe_owner(self, broadcaster):
        broadcaster.subscribe("cnc-data", lambda p: None, owner="plugin.a")
        broadcaster.subscribe("cnc-response", lambda p: None, owner="plugin.a")
        broadcaster.subscribe("cnc-data", lambda p: None, owner="plugin.b")
        assert broadcaster.unsubscribe_owner("plugin.a") == 2
        assert broadcaster.subscriber_count() == 1

    def test_closed_broadcaster_ignores_publish(self):
        hub = EventBroadcaster()
        hub.subscribe("cnc-data", lambda p: None)
        hub.close()
        assert hub.publish("cnc-data", "ok") == 0
        with pytest.raises(RuntimeError):
            hub.subscribe("cnc-data", lambda p: None)


class TestIsolation:
    """A slow or failing subscriber only affects itself."""

    def test_failing_subscriber_does_not_affect_others(self, broadcaster):
        received = []

        def broken(payload):
            raise RuntimeError("subscriber bug")

        broadcaster.subscribe("cnc-data", broken)
        broadcaster.subscribe("cnc-data", received.append)
        assert broadcaster.publish("cnc-data", "ok") == 2
        assert broadcaster.flush(timeout=2.0)
        assert received == ["ok"]

    def test_slow_subscriber_does_not_block_publisher_or_others(self, broadcaster):
        release = threading.Event()
        fast = []
        broadcaster.subscribe("cnc-data", lambda p: release.wait(5.0))
        broadcaster.subscribe("cnc-data", fast.append)
        for i in range(5):
            broadcaster.publish("cnc-data", i)
        assert wait_until(lambda: fast == list(range(5)))
        release.set()
        assert broadcaster.flush(timeout=2.0)

    def test_full_queue_drops_for_that_subscriber_only(self):
        hub = EventBroadcaster(queue_size=2, drop_notice_interval=0.0)
        release = threading.Event()
        started = threading.Event()
        fast = []

        def slow(payload):
            started.set()
            release.wait(5.0)

        try:
            hub.subscribe("cnc-data", slow)
            hub.publish("cnc-data", 0)
            assert started.wait(2.0)
            hub.subscribe("cnc-data", fast.append)
            counts = []
            for i in range(1, 5):
                counts.append(hub.publish("cnc-data", i))
                assert wait_until(lambda n=i: len(fast) == n)
            # slow holds one in flight and has room for two more
            assert counts == [2, 2, 1, 1]
            assert wait_until(lambda: fast == [1, 2, 3, 4])
        finally:
            release.set()
            hub.close()


class _Ledger:
    """Stands in for the broadcaster's delivered-count bookkeeping."""

    def __init__(self):
        self.delivered = 0

    def _delivered(self, count):
        self.delivered += count


class TestStopRaces:
    """A subscriber stopped while a publish or delivery is in progress."""

    def test_put_landing_after_stop_is_discarded(self):
        ledger = _Ledger()
        subscriber = _Subscriber(ledger, "cnc-data", lambda payload: None, None, 4)
        real_put = subscriber.queue.put_nowait

        def put_after_stop(message):
            subscriber.stop()
            real_put(message)

        subscriber.queue.put_nowait = put_after_stop
        subscriber.offer(EventMessage("cnc-data", "ok"))
        assert subscriber.queue.empty()
        assert ledger.delivered == 1

    def test_message_taken_before_stop_is_not_delivered(self):
        ledger = _Ledger()
        received = []
        subscriber = _Subscriber(ledger, "cnc-data", received.append, None, 4)
        subscriber.queue.put_nowait(EventMessage("cnc-data", "stale"))
        real_get = subscriber.queue.get

        def get_then_stop(timeout=None):
            message = real_get(timeout=timeout)
            subscriber.stop()
            return message

        subscriber.queue.get = get_then_stop
        # runs on this thread; returns once the stop is seen
        subscriber._dispatch_loop()
        assert received == []
        assert ledger.delivered == 1

    def test_flush_after_unsubscribe_during_publish(self, broadcaster):
        unsubscribe = broadcaster.subscribe("cnc-data", lambda payload: None)
        for i in range(50):
            broadcaster.publish("cnc-data", i)
        unsubscribe()
        assert broadcaster.flush(timeout=1.0)
