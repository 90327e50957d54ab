"""Tests for the broadcast hub, subscriptions and the snapshot publisher."""

import threading
from dataclasses import dataclass, replace

import pytest

from valuation_engine import (
    BroadcastHub,
    OverflowPolicy,
    SnapshotPublisher,
    SubscriptionClosed,
    ValuationWorkerPool,
)


@dataclass(frozen=True)
class _Snap:
    value: int
    sequence: int = 0

    def with_sequence(self, sequence):
        return replace(self, sequence=sequence)


def _drain(sub):
    out = []
    while True:
        item = sub.get_nowait()
        if item is None:
            return out
        out.append(item)


# ── Hub ──────────────────────────────────────────────────────────────────

class TestBroadcastHub:
    def test_publish_in_order(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        for i in range(5):
            hub.publish(_Snap(i))
        assert [s.value for s in _drain(sub)] == [0, 1, 2, 3, 4]

    def test_sequence_stamped(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        published = hub.publish(_Snap(10))
        hub.publish(_Snap(11))
        assert published.sequence == 1
        assert [s.sequence for s in _drain(sub)] == [1, 2]
        assert hub.sequence == 2

    def test_plain_objects_pass_through(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        hub.publish({"v": 1})
        assert sub.get(timeout=1) == {"v": 1}

    def test_late_subscriber_starts_with_latest(self):
        hub = BroadcastHub()
        hub.publish(_Snap(1))
        hub.publish(_Snap(2))
        sub = hub.subscribe()
        assert sub.get(timeout=1) == hub.latest
        assert sub.get_nowait() is None
        hub.publish(_Snap(3))
        assert sub.get(timeout=1).value == 3

    def test_no_snapshot_before_first_publish(self):
        sub = BroadcastHub().subscribe()
        assert sub.get(timeout=0.01) is None

    def test_coalesce_drops_oldest(self):
        hub = BroadcastHub(maxsize=2)
        sub = hub.subscribe()
        for i in range(5):
            hub.publish(_Snap(i))
        assert sub.pending == 2
        assert sub.dropped == 3
        assert [s.value for s in _drain(sub)] == [3, 4]
        assert not sub.closed

    def test_disconnect_policy(self):
        hub = BroadcastHub()
        slow = hub.subscribe(maxsize=1, policy=OverflowPolicy.DISCONNECT)
        fast = hub.subscribe(maxsize=10)
        hub.publish(_Snap(1))
        hub.publish(_Snap(2))
        assert slow.closed
        assert slow.close_reason == "slow consumer"
        assert hub.subscriber_count == 1
        # already-queued items are still delivered before the close
        assert slow.get(timeout=1).value == 1
        with pytest.raises(SubscriptionClosed):
            slow.get(timeout=1)
        assert [s.value for s in _drain(fast)] == [1, 2]

    def test_policy_from_string(self):
        hub = BroadcastHub(policy="disconnect")
        assert hub.subscribe().policy is OverflowPolicy.DISCONNECT

    def test_close_unsubscribes(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        assert hub.subscriber_count == 1
        sub.close()
        assert hub.subscriber_count == 0
        hub.publish(_Snap(1))
        with pytest.raises(SubscriptionClosed):
            sub.get(timeout=0.1)

    def test_context_manager(self):
        hub = BroadcastHub()
        with hub.subscribe() as sub:
            assert hub.subscriber_count == 1
        assert sub.closed
        assert hub.subscriber_count == 0

    def test_hub_close(self):
        hub = BroadcastHub()
        subs = [hub.subscribe() for _ in range(3)]
        hub.close()
        assert hub.subscriber_count == 0
        assert all(s.close_reason == "hub closed" for s in subs)

    def test_iteration_ends_on_close(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        received = []

        def consume():
            for snap in sub:
                received.append(snap.value)

        t = threading.Thread(target=consume)
        t.start()
        for i in range(3):
            hub.publish(_Snap(i))
        while sub.pending:
            pass
        sub.close()
        t.join(timeout=5)
        assert not t.is_alive()
        assert received == [0, 1, 2]

    def test_blocking_get_wakes_on_publish(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        timer = threading.Timer(0.05, hub.publish, args=(_Snap(7),))
        timer.start()
        assert sub.get(timeout=5).value == 7
        timer.join()

    def test_on_ready_fires_per_publish(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        wakes = []
        sub.on_ready(lambda: wakes.append(sub.pending))
        hub.publish(_Snap(1))
        hub.publish(_Snap(2))
        assert wakes == [1, 2]
        assert [s.value for s in _drain(sub)] == [1, 2]

    def test_on_ready_fires_immediately_when_pending(self):
        hub = BroadcastHub()
        hub.publish(_Snap(5))
        sub = hub.subscribe()
        wakes = []
        sub.on_ready(lambda: wakes.append(True))
        assert wakes == [True]
        assert sub.get_nowait().value == 5

    def test_on_ready_fires_once_on_close(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        wakes = []
        sub.on_ready(lambda: wakes.append(sub.closed))
        sub.close()
        sub.close()
        assert wakes == [True]

    def test_on_ready_fires_on_slow_consumer_disconnect(self):
        hub = BroadcastHub(maxsize=1, policy="disconnect")
        sub = hub.subscribe()
        wakes = []
        sub.on_ready(lambda: wakes.append(sub.close_reason))
        hub.publish(_Snap(1))
        hub.publish(_Snap(2))
        assert wakes == [None, "slow consumer"]

    def test_on_ready_wakes_every_subscriber_from_publisher_thread(self):
        hub = BroadcastHub(maxsize=4)
        subs = [hub.subscribe() for _ in range(200)]
        woken = []
        for sub in subs:
            sub.on_ready(lambda s=sub: woken.append((s.id, threading.get_ident())))

        publisher = threading.Thread(target=hub.publish, args=(_Snap(9),))
        publisher.start()
        publisher.join(timeout=5)
        assert sorted(sid for sid, _ in woken) == sorted(s.id for s in subs)
        assert {tid for _, tid in woken} == {publisher.ident}
        assert all(s.get_nowait().value == 9 for s in subs)

    def test_invalid_maxsize(self):
        with pytest.raises(ValueError):
            BroadcastHub().subscribe(maxsize=-1)

    def test_concurrent_publishers_same_order_for_all(self):
        hub = BroadcastHub(maxsize=1000)
        subs = [hub.subscribe() for _ in range(3)]

        def publish(base):
            for i in range(100):
                hub.publish(_Snap(base + i))

        threads = [threading.Thread(target=publish, args=(k * 1000,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        streams = [[s.sequence for s in _drain(sub)] for sub in subs]
        assert streams[0] == list(range(1, 401))
        assert streams[0] == streams[1] == streams[2]


# ── Publisher ────────────────────────────────────────────────────────────

class TestSnapshotPublisher:
    def test_publishes_in_enqueue_order(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        publisher = SnapshotPublisher(hub, build=lambda state: _Snap(state * 10))
        publisher.start()
        for i in range(5):
            publisher.enqueue(i)
        assert publisher.flush(timeout=5)
        publisher.stop()
        assert [s.value for s in _drain(sub)] == [0, 10, 20, 30, 40]
        assert publisher.published == 5
        assert publisher.pending == 0
        assert not publisher.is_running

    def test_failed_build_skipped(self):
        hub = BroadcastHub()
        sub = hub.subscribe()

        def build(state):
            if state == 2:
                raise RuntimeError("boom")
            return _Snap(state)

        recorded = []
        publisher = SnapshotPublisher(hub, build, on_publish=recorded.append)
        publisher.start()
        for i in range(4):
            publisher.enqueue(i)
        publisher.flush(timeout=5)
        publisher.stop()
        assert publisher.failures == 1
        assert [s.value for s in _drain(sub)] == [0, 1, 3]
        assert [s.value for s in recorded] == [0, 1, 3]

    def test_runs_build_on_pool(self):
        pool = ValuationWorkerPool(max_workers=2)
        threads = []

        def build(state):
            threads.append(threading.current_thread().name)
            return _Snap(state)

        hub = BroadcastHub()
        publisher = SnapshotPublisher(hub, build, pool=pool)
        publisher.start()
        publisher.enqueue(1)
        publisher.flush(timeout=5)
        publisher.stop()
        pool.shutdown()
        assert hub.latest.value == 1
        assert threads[0].startswith("valuation")

    def test_flush_without_start_times_out(self):
        publisher = SnapshotPublisher(BroadcastHub(), build=lambda s: s)
        publisher.enqueue(1)
        assert publisher.flush(timeout=0.05) is False
        assert publisher.pending == 1

    def test_start_is_idempotent(self):
        publisher = SnapshotPublisher(BroadcastHub(), build=lambda s: _Snap(s))
        publisher.start()
        first = publisher._thread
        publisher.start()
        assert publisher._thread is first
        publisher.stop()
