"""
Broadcast — fan-out of portfolio snapshots to many subscribers.

    PortfolioAggregator --(state, in mutation order)--> SnapshotPublisher
        -> worker pool values the state -> BroadcastHub.publish(snapshot)
        -> one bounded queue per Subscription

The hub stamps each published snapshot with a global sequence number under
its lock, so every subscriber sees the same order. Publishing never blocks:
a full subscriber queue either drops its oldest entry (COALESCE) or closes
that subscriber (DISCONNECT).
"""

import logging
import queue
import threading
import uuid
from collections import deque
from enum import Enum

from .errors import SubscriptionClosed

logger = logging.getLogger(__name__)


class OverflowPolicy(Enum):
    COALESCE = "coalesce"
    DISCONNECT = "disconnect"


class Subscription:
    """A subscriber's bounded view of the snapshot stream."""

    def __init__(self, hub, maxsize, policy):
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self.id = str(uuid.uuid4())
        self.maxsize = maxsize
        self.policy = policy
        self.dropped = 0
        self.close_reason = None
        self._hub = hub
        self._queue = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._on_ready = None

    def _offer(self, snapshot):
        """Enqueue without blocking. Returns False once the subscription is closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._queue) >= self.maxsize:
                if self.policy is OverflowPolicy.DISCONNECT:
                    self._closed = True
                    self.close_reason = "slow consumer"
                    self._cond.notify_all()
                    self._wake()
                    return False
                self._queue.popleft()
                self.dropped += 1
            self._queue.append(snapshot)
            self._cond.notify()
            self._wake()
            return True

    def _wake(self):
        if self._on_ready is not None:
            self._on_ready()

    def on_ready(self, callback):
        """
        Push-style consumption: ``callback()`` runs on the publishing thread
        whenever a snapshot is queued or the subscription closes. It must not
        block; drain with ``get_nowait()`` from the consumer's own thread or
        event loop. Fires once immediately if something is already pending.
        """
        with self._cond:
            self._on_ready = callback
            pending = bool(self._queue) or self._closed
        if pending:
            callback()

    def get(self, timeout=None):
        """
        Next snapshot, or None if ``timeout`` elapses first.

        Raises SubscriptionClosed once the subscription is closed and drained.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._closed, timeout)
            if self._queue:
                return self._queue.popleft()
            if self._closed:
                raise SubscriptionClosed(
                    f"Subscription {self.id} closed ({self.close_reason or 'closed'})",
                    subscription_id=self.id,
                )
            return None

    def get_nowait(self):
        with self._cond:
            if self._queue:
                return self._queue.popleft()
        return None

    def __iter__(self):
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def close(self, reason="closed by subscriber"):
        with self._cond:
            if not self._closed:
                self._closed = True
                self.close_reason = reason
                self._wake()
            self._cond.notify_all()
        self._hub.unsubscribe(self)

    @property
    def closed(self):
        with self._cond:
            return self._closed

    @property
    def pending(self):
        with self._cond:
            return len(self._queue)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return (f"Subscription({self.id[:8]}, pending={self.pending}, "
                f"dropped={self.dropped}, policy={self.policy.value})")


class BroadcastHub:
    """Publish/subscribe channel for snapshots with a documented overflow policy."""

    def __init__(self, maxsize=64, policy=OverflowPolicy.COALESCE):
        self._lock = threading.Lock()
        self._subscribers = {}  # id -> Subscription
        self._latest = None
        self._sequence = 0
        self.default_maxsize = maxsize
        self.default_policy = OverflowPolicy(policy)

    def subscribe(self, maxsize=None, policy=None):
        """
        Register a subscriber. The current snapshot, if any, is queued before
        the subscriber becomes visible to ``publish``, so nothing can slip in
        between.
        """
        sub = Subscription(
            self,
            maxsize or self.default_maxsize,
            OverflowPolicy(policy) if policy else self.default_policy,
        )
        with self._lock:
            if self._latest is not None:
                sub._offer(self._latest)
            self._subscribers[sub.id] = sub
            count = len(self._subscribers)
        logger.info(f"Subscriber {sub.id[:8]} joined ({count} active)")
        return sub

    def unsubscribe(self, subscription):
        with self._lock:
            removed = self._subscribers.pop(subscription.id, None)
        if removed is not None:
            logger.info(f"Subscriber {subscription.id[:8]} left "
                        f"(dropped={subscription.dropped})")

    def publish(self, snapshot):
        """Stamp ``snapshot`` with the next sequence number and fan it out."""
        with self._lock:
            self._sequence += 1
            if hasattr(snapshot, "with_sequence"):
                snapshot = snapshot.with_sequence(self._sequence)
            self._latest = snapshot
            gone = [sid for sid, sub in self._subscribers.items() if not sub._offer(snapshot)]
            for sid in gone:
                sub = self._subscribers.pop(sid)
                logger.warning(f"Disconnected subscriber {sid[:8]}: {sub.close_reason}")
        return snapshot

    @property
    def latest(self):
        with self._lock:
            return self._latest

    @property
    def sequence(self):
        with self._lock:
            return self._sequence

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def close(self):
        with self._lock:
            subs = list(self._subscribers.values())
        for sub in subs:
            sub.close("hub closed")


_STOP = object()


class SnapshotPublisher:
    """
    Background thread turning captured states into published snapshots.

    States are consumed strictly in the order they were enqueued. A failed
    build is logged and skipped; later states still go out.

    Parameters
    ----------
    hub        : BroadcastHub to publish into
    build      : callable(state) -> snapshot
    pool       : optional ValuationWorkerPool to run ``build`` on
    on_publish : optional callable(snapshot) after each publish
    """

    def __init__(self, hub, build, pool=None, on_publish=None):
        self._hub = hub
        self._build = build
        self._pool = pool
        self._on_publish = on_publish
        self._queue = queue.Queue()
        self._cond = threading.Condition()
        self._pending = 0
        self._thread = None
        self.published = 0
        self.failures = 0

    def enqueue(self, state):
        with self._cond:
            self._pending += 1
        self._queue.put(state)

    def _publish_one(self, state):
        if self._pool is not None:
            snapshot = self._pool.run(self._build, state)
        else:
            snapshot = self._build(state)
        snapshot = self._hub.publish(snapshot)
        self.published += 1
        if self._on_publish is not None:
            self._on_publish(snapshot)

    def _run(self):
        while True:
            state = self._queue.get()
            if state is _STOP:
                break
            try:
                self._publish_one(state)
            except Exception as e:
                self.failures += 1
                logger.exception(f"Snapshot build failed for version "
                                 f"{getattr(state, 'version', '?')}: {e}")
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="snapshot-publisher", daemon=True)
        self._thread.start()

    def flush(self, timeout=None):
        """Wait until every enqueued state has been published (or failed)."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def stop(self, timeout=5.0):
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Snapshot publisher did not stop cleanly")
        self._thread = None

    @property
    def pending(self):
        with self._cond:
            return self._pending

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()
