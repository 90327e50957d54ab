"""
Worker pool for CPU-heavy valuation work.

Monte Carlo pricing and large risk simulations run on a
``ThreadPoolExecutor`` (numpy releases the GIL inside its kernels). Every
submission gets a ``CancellationToken``; cancellable jobs receive it as a
``cancel=`` keyword and are expected to check it between batches.
"""

import concurrent.futures
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from .errors import Cancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-way flag shared between a requester and a running job."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_set(self):
        return self._event.is_set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled("Valuation cancelled")


class ValuationTask:
    """Handle for a job running on the worker pool."""

    def __init__(self, future, token, label=""):
        self._future = future
        self.token = token
        self.label = label

    def result(self, timeout=None):
        """
        Block for the job's result. Re-raises the job's exception; raises
        Cancelled if the task was cancelled before or while running.
        """
        try:
            return self._future.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            raise Cancelled(f"Task {self.label or '<anonymous>'} cancelled") from None

    def cancel(self):
        """Signal the job to stop. Returns True if it never started."""
        self.token.cancel()
        return self._future.cancel()

    def done(self):
        return self._future.done()

    @property
    def cancelled(self):
        return self.token.cancelled

    @property
    def future(self):
        """The underlying ``concurrent.futures.Future`` (for ``asyncio.wrap_future``)."""
        return self._future

    def add_done_callback(self, fn):
        self._future.add_done_callback(lambda _f: fn(self))

    def __repr__(self):
        state = "done" if self.done() else "pending"
        if self.cancelled:
            state = "cancelled"
        return f"ValuationTask({self.label!r}, {state})"


class ValuationWorkerPool:
    """Bounded thread pool returning cancellable ``ValuationTask`` handles."""

    def __init__(self, max_workers=4, name="valuation"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._max_workers = max_workers
        self._closed = False

    @staticmethod
    def _run(fn, token, args, kwargs, pass_token):
        token.raise_if_cancelled()
        if pass_token:
            kwargs = dict(kwargs, cancel=token)
        return fn(*args, **kwargs)

    def _submit(self, fn, args, kwargs, pass_token, label):
        if self._closed:
            raise RuntimeError("Worker pool is shut down")
        token = CancellationToken()
        future = self._executor.submit(self._run, fn, token, args, kwargs, pass_token)
        return ValuationTask(future, token, label or getattr(fn, "__name__", ""))

    def submit(self, fn, *args, label=None, **kwargs):
        """Run ``fn(*args, **kwargs)`` on the pool."""
        return self._submit(fn, args, kwargs, False, label)

    def submit_cancellable(self, fn, *args, label=None, **kwargs):
        """Run ``fn(*args, cancel=token, **kwargs)`` on the pool."""
        return self._submit(fn, args, kwargs, True, label)

    def run(self, fn, *args, timeout=None, **kwargs):
        """Submit and wait."""
        return self.submit(fn, *args, **kwargs).result(timeout=timeout)

    def shutdown(self, wait=True):
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Valuation worker pool shut down")

    @property
    def max_workers(self):
        return self._max_workers

    def __repr__(self):
        return f"ValuationWorkerPool(max_workers={self._max_workers})"
