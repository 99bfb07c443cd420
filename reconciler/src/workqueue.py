from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque

from reconciler.src.keys import ReconcileKey
from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ExponentialBackoffRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures``, clamped to ``max``.

    The failure count is the key's retry state.  It only changes through
    :meth:`when` (one more failure) and :meth:`forget` (back to zero).
    """

    def __init__(self, base_delay_seconds: float = 1.0, max_delay_seconds: float = 30.0) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[ReconcileKey, int] = {}
        self._lock = threading.Lock()

    def when(self, key: ReconcileKey) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        # 2**64 seconds is beyond any sane cap; avoid building huge floats.
        if exponent >= 64:
            return self.max_delay_seconds
        return min(self.max_delay_seconds, self.base_delay_seconds * (2**exponent))

    def num_requeues(self, key: ReconcileKey) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: ReconcileKey) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating work queue with per-key mutual exclusion and delayed re-adds.

    Three pieces of state, all guarded by ``_cond``:

    ``_queue``
        FIFO of keys ready to be handed to a worker.
    ``_dirty``
        Keys that need processing and have not been picked up yet.  A key in
        ``_dirty`` is never appended twice, which collapses bursts of
        notifications into one pending reconcile.
    ``_processing``
        Keys between :meth:`get` and :meth:`done`.  A key added while it is
        being processed is only marked dirty; :meth:`done` puts it back in
        ``_queue``, so no two workers ever hold the same key.

    Delayed adds (:meth:`add_after`, :meth:`add_rate_limited`) wait in a heap
    served by a single daemon thread.  Retry state lives in the rate limiter
    and is independent of the dirty/processing sets.
    """

    def __init__(
        self,
        rate_limiter: ExponentialBackoffRateLimiter | None = None,
        name: str = "configmaps",
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoffRateLimiter()

        self._cond = threading.Condition()
        self._queue: deque[ReconcileKey] = deque()
        self._dirty: set[ReconcileKey] = set()
        self._processing: set[ReconcileKey] = set()
        self._shutting_down = False

        self._waiting_cond = threading.Condition()
        self._waiting: list[tuple[float, int, ReconcileKey]] = []
        self._waiting_ready_at: dict[ReconcileKey, float] = {}
        self._sequence = itertools.count()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop,
            name=f"{name}-delayed-adds",
            daemon=True,
        )
        self._waiting_thread.start()
        METRICS.queue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: ReconcileKey) -> None:
        """Mark *key* as needing processing; a no-op if it is already queued."""
        with self._cond:
            if self._shutting_down:
                LOGGER.debug("Ignoring add of %s to queue %s after shutdown", key, self.name)
                return
            if key in self._dirty:
                return
            self._dirty.add(key)
            METRICS.queue_adds_total.labels(queue=self.name).inc()
            if key in self._processing:
                return
            self._queue.append(key)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            self._cond.notify()

    def add_after(self, key: ReconcileKey, delay_seconds: float) -> None:
        """Add *key* once *delay_seconds* have elapsed.

        When the key is already waiting, the earlier of the two ready times
        wins.
        """
        if self.shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return

        ready_at = time.monotonic() + delay_seconds
        with self._waiting_cond:
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._waiting_cond.notify()

    def add_rate_limited(self, key: ReconcileKey) -> None:
        """Re-add *key* after the backoff delay derived from its retry state."""
        delay_seconds = self.rate_limiter.when(key)
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        LOGGER.debug("Re-adding %s to queue %s in %.3fs", key, self.name, delay_seconds)
        self.add_after(key, delay_seconds)

    def get(self, timeout: float | None = None) -> tuple[ReconcileKey | None, bool]:
        """Block until a key is available or the queue shuts down.

        Returns ``(key, shutting_down)``.  Keys still queued at shutdown are
        handed out with the flag set so workers can drain them; once the
        queue is empty after shutdown the result is ``(None, True)``.  With a
        *timeout* the call may also return ``(None, False)``.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if not self._queue:
                return None, self._shutting_down

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            return key, self._shutting_down

    def done(self, key: ReconcileKey) -> None:
        """Release *key*; if it was re-added while in flight, queue it again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
                self._cond.notify()

    def forget(self, key: ReconcileKey) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: ReconcileKey) -> int:
        return self.rate_limiter.num_requeues(key)

    def shut_down(self) -> None:
        """Stop accepting keys and wake every blocked :meth:`get`."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._waiting_cond.notify_all()
        LOGGER.info("Work queue %s shut down", self.name)

    def _pop_ready(self, now: float) -> list[ReconcileKey]:
        ready: list[ReconcileKey] = []
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            # Superseded by an earlier ready time for the same key.
            if self._waiting_ready_at.get(key) != ready_at:
                continue
            del self._waiting_ready_at[key]
            ready.append(key)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                if self._shutting_down:
                    return
                now = time.monotonic()
                ready = self._pop_ready(now)
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout=timeout)
                    continue
            for key in ready:
                self.add(key)
