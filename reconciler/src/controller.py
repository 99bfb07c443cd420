from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from reconciler.src.actions import build_action
from reconciler.src.config import ControllerSettings
from reconciler.src.dispatcher import Reconciler
from reconciler.src.errors import InvalidObjectError, ReconcileError, classify_error
from reconciler.src.informer import ConfigMapInformer, wait_for_cache_sync
from reconciler.src.keys import ReconcileKey, extract_key
from reconciler.src.kube import ClusterClient, KubeClients
from reconciler.src.metrics import METRICS
from reconciler.src.workqueue import ExponentialBackoffRateLimiter, RateLimitingQueue

INFORMER_STOP_TIMEOUT_SECONDS = 5.0


class WorkerState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    DRAINING = "draining"
    STOPPED = "stopped"


class CacheSyncTimeoutError(RuntimeError):
    """Raised when the local cache does not finish its initial list in time."""


class EventSource(Protocol):
    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None: ...

    def has_synced(self) -> bool: ...

    def run(self, stop_event: threading.Event | None = None) -> None: ...

    def stop(self) -> None: ...


class Controller:
    """Drive reconciles from ConfigMap notifications through a pool of worker threads.

    The event source thread only turns notifications into keys and adds
    them to the queue.  Workers pull keys, call the reconciler and apply the
    retry policy:

    * success: the key's retry state is forgotten;
    * non-retryable failure (invalid object, permanent API error): logged
      and forgotten immediately;
    * retryable failure: re-added with exponential backoff until the key has
      been requeued ``max_retries`` times, then forgotten with a single
      error log.

    No exception raised by a reconcile ever escapes a worker.  Workers only
    start after the cache-readiness gate passes, so a reconcile never sees a
    partially populated cache.
    """

    def __init__(
        self,
        informer: EventSource,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        workers: int = 2,
        max_retries: int = 5,
        cache_sync_timeout_seconds: float = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.informer = informer
        self.queue = queue
        self.reconciler = reconciler
        self.workers = workers
        self.max_retries = max_retries
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._states: dict[int, WorkerState] = {}
        self._states_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []

        informer.add_event_handler(on_add=self.enqueue, on_update=self._on_update)

    # -- event source side ---------------------------------------------------

    def enqueue(self, obj: Any) -> None:
        """Queue the reconcile key of a notified object; malformed objects are dropped."""
        try:
            key = extract_key(obj)
        except InvalidObjectError as exc:
            self.logger.warning("Ignoring notification for malformed object: %s", exc)
            METRICS.invalid_objects_total.inc()
            return
        self.queue.add(key)

    def _on_update(self, old: Any, new: Any) -> None:
        self.enqueue(new)

    # -- worker side ---------------------------------------------------------

    def _set_state(self, worker_id: int, state: WorkerState) -> None:
        with self._states_lock:
            self._states[worker_id] = state

    def worker_states(self) -> dict[int, WorkerState]:
        with self._states_lock:
            return dict(self._states)

    def _reconcile(self, key: ReconcileKey) -> ReconcileError | None:
        try:
            self.reconciler.reconcile(key)
        except ReconcileError as exc:
            return exc
        except Exception as exc:
            self.logger.exception("Unexpected failure reconciling %s", key)
            return classify_error(exc, action=f"reconcile of {key}")
        return None

    def handle_result(self, key: ReconcileKey, error: ReconcileError | None) -> None:
        """Apply the retry policy for one finished reconcile."""
        if error is None:
            self.queue.forget(key)
            return

        METRICS.reconcile_errors_total.labels(kind=error.kind.value).inc()
        if not error.retryable:
            self.logger.error(
                "Dropping %s after non-retryable %s error: %s", key, error.kind.value, error
            )
            self.queue.forget(key)
            return

        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            self.logger.warning(
                "Reconcile of %s failed (%s), retry %d of %d: %s",
                key,
                error.kind.value,
                requeues + 1,
                self.max_retries,
                error,
            )
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        METRICS.dropped_keys_total.inc()
        self.logger.error(
            "Giving up on %s after %d retries; last %s error: %s",
            key,
            requeues,
            error.kind.value,
            error,
        )

    def process_next_work_item(self, worker_id: int = 0) -> bool:
        """Process one key from the queue.

        Returns ``False`` once the queue has shut down and holds nothing
        more, which ends the worker.
        """
        key, shutting_down = self.queue.get()
        if key is None:
            self._set_state(worker_id, WorkerState.STOPPED)
            return False

        self._set_state(
            worker_id, WorkerState.DRAINING if shutting_down else WorkerState.PROCESSING
        )
        METRICS.busy_workers.inc()
        try:
            self.handle_result(key, self._reconcile(key))
        finally:
            self.queue.done(key)
            METRICS.busy_workers.dec()

        if not shutting_down:
            self._set_state(worker_id, WorkerState.IDLE)
        return True

    def run_worker(self, worker_id: int = 0) -> None:
        self._set_state(worker_id, WorkerState.IDLE)
        while self.process_next_work_item(worker_id):
            pass
        self.logger.info("Worker %d stopped", worker_id)

    # -- lifecycle -----------------------------------------------------------

    def status(self) -> tuple[bool, str]:
        """Return ``(ready, detail)`` for the readiness probe."""
        states = self.worker_states()
        busy = sum(
            1 for state in states.values()
            if state in {WorkerState.PROCESSING, WorkerState.DRAINING}
        )
        has_synced = self.informer.has_synced()
        synced = "true" if has_synced else "false"
        # An informer that stopped watching leaves the cache frozen.
        ready = self.ready.is_set() and has_synced
        ready_text = "true" if ready else "false"
        return ready, f"ready={ready_text} synced={synced} workers={len(states)} busy={busy}"

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Run until *shutdown_event* is set.

        1. Start the event source in a background thread.
        2. Wait for the initial cache sync; raise :class:`CacheSyncTimeoutError`
           if it does not complete within ``cache_sync_timeout_seconds``.
        3. Start ``workers`` worker threads and report ready.
        4. On shutdown, stop the event source, shut the queue down and wait
           for workers to finish the keys they already hold.
        """
        stop = shutdown_event or threading.Event()
        informer_thread = threading.Thread(
            target=self.informer.run,
            args=(stop,),
            name="configmap-informer",
            daemon=True,
        )
        informer_thread.start()

        self.logger.info("Waiting for ConfigMap cache to sync")
        if not wait_for_cache_sync(
            stop, [self.informer.has_synced], self.cache_sync_timeout_seconds
        ):
            self._shutdown(informer_thread)
            if stop.is_set():
                self.logger.info("Shutdown requested before the ConfigMap cache synced")
                return
            raise CacheSyncTimeoutError(
                f"ConfigMap cache did not sync within {self.cache_sync_timeout_seconds}s"
            )

        self._worker_threads = [
            threading.Thread(
                target=self.run_worker,
                args=(worker_id,),
                name=f"reconcile-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(self.workers)
        ]
        for thread in self._worker_threads:
            thread.start()
        self.ready.set()
        self.logger.info("Started %d reconcile worker(s)", self.workers)

        try:
            stop.wait()
        finally:
            self._shutdown(informer_thread)

    def _shutdown(self, informer_thread: threading.Thread) -> None:
        self.ready.clear()
        self.informer.stop()
        self.queue.shut_down()
        for thread in self._worker_threads:
            thread.join()
        self._worker_threads = []
        informer_thread.join(timeout=INFORMER_STOP_TIMEOUT_SECONDS)
        if informer_thread.is_alive():
            self.logger.warning(
                "ConfigMap informer did not stop within %.0fs", INFORMER_STOP_TIMEOUT_SECONDS
            )
        self.logger.info("Controller stopped")


def build_controller(settings: ControllerSettings, clients: KubeClients) -> Controller:
    """Wire the event source, queue, reconciler and workers from *settings*."""
    informer = ConfigMapInformer(
        clients.core,
        namespace=settings.watch_namespace,
        label_selector=settings.configmap_selector,
        resync_seconds=settings.resync_seconds,
        request_timeout_seconds=settings.api_request_timeout_seconds,
    )
    cluster_client = ClusterClient(
        clients.apps,
        clients.rbac,
        request_timeout_seconds=settings.api_request_timeout_seconds,
    )
    queue = RateLimitingQueue(
        ExponentialBackoffRateLimiter(
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
        )
    )
    action = build_action(settings, cluster_client)
    informer.add_event_handler(on_initial_list=action.record_baseline)
    reconciler = Reconciler(informer.store, action)
    return Controller(
        informer=informer,
        queue=queue,
        reconciler=reconciler,
        workers=settings.workers,
        max_retries=settings.max_retries,
        cache_sync_timeout_seconds=settings.cache_sync_timeout_seconds,
    )
