from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from reconciler.src.errors import InvalidObjectError
from reconciler.src.keys import ConfigObject, ReconcileKey, extract_key
from reconciler.src.metrics import METRICS

AddHandler = Callable[[ConfigObject], None]
UpdateHandler = Callable[[ConfigObject, ConfigObject], None]
DeleteHandler = Callable[[ConfigObject], None]


class ObjectStore:
    """Thread-safe local cache of ConfigMaps keyed by ``namespace/name``.

    Only the informer writes to it; workers read through :meth:`get_by_key`.
    """

    def __init__(self) -> None:
        self._items: dict[ReconcileKey, ConfigObject] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get_by_key(self, key: ReconcileKey) -> tuple[ConfigObject | None, bool]:
        with self._lock:
            obj = self._items.get(key)
        return obj, obj is not None

    def list(self) -> list[ConfigObject]:
        with self._lock:
            return list(self._items.values())

    def replace(self, items: dict[ReconcileKey, ConfigObject]) -> dict[ReconcileKey, ConfigObject]:
        """Swap in a full listing and return the previous contents."""
        with self._lock:
            previous = self._items
            self._items = dict(items)
        return previous

    def upsert(self, key: ReconcileKey, obj: ConfigObject) -> ConfigObject | None:
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, key: ReconcileKey) -> ConfigObject | None:
        with self._lock:
            return self._items.pop(key, None)


@dataclass(frozen=True)
class _EventHandlers:
    on_add: AddHandler | None
    on_update: UpdateHandler | None
    on_delete: DeleteHandler | None
    on_initial_list: AddHandler | None


class ConfigMapInformer:
    """List-then-watch ConfigMaps into an :class:`ObjectStore` and notify subscribers.

    Lifecycle of :meth:`run`:

    1. List ConfigMaps (one namespace, or all namespaces when ``namespace``
       is empty), retrying transient failures with jittered exponential
       backoff capped at 30 s.
    2. Load the listing into the store, notify ``on_initial_list`` and
       ``on_add`` for every object, then report :meth:`has_synced`.
    3. Watch from the listing's ``resourceVersion``: ``ADDED`` and
       ``MODIFIED`` update the store and notify, ``DELETED`` evicts.
    4. On ``410 Gone`` re-list, notifying only what changed.
    5. Every ``resync_seconds`` re-deliver every cached object to
       ``on_update`` so missed reconciles converge eventually.

    ``401`` / ``403`` responses are configuration errors (RBAC) and stop
    the informer with a clear log message instead of retrying forever.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str | None = None,
        label_selector: str | None = None,
        resync_seconds: int = 180,
        request_timeout_seconds: int = 30,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace or None
        self.label_selector = label_selector or None
        self.resync_seconds = resync_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.store = ObjectStore()
        self._handlers: list[_EventHandlers] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
        on_initial_list: AddHandler | None = None,
    ) -> None:
        """Subscribe to notifications.

        *on_initial_list* sees every object of the first listing, before
        the matching *on_add*; later re-lists only notify the differences.
        """
        self._handlers.append(_EventHandlers(on_add, on_update, on_delete, on_initial_list))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        if self.namespace:
            kwargs["namespace"] = self.namespace
            return self.core_api.list_namespaced_config_map, kwargs
        return self.core_api.list_config_map_for_all_namespaces, kwargs

    def _list(self) -> Any:
        list_fn, kwargs = self._list_call()
        return list_fn(_request_timeout=self.request_timeout_seconds, **kwargs)

    def _convert(self, obj: Any) -> tuple[ReconcileKey, ConfigObject] | None:
        try:
            config_object = ConfigObject.from_kube(obj)
            key = extract_key(config_object)
        except InvalidObjectError as exc:
            self.logger.warning("Skipping malformed ConfigMap: %s", exc)
            METRICS.invalid_objects_total.inc()
            return None
        return key, config_object

    def _notify(self, event_type: str, *args: ConfigObject) -> None:
        for handlers in self._handlers:
            if event_type == "add":
                handler: Callable[..., None] | None = handlers.on_add
            elif event_type == "update":
                handler = handlers.on_update
            elif event_type == "initial":
                handler = handlers.on_initial_list
            else:
                handler = handlers.on_delete
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                # A faulty subscriber must not take the watch thread down.
                self.logger.exception("ConfigMap %s handler failed", event_type)

    def _sync_from_list(self, listing: Any, initial: bool = False) -> str | None:
        """Load a full listing into the store and notify the differences.

        With *initial* every listed object is first passed to the
        ``on_initial_list`` subscribers.  Returns the listing's
        ``resourceVersion`` for the following watch.
        """
        fresh: dict[ReconcileKey, ConfigObject] = {}
        for item in getattr(listing, "items", None) or []:
            converted = self._convert(item)
            if converted is not None:
                key, config_object = converted
                fresh[key] = config_object

        previous = self.store.replace(fresh)
        for key, config_object in fresh.items():
            if initial:
                self._notify("initial", config_object)
            old = previous.get(key)
            if old is None:
                self._notify("add", config_object)
            elif old.resource_version != config_object.resource_version:
                self._notify("update", old, config_object)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("delete", old)

        self.logger.info("Listed %d ConfigMap(s)", len(fresh))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _handle_event(self, event_type: str, obj: Any) -> None:
        converted = self._convert(obj)
        if converted is None:
            return
        key, config_object = converted

        if event_type == "DELETED":
            previous = self.store.delete(key)
            self._notify("delete", previous or config_object)
        elif event_type in {"ADDED", "MODIFIED"}:
            previous = self.store.upsert(key, config_object)
            if previous is None:
                self._notify("add", config_object)
            else:
                self._notify("update", previous, config_object)

    def _resync(self) -> None:
        objects = self.store.list()
        self.logger.debug("Resyncing %d cached ConfigMap(s)", len(objects))
        for config_object in objects:
            self._notify("update", config_object, config_object)

    def _next_watch_timeout_seconds(self, next_resync_at: float | None, now: float) -> int:
        """Return the next watch timeout, shortened so the loop wakes for the next resync."""
        if next_resync_at is None:
            return self.watch_timeout_seconds
        remaining = max(1.0, next_resync_at - now)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _initial_list(self, stop: threading.Event) -> tuple[bool, str | None]:
        """Retry the first listing until it succeeds.

        Returns ``(listed, resource_version)``; ``listed`` is False when the
        informer was stopped or denied access.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                return True, self._sync_from_list(self._list(), initial=True)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial ConfigMap list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial Kubernetes ConfigMap list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMap list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Populate the cache and keep it in sync until *stop_event* is set or :meth:`stop`."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        listed, resource_version = self._initial_list(stop)
        if not listed or self._should_stop(stop):
            return

        self._synced.set()
        METRICS.cache_synced.set(1)
        self.logger.info("ConfigMap cache synced; watching from resourceVersion %s", resource_version)

        next_resync_at = (
            time.monotonic() + self.resync_seconds if self.resync_seconds > 0 else None
        )
        backoff_seconds = 1
        watch_stream_count = 0

        try:
            while not self._should_stop(stop):
                if next_resync_at is not None and time.monotonic() >= next_resync_at:
                    self._resync()
                    next_resync_at = time.monotonic() + self.resync_seconds

                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    list_fn, kwargs = self._list_call()
                    stream = watcher.stream(
                        list_fn,
                        resource_version=resource_version,
                        timeout_seconds=self._next_watch_timeout_seconds(
                            next_resync_at, time.monotonic()
                        ),
                        **kwargs,
                    )
                    for event in stream:
                        if self._should_stop(stop):
                            break

                        obj = event.get("object")
                        if obj is None:
                            continue

                        metadata = getattr(obj, "metadata", None)
                        if metadata is not None and getattr(metadata, "resource_version", None):
                            resource_version = metadata.resource_version

                        self._handle_event(str(event.get("type", "")), obj)

                    backoff_seconds = 1
                except ApiException as exc:
                    # 410 Gone means etcd compacted past our resourceVersion.
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, re-listing")
                        try:
                            resource_version = self._sync_from_list(self._list())
                        except ApiException as relist_exc:
                            if relist_exc.status in {401, 403}:
                                self.logger.error(
                                    "Kubernetes API access denied during 410 re-list (status=%s). "
                                    "Check controller RBAC and service account permissions.",
                                    relist_exc.status,
                                )
                                return
                            self.logger.exception("Failed to re-list after 410")
                            METRICS.watch_errors_total.inc()
                            resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        METRICS.watch_errors_total.inc()
                        return

                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self._synced.clear()
            METRICS.cache_synced.set(0)


def wait_for_cache_sync(
    stop_event: threading.Event,
    has_synced_fns: Iterable[Callable[[], bool]],
    timeout_seconds: float,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Block until every ``has_synced`` callable reports true.

    Returns ``False`` when *timeout_seconds* elapse first or *stop_event* is
    set, so callers never start working against a partially populated cache.
    """
    checks = list(has_synced_fns)
    deadline = time.monotonic() + timeout_seconds
    while True:
        if all(check() for check in checks):
            return True
        if stop_event.is_set():
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        stop_event.wait(timeout=min(poll_interval_seconds, remaining))
