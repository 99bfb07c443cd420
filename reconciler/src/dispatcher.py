from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from reconciler.src.actions import ActionResult, ReconcileAction
from reconciler.src.errors import classify_error
from reconciler.src.keys import ReconcileKey, split_key
from reconciler.src.metrics import METRICS


class ObjectCache(Protocol):
    def get_by_key(self, key: ReconcileKey) -> tuple[Any, bool]: ...


@dataclass(frozen=True)
class ReconcileResult:
    """What a successful reconcile did for one key."""

    key: ReconcileKey
    outcome: str
    action: ActionResult | None = None


class Reconciler:
    """Decide and apply the mutation for a single reconcile key.

    Reads the current ConfigMap from the local cache, never from the API
    server, so it always acts on the latest state the watch has seen.  Every
    failure is raised as a :class:`~reconciler.src.errors.ReconcileError`
    subclass.
    """

    def __init__(
        self,
        cache: ObjectCache,
        action: ReconcileAction,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.action = action
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: ReconcileKey) -> ReconcileResult:
        split_key(key)

        obj, found = self.cache.get_by_key(key)
        if not found:
            # Deleted since it was queued; nothing to converge.
            self.logger.info("ConfigMap %s no longer exists; nothing to reconcile", key)
            METRICS.reconcile_total.labels(action=self.action.name, outcome="absent").inc()
            return ReconcileResult(key=key, outcome="absent")

        started = time.monotonic()
        try:
            result = self.action.apply(obj)
        except Exception as exc:
            error = classify_error(exc, action=f"{self.action.name} reconcile of {key}")
            METRICS.reconcile_total.labels(action=self.action.name, outcome="error").inc()
            if error is exc:
                raise
            raise error from exc
        finally:
            METRICS.reconcile_duration_seconds.labels(action=self.action.name).observe(
                time.monotonic() - started
            )

        METRICS.reconcile_total.labels(action=self.action.name, outcome=result.outcome).inc()
        self.logger.debug("Reconciled %s: %s", key, result)
        return ReconcileResult(key=key, outcome=result.outcome, action=result)
