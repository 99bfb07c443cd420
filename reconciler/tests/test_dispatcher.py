from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from reconciler.src.actions import ActionResult
from reconciler.src.dispatcher import Reconciler, ReconcileResult
from reconciler.src.errors import (
    ConflictError,
    InvalidObjectError,
    PermanentAPIError,
    TransientAPIError,
)
from reconciler.src.keys import ConfigObject


class FakeCache:
    def __init__(self, objects: dict[str, ConfigObject] | None = None) -> None:
        self.objects = objects or {}
        self.lookups: list[str] = []

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        self.lookups.append(key)
        obj = self.objects.get(key)
        return obj, obj is not None


class RecordingAction:
    name = "binding"

    def __init__(self, error: Exception | None = None, outcome: str = "created") -> None:
        self.error = error
        self.outcome = outcome
        self.applied: list[ConfigObject] = []

    def apply(self, obj: ConfigObject) -> ActionResult:
        self.applied.append(obj)
        if self.error is not None:
            raise self.error
        return ActionResult(action=self.name, outcome=self.outcome)


CFG1 = ConfigObject(namespace="ns1", name="cfg1", uid="u-1", resource_version="3")


def test_reconcile_applies_action_to_cached_object() -> None:
    action = RecordingAction()
    reconciler = Reconciler(FakeCache({"ns1/cfg1": CFG1}), action)

    result = reconciler.reconcile("ns1/cfg1")

    assert action.applied == [CFG1]
    assert result == ReconcileResult(
        key="ns1/cfg1",
        outcome="created",
        action=ActionResult(action="binding", outcome="created"),
    )


def test_reconcile_of_deleted_object_is_a_no_op() -> None:
    action = RecordingAction()
    cache = FakeCache()

    result = Reconciler(cache, action).reconcile("ns1/gone")

    assert result.outcome == "absent"
    assert result.action is None
    assert action.applied == []
    assert cache.lookups == ["ns1/gone"]


def test_reconcile_rejects_malformed_key_without_touching_cache() -> None:
    cache = FakeCache()

    with pytest.raises(InvalidObjectError):
        Reconciler(cache, RecordingAction()).reconcile("not-a-key")

    assert cache.lookups == []


def test_reconcile_reraises_classified_errors_unchanged() -> None:
    original = ConflictError("already being modified", status=409)
    reconciler = Reconciler(FakeCache({"ns1/cfg1": CFG1}), RecordingAction(error=original))

    with pytest.raises(ConflictError) as excinfo:
        reconciler.reconcile("ns1/cfg1")

    assert excinfo.value is original


def test_reconcile_classifies_raw_api_exceptions() -> None:
    reconciler = Reconciler(
        FakeCache({"ns1/cfg1": CFG1}),
        RecordingAction(error=ApiException(status=503, reason="Unavailable")),
    )

    with pytest.raises(TransientAPIError) as excinfo:
        reconciler.reconcile("ns1/cfg1")

    assert isinstance(excinfo.value.__cause__, ApiException)
    assert excinfo.value.retryable is True


def test_reconcile_classifies_forbidden_as_permanent() -> None:
    reconciler = Reconciler(
        FakeCache({"ns1/cfg1": CFG1}),
        RecordingAction(error=ApiException(status=403, reason="Forbidden")),
    )

    with pytest.raises(PermanentAPIError) as excinfo:
        reconciler.reconcile("ns1/cfg1")

    assert excinfo.value.retryable is False


def test_reconcile_treats_unknown_exceptions_as_transient() -> None:
    reconciler = Reconciler(
        FakeCache({"ns1/cfg1": CFG1}), RecordingAction(error=RuntimeError("boom"))
    )

    with pytest.raises(TransientAPIError, match="binding reconcile of ns1/cfg1"):
        reconciler.reconcile("ns1/cfg1")
