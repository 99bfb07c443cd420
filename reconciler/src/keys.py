from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reconciler.src.errors import InvalidObjectError

ReconcileKey = str


@dataclass(frozen=True)
class ConfigObject:
    """Typed view of a ConfigMap as delivered by the event source.

    Only the identity fields the controller acts on are extracted; ``data``
    is carried along opaquely.
    """

    namespace: str
    name: str
    uid: str = ""
    resource_version: str = ""
    data: dict[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_kube(cls, obj: Any) -> ConfigObject:
        """Build a :class:`ConfigObject` from a ``V1ConfigMap`` or an API-shaped dict.

        Raises :class:`InvalidObjectError` when the payload carries no
        metadata at all.  Empty names are let through here and rejected by
        :func:`extract_key`.
        """
        if isinstance(obj, ConfigObject):
            return obj
        if isinstance(obj, dict):
            metadata = obj.get("metadata")
            if not isinstance(metadata, dict):
                raise InvalidObjectError("ConfigMap payload has no metadata")
            return cls(
                namespace=metadata.get("namespace") or "",
                name=metadata.get("name") or "",
                uid=metadata.get("uid") or "",
                resource_version=metadata.get("resourceVersion") or "",
                data=_normalize_data(obj.get("data")),
            )

        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            raise InvalidObjectError(
                f"Unsupported ConfigMap payload of type {type(obj).__name__}"
            )
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            uid=getattr(metadata, "uid", None) or "",
            resource_version=getattr(metadata, "resource_version", None) or "",
            data=_normalize_data(getattr(obj, "data", None)),
        )


def _normalize_data(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def extract_key(obj: Any) -> ReconcileKey:
    """Return the ``namespace/name`` reconcile key for a resource object.

    Pure and deterministic.  Namespace and name must both be non-empty and
    free of ``/`` so that keys never collide across namespaces.
    """
    config_object = ConfigObject.from_kube(obj)
    namespace = config_object.namespace
    name = config_object.name
    if not namespace:
        raise InvalidObjectError(f"Object {name or '<unnamed>'} has an empty namespace")
    if not name:
        raise InvalidObjectError(f"Object in namespace {namespace} has an empty name")
    if "/" in namespace or "/" in name:
        raise InvalidObjectError(f"Object identity {namespace!r}/{name!r} contains '/'")
    return f"{namespace}/{name}"


def split_key(key: ReconcileKey) -> tuple[str, str]:
    """Split a reconcile key back into ``(namespace, name)``."""
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name or "/" in name:
        raise InvalidObjectError(f"Malformed reconcile key {key!r}")
    return namespace, name
