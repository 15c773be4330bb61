"""Accessors that work on typed ``kubernetes`` models and raw custom-object dicts alike."""

from __future__ import annotations

from typing import Any


def _field(obj: Any, attr: str, key: str | None = None) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key or attr)
    return getattr(obj, attr, None)


def metadata(obj: Any) -> Any:
    return _field(obj, "metadata")


def object_name(obj: Any) -> str | None:
    return _field(metadata(obj), "name")


def object_namespace(obj: Any) -> str | None:
    return _field(metadata(obj), "namespace")


def object_key(obj: Any) -> str | None:
    """Return ``namespace/name`` (or ``name`` for cluster-scoped objects)."""
    name = object_name(obj)
    if not name:
        return None
    namespace = object_namespace(obj)
    return f"{namespace}/{name}" if namespace else name


def resource_version(obj: Any) -> str | None:
    return _field(metadata(obj), "resource_version", "resourceVersion")


def annotations(obj: Any) -> dict[str, str]:
    raw = _field(metadata(obj), "annotations")
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def list_items(listing: Any) -> list[Any]:
    return list(_field(listing, "items") or [])


def list_resource_version(listing: Any) -> str | None:
    return _field(metadata(listing), "resource_version", "resourceVersion")
