from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class MirrorEntry:
    obj: Any
    resource_version: str | None


def object_key(obj: Any) -> str | None:
    """Return the stable identity of a watched object.

    Namespaced objects are keyed ``<namespace>/<name>``; cluster-scoped
    objects (no namespace) are keyed by name alone.  Returns ``None`` when
    the object carries no name.
    """
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def resource_version_of(obj: Any) -> str | None:
    metadata = getattr(obj, "metadata", None)
    resource_version = getattr(metadata, "resource_version", None)
    return str(resource_version) if resource_version else None


def is_newer_resource_version(candidate: str | None, current: str | None) -> bool:
    """Return True if *candidate* supersedes *current*.

    Kubernetes resource versions are etcd revisions in practice, so they are
    compared numerically when both parse as integers.  Any other pair is
    treated as opaque: a different value counts as newer.
    """
    if current is None:
        return True
    if candidate is None:
        return False
    try:
        return int(candidate) > int(current)
    except ValueError:
        return candidate != current


class ResourceMirror:
    """In-memory mirror of the last-known state of one resource kind.

    The owning reconciliation loop is the only writer.  Reads may come from
    other threads (health checks, query helpers), so every access goes
    through a re-entrant lock.
    """

    def __init__(self) -> None:
        self._entries: dict[str, MirrorEntry] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
        return entry.obj if entry is not None else None

    def get_entry(self, key: str) -> MirrorEntry | None:
        with self._lock:
            return self._entries.get(key)

    def get_resource_version(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
        return entry.resource_version if entry is not None else None

    def put(self, key: str, obj: Any, resource_version: str | None) -> None:
        with self._lock:
            self._entries[key] = MirrorEntry(obj=obj, resource_version=resource_version)

    def delete(self, key: str) -> Any | None:
        """Remove *key* and return the object it held, or ``None`` if absent."""
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry.obj if entry is not None else None

    def list(self) -> list[Any]:
        with self._lock:
            return [entry.obj for entry in self._entries.values()]

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._entries)

    def snapshot(self) -> dict[str, str | None]:
        """Return ``{key: resource_version}`` for every entry."""
        with self._lock:
            return {key: entry.resource_version for key, entry in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
