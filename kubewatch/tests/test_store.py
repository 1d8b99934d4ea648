from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest

from kubewatch.src.store import (
    ResourceMirror,
    is_newer_resource_version,
    object_key,
    resource_version_of,
)


def test_put_get_delete_roundtrip() -> None:
    mirror = ResourceMirror()
    obj = SimpleNamespace(name="web-0")

    mirror.put("default/web-0", obj, "10")

    assert mirror.get("default/web-0") is obj
    assert mirror.get_resource_version("default/web-0") == "10"
    assert "default/web-0" in mirror
    assert len(mirror) == 1

    assert mirror.delete("default/web-0") is obj
    assert mirror.get("default/web-0") is None
    assert mirror.delete("default/web-0") is None
    assert len(mirror) == 0


def test_put_replaces_existing_entry() -> None:
    mirror = ResourceMirror()
    mirror.put("k", "old", "1")
    mirror.put("k", "new", "2")

    assert mirror.get("k") == "new"
    assert mirror.snapshot() == {"k": "2"}


def test_list_and_keys_return_copies() -> None:
    mirror = ResourceMirror()
    mirror.put("a", "obj-a", "1")
    mirror.put("b", "obj-b", "1")

    keys = mirror.keys()
    keys.add("c")

    assert sorted(mirror.list()) == ["obj-a", "obj-b"]
    assert mirror.keys() == {"a", "b"}


def test_concurrent_readers_and_writer() -> None:
    mirror = ResourceMirror()
    errors: list[Exception] = []

    def writer() -> None:
        for i in range(2000):
            mirror.put(f"k{i % 50}", i, str(i))
            if i % 3 == 0:
                mirror.delete(f"k{(i + 7) % 50}")

    def reader() -> None:
        try:
            for _ in range(2000):
                mirror.list()
                mirror.snapshot()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []


def test_object_key_for_namespaced_and_cluster_scoped_objects() -> None:
    namespaced = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="prod"))
    cluster_scoped = SimpleNamespace(metadata=SimpleNamespace(name="pv-1", namespace=None))

    assert object_key(namespaced) == "prod/web"
    assert object_key(cluster_scoped) == "pv-1"
    assert object_key(SimpleNamespace(metadata=SimpleNamespace(name=None))) is None
    assert object_key(SimpleNamespace()) is None


def test_resource_version_of() -> None:
    obj = SimpleNamespace(metadata=SimpleNamespace(resource_version="42"))

    assert resource_version_of(obj) == "42"
    assert resource_version_of(SimpleNamespace(metadata=None)) is None


@pytest.mark.parametrize(
    ("candidate", "current", "expected"),
    [
        ("11", "10", True),
        ("10", "10", False),
        ("9", "10", False),
        ("100", "99", True),
        ("1", None, True),
        (None, "1", False),
        ("abc", "abd", True),
        ("abc", "abc", False),
    ],
)
def test_is_newer_resource_version(
    candidate: str | None, current: str | None, expected: bool
) -> None:
    assert is_newer_resource_version(candidate, current) is expected
